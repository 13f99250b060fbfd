import datetime as dt

import pytest

from conftest import NOW
from order_service import inventory, webhooks
from order_service.errors import InsufficientStock, WebhookEventNotFound
from order_service.models import Order, OrderStatus, OutboxEvent, PaymentMethod, PaymentStatus, Product, WebhookEvent
from order_service.notifications import ORDER_STATUS_UPDATED
from order_service.pagbank import ChargeResult
from order_service.payment_states import OUT_OF_STOCK_REASON
from order_service.webhooks import ReconcileOutcome


def _event(order_id, status, charge_id="CHAR_5E1A", reference_id="NSR-2026-0001"):
    return {
        "id": order_id,
        "reference_id": reference_id,
        "charges": [
            {
                "id": charge_id,
                "reference_id": reference_id,
                "status": status,
                "amount": {"value": 11500, "currency": "BRL"},
            }
        ],
    }


def _handle(db, notifier, payload, now=NOW):
    _, outcomes = webhooks.handle_webhook(db, "pagbank", payload, notifier=notifier, now=now)
    return outcomes


def test_pix_paid_confirms_order_without_touching_stock_again(db, seed, stock, notifier, place_order):
    order = place_order()
    assert stock(seed.product_id) == 0

    outcomes = _handle(db, notifier, _event("ORDE_1", "PAID"))

    assert [o.outcome for o in outcomes] == [ReconcileOutcome.APPLIED]
    payment = order.payments[0]
    assert order.status == OrderStatus.CONFIRMED.value
    assert order.paid_at is not None
    assert payment.status == PaymentStatus.PAID.value
    assert payment.stock_reserved is True
    assert payment.stock_committed_at is not None
    assert stock(seed.product_id) == 0

    history = payment.payment_metadata["webhook_history"]
    assert history[-1]["status"] == "PAID"
    assert history[-1]["charge_id"] == "CHAR_5E1A"
    assert payment.payment_metadata["last_webhook_status"] == "PAID"

    update = db.query(OutboxEvent).filter(OutboxEvent.routing_key == ORDER_STATUS_UPDATED).one().payload
    assert (update["old_status"], update["new_status"]) == ("PENDING", "CONFIRMED")


def test_duplicate_notification_is_a_noop(db, seed, stock, notifier, place_order):
    place_order()
    _handle(db, notifier, _event("ORDE_1", "PAID"))

    outcomes = _handle(db, notifier, _event("ORDE_1", "PAID"))

    assert outcomes[0].outcome == ReconcileOutcome.NOOP
    assert stock(seed.product_id) == 0
    assert db.query(WebhookEvent).count() == 2


def test_unknown_charge_is_recorded_and_acknowledged(db, seed, notifier):
    event, outcomes = webhooks.handle_webhook(
        db, "pagbank", _event("ORDE_UNKNOWN", "PAID", charge_id="CHAR_UNKNOWN"), notifier=notifier, now=NOW
    )

    assert outcomes[0].outcome == ReconcileOutcome.UNKNOWN_CHARGE
    assert outcomes[0].charge_id == "CHAR_UNKNOWN"
    assert event.provider == "PAGBANK"
    assert event.processed_at is not None
    assert event.error is None


def test_top_level_status_without_charges(db, seed, notifier, place_order):
    order = place_order()

    outcomes = _handle(db, notifier, {"id": "ORDE_1", "status": "IN_ANALYSIS"})

    assert outcomes[0].outcome == ReconcileOutcome.APPLIED
    assert order.payments[0].status == PaymentStatus.IN_ANALYSIS.value


def test_declined_releases_stock_and_keeps_order_open(db, seed, stock, notifier, place_order):
    order = place_order()

    _handle(db, notifier, _event("ORDE_1", "DECLINED"))

    assert order.payments[0].status == PaymentStatus.DECLINED.value
    assert order.payments[0].stock_reserved is False
    assert order.status == OrderStatus.PENDING.value
    assert stock(seed.product_id) == 1


def test_expired_keeps_order_pending(db, seed, stock, notifier, place_order):
    order = place_order()

    _handle(db, notifier, _event("ORDE_1", "EXPIRED"))

    assert order.payments[0].status == PaymentStatus.EXPIRED.value
    assert order.status == OrderStatus.PENDING.value
    assert stock(seed.product_id) == 1


def test_declined_after_the_order_window_cancels_the_order(db, seed, stock, notifier, place_order):
    order = place_order()

    _handle(db, notifier, _event("ORDE_1", "DECLINED"), now=NOW + dt.timedelta(hours=25))

    assert order.status == OrderStatus.CANCELED.value
    assert order.cancel_reason == "payment window expired"
    assert stock(seed.product_id) == 1
    update = db.query(OutboxEvent).filter(OutboxEvent.routing_key == ORDER_STATUS_UPDATED).one().payload
    assert (update["old_status"], update["new_status"]) == ("PENDING", "CANCELED")


def test_card_paid_by_webhook_commits_the_held_stock(db, seed, stock, gateway, notifier, place_order):
    gateway.results.append(
        ChargeResult(
            success=True,
            payment_status=PaymentStatus.AUTHORIZED,
            gateway_status="AUTHORIZED",
            charge_id="CHAR_AUTH",
        )
    )
    order = place_order(method=PaymentMethod.CREDIT_CARD)
    assert order.payments[0].status == PaymentStatus.AUTHORIZED.value
    assert stock(seed.product_id) == 0

    _handle(db, notifier, _event("ORDE_CARD", "PAID", charge_id="CHAR_AUTH"))

    payment = order.payments[0]
    assert payment.status == PaymentStatus.PAID.value
    assert payment.stock_committed_at is not None
    assert order.status == OrderStatus.CONFIRMED.value
    assert stock(seed.product_id) == 0


def _authorized_card(gateway, status=PaymentStatus.AUTHORIZED, charge_id="CHAR_AUTH"):
    gateway.results.append(
        ChargeResult(success=True, payment_status=status, gateway_status=status.value, charge_id=charge_id)
    )


def test_card_in_analysis_holds_the_last_unit(db, seed, stock, gateway, notifier, place_order):
    _authorized_card(gateway, status=PaymentStatus.IN_ANALYSIS, charge_id="CHAR_REVIEW")
    first = place_order(method=PaymentMethod.CREDIT_CARD)
    first_id = first.id
    assert stock(seed.product_id) == 0

    with pytest.raises(InsufficientStock):
        place_order(method=PaymentMethod.CREDIT_CARD)

    _handle(db, notifier, _event("ORDE_CARD", "PAID", charge_id="CHAR_REVIEW"))

    order = db.get(Order, first_id)
    assert order.status == OrderStatus.CONFIRMED.value
    assert order.payments[0].stock_committed_at is not None
    assert db.query(Order).count() == 1
    assert stock(seed.product_id) == 0


def test_declined_card_gives_its_hold_back(db, seed, stock, gateway, notifier, place_order):
    _authorized_card(gateway)
    order = place_order(method=PaymentMethod.CREDIT_CARD)
    assert stock(seed.product_id) == 0

    _handle(db, notifier, _event("ORDE_CARD", "DECLINED", charge_id="CHAR_AUTH"))

    assert order.payments[0].stock_reserved is False
    assert order.status == OrderStatus.PENDING.value
    assert stock(seed.product_id) == 1


def test_paid_without_stock_cancels_instead_of_confirming(db, seed, stock, gateway, notifier, place_order):
    _authorized_card(gateway)
    order = place_order(method=PaymentMethod.CREDIT_CARD)
    payment = order.payments[0]
    # hold lost and the unit sold elsewhere
    inventory.release_for_payment(db, payment)
    db.query(Product).filter(Product.id == seed.product_id).update({Product.stock: 0})
    db.commit()

    outcomes = _handle(db, notifier, _event("ORDE_CARD", "PAID", charge_id="CHAR_AUTH"))

    assert outcomes[0].outcome == ReconcileOutcome.APPLIED
    assert payment.status == PaymentStatus.PAID.value
    assert payment.stock_reserved is False
    assert payment.stock_committed_at is None
    assert payment.payment_metadata["refund_required"] is True
    assert payment.payment_metadata["stock_shortfall"][0]["product_id"] == seed.product_id
    assert order.status == OrderStatus.CANCELED.value
    assert order.cancel_reason == OUT_OF_STOCK_REASON
    assert order.paid_at is None
    assert stock(seed.product_id) == 0
    update = db.query(OutboxEvent).filter(OutboxEvent.routing_key == ORDER_STATUS_UPDATED).one().payload
    assert (update["old_status"], update["new_status"]) == ("PENDING", "CANCELED")


def test_paid_after_expiry_is_rejected(db, seed, stock, notifier, place_order):
    order = place_order()
    _handle(db, notifier, _event("ORDE_1", "EXPIRED"))

    outcomes = _handle(db, notifier, _event("ORDE_1", "PAID"))

    assert outcomes[0].outcome == ReconcileOutcome.REJECTED
    assert order.payments[0].status == PaymentStatus.EXPIRED.value
    assert order.status == OrderStatus.PENDING.value
    assert stock(seed.product_id) == 1


def test_late_decline_after_sweep_does_not_restock_twice(db, seed, stock, notifier, sweeper, place_order):
    order = place_order()
    db.commit()

    swept_at = NOW + dt.timedelta(minutes=16)
    report = sweeper.expire_pix_payments(now=swept_at)
    assert report.expired == 1
    assert stock(seed.product_id) == 1

    outcomes = _handle(db, notifier, _event("ORDE_1", "DECLINED"), now=swept_at + dt.timedelta(seconds=1))

    assert outcomes[0].outcome == ReconcileOutcome.REJECTED
    assert order.payments[0].status == PaymentStatus.EXPIRED.value
    assert stock(seed.product_id) == 1


def test_failed_charge_is_recorded_and_can_be_replayed(db, seed, stock, notifier, place_order, monkeypatch):
    order = place_order()

    def broken(*args, **kwargs):
        raise RuntimeError("database hiccup")

    monkeypatch.setattr(webhooks, "apply_transition", broken)
    event, outcomes = webhooks.handle_webhook(db, "pagbank", _event("ORDE_1", "PAID"), notifier=notifier, now=NOW)

    assert outcomes[0].outcome == ReconcileOutcome.FAILED
    assert "database hiccup" in event.error
    assert order.payments[0].status == PaymentStatus.WAITING.value

    monkeypatch.undo()
    replayed = webhooks.replay_webhook_event(db, event.id, notifier=notifier, now=NOW)

    assert [o.outcome for o in replayed] == [ReconcileOutcome.APPLIED]
    assert db.get(WebhookEvent, event.id).error is None
    assert order.status == OrderStatus.CONFIRMED.value
    assert stock(seed.product_id) == 0


def test_replaying_a_missing_event(db, seed, notifier):
    with pytest.raises(WebhookEventNotFound):
        webhooks.replay_webhook_event(db, 4242, notifier=notifier)


def test_outcome_serializes_for_the_admin_api():
    outcome = webhooks.ChargeOutcome(charge_id="CHAR_1", outcome=ReconcileOutcome.APPLIED, payment_id=3, status="PAID")
    assert outcome.as_dict() == {
        "charge_id": "CHAR_1",
        "outcome": "applied",
        "payment_id": 3,
        "status": "PAID",
        "error": None,
    }
