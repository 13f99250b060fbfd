import datetime as dt

from conftest import NOW
from order_service import expiration
from order_service.expiration import ORDER_EXPIRED_REASON, PIX_EXPIRED_REASON
from order_service.models import Order, OrderStatus, OutboxEvent, Payment, PaymentMethod, PaymentStatus
from order_service.notifications import ORDER_STATUS_UPDATED
from order_service.pagbank import ChargeResult


def test_unpaid_pix_is_expired_and_stock_returned(db, seed, stock, sweeper, place_order):
    order = place_order()
    order_id = order.id
    db.commit()

    report = sweeper.expire_pix_payments(now=NOW + dt.timedelta(minutes=16))

    assert report.as_dict() == {"found": 1, "expired": 1, "skipped": 0, "failed": 0}
    order = db.get(Order, order_id)
    payment = order.payments[0]
    assert payment.status == PaymentStatus.EXPIRED.value
    assert payment.stock_reserved is False
    assert payment.payment_metadata["expiredReason"] == PIX_EXPIRED_REASON
    assert order.status == OrderStatus.PENDING.value
    assert order.payment_status == PaymentStatus.EXPIRED.value
    assert stock(seed.product_id) == 1


def test_fresh_pix_is_left_alone(db, seed, stock, sweeper, place_order):
    place_order()
    db.commit()

    report = sweeper.expire_pix_payments(now=NOW + dt.timedelta(minutes=10))

    assert report.found == 0
    assert stock(seed.product_id) == 0


def test_card_payments_are_not_swept(db, seed, gateway, sweeper, place_order):
    gateway.results.append(
        ChargeResult(success=True, payment_status=PaymentStatus.AUTHORIZED, gateway_status="AUTHORIZED", charge_id="CHAR_A")
    )
    place_order(method=PaymentMethod.CREDIT_CARD)
    db.commit()

    report = sweeper.expire_pix_payments(now=NOW + dt.timedelta(hours=1))

    assert report.found == 0


def test_stale_order_is_canceled(db, seed, stock, sweeper, place_order):
    order = place_order()
    order_id = order.id
    db.commit()

    report = sweeper.expire_orders(now=NOW + dt.timedelta(hours=25))

    assert report.expired == 1
    order = db.get(Order, order_id)
    assert order.status == OrderStatus.CANCELED.value
    assert order.cancelled_at is not None
    payment = order.payments[0]
    assert payment.status == PaymentStatus.EXPIRED.value
    assert payment.payment_metadata["expiredReason"] == ORDER_EXPIRED_REASON
    assert stock(seed.product_id) == 1

    update = db.query(OutboxEvent).filter(OutboxEvent.routing_key == ORDER_STATUS_UPDATED).one().payload
    assert (update["old_status"], update["new_status"]) == ("PENDING", "CANCELED")


def _stale_card_order(db, gateway, place_order):
    gateway.results.append(
        ChargeResult(success=True, payment_status=PaymentStatus.AUTHORIZED, gateway_status="AUTHORIZED", charge_id="CHAR_A")
    )
    order_id = place_order(method=PaymentMethod.CREDIT_CARD).id
    db.commit()
    return order_id


def test_stale_card_order_voids_the_authorization(db, seed, stock, gateway, sweeper, place_order):
    order_id = _stale_card_order(db, gateway, place_order)
    assert stock(seed.product_id) == 0
    db.commit()

    report = sweeper.expire_orders(now=NOW + dt.timedelta(hours=25))

    assert report.expired == 1
    assert gateway.cancelled == ["CHAR_A"]
    order = db.get(Order, order_id)
    assert order.status == OrderStatus.CANCELED.value
    assert order.payments[0].status == PaymentStatus.EXPIRED.value
    assert stock(seed.product_id) == 1


def test_refused_void_still_counts_as_expired(db, seed, gateway, sweeper, place_order, monkeypatch):
    _stale_card_order(db, gateway, place_order)
    monkeypatch.setattr(gateway, "cancel_charge", lambda charge_id, amount=None: False)

    report = sweeper.expire_orders(now=NOW + dt.timedelta(hours=25))

    assert report.as_dict() == {"found": 1, "expired": 1, "skipped": 0, "failed": 0}


def test_stale_pix_order_needs_no_void(db, seed, gateway, sweeper, place_order):
    place_order()
    db.commit()

    sweeper.expire_orders(now=NOW + dt.timedelta(hours=25))

    assert gateway.cancelled == []


def test_order_sweep_ignores_recent_and_paid_orders(db, seed, sweeper, place_order):
    place_order(method=PaymentMethod.CREDIT_CARD)
    place_order(product_id=seed.spare_id, now=NOW + dt.timedelta(hours=20))
    db.commit()

    report = sweeper.expire_orders(now=NOW + dt.timedelta(hours=25))

    assert report.found == 0
    statuses = sorted(status for (status,) in db.query(Order.status).all())
    assert statuses == ["PAID", "PENDING"]


def test_order_sweep_after_pix_sweep_only_cancels(db, seed, stock, sweeper, place_order):
    place_order()
    db.commit()
    sweeper.expire_pix_payments(now=NOW + dt.timedelta(minutes=16))

    report = sweeper.expire_orders(now=NOW + dt.timedelta(hours=25))

    assert report.expired == 1
    assert db.query(Order.status).scalar() == OrderStatus.CANCELED.value
    assert stock(seed.product_id) == 1


def test_one_failing_payment_does_not_stop_the_scan(db, seed, stock, sweeper, place_order, monkeypatch):
    first = place_order()
    place_order(product_id=seed.spare_id)
    broken_id = first.payments[0].id
    db.commit()

    real_apply = expiration.apply_transition

    def flaky(session, payment, *args, **kwargs):
        if payment.id == broken_id:
            raise RuntimeError("lock timeout")
        return real_apply(session, payment, *args, **kwargs)

    monkeypatch.setattr(expiration, "apply_transition", flaky)
    report = sweeper.expire_pix_payments(now=NOW + dt.timedelta(minutes=16))

    assert report.as_dict() == {"found": 2, "expired": 1, "skipped": 0, "failed": 1}
    assert db.get(Payment, broken_id).status == PaymentStatus.WAITING.value
    assert stock(seed.product_id) == 0
    assert stock(seed.spare_id) == 5
