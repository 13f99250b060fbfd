import pytest

from order_service import inventory
from order_service.errors import InsufficientStock, InvalidReference
from order_service.models import Payment, PaymentMethod


def test_reserve_refuses_to_oversell(db, seed, stock):
    with pytest.raises(InsufficientStock) as exc:
        inventory.reserve(db, [{"product_id": seed.product_id, "quantity": 2}])
    db.rollback()

    assert exc.value.items == [
        {"product_id": seed.product_id, "product_name": "Camiseta Básica", "requested": 2, "available": 1}
    ]
    assert stock(seed.product_id) == 1


def test_reserve_reports_every_short_product_and_caller_rollback_undoes_the_rest(db, seed, stock):
    with pytest.raises(InsufficientStock) as exc:
        inventory.reserve(
            db,
            [
                {"product_id": seed.spare_id, "quantity": 2},
                {"product_id": seed.product_id, "quantity": 3},
            ],
        )
    db.rollback()

    assert [i["product_id"] for i in exc.value.items] == [seed.product_id]
    assert stock(seed.spare_id) == 5
    assert stock(seed.product_id) == 1


def test_reserve_merges_repeated_lines(db, seed, stock):
    inventory.reserve(
        db,
        [
            {"product_id": seed.spare_id, "quantity": 2},
            {"product_id": seed.spare_id, "quantity": 3},
        ],
    )
    db.commit()
    assert stock(seed.spare_id) == 0


def test_check_availability_does_not_touch_stock(db, seed, stock):
    unavailable = inventory.check_availability(
        db,
        [
            {"product_id": seed.product_id, "quantity": 4},
            {"product_id": seed.spare_id, "quantity": 1},
        ],
    )
    assert unavailable == [
        {"product_id": seed.product_id, "product_name": "Camiseta Básica", "requested": 4, "available": 1}
    ]
    assert stock(seed.product_id) == 1


def test_unknown_product_is_an_invalid_reference(db, seed):
    with pytest.raises(InvalidReference):
        inventory.check_availability(db, [{"product_id": 9999, "quantity": 1}])


def test_release_for_payment_is_idempotent(db, seed, stock, place_order):
    order = place_order(method=PaymentMethod.PIX)
    payment = order.payments[0]
    assert stock(seed.product_id) == 0

    assert inventory.release_for_payment(db, payment) is True
    assert inventory.release_for_payment(db, payment) is False
    db.commit()

    assert stock(seed.product_id) == 1
    assert db.get(Payment, payment.id).stock_reserved is False


def test_reserve_for_payment_claims_only_once(db, seed, stock, place_order):
    order = place_order(method=PaymentMethod.PIX)
    payment = order.payments[0]

    assert inventory.reserve_for_payment(db, payment) is False
    db.commit()
    assert stock(seed.product_id) == 0


def test_committed_reservation_cannot_be_released(db, seed, stock, place_order):
    order = place_order(method=PaymentMethod.PIX)
    payment = order.payments[0]

    assert inventory.commit_for_payment(db, payment) is True
    assert inventory.commit_for_payment(db, payment) is False
    assert inventory.release_for_payment(db, payment) is False
    db.commit()

    assert stock(seed.product_id) == 0
    payment = db.get(Payment, payment.id)
    assert payment.stock_reserved is True
    assert payment.stock_committed_at is not None


def test_restock_cancelled_sale_runs_once(db, seed, stock, place_order):
    order = place_order(method=PaymentMethod.PIX)
    payment = order.payments[0]
    inventory.commit_for_payment(db, payment)

    assert inventory.restock_cancelled_sale(db, payment) is True
    assert inventory.restock_cancelled_sale(db, payment) is False
    db.commit()
    assert stock(seed.product_id) == 1
