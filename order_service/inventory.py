"""Inventory ledger: the only code that changes ``Product.stock``.

Every mutation is a single conditional UPDATE, so the store enforces
``stock >= 0`` and the "who owns this reservation" flag on the payment row
acts as a compare-and-set. All functions run inside the caller's
transaction and never commit; pair them with the status change they belong to.
"""
from typing import Dict, Iterable, List

import structlog
from sqlalchemy.orm import Session

from .errors import InsufficientStock, InvalidReference
from .models import Payment, Product, utcnow

logger = structlog.get_logger().bind(component="inventory")


def _merge(items: Iterable[Dict]) -> Dict[int, int]:
    merged: Dict[int, int] = {}
    for item in items:
        pid = int(item["product_id"])
        qty = int(item["quantity"])
        if qty <= 0:
            raise ValueError("quantity must be > 0")
        merged[pid] = merged.get(pid, 0) + qty
    return merged


def _expire_stock(db: Session, product_ids: Iterable[int]) -> None:
    touched = set(product_ids)
    for obj in list(db.identity_map.values()):
        if isinstance(obj, Product) and obj.id in touched:
            db.expire(obj, ["stock"])


def _payment_items(payment: Payment) -> List[Dict]:
    return [{"product_id": i.product_id, "quantity": i.quantity} for i in payment.order.items]


def check_availability(db: Session, items: Iterable[Dict]) -> List[Dict]:
    """Return the items that cannot be served from current stock (nothing is reserved)."""
    unavailable: List[Dict] = []
    for pid, qty in _merge(items).items():
        product = db.query(Product).filter(Product.id == pid).first()
        if product is None:
            raise InvalidReference(f"Product {pid} not found")
        if product.stock < qty:
            unavailable.append(
                {
                    "product_id": pid,
                    "product_name": product.name,
                    "requested": qty,
                    "available": product.stock,
                }
            )
    return unavailable


def reserve(db: Session, items: Iterable[Dict]) -> None:
    """Atomically decrement stock for every item or raise ``InsufficientStock``.

    A failed decrement leaves earlier ones applied in the open transaction;
    the caller must roll back, which it does for any exception.
    """
    merged = _merge(items)
    db.flush()

    shortfalls: List[Dict] = []
    # Lock rows in a stable order to avoid deadlocks
    for pid in sorted(merged):
        qty = merged[pid]
        updated = (
            db.query(Product)
            .filter(Product.id == pid, Product.stock >= qty)
            .update({Product.stock: Product.stock - qty}, synchronize_session=False)
        )
        if updated:
            continue
        product = db.query(Product).filter(Product.id == pid).first()
        if product is None:
            raise InvalidReference(f"Product {pid} not found")
        shortfalls.append(
            {"product_id": pid, "product_name": product.name, "requested": qty, "available": product.stock}
        )

    _expire_stock(db, merged)
    if shortfalls:
        logger.warning("Stock reservation refused", shortfalls=shortfalls)
        raise InsufficientStock(shortfalls)


def release(db: Session, items: Iterable[Dict]) -> None:
    merged = _merge(items)
    db.flush()
    for pid in sorted(merged):
        db.query(Product).filter(Product.id == pid).update(
            {Product.stock: Product.stock + merged[pid]}, synchronize_session=False
        )
    _expire_stock(db, merged)


def reserve_for_payment(db: Session, payment: Payment) -> bool:
    """Decrement stock for the payment's order and mark the payment as its owner.

    Returns False if the payment already owns (or has committed) a reservation.
    """
    db.flush()
    claimed = (
        db.query(Payment)
        .filter(
            Payment.id == payment.id,
            Payment.stock_reserved.is_(False),
            Payment.stock_committed_at.is_(None),
        )
        .update({Payment.stock_reserved: True}, synchronize_session=False)
    )
    if not claimed:
        logger.info("Payment already holds a reservation", payment_id=payment.id)
        return False

    reserve(db, _payment_items(payment))
    db.expire(payment, ["stock_reserved"])
    logger.info("Stock reserved", payment_id=payment.id, order_id=payment.order_id)
    return True


def release_for_payment(db: Session, payment: Payment) -> bool:
    """Give the payment's reserved stock back. Safe to call any number of times.

    Only the caller that flips ``stock_reserved`` from true to false touches
    stock; everyone else (a duplicate webhook, the sweeper racing it) gets False.
    Committed reservations are never released here.
    """
    db.flush()
    released = (
        db.query(Payment)
        .filter(
            Payment.id == payment.id,
            Payment.stock_reserved.is_(True),
            Payment.stock_committed_at.is_(None),
        )
        .update({Payment.stock_reserved: False}, synchronize_session=False)
    )
    db.expire(payment, ["stock_reserved"])
    if not released:
        logger.info("No reserved stock to release", payment_id=payment.id)
        return False

    release(db, _payment_items(payment))
    logger.info("Stock released", payment_id=payment.id, order_id=payment.order_id)
    return True


def commit_for_payment(db: Session, payment: Payment) -> bool:
    """Make the payment's reservation permanent; no release is possible afterwards."""
    db.flush()
    committed = (
        db.query(Payment)
        .filter(
            Payment.id == payment.id,
            Payment.stock_reserved.is_(True),
            Payment.stock_committed_at.is_(None),
        )
        .update({Payment.stock_committed_at: utcnow()}, synchronize_session=False)
    )
    db.expire(payment, ["stock_committed_at"])
    if committed:
        logger.info("Stock reservation committed", payment_id=payment.id, order_id=payment.order_id)
    return bool(committed)


def restock_cancelled_sale(db: Session, payment: Payment) -> bool:
    """Return committed stock when a paid order is cancelled. Runs at most once per payment."""
    db.flush()
    returned = (
        db.query(Payment)
        .filter(
            Payment.id == payment.id,
            Payment.stock_reserved.is_(True),
            Payment.stock_committed_at.isnot(None),
        )
        .update({Payment.stock_reserved: False}, synchronize_session=False)
    )
    db.expire(payment, ["stock_reserved"])
    if not returned:
        return False

    release(db, _payment_items(payment))
    logger.info("Committed stock returned after cancellation", payment_id=payment.id, order_id=payment.order_id)
    return True
