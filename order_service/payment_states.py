"""Payment state machine shared by webhooks, the expiration sweeper and charge creation.

``resolve_transition(current, target)`` is the single authority on which
status changes are legal and what each one does to stock and to the order.
``apply_transition`` performs it inside the caller's transaction.
"""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from . import config, inventory
from .errors import InsufficientStock
from .models import Order, OrderStatus, Payment, PaymentStatus, as_utc, utcnow

logger = structlog.get_logger().bind(component="payment_states")

OUT_OF_STOCK_REASON = "stock sold out before payment was captured"


class SideEffect(str, Enum):
    CONFIRM_ORDER = "confirm_order"
    COMMIT_STOCK = "commit_stock"
    RELEASE_STOCK = "release_stock"
    CANCEL_OVERDUE_ORDER = "cancel_overdue_order"


ACTIVE_STATUSES: Tuple[PaymentStatus, ...] = (
    PaymentStatus.PENDING,
    PaymentStatus.WAITING,
    PaymentStatus.IN_ANALYSIS,
    PaymentStatus.AUTHORIZED,
)
TERMINAL_STATUSES = frozenset(
    {PaymentStatus.PAID, PaymentStatus.DECLINED, PaymentStatus.CANCELED, PaymentStatus.EXPIRED}
)

_EFFECTS_BY_TARGET: Dict[PaymentStatus, Tuple[SideEffect, ...]] = {
    # COMMIT_STOCK before CONFIRM_ORDER: no confirmation without stock
    PaymentStatus.PAID: (SideEffect.COMMIT_STOCK, SideEffect.CONFIRM_ORDER),
    PaymentStatus.DECLINED: (SideEffect.RELEASE_STOCK, SideEffect.CANCEL_OVERDUE_ORDER),
    PaymentStatus.CANCELED: (SideEffect.RELEASE_STOCK, SideEffect.CANCEL_OVERDUE_ORDER),
    PaymentStatus.EXPIRED: (SideEffect.RELEASE_STOCK,),
}


def _build_table() -> Dict[Tuple[PaymentStatus, PaymentStatus], Tuple[SideEffect, ...]]:
    table: Dict[Tuple[PaymentStatus, PaymentStatus], Tuple[SideEffect, ...]] = {}
    for rank, current in enumerate(ACTIVE_STATUSES):
        # forward through the active statuses only
        for target in ACTIVE_STATUSES[rank + 1:]:
            table[(current, target)] = ()
        for target in TERMINAL_STATUSES:
            table[(current, target)] = _EFFECTS_BY_TARGET[target]
    return table


TRANSITIONS = _build_table()


class TransitionResult(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    REJECTED = "rejected"
    CONFLICT = "conflict"


@dataclass
class Transition:
    current: PaymentStatus
    target: PaymentStatus
    effects: Tuple[SideEffect, ...] = field(default_factory=tuple)


def is_terminal(status: str | PaymentStatus) -> bool:
    return PaymentStatus(status) in TERMINAL_STATUSES


def resolve_transition(current: str | PaymentStatus, target: str | PaymentStatus) -> Optional[Transition]:
    """Return the transition, or None when it is illegal. Same-status input is not a transition."""
    current, target = PaymentStatus(current), PaymentStatus(target)
    effects = TRANSITIONS.get((current, target))
    if effects is None:
        return None
    return Transition(current=current, target=target, effects=effects)


def order_window_elapsed(order: Order, now: Optional[dt.datetime] = None) -> bool:
    first_attempt = as_utc(order.first_payment_attempt_at)
    if first_attempt is None:
        return False
    now = now or utcnow()
    return now - first_attempt > dt.timedelta(hours=config.ORDER_EXPIRATION_HOURS)


def cancel_pending_order(
    db: Session, order: Order, status: OrderStatus, reason: str, now: Optional[dt.datetime] = None
) -> bool:
    """PENDING -> cancelled state, decided by the store so concurrent cancellers agree."""
    db.flush()
    updated = (
        db.query(Order)
        .filter(Order.id == order.id, Order.status == OrderStatus.PENDING.value)
        .update(
            {Order.status: status.value, Order.cancelled_at: now or utcnow(), Order.cancel_reason: reason},
            synchronize_session=False,
        )
    )
    db.expire(order, ["status", "cancelled_at", "cancel_reason"])
    return bool(updated)


def _merge_metadata(payment: Payment, extra: Optional[Dict[str, Any]]) -> None:
    if not extra:
        return
    # reassign so the JSON column is flagged dirty
    payment.payment_metadata = {**(payment.payment_metadata or {}), **extra}


def apply_transition(
    db: Session,
    payment: Payment,
    target: str | PaymentStatus,
    *,
    source: str,
    metadata: Optional[Dict[str, Any]] = None,
    paid_order_status: OrderStatus = OrderStatus.CONFIRMED,
    now: Optional[dt.datetime] = None,
) -> Tuple[TransitionResult, Optional[Transition], Optional[str]]:
    """Move ``payment`` to ``target`` and run the side effects of that move.

    Returns ``(result, transition, previous_order_status)``. The previous order
    status is set only when the order status changed, so callers can notify.
    Does not commit.
    """
    now = now or utcnow()
    target = PaymentStatus(target)
    current = PaymentStatus(payment.status)
    log = logger.bind(payment_id=payment.id, order_id=payment.order_id, source=source)

    if current == target:
        log.info("Payment already in this status", status=current.value)
        return TransitionResult.NOOP, None, None

    transition = resolve_transition(current, target)
    if transition is None:
        if target == PaymentStatus.PAID and is_terminal(current):
            log.error(
                "Payment reported PAID after it was closed; manual refund required",
                current=current.value,
            )
        else:
            log.warning("Illegal payment transition rejected", current=current.value, target=target.value)
        return TransitionResult.REJECTED, None, None

    db.flush()
    # compare-and-set on the status so a concurrent writer wins cleanly
    updated = (
        db.query(Payment)
        .filter(Payment.id == payment.id, Payment.status == current.value)
        .update({Payment.status: target.value, Payment.updated_at: now}, synchronize_session=False)
    )
    db.expire(payment, ["status", "updated_at"])
    if not updated:
        log.warning("Payment changed concurrently; transition skipped", expected=current.value, target=target.value)
        return TransitionResult.CONFLICT, None, None

    _merge_metadata(payment, metadata)
    order = payment.order
    order.payment_status = target.value
    previous_order_status: Optional[str] = None
    stock_shortfall = None

    for effect in transition.effects:
        if effect == SideEffect.RELEASE_STOCK:
            inventory.release_for_payment(db, payment)

        elif effect == SideEffect.COMMIT_STOCK:
            if not payment.stock_reserved:
                # attempts reserve at creation; this only covers rows that never did
                try:
                    with db.begin_nested():
                        inventory.reserve_for_payment(db, payment)
                except InsufficientStock as exc:
                    stock_shortfall = exc.items
                    log.error(
                        "Payment captured but its stock is gone; manual refund required",
                        shortfalls=exc.items,
                    )
                    _merge_metadata(payment, {"stock_shortfall": exc.items, "refund_required": True})
                    old_status = order.status
                    if cancel_pending_order(db, order, OrderStatus.CANCELED, OUT_OF_STOCK_REASON, now):
                        previous_order_status = old_status
                    continue
            inventory.commit_for_payment(db, payment)

        elif effect == SideEffect.CONFIRM_ORDER:
            if stock_shortfall:
                continue
            old_status = order.status
            if old_status in (OrderStatus.PENDING.value, OrderStatus.PAID.value):
                order.status = paid_order_status.value
                order.paid_at = order.paid_at or now
                if old_status != order.status:
                    previous_order_status = old_status
            else:
                log.error("Payment confirmed for an order that is no longer open", order_status=old_status)

        elif effect == SideEffect.CANCEL_OVERDUE_ORDER:
            if order_window_elapsed(order, now):
                old_status = order.status
                if cancel_pending_order(db, order, OrderStatus.CANCELED, "payment window expired", now):
                    previous_order_status = old_status
                    log.info("Order canceled - payment window expired")

    log.info("Payment status updated", old_status=current.value, new_status=target.value)
    return TransitionResult.APPLIED, transition, previous_order_status
