"""
Payment expiration sweeper
==========================
Two periodic scans, each on its own daemon thread:

- PIX scan (every 5 minutes): PIX payments still PENDING/WAITING with stock
  reserved for longer than the QR code window are EXPIRED and their stock
  released. The order stays PENDING so the customer can retry.
- Order scan (hourly): orders still PENDING a day after the first payment
  attempt are CANCELED, and whatever their payments still hold is released.
  Card authorizations left open by those payments are voided at the gateway.

Every record is handled in its own transaction. Releases go through the same
idempotent ledger call the webhook reconciler uses, so racing it is harmless.
"""
from __future__ import annotations

import datetime as dt
import threading
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from . import config, database
from .models import Order, OrderStatus, Payment, PaymentMethod, PaymentStatus, utcnow
from .notifications import OrderNotifier
from .pagbank import get_gateway
from .payment_states import ACTIVE_STATUSES, TransitionResult, apply_transition, cancel_pending_order

logger = structlog.get_logger().bind(component="expiration")

PIX_EXPIRED_REASON = "PIX_15_MINUTE_TIMEOUT"
ORDER_EXPIRED_REASON = "ORDER_24H_TIMEOUT"


@dataclass
class SweepReport:
    found: int = 0
    expired: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class PaymentExpirationSweeper:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        notifier: Optional[OrderNotifier] = None,
        pix_interval_seconds: Optional[float] = None,
        order_interval_seconds: Optional[float] = None,
        gateway=None,
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self.notifier = notifier or OrderNotifier()
        self.pix_interval_seconds = (
            pix_interval_seconds if pix_interval_seconds is not None else config.PIX_SWEEP_INTERVAL_SECONDS
        )
        self.order_interval_seconds = (
            order_interval_seconds if order_interval_seconds is not None else config.ORDER_SWEEP_INTERVAL_SECONDS
        )
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def _session(self) -> Session:
        return (self._session_factory or database.SessionLocal)()

    @property
    def gateway(self):
        return self._gateway or get_gateway()

    # -----------------------------
    # Scans
    # -----------------------------

    def expire_pix_payments(self, now: Optional[dt.datetime] = None) -> SweepReport:
        now = now or utcnow()
        cutoff = now - dt.timedelta(minutes=config.PIX_EXPIRATION_MINUTES)
        report = SweepReport()
        logger.info("Checking for expired PIX payments", cutoff=cutoff.isoformat())

        db = self._session()
        try:
            payment_ids = [
                pid
                for (pid,) in db.query(Payment.id)
                .filter(
                    Payment.method == PaymentMethod.PIX.value,
                    Payment.status.in_([PaymentStatus.PENDING.value, PaymentStatus.WAITING.value]),
                    Payment.stock_reserved.is_(True),
                    Payment.created_at < cutoff,
                )
                .order_by(Payment.id)
                .all()
            ]
            report.found = len(payment_ids)

            for payment_id in payment_ids:
                try:
                    payment = db.query(Payment).filter(Payment.id == payment_id).first()
                    result, _, _ = apply_transition(
                        db,
                        payment,
                        PaymentStatus.EXPIRED,
                        source="pix_sweep",
                        metadata={"expiredAt": now.isoformat(), "expiredReason": PIX_EXPIRED_REASON},
                        now=now,
                    )
                    db.commit()
                    if result == TransitionResult.APPLIED:
                        report.expired += 1
                        logger.info(
                            "PIX payment expired and stock released",
                            payment_id=payment_id,
                            order_id=payment.order_id,
                            charge_id=payment.charge_id,
                        )
                    else:
                        report.skipped += 1
                except Exception:
                    db.rollback()
                    report.failed += 1
                    logger.exception("Failed to expire PIX payment", payment_id=payment_id)
        finally:
            db.close()

        logger.info("PIX expiration scan completed", **report.as_dict())
        return report

    def expire_orders(self, now: Optional[dt.datetime] = None) -> SweepReport:
        now = now or utcnow()
        cutoff = now - dt.timedelta(hours=config.ORDER_EXPIRATION_HOURS)
        report = SweepReport()
        logger.info("Checking for expired orders", cutoff=cutoff.isoformat())

        db = self._session()
        try:
            order_ids = [
                oid
                for (oid,) in db.query(Order.id)
                .filter(Order.status == OrderStatus.PENDING.value, Order.first_payment_attempt_at < cutoff)
                .order_by(Order.id)
                .all()
            ]
            report.found = len(order_ids)

            for order_id in order_ids:
                try:
                    held_charges = self._expire_order(db, order_id, now)
                except Exception:
                    db.rollback()
                    report.failed += 1
                    logger.exception("Failed to expire order", order_id=order_id)
                    continue
                if held_charges is None:
                    report.skipped += 1
                    continue
                report.expired += 1
                self._release_holds(order_id, held_charges)
        finally:
            db.close()

        logger.info("Order expiration scan completed", **report.as_dict())
        return report

    def _expire_order(self, db: Session, order_id: int, now: dt.datetime) -> Optional[List[str]]:
        """Cancel one stale order. Returns None when skipped, else the card charges still held at the gateway."""
        order = db.query(Order).filter(Order.id == order_id).first()
        old_status = order.status
        # cancel first: if someone else moved the order, leave its payments alone
        if not cancel_pending_order(db, order, OrderStatus.CANCELED, "payment window expired", now):
            db.rollback()
            return None

        held_charges: List[str] = []
        active = [s.value for s in ACTIVE_STATUSES]
        for payment in order.payments:
            if payment.status in active:
                result, _, _ = apply_transition(
                    db,
                    payment,
                    PaymentStatus.EXPIRED,
                    source="order_sweep",
                    metadata={"expiredAt": now.isoformat(), "expiredReason": ORDER_EXPIRED_REASON},
                    now=now,
                )
                if (
                    result == TransitionResult.APPLIED
                    and payment.method == PaymentMethod.CREDIT_CARD.value
                    and payment.charge_id
                ):
                    held_charges.append(payment.charge_id)

        self.notifier.send_order_status_update(
            db, order.order_number, old_status, OrderStatus.CANCELED.value, customer_email=order.customer_email
        )
        db.commit()
        logger.info(
            "Order canceled after 24h without payment",
            order_id=order_id,
            total_payment_attempts=len(order.payments),
        )
        return held_charges

    def _release_holds(self, order_id: int, charge_ids: List[str]) -> None:
        # a card authorization outlives the order unless voided at the gateway
        for charge_id in charge_ids:
            try:
                voided = self.gateway.cancel_charge(charge_id)
            except Exception:
                logger.exception("Error voiding card hold of expired order", order_id=order_id, charge_id=charge_id)
                continue
            if not voided:
                logger.warning("Could not void card hold of expired order", order_id=order_id, charge_id=charge_id)

    # -----------------------------
    # Scheduling
    # -----------------------------

    def _loop(self, name: str, interval: float, scan: Callable[[], SweepReport]) -> None:
        while not self._stop.wait(interval):
            try:
                scan()
            except Exception:
                logger.exception("Expiration scan crashed", scan=name)

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._loop,
                args=("pix", self.pix_interval_seconds, self.expire_pix_payments),
                name="expiration:pix",
                daemon=True,
            ),
            threading.Thread(
                target=self._loop,
                args=("orders", self.order_interval_seconds, self.expire_orders),
                name="expiration:orders",
                daemon=True,
            ),
        ]
        for t in self._threads:
            t.start()
        logger.info(
            "Payment expiration sweeper started",
            pix_interval=self.pix_interval_seconds,
            order_interval=self.order_interval_seconds,
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        self._threads = []
        logger.info("Payment expiration sweeper stopped")


sweeper = PaymentExpirationSweeper()


def get_sweeper() -> PaymentExpirationSweeper:
    return sweeper
