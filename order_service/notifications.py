"""
Order notifications through an outbox table.

``OrderNotifier`` writes the event in the caller's transaction, so a
notification exists only if the order change it describes was committed.
``OutboxDispatcher`` publishes pending rows to RabbitMQ from its own session
and thread; broker trouble never reaches order or payment code.
"""
from __future__ import annotations

import threading
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config, database
from .database import on_commit
from .messaging import publish_event
from .models import Address, Order, OrderItem, OutboxEvent, as_utc, utcnow

logger = structlog.get_logger().bind(component="notifications")

ORDER_CONFIRMATION = "order.confirmation"
ORDER_STATUS_UPDATED = "order.status_updated"


def _iso(value) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat().replace("+00:00", "Z") if value else None


def _money(value) -> str:
    return str(Decimal(str(value or 0)).quantize(Decimal("0.01")))


class OutboxDispatcher:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        publisher: Optional[Callable[[str, dict], None]] = None,
        poll_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.publisher = publisher or publish_event
        self.poll_seconds = poll_seconds if poll_seconds is not None else config.OUTBOX_POLL_SECONDS
        self.max_attempts = max_attempts if max_attempts is not None else config.OUTBOX_MAX_ATTEMPTS
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _session(self) -> Session:
        # resolved per call so tests can rebind database.SessionLocal
        return (self._session_factory or database.SessionLocal)()

    def wake(self) -> None:
        self._wake.set()

    def dispatch_pending(self, limit: int = 100) -> int:
        """Publish pending events in insertion order. Returns how many were sent."""
        db = self._session()
        sent = 0
        try:
            events = (
                db.query(OutboxEvent)
                .filter(OutboxEvent.status == "pending")
                .order_by(OutboxEvent.id)
                .limit(limit)
                .all()
            )
            for event in events:
                event.attempts += 1
                try:
                    self.publisher(event.routing_key, event.payload)
                except Exception as exc:
                    event.last_error = str(exc)
                    if event.attempts >= self.max_attempts:
                        event.status = "failed"
                    logger.warning(
                        "Failed to publish notification",
                        event_id=event.id,
                        routing_key=event.routing_key,
                        attempts=event.attempts,
                        error=str(exc),
                    )
                else:
                    event.status = "sent"
                    event.sent_at = utcnow()
                    event.last_error = None
                    sent += 1
                db.commit()
        finally:
            db.close()
        return sent

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.dispatch_pending()
            except Exception:
                logger.exception("Outbox dispatch pass failed")
            self._wake.wait(self.poll_seconds)
            self._wake.clear()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="outbox-dispatcher", daemon=True)
        self._thread.start()
        logger.info("Outbox dispatcher started", poll_seconds=self.poll_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Outbox dispatcher stopped")


dispatcher = OutboxDispatcher()


class OrderNotifier:
    def __init__(self, outbox: Optional[OutboxDispatcher] = None):
        self.outbox = outbox or dispatcher

    def _enqueue(self, db: Session, routing_key: str, payload: Dict[str, Any]) -> None:
        db.flush()
        try:
            with db.begin_nested():
                db.add(OutboxEvent(routing_key=routing_key, payload=payload))
        except SQLAlchemyError:
            logger.exception("Failed to queue notification", routing_key=routing_key)
            return
        on_commit(db, self.outbox.wake)

    def send_order_confirmation(
        self,
        db: Session,
        order: Order,
        items: Iterable[OrderItem],
        address: Address,
        payment_method: str,
    ) -> None:
        payload = {
            "event": ORDER_CONFIRMATION,
            "occurred_at": _iso(utcnow()),
            "order_id": order.id,
            "order_number": order.order_number,
            "customer_name": order.customer_name,
            "customer_email": order.customer_email,
            "order_date": _iso(order.created_at or utcnow()),
            "items": [
                {
                    "product_name": item.product_name,
                    "quantity": item.quantity,
                    "price": _money(item.unit_price),
                }
                for item in items
            ],
            "subtotal": _money(order.subtotal),
            "shipping_cost": _money(order.shipping_cost),
            "discount": _money(order.discount),
            "total": _money(order.total),
            "shipping_address": {
                "receiver_name": order.customer_name,
                "receiver_phone": order.customer_phone,
                "street": address.street,
                "number": address.number,
                "complement": address.complement,
                "neighborhood": address.neighborhood,
                "city": address.city,
                "state": address.state,
                "zip_code": address.zip_code,
            },
            "payment_method": payment_method,
        }
        self._enqueue(db, ORDER_CONFIRMATION, payload)

    def send_order_status_update(
        self,
        db: Session,
        order_number: str,
        old_status: str,
        new_status: str,
        tracking_code: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> None:
        payload = {
            "event": ORDER_STATUS_UPDATED,
            "occurred_at": _iso(utcnow()),
            "order_number": order_number,
            "old_status": old_status,
            "new_status": new_status,
            "tracking_code": tracking_code,
            "customer_email": customer_email,
        }
        self._enqueue(db, ORDER_STATUS_UPDATED, payload)


def get_notifier() -> OrderNotifier:
    return OrderNotifier()
