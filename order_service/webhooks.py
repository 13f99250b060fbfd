"""
Gateway webhook reconciler.

The raw notification is committed before anything else so it can be replayed.
Each charge in it is then reconciled in its own transaction through the
payment state machine; one failing charge does not affect the others.
"""
from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from .errors import WebhookEventNotFound
from .models import Payment, WebhookEvent, utcnow
from .notifications import OrderNotifier
from .pagbank import map_charge_status
from .payment_states import TransitionResult, apply_transition

logger = structlog.get_logger().bind(component="webhooks")

EVENT_TYPE = "CHARGE_STATUS_UPDATE"
INVALID_PAYLOAD_ERROR = "Invalid JSON payload"


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    UNKNOWN_CHARGE = "unknown_charge"
    REJECTED = "rejected"
    CONFLICT = "conflict"
    FAILED = "failed"


_OUTCOME_BY_RESULT = {
    TransitionResult.APPLIED: ReconcileOutcome.APPLIED,
    TransitionResult.NOOP: ReconcileOutcome.NOOP,
    TransitionResult.REJECTED: ReconcileOutcome.REJECTED,
    TransitionResult.CONFLICT: ReconcileOutcome.CONFLICT,
}


@dataclass
class ChargeOutcome:
    charge_id: Optional[str]
    outcome: ReconcileOutcome
    payment_id: Optional[int] = None
    status: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data


def _charge_updates(payload: Any) -> List[Tuple[List[str], Optional[str], Dict[str, Any]]]:
    """(lookup ids, gateway status, charge) for every charge mentioned in the event."""
    if not isinstance(payload, dict):
        return []
    event_id = payload.get("id")
    updates = []
    for charge in payload.get("charges") or []:
        # PIX payments only know the gateway order id until the first charge exists
        ids = [i for i in (charge.get("id"), event_id) if i]
        updates.append((ids, charge.get("status"), charge))
    if not updates and event_id and payload.get("status"):
        updates.append(([event_id], payload.get("status"), payload))
    return updates


def _find_payment(db: Session, lookup_ids: Iterable[str]) -> Optional[Payment]:
    for charge_id in lookup_ids:
        payment = db.query(Payment).filter(Payment.charge_id == charge_id).first()
        if payment:
            return payment
    return None


def record_webhook_event(db: Session, provider: str, payload: Any) -> WebhookEvent:
    event = WebhookEvent(provider=provider.upper(), event_type=EVENT_TYPE, payload=payload)
    db.add(event)
    db.commit()
    db.refresh(event)
    return event


def record_invalid_webhook(
    db: Session, provider: str, raw_body: str, now: Optional[dt.datetime] = None
) -> WebhookEvent:
    """Keep an unparseable body as-is; there is nothing in it to reconcile."""
    event = WebhookEvent(
        provider=provider.upper(),
        event_type=EVENT_TYPE,
        payload=raw_body,
        processed_at=now or utcnow(),
        error=INVALID_PAYLOAD_ERROR,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    logger.warning("Stored webhook with invalid body", event_id=event.id, provider=provider)
    return event


def reconcile_charge(
    db: Session,
    lookup_ids: List[str],
    gateway_status: Optional[str],
    charge: Dict[str, Any],
    notifier: OrderNotifier,
    now: Optional[dt.datetime] = None,
) -> ChargeOutcome:
    """Apply one charge notification. Commits on success, leaves rollback to the caller."""
    now = now or utcnow()
    charge_id = lookup_ids[0] if lookup_ids else None
    log = logger.bind(charge_id=charge_id, gateway_status=gateway_status)

    payment = _find_payment(db, lookup_ids)
    if payment is None:
        log.warning("Payment not found for charge")
        return ChargeOutcome(charge_id=charge_id, outcome=ReconcileOutcome.UNKNOWN_CHARGE)

    target = map_charge_status(gateway_status)
    if target.value == payment.status:
        log.info("Payment already in this status", payment_id=payment.id, status=payment.status)
        return ChargeOutcome(
            charge_id=charge_id, outcome=ReconcileOutcome.NOOP, payment_id=payment.id, status=payment.status
        )

    received_at = now.isoformat()
    history = list((payment.payment_metadata or {}).get("webhook_history") or [])
    history.append(
        {
            "status": gateway_status,
            "charge_id": charge.get("id"),
            "reference_id": charge.get("reference_id"),
            "amount": charge.get("amount"),
            "received_at": received_at,
        }
    )
    metadata = {
        "last_webhook_status": gateway_status,
        "last_webhook_update": received_at,
        "webhook_history": history,
    }

    result, _, previous_order_status = apply_transition(
        db, payment, target, source="webhook", metadata=metadata, now=now
    )
    order = payment.order
    if result == TransitionResult.APPLIED and previous_order_status:
        notifier.send_order_status_update(
            db, order.order_number, previous_order_status, order.status, customer_email=order.customer_email
        )
    db.commit()
    return ChargeOutcome(
        charge_id=charge_id,
        outcome=_OUTCOME_BY_RESULT[result],
        payment_id=payment.id,
        status=payment.status,
    )


def process_webhook_event(
    db: Session,
    event: WebhookEvent,
    notifier: Optional[OrderNotifier] = None,
    now: Optional[dt.datetime] = None,
) -> List[ChargeOutcome]:
    notifier = notifier or OrderNotifier()
    now = now or utcnow()
    outcomes: List[ChargeOutcome] = []
    errors: List[str] = []

    for lookup_ids, gateway_status, charge in _charge_updates(event.payload):
        try:
            outcomes.append(reconcile_charge(db, lookup_ids, gateway_status, charge, notifier, now))
        except Exception as exc:
            db.rollback()
            charge_id = lookup_ids[0] if lookup_ids else None
            logger.exception("Error processing charge notification", event_id=event.id, charge_id=charge_id)
            errors.append(f"{charge_id}: {exc}")
            outcomes.append(ChargeOutcome(charge_id=charge_id, outcome=ReconcileOutcome.FAILED, error=str(exc)))

    event.processed_at = now
    if isinstance(event.payload, dict):
        event.error = "; ".join(errors) or None
    db.commit()
    return outcomes


def handle_webhook(
    db: Session,
    provider: str,
    payload: Any,
    notifier: Optional[OrderNotifier] = None,
    now: Optional[dt.datetime] = None,
) -> Tuple[WebhookEvent, List[ChargeOutcome]]:
    charges = payload.get("charges") if isinstance(payload, dict) else None
    logger.info(
        "Received webhook",
        provider=provider,
        event_id=payload.get("id") if isinstance(payload, dict) else None,
        reference_id=payload.get("reference_id") if isinstance(payload, dict) else None,
        charges_count=len(charges or []),
    )
    event = record_webhook_event(db, provider, payload)
    return event, process_webhook_event(db, event, notifier=notifier, now=now)


def replay_webhook_event(
    db: Session,
    event_id: int,
    notifier: Optional[OrderNotifier] = None,
    now: Optional[dt.datetime] = None,
) -> List[ChargeOutcome]:
    """Reprocess a stored event, e.g. after fixing whatever made it fail."""
    event = db.query(WebhookEvent).filter(WebhookEvent.id == event_id).first()
    if not event:
        raise WebhookEventNotFound(f"Webhook event {event_id} not found")
    logger.info("Replaying webhook event", event_id=event_id, previous_error=event.error)
    return process_webhook_event(db, event, notifier=notifier, now=now)
