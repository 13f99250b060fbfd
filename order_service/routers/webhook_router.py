import structlog
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .. import webhooks
from ..database import get_db
from ..notifications import OrderNotifier, get_notifier

logger = structlog.get_logger().bind(component="webhook_router")

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"]
)


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    notifier: OrderNotifier = Depends(get_notifier),
):
    """Gateway notification endpoint.

    Always answers 200 so the gateway does not start a retry storm; stored
    events that failed can be replayed from the admin API.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Webhook body is not valid JSON", provider=provider)
        raw_body = (await request.body()).decode("utf-8", errors="replace")
        try:
            await run_in_threadpool(webhooks.record_invalid_webhook, db, provider, raw_body)
        except Exception:
            logger.exception("Could not store invalid webhook", provider=provider)
        return {"received": True, "error": "Invalid payload"}

    try:
        _, outcomes = await run_in_threadpool(webhooks.handle_webhook, db, provider, payload, notifier)
    except Exception:
        logger.exception("Error processing webhook", provider=provider)
        return {"received": True, "error": "Processing error"}

    if any(o.outcome == webhooks.ReconcileOutcome.FAILED for o in outcomes):
        return {"received": True, "error": "Processing error"}
    return {"received": True}
