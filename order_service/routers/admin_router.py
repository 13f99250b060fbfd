from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas, webhooks
from ..auth import get_current_admin
from ..database import get_db
from ..errors import OrderNotFound, OrderServiceError
from ..expiration import PaymentExpirationSweeper, get_sweeper
from ..notifications import OrderNotifier, get_notifier

router = APIRouter(
    prefix="/admin",
    tags=["Admin"]
)


def _http_error(exc: OrderServiceError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


@router.patch("/orders/{order_id}/status", response_model=schemas.OrderOut)
def update_order_status(
    order_id: int,
    status_in: schemas.OrderStatusUpdate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
    notifier: OrderNotifier = Depends(get_notifier),
):
    try:
        order = crud.get_order(db, order_id)
        if not order:
            raise OrderNotFound("Order not found")
        return crud.update_order_status(
            db, order, status_in.status, tracking_code=status_in.tracking_code, notifier=notifier
        )
    except OrderServiceError as e:
        raise _http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to update order status: {str(e)}",
        )


@router.post("/expirations/pix", response_model=schemas.SweepReportOut)
def expire_pix_payments(
    current_admin: Dict = Depends(get_current_admin),
    sweeper: PaymentExpirationSweeper = Depends(get_sweeper),
):
    """Run the PIX expiration scan now instead of waiting for the next tick."""
    return sweeper.expire_pix_payments().as_dict()


@router.post("/expirations/orders", response_model=schemas.SweepReportOut)
def expire_orders(
    current_admin: Dict = Depends(get_current_admin),
    sweeper: PaymentExpirationSweeper = Depends(get_sweeper),
):
    return sweeper.expire_orders().as_dict()


@router.post("/webhooks/{event_id}/replay", response_model=schemas.WebhookReplayOut)
def replay_webhook(
    event_id: int,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
    notifier: OrderNotifier = Depends(get_notifier),
):
    try:
        outcomes = webhooks.replay_webhook_event(db, event_id, notifier=notifier)
    except OrderServiceError as e:
        raise _http_error(e)
    return {"event_id": event_id, "outcomes": [o.as_dict() for o in outcomes]}
