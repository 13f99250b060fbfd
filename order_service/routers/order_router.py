from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..auth import get_current_user
from ..database import get_db
from ..errors import OrderServiceError
from ..notifications import OrderNotifier, get_notifier
from ..pagbank import PagBankClient, get_gateway

router = APIRouter(
    prefix="/orders",
    tags=["Order Service"]
)


def _http_error(exc: OrderServiceError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


@router.post("/", response_model=schemas.OrderOut, status_code=status.HTTP_201_CREATED)
def create_order(
    order_in: schemas.CreateOrderRequest,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PagBankClient = Depends(get_gateway),
    notifier: OrderNotifier = Depends(get_notifier),
):
    """Create an order, hold its stock (PIX) and open the first charge.

    The response is 201 even when the charge was declined: the order stays
    PENDING and the payment carries the error, so the client can retry.
    """
    try:
        return crud.create_order(db, current_user["id"], order_in, gateway=gateway, notifier=notifier)
    except OrderServiceError as e:
        raise _http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create order: {str(e)}",
        )


@router.get("/{order_id}", response_model=schemas.OrderOut)
def get_order(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return crud.get_customer_order(db, order_id, current_user["id"])
    except OrderServiceError as e:
        raise _http_error(e)


@router.get("/{order_id}/payment", response_model=schemas.PaymentOut)
def get_payment_status(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PagBankClient = Depends(get_gateway),
    notifier: OrderNotifier = Depends(get_notifier),
):
    try:
        order = crud.get_customer_order(db, order_id, current_user["id"])
        return crud.get_payment_status(db, order, gateway=gateway, notifier=notifier)
    except OrderServiceError as e:
        raise _http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to get payment status: {str(e)}",
        )


@router.post("/{order_id}/retry-payment", response_model=schemas.PaymentOut)
def retry_payment(
    order_id: int,
    retry_in: schemas.RetryPaymentRequest,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PagBankClient = Depends(get_gateway),
    notifier: OrderNotifier = Depends(get_notifier),
):
    try:
        order = crud.get_customer_order(db, order_id, current_user["id"])
        return crud.retry_payment(
            db,
            order,
            retry_in.payment_method,
            gateway=gateway,
            card=retry_in.credit_card,
            notifier=notifier,
        )
    except OrderServiceError as e:
        raise _http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to retry payment: {str(e)}",
        )


@router.post("/{order_id}/cancel", response_model=schemas.OrderOut)
def cancel_order(
    order_id: int,
    cancel_in: schemas.CancelOrderRequest,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PagBankClient = Depends(get_gateway),
    notifier: OrderNotifier = Depends(get_notifier),
):
    try:
        order = crud.get_customer_order(db, order_id, current_user["id"])
        return crud.cancel_order(db, order, cancel_in.reason, gateway=gateway, notifier=notifier)
    except OrderServiceError as e:
        raise _http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to cancel order: {str(e)}",
        )
