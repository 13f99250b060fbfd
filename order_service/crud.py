"""
Order builder and order lifecycle.

Creating an order is two short transactions around one gateway call:

1. Order, items and a PENDING payment are written together with the stock
   reservation, coupon usage, cart cleanup and the confirmation notification.
2. The gateway is called with no transaction open.
3. The charge result is applied through the payment state machine.

A crash between 1 and 3 leaves a PENDING payment that the expiration sweeper
cleans up later.
"""
from __future__ import annotations

import datetime as dt
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config, inventory
from .errors import (
    CouponRejected,
    InsufficientStock,
    InvalidOrderState,
    InvalidReference,
    OrderNotFound,
    OrderServiceError,
    PaymentDataRequired,
)
from .models import (
    Address,
    CartItem,
    Coupon,
    Customer,
    DiscountType,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Product,
    ShippingMethod,
    as_utc,
    utcnow,
)
from .notifications import OrderNotifier
from .pagbank import ChargeAddress, ChargeCard, ChargeCustomer, ChargeItem, ChargeRequest, ChargeResult
from .payment_states import ACTIVE_STATUSES, TransitionResult, apply_transition, order_window_elapsed
from .schemas import CreateOrderRequest, CreditCardData

logger = structlog.get_logger().bind(component="orders")

CENTS = Decimal("0.01")

# admin fulfilment moves, forward only
FULFILMENT_SEQUENCE = (
    OrderStatus.PAID,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)
CANCELLABLE_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PAID.value, OrderStatus.CONFIRMED.value)


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


# -----------------------------
# Lookups
# -----------------------------

def get_order(db: Session, order_id: int) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).first()


def get_customer_order(db: Session, order_id: int, customer_id: int) -> Order:
    order = get_order(db, order_id)
    # someone else's order looks exactly like a missing one
    if not order or order.customer_id != customer_id:
        raise OrderNotFound("Order not found")
    return order


def get_order_by_number(db: Session, order_number: str) -> Optional[Order]:
    return db.query(Order).filter(Order.order_number == order_number).first()


def latest_payment(order: Order) -> Optional[Payment]:
    return order.payments[-1] if order.payments else None


# -----------------------------
# Pricing
# -----------------------------

def calculate_subtotal(products: Dict[int, Product], items: Iterable) -> Decimal:
    return _money(sum((Decimal(str(products[i.product_id].price)) * i.quantity for i in items), Decimal("0")))


def compute_shipping(
    method: ShippingMethod,
    products: Dict[int, Product],
    items: Iterable,
    subtotal: Decimal,
) -> Decimal:
    """Flat base cost plus a per-kg charge above the first kilogram; free above the threshold."""
    if method.free_above and subtotal >= Decimal(str(method.free_above)):
        return Decimal("0.00")

    default_weight = Decimal(config.DEFAULT_PRODUCT_WEIGHT_KG)
    total_weight = sum(
        (
            (Decimal(str(products[i.product_id].weight)) if products[i.product_id].weight else default_weight)
            * i.quantity
            for i in items
        ),
        Decimal("0"),
    )

    cost = Decimal(str(method.base_cost))
    if total_weight > 1:
        cost += Decimal(str(method.per_kg_cost or 0)) * (total_weight - 1)
    return _money(cost)


def calculate_discount(coupon: Coupon, subtotal: Decimal) -> Decimal:
    value = Decimal(str(coupon.discount_value))
    if coupon.discount_type == DiscountType.PERCENTAGE.value:
        discount = subtotal * value / Decimal("100")
        if coupon.max_discount:
            discount = min(discount, Decimal(str(coupon.max_discount)))
    else:
        discount = value
    # never more than the goods themselves
    return _money(min(discount, subtotal))


def apply_coupon(
    db: Session, code: str, subtotal: Decimal, now: Optional[dt.datetime] = None
) -> Tuple[Coupon, Decimal]:
    """Validate ``code`` against ``subtotal`` and return the coupon with its discount."""
    now = now or utcnow()
    coupon = db.query(Coupon).filter(Coupon.code == code.strip().upper()).first()
    if not coupon:
        raise InvalidReference("Invalid coupon")
    if not coupon.is_active:
        raise CouponRejected("Coupon is inactive")

    start, end = as_utc(coupon.start_date), as_utc(coupon.end_date)
    if (start and now < start) or (end and now > end):
        raise CouponRejected("Coupon is outside its validity period")

    if coupon.min_purchase and subtotal < Decimal(str(coupon.min_purchase)):
        raise CouponRejected(f"Minimum purchase of R$ {_money(coupon.min_purchase)} required for this coupon")

    if coupon.usage_limit and coupon.usage_count >= coupon.usage_limit:
        raise CouponRejected("Coupon usage limit reached")

    return coupon, calculate_discount(coupon, subtotal)


def claim_coupon_usage(db: Session, coupon: Coupon) -> None:
    db.flush()
    query = db.query(Coupon).filter(Coupon.id == coupon.id)
    if coupon.usage_limit:
        query = query.filter(Coupon.usage_count < Coupon.usage_limit)
    updated = query.update({Coupon.usage_count: Coupon.usage_count + 1}, synchronize_session=False)
    db.expire(coupon, ["usage_count"])
    if not updated:
        raise CouponRejected("Coupon usage limit reached")


# -----------------------------
# Order numbers
# -----------------------------

def allocate_order_number(db: Session, year: int) -> str:
    """Next ``NSR-<year>-<seq>`` number, derived from the highest existing one for the year."""
    prefix = f"{config.ORDER_NUMBER_PREFIX}-{year}-"
    last = (
        db.query(Order.order_number)
        .filter(Order.order_number.like(f"{prefix}%"))
        # length first so NSR-2026-10000 sorts after NSR-2026-9999
        .order_by(func.length(Order.order_number).desc(), Order.order_number.desc())
        .first()
    )
    sequence = 1
    if last:
        sequence = int(last[0].rsplit("-", 1)[1]) + 1
    return f"{prefix}{sequence:04d}"


def _insert_order(db: Session, order: Order, year: int) -> Order:
    db.flush()
    for attempt in range(1, config.ORDER_NUMBER_MAX_RETRIES + 1):
        order.order_number = allocate_order_number(db, year)
        try:
            with db.begin_nested():
                db.add(order)
                db.flush()
            return order
        except IntegrityError:
            # a concurrent order took the number first
            logger.warning("Order number collision", order_number=order.order_number, attempt=attempt)
    raise OrderServiceError("Could not allocate an order number, please try again")


# -----------------------------
# Gateway glue
# -----------------------------

def _charge_request(db: Session, order: Order, payment: Payment, card: Optional[CreditCardData]) -> ChargeRequest:
    customer = db.query(Customer).filter(Customer.id == order.customer_id).first()
    address = db.query(Address).filter(Address.id == order.address_id).first()
    return ChargeRequest(
        reference_id=order.order_number,
        amount=payment.amount,
        method=PaymentMethod(payment.method),
        customer=ChargeCustomer(
            name=order.customer_name,
            email=order.customer_email,
            cpf=(customer.cpf if customer and customer.cpf else "00000000000"),
            phone=order.customer_phone,
        ),
        address=ChargeAddress(
            street=address.street,
            number=address.number,
            complement=address.complement,
            neighborhood=address.neighborhood,
            city=address.city,
            state=address.state,
            zip_code=address.zip_code,
        ),
        items=[
            ChargeItem(name=item.product_name, quantity=item.quantity, unit_amount=item.unit_price)
            for item in order.items
        ],
        card=ChargeCard(**card.model_dump()) if card else None,
    )


def apply_charge_result(
    db: Session,
    payment: Payment,
    result: ChargeResult,
    notifier: Optional[OrderNotifier] = None,
    now: Optional[dt.datetime] = None,
) -> Payment:
    """Store what the gateway answered and move the payment accordingly. Commits."""
    notifier = notifier or OrderNotifier()
    now = now or utcnow()
    try:
        if result.charge_id:
            payment.charge_id = result.charge_id
        payment.pix_qr_code = result.pix_qr_code
        payment.pix_qr_code_image = result.pix_qr_code_image
        payment.pix_expires_at = result.pix_expires_at

        metadata = {"gateway_status": result.gateway_status}
        if result.success:
            target = result.payment_status
        else:
            target = PaymentStatus.DECLINED
            payment.error_message = result.error_message
            payment.error_code = result.error_code
            metadata["failure"] = result.failure.value if result.failure else None
            logger.warning(
                "Charge creation failed",
                payment_id=payment.id,
                order_id=payment.order_id,
                failure=metadata["failure"],
                error=result.error_message,
            )

        # a card captured on the spot goes straight to PAID
        paid_status = OrderStatus.PAID if payment.method == PaymentMethod.CREDIT_CARD.value else OrderStatus.CONFIRMED
        outcome, _, previous_status = apply_transition(
            db, payment, target, source="charge_creation", metadata=metadata, paid_order_status=paid_status, now=now
        )
        order = payment.order
        if outcome == TransitionResult.APPLIED and previous_status:
            notifier.send_order_status_update(
                db, order.order_number, previous_status, order.status, customer_email=order.customer_email
            )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(payment)
    return payment


def _charge(db: Session, order: Order, payment: Payment, card, gateway, notifier, now) -> Payment:
    request = _charge_request(db, order, payment, card)
    result = gateway.create_charge(request)
    return apply_charge_result(db, payment, result, notifier=notifier, now=now)


# -----------------------------
# Create
# -----------------------------

def _build_order(
    db: Session, customer_id: int, data: CreateOrderRequest, notifier: OrderNotifier, now: dt.datetime
) -> Tuple[Order, Payment]:
    customer = db.query(Customer).filter(Customer.id == customer_id).first()
    if not customer:
        raise InvalidReference("Customer not found")

    address = db.query(Address).filter(Address.id == data.address_id).first()
    if not address or address.customer_id != customer_id:
        raise InvalidReference("Invalid address")

    shipping_method = (
        db.query(ShippingMethod)
        .filter(ShippingMethod.id == data.shipping_method_id, ShippingMethod.is_active.is_(True))
        .first()
    )
    if not shipping_method:
        raise InvalidReference("Invalid shipping method")

    product_ids = sorted({i.product_id for i in data.items})
    products = {p.id: p for p in db.query(Product).filter(Product.id.in_(product_ids)).all()}
    for pid in product_ids:
        if pid not in products or not products[pid].is_active:
            raise InvalidReference(f"Product {pid} not found")

    requested = [{"product_id": i.product_id, "quantity": i.quantity} for i in data.items]
    unavailable = inventory.check_availability(db, requested)
    if unavailable:
        raise InsufficientStock(unavailable)

    subtotal = calculate_subtotal(products, data.items)
    shipping_cost = compute_shipping(shipping_method, products, data.items, subtotal)
    coupon, discount = None, Decimal("0.00")
    if data.coupon_code:
        coupon, discount = apply_coupon(db, data.coupon_code, subtotal, now)
    total = _money(subtotal + shipping_cost - discount)

    order = Order(
        customer_id=customer_id,
        address_id=address.id,
        customer_name=data.receiver_name or customer.name,
        customer_email=customer.email,
        customer_phone=data.receiver_phone or customer.phone or "",
        status=OrderStatus.PENDING.value,
        payment_status=PaymentStatus.PENDING.value,
        payment_method=data.payment_method.value,
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        discount=discount,
        total=total,
        shipping_method=shipping_method.name,
        estimated_delivery=now + dt.timedelta(days=shipping_method.max_days),
        coupon_code=coupon.code if coupon else None,
        notes=data.notes,
        first_payment_attempt_at=now,
        created_at=now,
    )
    for item in data.items:
        product = products[item.product_id]
        unit_price = _money(product.price)
        order.items.append(
            OrderItem(
                product_id=product.id,
                product_name=product.name,
                product_image=product.image_url,
                quantity=item.quantity,
                unit_price=unit_price,
                total_price=_money(unit_price * item.quantity),
            )
        )
    _insert_order(db, order, now.year)

    payment = Payment(
        order=order,
        method=data.payment_method.value,
        status=PaymentStatus.PENDING.value,
        amount=total,
        attempt_number=1,
        payment_metadata={},
        created_at=now,
    )
    db.add(payment)
    db.flush()

    # every attempt holds its stock until the gateway settles it
    inventory.reserve_for_payment(db, payment)

    if coupon:
        claim_coupon_usage(db, coupon)

    db.query(CartItem).filter(
        CartItem.customer_id == customer_id, CartItem.product_id.in_(product_ids)
    ).delete(synchronize_session=False)

    notifier.send_order_confirmation(db, order, order.items, address, data.payment_method.value)
    return order, payment


def create_order(
    db: Session,
    customer_id: int,
    data: CreateOrderRequest,
    gateway,
    notifier: Optional[OrderNotifier] = None,
    now: Optional[dt.datetime] = None,
) -> Order:
    notifier = notifier or OrderNotifier()
    now = now or utcnow()
    if data.payment_method == PaymentMethod.CREDIT_CARD and data.credit_card is None:
        raise PaymentDataRequired("Credit card data is required")

    try:
        order, payment = _build_order(db, customer_id, data, notifier, now)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Order created",
        order_id=order.id,
        order_number=order.order_number,
        total=str(order.total),
        payment_method=payment.method,
    )
    _charge(db, order, payment, data.credit_card, gateway, notifier, now)
    db.refresh(order)
    return order


# -----------------------------
# Lifecycle
# -----------------------------

def retry_payment(
    db: Session,
    order: Order,
    method: PaymentMethod,
    gateway,
    card: Optional[CreditCardData] = None,
    notifier: Optional[OrderNotifier] = None,
    now: Optional[dt.datetime] = None,
) -> Payment:
    """Start a new charge attempt for a PENDING order, superseding any open one."""
    notifier = notifier or OrderNotifier()
    now = now or utcnow()
    method = PaymentMethod(method)

    if order.status != OrderStatus.PENDING.value:
        raise InvalidOrderState(f"Cannot retry payment for an order in status {order.status}")
    if order_window_elapsed(order, now):
        raise InvalidOrderState("Payment window for this order has expired")
    if method == PaymentMethod.CREDIT_CARD and card is None:
        raise PaymentDataRequired("Credit card data is required")

    superseded: List[str] = []
    try:
        for previous in list(order.payments):
            if previous.status in [s.value for s in ACTIVE_STATUSES]:
                outcome, _, _ = apply_transition(
                    db,
                    previous,
                    PaymentStatus.CANCELED,
                    source="payment_retry",
                    metadata={"canceledAt": now.isoformat(), "canceledReason": "SUPERSEDED_BY_RETRY"},
                    now=now,
                )
                if outcome == TransitionResult.APPLIED and previous.charge_id:
                    superseded.append(previous.charge_id)

        attempt_number = max((p.attempt_number for p in order.payments), default=0) + 1
        payment = Payment(
            order=order,
            method=method.value,
            status=PaymentStatus.PENDING.value,
            amount=order.total,
            attempt_number=attempt_number,
            payment_metadata={},
            created_at=now,
        )
        db.add(payment)
        order.payment_method = method.value
        order.payment_status = PaymentStatus.PENDING.value
        db.flush()

        inventory.reserve_for_payment(db, payment)
        db.commit()
    except Exception:
        db.rollback()
        raise

    for charge_id in superseded:
        gateway.cancel_charge(charge_id)

    logger.info("Payment retry started", order_id=order.id, payment_id=payment.id, attempt=attempt_number)
    return _charge(db, order, payment, card, gateway, notifier, now)


def cancel_order(
    db: Session,
    order: Order,
    reason: str,
    gateway=None,
    notifier: Optional[OrderNotifier] = None,
    now: Optional[dt.datetime] = None,
) -> Order:
    """Customer cancellation. Reserved stock is released, sold stock restocked and refunded."""
    notifier = notifier or OrderNotifier()
    now = now or utcnow()
    old_status = order.status
    if old_status not in CANCELLABLE_STATUSES:
        raise InvalidOrderState("Order cannot be cancelled")

    to_cancel: List[str] = []
    to_refund: List[Tuple[str, Decimal]] = []
    try:
        db.flush()
        updated = (
            db.query(Order)
            .filter(Order.id == order.id, Order.status == old_status)
            .update(
                {Order.status: OrderStatus.CANCELLED.value, Order.cancelled_at: now, Order.cancel_reason: reason},
                synchronize_session=False,
            )
        )
        db.expire(order, ["status", "cancelled_at", "cancel_reason"])
        if not updated:
            raise InvalidOrderState("Order changed while cancelling, please try again")

        for payment in order.payments:
            if payment.status in [s.value for s in ACTIVE_STATUSES]:
                outcome, _, _ = apply_transition(
                    db,
                    payment,
                    PaymentStatus.CANCELED,
                    source="order_cancellation",
                    metadata={"canceledAt": now.isoformat(), "canceledReason": reason},
                    now=now,
                )
                if outcome == TransitionResult.APPLIED and payment.charge_id:
                    to_cancel.append(payment.charge_id)
            elif payment.status == PaymentStatus.PAID.value:
                inventory.restock_cancelled_sale(db, payment)
                if payment.charge_id:
                    to_refund.append((payment.charge_id, payment.amount))

        notifier.send_order_status_update(
            db, order.order_number, old_status, OrderStatus.CANCELLED.value, customer_email=order.customer_email
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("Order cancelled", order_id=order.id, old_status=old_status, reason=reason)
    if gateway is not None:
        for charge_id in to_cancel:
            gateway.cancel_charge(charge_id)
        for charge_id, amount in to_refund:
            if not gateway.refund_charge(charge_id, amount):
                logger.error("Refund failed; manual refund required", order_id=order.id, charge_id=charge_id)

    db.refresh(order)
    return order


def get_payment_status(
    db: Session,
    order: Order,
    gateway=None,
    notifier: Optional[OrderNotifier] = None,
    now: Optional[dt.datetime] = None,
) -> Payment:
    """Latest payment of the order, refreshed from the gateway while it is still open."""
    payment = latest_payment(order)
    if payment is None:
        raise InvalidOrderState("Order has no payment")
    if gateway is None or not payment.charge_id or payment.status not in [s.value for s in ACTIVE_STATUSES]:
        return payment

    result = gateway.get_charge_status(payment.charge_id)
    if result.gateway_status is None:
        # no charge body came back; keep what we have
        logger.warning("Could not poll charge status", payment_id=payment.id, error=result.error_message)
        return payment
    if result.payment_status == payment.status:
        return payment

    notifier = notifier or OrderNotifier()
    now = now or utcnow()
    try:
        outcome, _, previous_status = apply_transition(
            db,
            payment,
            result.payment_status,
            source="status_poll",
            metadata={"last_poll_status": result.gateway_status, "last_poll_at": now.isoformat()},
            now=now,
        )
        if outcome == TransitionResult.APPLIED and previous_status:
            notifier.send_order_status_update(
                db, order.order_number, previous_status, order.status, customer_email=order.customer_email
            )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(payment)
    return payment


def update_order_status(
    db: Session,
    order: Order,
    new_status: OrderStatus,
    tracking_code: Optional[str] = None,
    notifier: Optional[OrderNotifier] = None,
    now: Optional[dt.datetime] = None,
) -> Order:
    """Admin fulfilment update: PAID/CONFIRMED -> PROCESSING -> SHIPPED -> DELIVERED."""
    notifier = notifier or OrderNotifier()
    now = now or utcnow()
    new_status = OrderStatus(new_status)
    old_status = order.status

    sequence = [s.value for s in FULFILMENT_SEQUENCE]
    if old_status not in sequence or new_status.value not in sequence:
        raise InvalidOrderState(f"Cannot move order from {old_status} to {new_status.value}")
    if sequence.index(new_status.value) <= sequence.index(old_status):
        raise InvalidOrderState(f"Cannot move order from {old_status} to {new_status.value}")

    values = {Order.status: new_status.value, Order.updated_at: now}
    if new_status == OrderStatus.SHIPPED:
        values[Order.shipped_at] = now
        if tracking_code:
            values[Order.tracking_code] = tracking_code
    elif new_status == OrderStatus.DELIVERED:
        values[Order.delivered_at] = now

    try:
        db.flush()
        updated = (
            db.query(Order)
            .filter(Order.id == order.id, Order.status == old_status)
            .update(values, synchronize_session=False)
        )
        if not updated:
            raise InvalidOrderState("Order changed concurrently, please try again")
        notifier.send_order_status_update(
            db,
            order.order_number,
            old_status,
            new_status.value,
            tracking_code=tracking_code,
            customer_email=order.customer_email,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Order status updated", order_id=order.id, old_status=old_status, new_status=new_status.value)
    return order
