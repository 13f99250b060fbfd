from typing import Any, Dict, List, Optional


class OrderServiceError(Exception):
    status_code = 400
    code = "order_error"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details is not None:
            detail["details"] = self.details
        return detail


class InsufficientStock(OrderServiceError):
    code = "insufficient_stock"

    def __init__(self, items: List[Dict[str, Any]]):
        """items: [{"product_id", "product_name", "requested", "available"}, ...]"""
        first = items[0]
        message = (
            f"Insufficient stock for product '{first.get('product_name') or first['product_id']}'. "
            f"Available: {first['available']}, Requested: {first['requested']}"
        )
        super().__init__(message, details=items)
        self.items = items


class InvalidReference(OrderServiceError):
    code = "invalid_reference"


class CouponRejected(OrderServiceError):
    code = "coupon_rejected"


class PaymentDataRequired(OrderServiceError):
    code = "payment_data_required"


class OrderNotFound(OrderServiceError):
    status_code = 404
    code = "order_not_found"


class InvalidOrderState(OrderServiceError):
    status_code = 409
    code = "invalid_order_state"


class WebhookEventNotFound(OrderServiceError):
    status_code = 404
    code = "webhook_event_not_found"
