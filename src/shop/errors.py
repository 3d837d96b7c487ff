# error taxonomy for checkout, order administration and refunds


class ShopError(Exception):
    """Base error; ``code`` is the stable machine-readable tag."""

    code = "shop_error"
    status_code = 400
    default_message = "Request could not be processed."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


# ---------------------------
# Validation (4xx, nothing written)
# ---------------------------


class OrderError(ShopError):
    code = "order_error"


class EmptyCart(OrderError):
    code = "empty_cart"
    default_message = "Order must contain at least one item."


class InvalidItem(OrderError):
    code = "invalid_item"
    default_message = "Invalid order item."


class InvalidPaymentMethod(OrderError):
    code = "invalid_payment_method"
    default_message = "Unsupported payment method."


class InvalidCustomer(OrderError):
    code = "invalid_customer"
    default_message = "Customer name, email and shipping address are required."


class InvalidDiscountCode(OrderError):
    code = "invalid_discount_code"
    default_message = "Discount code is not valid."


class InvalidShippingOption(OrderError):
    code = "invalid_shipping_option"
    default_message = "Unknown shipping option."


class ForbiddenField(OrderError):
    code = "forbidden_field"
    default_message = "Field may not be updated."


class InvalidStatus(OrderError):
    code = "invalid_status"
    default_message = "Invalid status value."


# ---------------------------
# Not found (404)
# ---------------------------


class NotFoundError(ShopError):
    code = "not_found"
    status_code = 404
    default_message = "Not found."


class OrderNotFound(NotFoundError):
    code = "order_not_found"
    default_message = "Order not found."


class VariantNotFound(NotFoundError):
    code = "variant_not_found"
    default_message = "Product variant not found."


# ---------------------------
# Payment provider / refund
# ---------------------------


class RefundError(ShopError):
    code = "refund_error"
    default_message = "Refund failed."


class AlreadyRefunded(RefundError):
    code = "already_refunded"
    default_message = "Order has already been refunded; no further refund was issued."


class AlreadyCancelled(RefundError):
    code = "already_cancelled"
    default_message = "Order is already cancelled and was never paid; nothing to refund."


class RefundInProgress(RefundError):
    code = "refund_in_progress"
    status_code = 409
    default_message = "A refund for this order is already being processed."


class ProviderUnavailable(RefundError):
    code = "provider_unavailable"
    status_code = 502
    default_message = "Payment provider is not reachable or not configured."


class NoPaymentReference(RefundError):
    code = "no_payment_reference"
    default_message = "No payment reference stored for this order; nothing to refund automatically."


class NoRefundableCapture(RefundError):
    code = "no_refundable_capture"
    default_message = (
        "No refundable capture found. The payment may already be refunded or is still pending."
    )


class ProviderRejected(RefundError):
    code = "provider_rejected"
    status_code = 502
    default_message = "Payment provider rejected the request."

    def __init__(self, message: str | None = None, http_status: int | None = None):
        super().__init__(message)
        self.http_status = http_status


class ProviderRefundFailed(RefundError):
    code = "provider_refund_failed"
    status_code = 502
    default_message = "Payment provider rejected the refund."
