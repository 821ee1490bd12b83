"""Error hierarchy for booking and payment failures.

Every error carries a stable ``code`` and an HTTP status. ``to_response``
produces the ``{success, message, code}`` envelope returned to callers;
internal details never reach that envelope.
"""


class RentalCoreError(Exception):
    code = "INTERNAL_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str, code: str | None = None, http_status: int | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status

    def to_response(self) -> dict:
        return {"success": False, "message": self.message, "code": self.code}


# 400-level

class ValidationError(RentalCoreError):
    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidDateRange(ValidationError):
    code = "INVALID_DATE_RANGE"


class OrderNotYetDue(ValidationError):
    code = "ORDER_NOT_YET_DUE"

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} has not reached its end date yet")
        self.order_id = order_id


class NotFoundError(RentalCoreError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} '{entity_id}' not found")
        self.entity_id = entity_id


class ResourceNotFound(NotFoundError):
    code = "RESOURCE_NOT_FOUND"

    def __init__(self, resource_id: str):
        super().__init__("Resource", resource_id)


class OrderNotFound(NotFoundError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        super().__init__("Order", order_id)


class PaymentNotFound(NotFoundError):
    code = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str):
        super().__init__("Payment", payment_id)


class ForbiddenError(RentalCoreError):
    code = "FORBIDDEN"
    http_status = 403


class SelfBookingForbidden(ForbiddenError):
    code = "SELF_BOOKING_FORBIDDEN"

    def __init__(self):
        super().__init__("Owners cannot rent their own resource")


class ConflictError(RentalCoreError):
    code = "CONFLICT"
    http_status = 409


class SlotConflict(ConflictError):
    code = "SLOT_CONFLICT"

    def __init__(self, resource_id: str):
        super().__init__(f"Resource {resource_id} is already booked for the requested period")
        self.resource_id = resource_id


class InvalidTransition(ConflictError):
    code = "INVALID_TRANSITION"

    def __init__(self, from_status, to_status):
        from_value = getattr(from_status, "value", from_status)
        to_value = getattr(to_status, "value", to_status)
        super().__init__(f"Cannot transition from {from_value} to {to_value}")
        self.from_status = from_status
        self.to_status = to_status


class ProviderNotConfigured(RentalCoreError):
    code = "PROVIDER_NOT_CONFIGURED"
    http_status = 400

    def __init__(self, provider: str):
        super().__init__(f"Payment provider {provider} is not configured")
        self.provider = provider


class InvalidSignature(RentalCoreError):
    code = "INVALID_SIGNATURE"
    http_status = 400


# 500-level

class ProviderError(RentalCoreError):
    code = "PROVIDER_ERROR"
    http_status = 502


class ProviderUnavailable(ProviderError):
    code = "PROVIDER_UNAVAILABLE"
    http_status = 503
    retryable = True


class DatabaseError(RentalCoreError):
    code = "DATABASE_ERROR"
    http_status = 503

    def __init__(self, message: str, operation: str):
        super().__init__(f"Database {operation} failed: {message}")
        self.operation = operation


class WriteConflict(Exception):
    """Commit-time write/write race; retried by the caller, never shown to users."""
