"""Exceptions raised by the pet tag services.

Every error carries a stable machine code and the HTTP status the API layer
answers with.
"""


class PetTagError(Exception):
    """Base exception for all pet tag errors."""

    status_code = 400
    default_code = "ERROR"

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None):
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class NotFoundError(PetTagError):
    """A referenced entity does not exist or is not owned by the caller."""

    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(PetTagError):
    """Current entity state does not permit the requested transition."""

    status_code = 400
    default_code = "CONFLICT"


class CapacityError(PetTagError):
    """A finite resource is exhausted. Not a client mistake."""

    status_code = 503
    default_code = "CAPACITY_EXHAUSTED"


class UpstreamError(PetTagError):
    """An external collaborator (payment processor, identity provider) failed."""

    status_code = 502
    default_code = "UPSTREAM_ERROR"


class AuthError(PetTagError):
    """Raised when the caller cannot be authenticated or is not allowed."""

    status_code = 401
    default_code = "INVALID_TOKEN"


class NotificationError(PetTagError):
    """Raised by notification sinks. The dispatcher logs it and moves on."""

    default_code = "NOTIFICATION_FAILED"


class DatabaseUnavailableError(PetTagError):
    """Raised when no database is configured."""

    status_code = 500
    default_code = "DATABASE_UNAVAILABLE"

    def __init__(self):
        super().__init__("Database unavailable")


class PetNotFoundError(NotFoundError):
    def __init__(self, pet_id: str | None = None):
        self.pet_id = pet_id
        super().__init__("Pet not found", "PET_NOT_FOUND")


class TagNotFoundError(NotFoundError):
    def __init__(self, tag_id: str | None = None):
        self.tag_id = tag_id
        super().__init__("Tag not found", "TAG_NOT_FOUND")


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str | None = None):
        self.order_id = order_id
        super().__init__("Order not found", "ORDER_NOT_FOUND")


class NoQRCodeAvailableError(CapacityError):
    """Raised when the QR sticker pool has no available record left."""

    def __init__(self):
        super().__init__("No QR codes available for activation", "NO_QRCODE_AVAILABLE")
