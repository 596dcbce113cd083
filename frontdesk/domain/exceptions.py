class FrontDeskError(Exception):
    """Base exception for all front-desk errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(FrontDeskError):
    """Raised when input is malformed or out of range."""

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class DuplicatePhoneError(FrontDeskError):
    """Raised when a phone number is already used by another patient profile."""

    def __init__(self, phone: str | None = None) -> None:
        self.phone = phone
        super().__init__("Phone number already exists")


class NotFoundError(FrontDeskError):
    """Raised when a referenced entity does not exist or is not in the state looked up."""

    def __init__(self, message: str, entity: str, entity_id: str | None = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(message)


class ConflictError(FrontDeskError):
    """Raised when an entity exists but is in the wrong lifecycle state for the request."""


class StoreUnavailableError(FrontDeskError):
    """Raised when the underlying store fails unexpectedly."""
