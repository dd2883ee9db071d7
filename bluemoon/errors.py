class BlueMoonError(Exception):
    pass


class ValidationError(BlueMoonError):
    pass


class InsufficientBalanceError(ValidationError):
    pass


class NotFoundError(BlueMoonError):
    pass


class InvalidStateTransitionError(BlueMoonError):
    pass


class PermissionDeniedError(BlueMoonError):
    pass


class StoreError(BlueMoonError):
    """Raised by a document store when a read or write cannot be completed."""


class DuplicateKeyError(StoreError):
    """A conditional insert found its unique key already taken."""


class StaleWriteError(StoreError):
    """A compare-and-set write found a different value than expected."""
