from typing import Optional


class LifecycleError(ValueError):
    """Base class for user-visible booking engine errors."""


class ValidationError(LifecycleError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFound(LifecycleError):
    pass


class PermissionDenied(LifecycleError):
    pass


class InvalidTransition(LifecycleError):
    def __init__(self, current_status: str, attempted: str, message: Optional[str] = None):
        super().__init__(message or f"Invalid status transition: {current_status} -> {attempted}")
        self.current_status = current_status
        self.attempted = attempted


class TransientStoreError(LifecycleError):
    pass


class PaymentUnavailable(LifecycleError):
    pass
