from typing import TypeVar, Tuple, Optional

T = TypeVar("T")
E = TypeVar("E", bound=Exception)

Result = Tuple[T, Optional[E]]


class ServiceError(Exception):
    """Base class for errors a service reports to its immediate caller."""
    status_code = 500
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class InvalidTransitionError(ConflictError):
    def __init__(self, order_id: int, current: str, action: str):
        super().__init__(f"Order: {order_id} cannot be {action} while {current}")
        self.order_id = order_id
        self.current = current
        self.action = action


class InsufficientStockError(ConflictError):
    def __init__(self, product_id: int, available: int, requested: int):
        super().__init__(
            f"Product: {product_id} has insufficient stock. Available: {available}, requested: {requested}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class DependencyUnavailableError(ServiceError):
    """A peer service could not be reached; the caller may retry later."""
    status_code = 503
    retryable = True

    def __init__(self, dependency: str, reason: str = "unavailable"):
        super().__init__(f"Dependency '{dependency}' {reason}")
        self.dependency = dependency
        self.reason = reason


class MessagingError(ServiceError):
    status_code = 502
    retryable = True

    def __init__(self, destination: str, reason: str):
        super().__init__(f"Could not send to '{destination}': {reason}")
        self.destination = destination
        self.reason = reason


class DBError(ServiceError):
    retryable = True
