class CheckoutError(Exception):
    pass


class ValidationError(CheckoutError):
    """Bad input. Rejected before any side effect, never retried."""


class ProductNotFound(ValidationError):
    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class IdempotencyKeyReuse(ValidationError):
    def __init__(self, key: str):
        super().__init__(f"Idempotency key {key} was already used with another payload")
        self.key = key


class InvalidStockLevel(ValidationError):
    pass


class InsufficientStock(CheckoutError):
    def __init__(self, product_id: str, requested: int):
        super().__init__(f"Not enough stock of {product_id} for {requested} unit(s)")
        self.product_id = product_id
        self.requested = requested


class StaleVersion(CheckoutError):
    def __init__(self, order_id: str, expected_version: int):
        super().__init__(f"Order {order_id} is no longer at version {expected_version}")
        self.order_id = order_id
        self.expected_version = expected_version


class ConcurrencyConflict(CheckoutError):
    """Transient; the client may try again."""


class RequestInProgress(CheckoutError):
    def __init__(self, key: str):
        super().__init__(f"Request with idempotency key {key} is still in progress")
        self.key = key


class CancellationNotAllowed(CheckoutError):
    pass


class PaymentInProgress(CheckoutError):
    pass


class CatalogUnavailable(CheckoutError):
    pass


class InvariantViolation(CheckoutError):
    """A programming-contract error: logged, never retried."""


class InvalidTransition(InvariantViolation):
    def __init__(self, status, trigger):
        super().__init__(f"No transition from {status} on {trigger}")
        self.status = status
        self.trigger = trigger


class ReservationStateError(InvariantViolation):
    pass


class OrderNotPayable(CheckoutError):
    pass


class PaymentNotReconcilable(CheckoutError):
    pass
