class CheckoutError(Exception):
    """Base class for every error raised by the checkout service."""


class InvalidInput(CheckoutError):
    pass


class SessionCreationFailed(CheckoutError):
    pass


class AuthenticationError(CheckoutError):
    pass


class ReconciliationError(CheckoutError):
    """A completed-payment event could not be turned into an order.

    ``retryable`` marks transient failures (provider timeouts, connection
    errors) that a later redelivery of the same event may resolve.
    """

    def __init__(self, message: str, event_id: str | None = None, retryable: bool = False):
        super().__init__(message)
        self.event_id = event_id
        self.retryable = retryable


class CustomerLookupFailed(ReconciliationError):
    pass


class NotificationPersistFailed(CheckoutError):
    def __init__(self, message: str, order_id: str | None = None):
        super().__init__(message)
        self.order_id = order_id
