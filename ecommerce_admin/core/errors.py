"""Domain errors raised by the order/payment services.

Each error carries the HTTP status it is rendered with; the handlers in
``ecommerce_admin.main`` turn them into ``{"detail": ...}`` responses.
"""


class DomainError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    status_code = 422


class EmptyCartError(DomainError):
    status_code = 400

    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class NotFoundError(DomainError):
    status_code = 404


class AuthorizationError(DomainError):
    status_code = 403


class InvalidStateError(DomainError):
    status_code = 409


class ConcurrencyError(DomainError):
    status_code = 409

    def __init__(self, message: str = "Resource was modified concurrently, retry the request"):
        super().__init__(message)


class AmountMismatchError(DomainError):
    status_code = 400

    def __init__(self, server_cents: int, client_cents: int):
        super().__init__("Amount mismatch. Please refresh and try again.")
        self.server_cents = server_cents
        self.client_cents = client_cents


class StockError(DomainError):
    status_code = 409


class SignatureError(DomainError):
    status_code = 400


class PaymentProviderError(DomainError):
    status_code = 502
