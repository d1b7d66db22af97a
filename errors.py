"""Domain errors raised by the order, payment and cart code."""
from typing import Optional


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(StoreError):
    """Bad input caught before any network call."""
    status_code = 400


class OrderValidationError(ValidationError):
    pass


class AmountMismatchError(ValidationError):
    pass


class OrderNotFoundError(StoreError, LookupError):
    status_code = 404


class InvalidTransitionError(StoreError):
    status_code = 409


class GatewayConfigError(StoreError):
    status_code = 500


class GatewayInitError(StoreError):
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None, credential_error: bool = False):
        super().__init__(message, status_code)
        self.credential_error = credential_error


class GatewayValidationError(StoreError):
    status_code = 502


class NetworkError(StoreError):
    status_code = 503


class ProductNotFoundError(StoreError, LookupError):
    status_code = 404


class CartItemNotFoundError(StoreError, LookupError):
    status_code = 404
