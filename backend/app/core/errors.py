# app/core/errors.py
"""
Error taxonomy shared by the cart engine, the store client and the VAT calculator.

- ValidationError / InvalidAmount: caller input rejected before any I/O.
- NetworkError: a store read/write failed (timeout, non-2xx, connectivity).
- AuthRequiredError: the store answered 401 on a write.
- NotFoundError: the store no longer knows the referenced line or product.

An unknown VAT jurisdiction is not an error; the calculator falls back to a zero rate.
"""
from typing import Optional


class CartError(Exception):
    """Base class; `message` is safe to show to the user."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CartError, ValueError):
    pass


class InvalidAmount(ValidationError):
    pass


class NetworkError(CartError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthRequiredError(NetworkError):
    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, status_code=401)


class NotFoundError(CartError):
    pass
