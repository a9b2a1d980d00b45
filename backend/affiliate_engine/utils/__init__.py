"""
Utility modules for the affiliate engine backend.
"""

from .errors import (
    handle_exception,
    translate_store_error,
    format_cents,
    AppError,
    ErrorCodes,
    ValidationFailedError,
    NotFoundError,
    StateConflictError,
    InsufficientBalanceError,
    PayoutAlreadyOpenError,
    PayoutNotAllowedError,
    InvalidTransitionError,
    TransientStoreError,
    IntegrityViolationError,
)

__all__ = [
    # Error handling utilities
    "handle_exception",
    "translate_store_error",
    "format_cents",
    # Error taxonomy
    "AppError",
    "ErrorCodes",
    "ValidationFailedError",
    "NotFoundError",
    "StateConflictError",
    "InsufficientBalanceError",
    "PayoutAlreadyOpenError",
    "PayoutNotAllowedError",
    "InvalidTransitionError",
    "TransientStoreError",
    "IntegrityViolationError",
]
