"""
Centralized error handling utilities for the affiliate engine API.

This module provides consistent error responses and logging across all routers,
plus the engine's error taxonomy:

- Validation errors: bad input, surfaced directly, never retried
- State conflicts: expected business rejections (below minimum payout,
  illegal status transition, ...) with a human-readable reason
- Transient store errors: database unreachable, the caller should retry
- Integrity violations: fatal data-integrity conditions, manual reconciliation
"""

import json
import logging
from typing import Optional, Dict, Any

import httpx
from fastapi import HTTPException, status
from postgrest.exceptions import APIError

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base application error with structured data."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


# Common error codes
class ErrorCodes:
    """Standard error codes for API responses."""
    INTERNAL_ERROR = "INTERNAL_ERROR"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"
    STATE_CONFLICT = "STATE_CONFLICT"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    PAYOUT_ALREADY_OPEN = "PAYOUT_ALREADY_OPEN"
    PAYOUT_NOT_ALLOWED = "PAYOUT_NOT_ALLOWED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INTEGRITY_VIOLATION = "INTEGRITY_VIOLATION"


# =============================================================================
# ENGINE ERROR TAXONOMY
# =============================================================================

class ValidationFailedError(AppError):
    """Input rejected before touching the store."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else None
        super().__init__(
            message,
            code=ErrorCodes.VALIDATION_ERROR,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class NotFoundError(AppError):
    """A referenced affiliate, payout or referral does not exist."""

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        super().__init__(
            f"{resource} not found",
            code=ErrorCodes.NOT_FOUND,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_id": resource_id} if resource_id else None,
        )


class StateConflictError(AppError):
    """An expected business outcome that rejects the request."""

    def __init__(
        self,
        message: str,
        code: str = ErrorCodes.STATE_CONFLICT,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message,
            code=code,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class InsufficientBalanceError(StateConflictError):
    """Pending commission is below the program's minimum payout."""

    def __init__(self, pending_cents: int, minimum_cents: int):
        self.pending_cents = pending_cents
        self.minimum_cents = minimum_cents
        super().__init__(
            f"Minimum payout is {format_cents(minimum_cents)}, "
            f"you have {format_cents(pending_cents)}",
            code=ErrorCodes.INSUFFICIENT_BALANCE,
            details={
                "pending_commission_cents": pending_cents,
                "minimum_payout_cents": minimum_cents,
            },
        )


class PayoutAlreadyOpenError(StateConflictError):
    """The affiliate already has a payout awaiting processing."""

    def __init__(self, payout_id: Optional[str] = None):
        super().__init__(
            "A payout request is already being processed",
            code=ErrorCodes.PAYOUT_ALREADY_OPEN,
            details={"payout_id": payout_id} if payout_id else None,
        )


class PayoutNotAllowedError(StateConflictError):
    """The affiliate cannot request payouts in its current state."""

    def __init__(self, reason: str):
        super().__init__(reason, code=ErrorCodes.PAYOUT_NOT_ALLOWED)


class InvalidTransitionError(StateConflictError):
    """A status change not permitted by the entity's state machine."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move {entity} from '{current}' to '{target}'",
            code=ErrorCodes.INVALID_TRANSITION,
            details={"entity": entity, "from": current, "to": target},
        )


class TransientStoreError(AppError):
    """The store could not be reached; the whole operation may be retried."""

    def __init__(self, message: str = "Service temporarily unavailable. Please try again."):
        super().__init__(
            message,
            code=ErrorCodes.SERVICE_UNAVAILABLE,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class IntegrityViolationError(AppError):
    """Stored balances disagree with the ledger. Requires manual reconciliation."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            code=ErrorCodes.INTEGRITY_VIOLATION,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )


def format_cents(cents: int) -> str:
    """Format integer cents as a dollar string, e.g. 3210 -> '$32.10'."""
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}${cents // 100:,}.{cents % 100:02d}"


def translate_store_error(error: Exception) -> Exception:
    """
    Convert a store exception into the engine's error taxonomy.

    Procedure errors arrive as postgrest APIErrors whose message is a short
    token (insufficient_balance, payout_already_open, ...) and whose
    ``details`` carries a JSON object.
    Transport failures (connection refused, timeouts) become TransientStoreError.
    Anything unrecognized is returned unchanged so the caller can re-raise it.
    """
    if isinstance(error, AppError):
        return error

    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
        return TransientStoreError()

    if not isinstance(error, APIError):
        return error

    token = (error.message or "").strip().lower()
    details = _parse_details(error.details)

    if token == "insufficient_balance":
        return InsufficientBalanceError(
            pending_cents=int(details.get("pending_commission_cents", 0)),
            minimum_cents=int(details.get("minimum_payout_cents", 0)),
        )
    if token == "payout_already_open":
        return PayoutAlreadyOpenError(details.get("payout_id"))
    if token == "payout_not_allowed":
        return PayoutNotAllowedError(details.get("reason") or "Payouts are not available for this affiliate")
    if token == "invalid_transition":
        return InvalidTransitionError(
            details.get("entity", "payout"),
            details.get("from", "unknown"),
            details.get("to", "unknown"),
        )
    if token == "balance_mismatch":
        return IntegrityViolationError(
            "Affiliate pending balance does not match earned commissions",
            details=details,
        )
    if token == "affiliate_not_found":
        return NotFoundError("Affiliate", details.get("affiliate_id"))
    if token == "payout_not_found":
        return NotFoundError("Payout", details.get("payout_id"))

    return error


def _parse_details(raw: Any) -> Dict[str, Any]:
    """Procedure details are sent as a JSON object string."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def handle_exception(
    error: Exception,
    operation: str,
    *,
    user_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    resource_id: Optional[str] = None,
    log_level: str = "error"
) -> HTTPException:
    """
    Handle exceptions and return appropriate HTTPException.

    This function:
    1. Logs the error with context for debugging
    2. Returns a user-friendly error message (not exposing internals)
    3. Preserves original HTTPExceptions

    Args:
        error: The caught exception
        operation: Description of what operation failed (e.g., "payout_request")
        user_id: Optional user ID for context
        organization_id: Optional org ID for context
        resource_id: Optional resource ID for context
        log_level: Logging level ("error", "warning", "info")

    Returns:
        HTTPException with appropriate status code and message

    Example:
        try:
            # ... operation
        except HTTPException:
            raise
        except Exception as e:
            raise handle_exception(e, "payout_request", user_id=user_id)
    """
    error = translate_store_error(error)

    # Build context for logging
    context = {
        "operation": operation,
        "error_type": type(error).__name__,
        "error_message": str(error),
    }
    if user_id:
        context["user_id"] = user_id
    if organization_id:
        context["organization_id"] = organization_id
    if resource_id:
        context["resource_id"] = resource_id

    # Business rejections are expected outcomes, not failures
    if isinstance(error, StateConflictError) and log_level == "error":
        log_level = "warning"

    log_message = f"Error in {operation}: {error}"
    if isinstance(error, IntegrityViolationError):
        logger.critical(log_message, extra=context, exc_info=True)
    elif log_level == "warning":
        logger.warning(log_message, extra=context)
    elif log_level == "info":
        logger.info(log_message, extra=context)
    else:
        logger.error(log_message, extra=context, exc_info=True)

    # If it's already an HTTPException, preserve it
    if isinstance(error, HTTPException):
        return error

    # If it's an AppError, use its details
    if isinstance(error, AppError):
        return HTTPException(
            status_code=error.status_code,
            detail={
                "error": error.code,
                "message": error.message,
                "details": error.details
            }
        )

    # Map common exception types to appropriate responses
    error_mapping = _get_error_mapping(error, operation)

    return HTTPException(
        status_code=error_mapping["status_code"],
        detail={
            "error": error_mapping["code"],
            "message": error_mapping["message"]
        }
    )


def _get_error_mapping(error: Exception, operation: str) -> Dict[str, Any]:
    """Map exception types to user-friendly error responses."""
    error_type = type(error).__name__
    error_str = str(error).lower()

    # Database/connection errors
    if "connection" in error_str or "timeout" in error_str:
        return {
            "status_code": status.HTTP_503_SERVICE_UNAVAILABLE,
            "code": ErrorCodes.SERVICE_UNAVAILABLE,
            "message": "Service temporarily unavailable. Please try again."
        }

    # Not found errors
    if "not found" in error_str or "does not exist" in error_str:
        return {
            "status_code": status.HTTP_404_NOT_FOUND,
            "code": ErrorCodes.NOT_FOUND,
            "message": "The requested resource was not found."
        }

    # Validation errors
    if error_type in ("ValidationError", "ValueError", "TypeError"):
        return {
            "status_code": status.HTTP_400_BAD_REQUEST,
            "code": ErrorCodes.VALIDATION_ERROR,
            "message": "Invalid request data. Please check your input."
        }

    if isinstance(error, APIError):
        return {
            "status_code": status.HTTP_500_INTERNAL_SERVER_ERROR,
            "code": ErrorCodes.DATABASE_ERROR,
            "message": "A database error occurred. Please try again."
        }

    # Default internal error
    return {
        "status_code": status.HTTP_500_INTERNAL_SERVER_ERROR,
        "code": ErrorCodes.INTERNAL_ERROR,
        "message": "An unexpected error occurred. Please try again."
    }
