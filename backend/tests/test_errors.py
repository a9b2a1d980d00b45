"""
Tests for store error translation and HTTP error mapping.
"""

import json

import httpx
import pytest
from fastapi import HTTPException
from postgrest.exceptions import APIError

from affiliate_engine.utils.errors import (
    ErrorCodes,
    IntegrityViolationError,
    InsufficientBalanceError,
    InvalidTransitionError,
    NotFoundError,
    PayoutAlreadyOpenError,
    PayoutNotAllowedError,
    TransientStoreError,
    ValidationFailedError,
    format_cents,
    handle_exception,
    translate_store_error,
)


def api_error(message, details=None, code="P0001"):
    return APIError({
        "message": message,
        "code": code,
        "hint": None,
        "details": json.dumps(details) if details is not None else None,
    })


class TestFormatCents:

    @pytest.mark.parametrize("cents, expected", [
        (0, "$0.00"),
        (5, "$0.05"),
        (3210, "$32.10"),
        (123456789, "$1,234,567.89"),
        (-250, "-$2.50"),
    ])
    def test_format(self, cents, expected):
        assert format_cents(cents) == expected


class TestTranslateStoreError:

    def test_insufficient_balance(self):
        error = translate_store_error(api_error(
            "insufficient_balance", {"pending_commission_cents": 2000, "minimum_payout_cents": 5000}
        ))
        assert isinstance(error, InsufficientBalanceError)
        assert error.pending_cents == 2000
        assert error.minimum_cents == 5000

    def test_payout_already_open(self):
        error = translate_store_error(api_error("payout_already_open", {"payout_id": "p1"}))
        assert isinstance(error, PayoutAlreadyOpenError)
        assert error.details == {"payout_id": "p1"}

    def test_payout_not_allowed_keeps_reason(self):
        error = translate_store_error(api_error("payout_not_allowed", {"reason": "Affiliate account is suspended"}))
        assert isinstance(error, PayoutNotAllowedError)
        assert error.message == "Affiliate account is suspended"

    def test_invalid_transition(self):
        error = translate_store_error(api_error(
            "invalid_transition", {"entity": "payout", "from": "completed", "to": "failed"}
        ))
        assert isinstance(error, InvalidTransitionError)
        assert (error.current, error.target) == ("completed", "failed")

    def test_balance_mismatch(self):
        assert isinstance(translate_store_error(api_error("balance_mismatch", {})), IntegrityViolationError)

    def test_not_found_tokens(self):
        assert isinstance(translate_store_error(api_error("payout_not_found", {"payout_id": "p"})), NotFoundError)
        assert isinstance(translate_store_error(api_error("affiliate_not_found")), NotFoundError)

    def test_transport_errors_are_transient(self):
        assert isinstance(translate_store_error(httpx.ConnectError("refused")), TransientStoreError)
        assert isinstance(translate_store_error(TimeoutError()), TransientStoreError)

    def test_unknown_errors_pass_through(self):
        original = api_error("duplicate key value", code="23505")
        assert translate_store_error(original) is original
        boom = RuntimeError("boom")
        assert translate_store_error(boom) is boom

    def test_app_errors_pass_through(self):
        original = ValidationFailedError("bad")
        assert translate_store_error(original) is original

    def test_malformed_details_are_ignored(self):
        error = translate_store_error(APIError({"message": "payout_already_open", "details": "not json"}))
        assert isinstance(error, PayoutAlreadyOpenError)
        assert error.details == {}


class TestHandleException:

    def test_state_conflict_is_409_with_code(self):
        result = handle_exception(InsufficientBalanceError(2000, 5000), "payout_request")

        assert isinstance(result, HTTPException)
        assert result.status_code == 409
        assert result.detail["error"] == ErrorCodes.INSUFFICIENT_BALANCE
        assert result.detail["details"]["minimum_payout_cents"] == 5000

    def test_procedure_error_is_translated(self):
        result = handle_exception(api_error("payout_already_open", {"payout_id": "p1"}), "payout_request")
        assert result.status_code == 409
        assert result.detail["error"] == ErrorCodes.PAYOUT_ALREADY_OPEN

    def test_transient_is_503(self):
        result = handle_exception(httpx.ConnectError("refused"), "signup_link")
        assert result.status_code == 503

    def test_validation_is_400(self):
        assert handle_exception(ValidationFailedError("bad", field="x"), "op").status_code == 400

    def test_http_exception_preserved(self):
        original = HTTPException(status_code=418, detail="teapot")
        assert handle_exception(original, "op") is original

    def test_unknown_database_error_is_500_without_internals(self):
        result = handle_exception(api_error("relation affiliates is broken", code="XX000"), "op")
        assert result.status_code == 500
        assert result.detail["error"] == ErrorCodes.DATABASE_ERROR
        assert "relation" not in result.detail["message"]

    def test_integrity_violation_logged_critical(self, caplog):
        handle_exception(IntegrityViolationError("mismatch"), "payout_request")
        assert any(r.levelname == "CRITICAL" for r in caplog.records)
