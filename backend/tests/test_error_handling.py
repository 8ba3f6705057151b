"""
Tests for mapping service errors onto HTTP responses.
"""

import pytest
from fastapi import HTTPException

from core.error_handling import (
    AuthorizationError,
    ConflictError,
    DomainRuleError,
    GoneError,
    InvalidStateError,
    NotFoundError,
    handle_api_errors,
    to_http_exception,
)


@pytest.mark.parametrize(
    "error,status_code",
    [
        (NotFoundError("Order", 1), 404),
        (ConflictError("Order was modified concurrently"), 409),
        (AuthorizationError(), 403),
        (InvalidStateError("Bad transition", "completed"), 400),
        (DomainRuleError("USAGE_LIMIT", "Discount usage limit reached", status_code=409), 409),
        (GoneError("Signature expired"), 410),
    ],
)
def test_status_codes(error, status_code):
    assert to_http_exception(error).status_code == status_code


def test_reason_code_reaches_client():
    exc = to_http_exception(DomainRuleError("EXPIRED", "Discount has expired", details={"code": "X"}))
    assert exc.detail["details"] == {"reason_code": "EXPIRED", "code": "X"}


def test_unexpected_errors_are_500():
    exc = to_http_exception(RuntimeError("boom"))
    assert exc.status_code == 500
    assert "boom" not in str(exc.detail)


def test_decorator():
    @handle_api_errors
    def confirm():
        raise InvalidStateError("Order must be confirmed first", "pending")

    with pytest.raises(HTTPException) as exc:
        confirm()
    assert exc.value.status_code == 400
    assert exc.value.detail["details"] == {"current_status": "pending"}
