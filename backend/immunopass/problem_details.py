"""RFC 7807 Problem Details helpers."""
from __future__ import annotations

from http import HTTPStatus

from fastapi import Request
from fastapi.responses import JSONResponse

from .domain_errors import DomainError


PROBLEM_TYPE_BASE = "https://api.immunopass.local/problems"

# Titles for codes a client is expected to branch on; others use the HTTP phrase.
PROBLEM_TITLES: dict[str, str] = {
    "ACCOUNT_NOT_FOUND": "Account not found",
    "ACCOUNT_NOT_LINKED": "Account not linked",
    "OTP_RETRY_EXHAUSTED": "OTP resend limit reached",
    "OTP_DELIVERY_FAILED": "OTP delivery failed",
    "OTP_EXPIRED": "OTP expired",
    "OTP_INVALID_STATE": "OTP no longer usable",
    "OTP_INCORRECT": "Incorrect OTP",
    "OTP_ATTEMPTS_EXHAUSTED": "OTP attempts exhausted",
    "ORGANIZATION_INACTIVE": "Organization inactive",
    "VOUCHER_QUOTA_EXCEEDED": "Voucher quota exceeded",
}


def _problem_title(exc: DomainError) -> str:
    if exc.code in PROBLEM_TITLES:
        return PROBLEM_TITLES[exc.code]
    if exc.code.startswith("CSV_"):
        return "Invalid voucher order file"
    try:
        return HTTPStatus(exc.http_status).phrase
    except ValueError:
        return "Domain Error"


def build_problem_details_response(exc: DomainError) -> JSONResponse:
    """Render DomainError as RFC 7807 payload with stable domain code."""
    payload: dict[str, object] = {
        "type": f"{PROBLEM_TYPE_BASE}/{exc.code.lower()}",
        "title": _problem_title(exc),
        "status": exc.http_status,
        "detail": exc.message,
        "code": exc.code,
    }
    if exc.details is not None:
        payload["details"] = exc.details

    return JSONResponse(
        status_code=exc.http_status,
        content=payload,
        media_type="application/problem+json",
    )


async def domain_error_handler(_: Request, exc: DomainError) -> JSONResponse:
    return build_problem_details_response(exc)
