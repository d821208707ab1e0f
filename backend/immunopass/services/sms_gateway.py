"""HTTP client for the external SMS sender (OTP, voucher and pass messages)."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Protocol

import requests

from ..config import settings

logger = logging.getLogger(__name__)

LOGIN_OTP_PATH = "/v1/sms/login-otp"
SEND_VOUCHER_PATH = "/v1/sms/send-voucher"
SEND_PASS_PATH = "/v1/sms/send-pass"


class SmsSender(Protocol):
    def send_otp(self, name: str, to: str, code: str) -> bool: ...

    def send_voucher(self, name: str, mobile: str, voucher_code: str) -> bool: ...

    def send_pass(self, to: str, token: str, status: str) -> bool: ...


class SmsGateway:
    """Typed SMS payloads over the gateway's JSON API.

    Every call returns True only on HTTP 200; transport errors are reported
    as False so callers can treat all failures uniformly.
    """

    def __init__(
        self,
        *,
        endpoint: str | None = None,
        auth: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.endpoint = (endpoint or settings.SMS_ENDPOINT).rstrip("/")
        self.auth = auth if auth is not None else settings.SMS_AUTH
        self.timeout = timeout or settings.SMS_TIMEOUT_SECONDS

    def send_otp(self, name: str, to: str, code: str) -> bool:
        return self._post(LOGIN_OTP_PATH, {"userName": name, "to": to, "otp": code})

    def send_voucher(self, name: str, mobile: str, voucher_code: str) -> bool:
        return self._post(
            SEND_VOUCHER_PATH,
            {
                "to": mobile,
                "userMobileNumber": mobile,
                "userName": name,
                "voucherCode": voucher_code,
            },
        )

    def send_pass(self, to: str, token: str, status: str) -> bool:
        return self._post(SEND_PASS_PATH, {"to": to, "token": token, "userStatus": status})

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "*/*"}
        if self.auth:
            headers["Authentication"] = self.auth
        return headers

    def _post(self, path: str, payload: dict[str, str]) -> bool:
        url = f"{self.endpoint}{path}"
        try:
            response = requests.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("SMS gateway request to %s failed: %s", path, exc)
            return False

        if response.status_code == 200:
            return True

        logger.warning(
            "SMS gateway rejected %s: HTTP %s %s",
            path,
            response.status_code,
            response.text[:200],
        )
        return False


@lru_cache()
def get_sms_gateway() -> SmsGateway:
    """Shared gateway instance (FastAPI dependency and worker tasks)."""
    return SmsGateway()
