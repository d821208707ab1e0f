"""OTP issuance, resend throttling and verification use-cases."""
from __future__ import annotations

import hmac
import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.orm import Session

from ..auth import account_token_claims, create_access_token
from ..config import settings
from ..domain_errors import DomainError
from ..models import Account, OtpRecord
from ..services.sms_gateway import SmsSender

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def generate_otp_code() -> str:
    return "".join(secrets.choice(string.digits) for _ in range(settings.OTP_LENGTH))


def _find_latest_otp_for_update(db: Session, identifier: str) -> OtpRecord | None:
    # Row lock serializes concurrent resend/verify calls on the same identifier.
    return (
        db.query(OtpRecord)
        .filter(OtpRecord.identifier == identifier)
        .order_by(OtpRecord.created_at.desc())
        .with_for_update()
        .first()
    )


def _needs_fresh_otp(record: OtpRecord | None, now: datetime) -> bool:
    # An INVALID record keeps blocking its identifier until it expires.
    return record is None or record.status == "VERIFIED" or now >= _as_utc(record.valid_till)


def _deliver_otp(sms_gateway: SmsSender, *, name: str, record: OtpRecord) -> bool:
    try:
        return bool(sms_gateway.send_otp(name, record.identifier, record.otp))
    except Exception:
        logger.exception("SMS gateway raised while sending OTP")
        return False


def request_otp_use_case(
    *,
    db: Session,
    identifier: str,
    identifier_type: str,
    account_type: str,
    sms_gateway: SmsSender,
    clock: Callable[[], datetime] = now_utc,
    generate_code: Callable[[], str] = generate_otp_code,
) -> OtpRecord:
    """Check the account may log in as `account_type`, then issue or resend its OTP."""
    account = db.query(Account).filter(
        Account.identifier == identifier,
        Account.identifier_type == identifier_type,
    ).with_for_update().first()
    if not account or not account.is_active:
        raise DomainError(
            code="ACCOUNT_NOT_FOUND",
            http_status=404,
            message="User account doesn't exist.",
        )

    if account_type == "ORGANIZATION":
        if account.organization_id is None:
            raise DomainError(
                code="ACCOUNT_NOT_LINKED",
                http_status=403,
                message="User account isn't linked to any organization.",
            )
    elif account_type == "PATHOLOGY_LAB":
        if account.pathology_lab_id is None:
            raise DomainError(
                code="ACCOUNT_NOT_LINKED",
                http_status=403,
                message="User account isn't linked to any pathology lab.",
            )
    else:
        raise DomainError(
            code="ACCOUNT_TYPE_INVALID",
            http_status=400,
            message="Invalid account type.",
        )

    return issue_or_resend_otp_use_case(
        db=db,
        identifier=account.identifier,
        identifier_type=account.identifier_type,
        account_name=account.name,
        sms_gateway=sms_gateway,
        clock=clock,
        generate_code=generate_code,
    )


def issue_or_resend_otp_use_case(
    *,
    db: Session,
    identifier: str,
    identifier_type: str,
    account_name: str,
    sms_gateway: SmsSender,
    clock: Callable[[], datetime] = now_utc,
    generate_code: Callable[[], str] = generate_otp_code,
) -> OtpRecord:
    """Send a fresh OTP, or resend the live one while resends remain.

    The record is committed before delivery, so a failed send still counts
    against the resend quota. An OTP invalidated by wrong guesses blocks new
    codes for the identifier until its valid-till passes.
    """
    now = clock()
    record = _find_latest_otp_for_update(db, identifier)

    if _needs_fresh_otp(record, now):
        record = OtpRecord(
            identifier=identifier,
            identifier_type=identifier_type,
            otp=generate_code(),
            status="UNVERIFIED",
            retry_count=0,
            verification_attempts=0,
            valid_till=now + timedelta(minutes=settings.OTP_VALIDITY_MINUTES),
            created_at=now,
        )
        db.add(record)
        logger.info("Sending a new OTP (valid till %s)", record.valid_till.isoformat())
    elif record.status == "UNVERIFIED" and record.retry_count < settings.OTP_MAX_RESENDS:
        record.retry_count += 1
        logger.info("Resending existing OTP (resend %s/%s)", record.retry_count, settings.OTP_MAX_RESENDS)
    else:
        logger.warning("OTP resend refused (status %s, resends %s)", record.status, record.retry_count)
        raise DomainError(
            code="OTP_RETRY_EXHAUSTED",
            http_status=429,
            message=f"Retry attempts over. Please try after {settings.OTP_VALIDITY_MINUTES} minutes.",
        )

    db.commit()

    if not _deliver_otp(sms_gateway, name=account_name, record=record):
        logger.error("Failure while sending the OTP SMS to the user")
        raise DomainError(
            code="OTP_DELIVERY_FAILED",
            http_status=502,
            message="Something went wrong while sending OTP.",
        )
    return record


def verify_otp_use_case(
    *,
    db: Session,
    identifier: str,
    otp: str,
    clock: Callable[[], datetime] = now_utc,
) -> str:
    """Check a submitted code against the newest OTP and return an access token."""
    record = _find_latest_otp_for_update(db, identifier)
    if record is None:
        raise DomainError(
            code="OTP_NOT_FOUND",
            http_status=404,
            message="No OTP was requested for this identifier.",
        )
    if clock() >= _as_utc(record.valid_till):
        raise DomainError(
            code="OTP_EXPIRED",
            http_status=400,
            message="OTP has expired. Please request a new one.",
        )
    if record.status != "UNVERIFIED":
        raise DomainError(
            code="OTP_INVALID_STATE",
            http_status=409,
            message="OTP has already been used or invalidated. Please request a new one.",
        )

    record.verification_attempts += 1

    if hmac.compare_digest(record.otp.encode("utf-8"), otp.encode("utf-8")):
        record.status = "VERIFIED"
        db.commit()
        logger.info("OTP verified")

        account = db.query(Account).filter(
            Account.identifier == record.identifier,
            Account.identifier_type == record.identifier_type,
        ).first()
        if not account:
            raise DomainError(
                code="ACCOUNT_NOT_FOUND",
                http_status=404,
                message="User account doesn't exist.",
            )
        return create_access_token(account_token_claims(account))

    max_attempts = settings.OTP_MAX_VERIFICATION_ATTEMPTS
    if record.verification_attempts >= max_attempts:
        record.status = "INVALID"
        db.commit()
        logger.warning("OTP verification failed, all attempts over; marking the OTP as INVALID")
        raise DomainError(
            code="OTP_ATTEMPTS_EXHAUSTED",
            http_status=429,
            message="Verification attempts over. Please request a new OTP.",
        )

    db.commit()
    logger.warning("OTP verification failed, %s attempt(s) left", max_attempts - record.verification_attempts)
    raise DomainError(
        code="OTP_INCORRECT",
        http_status=400,
        message="Incorrect OTP.",
        details={"attemptsLeft": max_attempts - record.verification_attempts},
    )
