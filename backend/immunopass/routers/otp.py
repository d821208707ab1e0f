"""OTP login endpoints."""
import ipaddress
import logging

import redis
from redis.exceptions import RedisError
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..schemas import SendOtpRequest, SendOtpResponse, VerifyOtpRequest, VerifyOtpResponse
from ..services.sms_gateway import SmsSender, get_sms_gateway
from ..use_cases.otp_use_cases import request_otp_use_case, verify_otp_use_case

router = APIRouter(prefix="/otp", tags=["otp"])
logger = logging.getLogger(__name__)


_redis_client = None


def _get_redis():
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def _get_client_ip(request: Request) -> str:
    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # X-Forwarded-For may contain a list: client, proxy1, proxy2
            candidate = forwarded.split(",")[0].strip()
            try:
                ipaddress.ip_address(candidate)
                return candidate
            except ValueError:
                pass

    if request.client:
        return request.client.host
    return "unknown"


def _set_no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"


def _enforce_send_rate_limit(request: Request) -> None:
    ip = _get_client_ip(request)
    try:
        r = _get_redis()
        key = f"otp:rl:send:ip:{ip}"
        attempts = int(r.incr(key))
        if attempts == 1:
            r.expire(key, 60)
        if attempts > settings.OTP_SEND_IP_LIMIT_PER_MINUTE:
            ttl = r.ttl(key)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many OTP requests. Try again later.",
                headers={"Retry-After": str(ttl if ttl and ttl > 0 else 60)},
            )
    except RedisError:
        # Fail open if Redis is down to avoid total login outage.
        logger.exception("Redis error during OTP rate limiting (fail-open)")


@router.post("/send", response_model=SendOtpResponse)
def send_otp(
    payload: SendOtpRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    sms_gateway: SmsSender = Depends(get_sms_gateway),
):
    """Send a new OTP or resend the live one."""
    _set_no_store(response)
    _enforce_send_rate_limit(request)
    record = request_otp_use_case(
        db=db,
        identifier=payload.identifier,
        identifier_type=payload.identifier_type,
        account_type=payload.account_type,
        sms_gateway=sms_gateway,
    )
    return SendOtpResponse.model_validate(record)


@router.post("/verify", response_model=VerifyOtpResponse)
def verify_otp(
    payload: VerifyOtpRequest,
    response: Response,
    db: Session = Depends(get_db),
):
    """Verify an OTP and exchange it for an access token."""
    _set_no_store(response)
    token = verify_otp_use_case(db=db, identifier=payload.identifier, otp=payload.otp)
    return VerifyOtpResponse(access_token=token)
