"""Access tokens for OTP-authenticated accounts."""
from typing import Optional
from datetime import timedelta
import logging
import time
from uuid import UUID
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from .config import settings
from .database import get_db
from .models import Account

logger = logging.getLogger(__name__)

# Bearer token scheme
security = HTTPBearer()


def _credentials_exception(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def account_token_claims(account: Account) -> dict:
    """Claims identifying the account and the entity it acts for."""
    return {
        "sub": str(account.id),
        "identifier": account.identifier,
        "account_type": account.account_type,
        "org_id": str(account.organization_id) if account.organization_id else None,
        "lab_id": str(account.pathology_lab_id) if account.pathology_lab_id else None,
    }


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token."""
    to_encode = data.copy()
    now = int(time.time())
    if expires_delta:
        exp = now + int(expires_delta.total_seconds())
    else:
        exp = now + int(settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES) * 60
    to_encode.update({"exp": exp, "iat": now, "type": "access"})
    encoded_jwt = jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return encoded_jwt


def decode_token(token: str) -> dict:
    """Decode JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        raise _credentials_exception()

    now = int(time.time())
    try:
        exp_int = int(payload["exp"])
    except (KeyError, TypeError, ValueError):
        raise _credentials_exception()
    if now > exp_int + int(settings.JWT_LEEWAY_SECONDS):
        raise _credentials_exception("Token expired")

    iat = payload.get("iat")
    if iat is not None:
        try:
            iat_int = int(iat)
        except (TypeError, ValueError):
            raise _credentials_exception()
        # Reject tokens issued far in the future (clock skew / malicious tokens).
        if iat_int > now + int(settings.JWT_LEEWAY_SECONDS):
            raise _credentials_exception()
    return payload


def _parse_token_subject(payload: dict) -> UUID:
    """Parse and validate JWT subject as UUID."""
    sub = payload.get("sub")
    if not sub:
        raise _credentials_exception()
    try:
        return UUID(str(sub))
    except ValueError:
        raise _credentials_exception()


def get_current_account(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> Account:
    """Resolve the calling account from its Bearer token."""
    payload = decode_token(credentials.credentials)

    if payload.get("type") != "access":
        raise _credentials_exception("Invalid token type")

    account_id = _parse_token_subject(payload)
    account = db.query(Account).filter(Account.id == account_id, Account.is_active == True).first()
    if account is None:
        raise _credentials_exception("Account not found or inactive")
    return account
