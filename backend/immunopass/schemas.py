"""Pydantic schemas for API."""
from pydantic import BaseModel, Field, ConfigDict
from typing import Literal, Optional
from datetime import datetime
from uuid import UUID


# OTP schemas
class SendOtpRequest(BaseModel):
    identifier: str = Field(min_length=1, max_length=255)
    identifier_type: Literal["MOBILE", "EMAIL"]
    account_type: Literal["ORGANIZATION", "PATHOLOGY_LAB"]


class SendOtpResponse(BaseModel):
    """Issued OTP state; never carries the code itself."""
    identifier: str
    identifier_type: str
    status: str
    retry_count: int
    valid_till: datetime
    model_config = ConfigDict(from_attributes=True)


class VerifyOtpRequest(BaseModel):
    identifier: str = Field(min_length=1, max_length=255)
    otp: str = Field(min_length=1, max_length=12)


class VerifyOtpResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


# Voucher order schemas
class VoucherOrderResponse(BaseModel):
    id: UUID
    organization_id: UUID
    status: str
    voucher_count: int
    created_by: UUID
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)
