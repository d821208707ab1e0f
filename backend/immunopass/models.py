"""SQLAlchemy models for accounts, OTPs, organizations and voucher orders."""
from sqlalchemy import (
    Boolean, Column, String, Integer, DateTime,
    ForeignKey, CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid
from .database import Base


IDENTIFIER_TYPES = ("MOBILE", "EMAIL")
ACCOUNT_TYPES = ("ORGANIZATION", "PATHOLOGY_LAB")
OTP_STATUSES = ("UNVERIFIED", "VERIFIED", "INVALID")
ENTITY_STATUSES = ("ACTIVE", "INACTIVE", "DELETED")
ORDER_STATUSES = ("CREATED", "PROCESSING", "PROCESSED")
VOUCHER_STATUSES = ("ALLOTTED", "PROCESSED", "FAILED")


class Organization(Base):
    """Organization buying vouchers for its members."""
    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="ACTIVE", index=True)
    total_vouchers = Column(Integer, nullable=False, default=0)
    alloted_vouchers = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(status.in_(ENTITY_STATUSES), name='chk_organization_status'),
        CheckConstraint('alloted_vouchers >= 0', name='chk_organization_alloted_non_negative'),
        CheckConstraint('alloted_vouchers <= total_vouchers', name='chk_organization_quota'),
    )

    # Relationships
    accounts = relationship("Account", back_populates="organization")
    orders = relationship("VoucherOrder", back_populates="organization")


class Account(Base):
    """Login account identified by a mobile number or an email address."""
    __tablename__ = "accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    identifier = Column(String(255), nullable=False, index=True)
    identifier_type = Column(String(20), nullable=False)
    account_type = Column(String(20), nullable=False)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=True, index=True)
    pathology_lab_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('identifier', 'identifier_type', name='uq_account_identifier'),
        CheckConstraint(identifier_type.in_(IDENTIFIER_TYPES), name='chk_account_identifier_type'),
        CheckConstraint(account_type.in_(ACCOUNT_TYPES), name='chk_account_type'),
    )

    # Relationships
    organization = relationship("Organization", back_populates="accounts")


class OtpRecord(Base):
    """One issued OTP; the newest row per identifier is the live one."""
    __tablename__ = "otps"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    identifier = Column(String(255), nullable=False)
    identifier_type = Column(String(20), nullable=False)
    otp = Column(String(12), nullable=False)
    status = Column(String(20), nullable=False, default="UNVERIFIED")
    retry_count = Column(Integer, nullable=False, default=0)
    verification_attempts = Column(Integer, nullable=False, default=0)
    valid_till = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(status.in_(OTP_STATUSES), name='chk_otp_status'),
        Index('idx_otps_identifier_created', 'identifier', 'created_at'),
    )


class VoucherOrder(Base):
    """Batch of vouchers requested through one CSV upload."""
    __tablename__ = "voucher_orders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="CREATED", index=True)
    uploaded_file = Column(String(1024), nullable=False)
    voucher_count = Column(Integer, nullable=False)
    created_by = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(status.in_(ORDER_STATUSES), name='chk_voucher_order_status'),
        CheckConstraint('voucher_count > 0', name='chk_voucher_order_count_positive'),
    )

    # Relationships
    organization = relationship("Organization", back_populates="orders")
    vouchers = relationship("Voucher", back_populates="order")


class Voucher(Base):
    """Single beneficiary voucher delivered by SMS."""
    __tablename__ = "vouchers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    voucher_code = Column(String(16), unique=True, nullable=False, index=True)
    order_id = Column(UUID(as_uuid=True), ForeignKey("voucher_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    user_name = Column(String(40), nullable=False)
    user_mobile = Column(String(10), nullable=False)
    user_govt_id_type = Column(String(30), nullable=False)
    user_govt_id = Column(String(40), nullable=False)
    user_emp_id = Column(String(40), nullable=False)
    status = Column(String(20), nullable=False, default="ALLOTTED", index=True)
    issuer_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    retry_count = Column(Integer, nullable=False, default=0)
    last_failure_reason = Column(String(512), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(status.in_(VOUCHER_STATUSES), name='chk_voucher_status'),
    )

    # Relationships
    order = relationship("VoucherOrder", back_populates="vouchers")
