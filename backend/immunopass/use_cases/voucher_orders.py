"""Voucher order intake, materialization and SMS dispatch use-cases."""
from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from ..config import settings
from ..domain_errors import DomainError
from ..models import Account, Organization, Voucher, VoucherOrder
from ..services.blob_store import BlobStore, BlobStoreError
from ..services.record_validator import parse_csv_record, validate_csv_body
from ..services.sms_gateway import SmsSender

logger = logging.getLogger(__name__)

VOUCHER_CODE_LENGTH = 8
VOUCHER_CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_VOUCHER_CODE_ATTEMPTS = 10
DEFAULT_FAILURE_REASON = "Failed to send sms"


@dataclass
class DispatchSummary:
    orders: int = 0
    delivered: int = 0
    failed: int = 0
    completed_orders: int = 0


def generate_voucher_code() -> str:
    return "".join(secrets.choice(VOUCHER_CODE_ALPHABET) for _ in range(VOUCHER_CODE_LENGTH))


def create_voucher_order_use_case(
    *,
    db: Session,
    account: Account,
    csv_bytes: bytes,
    blob_store: BlobStore,
) -> VoucherOrder:
    """Validate an uploaded beneficiary CSV and reserve organization quota for it.

    Vouchers themselves are created later by the materialization job.
    """
    if account.organization_id is None:
        raise DomainError(
            code="ACCOUNT_NOT_LINKED",
            http_status=403,
            message="User account isn't linked to any organization.",
        )

    # Row lock keeps concurrent uploads from overcommitting the same quota.
    organization = db.query(Organization).filter(
        Organization.id == account.organization_id,
    ).with_for_update().first()
    if not organization or organization.status != "ACTIVE":
        raise DomainError(
            code="ORGANIZATION_INACTIVE",
            http_status=403,
            message="User account isn't linked to any active organization.",
        )

    try:
        text = csv_bytes.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise DomainError(
            code="CSV_UNREADABLE",
            http_status=400,
            message="Error reading the file: expected UTF-8 encoded CSV.",
        ) from None

    records = validate_csv_body(text.splitlines())
    if not records:
        raise DomainError(
            code="VOUCHER_ORDER_EMPTY",
            http_status=400,
            message="The CSV file does not contain any records.",
        )

    available = organization.total_vouchers - organization.alloted_vouchers
    if len(records) > available:
        raise DomainError(
            code="VOUCHER_QUOTA_EXCEEDED",
            http_status=400,
            message=(
                "The number of records present in the CSV file is greater than "
                "the available vouchers to the organization."
            ),
            details={"requested": len(records), "available": available},
        )

    key = f"voucher_order_{uuid4()}.csv"
    try:
        reference = blob_store.put("\n".join(records).encode("utf-8"), "text/csv", key)
    except Exception as exc:
        logger.exception("Failed to upload voucher order file %s", key)
        raise DomainError(
            code="VOUCHER_ORDER_UPLOAD_FAILED",
            http_status=500,
            message="Error uploading the file to the server.",
        ) from exc

    order = VoucherOrder(
        id=uuid4(),
        organization_id=organization.id,
        status="CREATED",
        uploaded_file=reference,
        voucher_count=len(records),
        created_by=account.id,
    )
    organization.alloted_vouchers += len(records)
    db.add(order)
    db.commit()

    logger.info(
        "Voucher order %s created for organization %s with %s vouchers",
        order.id,
        organization.id,
        len(records),
    )
    return order


def _order_ids_with_status(db: Session, status: str) -> list[UUID]:
    orders = (
        db.query(VoucherOrder)
        .filter(VoucherOrder.status == status)
        .order_by(VoucherOrder.created_at.asc())
        .all()
    )
    return [order.id for order in orders]


def _claim_order(db: Session, order_id: UUID, status: str) -> VoucherOrder | None:
    # SKIP LOCKED: an order held by another worker is left for the next pass.
    return (
        db.query(VoucherOrder)
        .filter(VoucherOrder.id == order_id, VoucherOrder.status == status)
        .with_for_update(skip_locked=True)
        .first()
    )


def _unique_voucher_code(
    db: Session,
    *,
    reserved: set[str],
    generate_code: Callable[[], str],
) -> str:
    for _ in range(MAX_VOUCHER_CODE_ATTEMPTS):
        code = generate_code()
        if code in reserved:
            continue
        if db.query(Voucher).filter(Voucher.voucher_code == code).first():
            continue
        reserved.add(code)
        return code
    raise RuntimeError(f"Could not generate a unique voucher code in {MAX_VOUCHER_CODE_ATTEMPTS} attempts")


def materialize_voucher_orders_use_case(
    *,
    db: Session,
    blob_store: BlobStore,
    generate_code: Callable[[], str] = generate_voucher_code,
) -> int:
    """Turn every CREATED order into ALLOTTED vouchers and move it to PROCESSING.

    Each order commits atomically, so an interrupted run resumes on the next
    pass without duplicating vouchers. Returns the number of orders handled.
    """
    materialized = 0
    for order_id in _order_ids_with_status(db, "CREATED"):
        order = _claim_order(db, order_id, "CREATED")
        if order is None:
            continue

        try:
            voucher_count = _materialize_order(db, order, blob_store=blob_store, generate_code=generate_code)
        except (BlobStoreError, DomainError) as exc:
            db.rollback()
            logger.error("Cannot materialize voucher order %s: %s", order_id, exc)
            continue
        except Exception:
            db.rollback()
            logger.exception("Unexpected error materializing voucher order %s", order_id)
            continue

        materialized += 1
        logger.info("Materialized %s vouchers for order %s", voucher_count, order_id)

    return materialized


def _materialize_order(
    db: Session,
    order: VoucherOrder,
    *,
    blob_store: BlobStore,
    generate_code: Callable[[], str],
) -> int:
    lines = blob_store.get_lines(order.uploaded_file)
    records = [parse_csv_record(line) for line in lines if line.strip()]

    reserved: set[str] = set()
    for record in records:
        db.add(
            Voucher(
                voucher_code=_unique_voucher_code(db, reserved=reserved, generate_code=generate_code),
                order_id=order.id,
                user_name=record.name,
                user_mobile=record.mobile,
                user_govt_id_type=record.id_card_type,
                user_govt_id=record.id_card_number,
                user_emp_id=record.employee_id,
                status="ALLOTTED",
                issuer_id=order.created_by,
                retry_count=0,
            )
        )
    order.status = "PROCESSING"
    db.commit()
    return len(records)


def _deliver_voucher(sms_gateway: SmsSender, voucher: Voucher) -> tuple[bool, str | None]:
    try:
        if sms_gateway.send_voucher(voucher.user_name, voucher.user_mobile, voucher.voucher_code):
            return True, None
        return False, DEFAULT_FAILURE_REASON
    except Exception as exc:
        logger.warning("SMS gateway raised for voucher %s: %s", voucher.id, exc, exc_info=True)
        return False, str(exc) or type(exc).__name__


def dispatch_voucher_orders_use_case(
    *,
    db: Session,
    sms_gateway: SmsSender,
    max_delivery_attempts: int | None = None,
) -> DispatchSummary:
    """Deliver every still-ALLOTTED voucher of PROCESSING orders by SMS.

    Failures are recorded on the voucher and retried by the next pass. With a
    positive attempt ceiling a voucher that reaches it becomes FAILED. An order
    is PROCESSED once none of its vouchers is ALLOTTED. Each voucher is
    claimed with SKIP LOCKED and its outcome committed before the next send.
    """
    ceiling = settings.VOUCHER_MAX_DELIVERY_ATTEMPTS if max_delivery_attempts is None else max_delivery_attempts
    summary = DispatchSummary()

    for order_id in _order_ids_with_status(db, "PROCESSING"):
        order = _claim_order(db, order_id, "PROCESSING")
        if order is None:
            continue
        summary.orders += 1

        voucher_ids = [
            voucher.id
            for voucher in db.query(Voucher)
            .filter(Voucher.order_id == order_id, Voucher.status == "ALLOTTED")
            .order_by(Voucher.created_at.asc())
            .all()
        ]
        for voucher_id in voucher_ids:
            voucher = _claim_voucher(db, voucher_id)
            if voucher is None:
                continue

            delivered, reason = _deliver_voucher(sms_gateway, voucher)
            if delivered:
                voucher.status = "PROCESSED"
                summary.delivered += 1
            else:
                voucher.retry_count += 1
                voucher.last_failure_reason = (reason or DEFAULT_FAILURE_REASON)[:512]
                summary.failed += 1
                if ceiling > 0 and voucher.retry_count >= ceiling:
                    voucher.status = "FAILED"
                    logger.error(
                        "Voucher %s failed after %s delivery attempts: %s",
                        voucher.id,
                        voucher.retry_count,
                        voucher.last_failure_reason,
                    )
            # Each outcome is durable before the next SMS goes out.
            db.commit()

        if _complete_order(db, order_id):
            summary.completed_orders += 1
            logger.info("Voucher order %s processed", order_id)

    return summary


def _claim_voucher(db: Session, voucher_id: UUID) -> Voucher | None:
    # Re-read under lock: another worker may have delivered it since the listing.
    return (
        db.query(Voucher)
        .filter(Voucher.id == voucher_id, Voucher.status == "ALLOTTED")
        .with_for_update(skip_locked=True)
        .first()
    )


def _complete_order(db: Session, order_id: UUID) -> bool:
    order = _claim_order(db, order_id, "PROCESSING")
    if order is None:
        return False
    pending = (
        db.query(Voucher)
        .filter(Voucher.order_id == order_id, Voucher.status == "ALLOTTED")
        .first()
    )
    if pending is not None:
        db.commit()
        return False
    order.status = "PROCESSED"
    db.commit()
    return True
