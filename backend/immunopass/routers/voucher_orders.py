"""Voucher order upload endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from sqlalchemy.orm import Session

from ..auth import get_current_account
from ..config import settings
from ..database import get_db
from ..models import Account
from ..schemas import VoucherOrderResponse
from ..services.blob_store import BlobStore, get_blob_store
from ..use_cases.voucher_orders import create_voucher_order_use_case

router = APIRouter(prefix="/voucher-orders", tags=["voucher-orders"])

_CHUNK_SIZE = 1024 * 1024  # 1MB
_ALLOWED_EXTENSIONS = {"csv", "txt"}


def _validate_upload(file: UploadFile) -> None:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Filename is required")
    ext = file.filename.rsplit(".", 1)[-1].lower() if "." in file.filename else ""
    if ext not in _ALLOWED_EXTENSIONS:
        raise HTTPException(status_code=400, detail="Only CSV files are accepted")


def _read_upload(file: UploadFile) -> bytes:
    """Read UploadFile into memory with a hard size limit."""
    chunks: list[bytes] = []
    size = 0
    try:
        while True:
            chunk = file.file.read(_CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            if size > settings.MAX_UPLOAD_SIZE:
                raise HTTPException(
                    status_code=400,
                    detail=f"File too large. Max size: {settings.MAX_UPLOAD_SIZE} bytes",
                )
            chunks.append(chunk)
    finally:
        file.file.close()
    return b"".join(chunks)


@router.post("", response_model=VoucherOrderResponse, status_code=status.HTTP_201_CREATED)
def create_voucher_order(
    file: UploadFile = File(...),
    current_account: Account = Depends(get_current_account),
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Upload a beneficiary CSV and queue a voucher order for it."""
    _validate_upload(file)
    csv_bytes = _read_upload(file)
    order = create_voucher_order_use_case(
        db=db,
        account=current_account,
        csv_bytes=csv_bytes,
        blob_store=blob_store,
    )
    return VoucherOrderResponse.model_validate(order)
