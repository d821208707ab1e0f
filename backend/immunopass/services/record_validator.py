"""Validation and normalization of beneficiary rows from voucher order CSVs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from ..domain_errors import DomainError


ID_CARD_TYPES: tuple[str, ...] = (
    "Aadhar",
    "PAN",
    "Passport",
    "DrivingLicense",
    "VoterID",
)

CSV_FIELD_COUNT = 5
MAX_FIELD_LENGTH = 40

NAME_INDEX = 0
MOBILE_INDEX = 1
ID_CARD_TYPE_INDEX = 2
ID_CARD_NUMBER_INDEX = 3
EMPLOYEE_ID_INDEX = 4

_NON_NAME_CHARS_RE = re.compile(r"[^a-zA-Z ]")
_NON_DIGIT_RE = re.compile(r"[^0-9]")


@dataclass(frozen=True)
class BeneficiaryRecord:
    name: str
    mobile: str
    id_card_type: str
    id_card_number: str
    employee_id: str

    def to_csv_line(self) -> str:
        return ",".join(
            (self.name, self.mobile, self.id_card_type, self.id_card_number, self.employee_id)
        )


def _invalid(code: str, message: str) -> DomainError:
    return DomainError(code=code, http_status=400, message=message)


def _require_bounded(value: str, *, code: str, message: str) -> str:
    value = value.strip()
    if not value or len(value) > MAX_FIELD_LENGTH:
        raise _invalid(code, message)
    return value


def parse_csv_record(record: str) -> BeneficiaryRecord:
    """Validate one data row and return its normalized fields."""
    fields = record.split(",")
    if len(fields) != CSV_FIELD_COUNT:
        raise _invalid(
            "CSV_INVALID_RECORD",
            f"Record must have exactly {CSV_FIELD_COUNT} comma-separated fields.",
        )

    name = _NON_NAME_CHARS_RE.sub("", fields[NAME_INDEX]).strip()
    if not name or len(name) > MAX_FIELD_LENGTH:
        raise _invalid("CSV_INVALID_NAME", "Name is invalid.")

    mobile = _NON_DIGIT_RE.sub("", fields[MOBILE_INDEX])
    if len(mobile) != 10:
        raise _invalid("CSV_INVALID_MOBILE", "Mobile phone number is invalid.")

    id_card_type = fields[ID_CARD_TYPE_INDEX].strip()
    if id_card_type not in ID_CARD_TYPES:
        raise _invalid("CSV_INVALID_ID_CARD_TYPE", "Invalid Id Card Type.")

    id_card_number = _require_bounded(
        fields[ID_CARD_NUMBER_INDEX],
        code="CSV_INVALID_ID_CARD_NUMBER",
        message="Invalid Id Card Number.",
    )
    employee_id = _require_bounded(
        fields[EMPLOYEE_ID_INDEX],
        code="CSV_INVALID_EMPLOYEE_ID",
        message="Invalid Employee Id.",
    )

    return BeneficiaryRecord(
        name=name,
        mobile=mobile,
        id_card_type=id_card_type,
        id_card_number=id_card_number,
        employee_id=employee_id,
    )


def validate_csv_record(record: str) -> str:
    """Normalize one data row, re-joined in fixed column order."""
    return parse_csv_record(record).to_csv_line()


def validate_csv_body(lines: Iterable[str]) -> list[str]:
    """Validate every data row after the header; the first bad row rejects the batch.

    Blank lines are ignored. The raised error carries the 1-based line number.
    """
    normalized: list[str] = []
    for line_number, line in enumerate(lines, start=1):
        if line_number == 1 or not line.strip():
            continue
        try:
            normalized.append(validate_csv_record(line))
        except DomainError as exc:
            raise DomainError(
                code=exc.code,
                http_status=exc.http_status,
                message=exc.message,
                details={"line": line_number},
            ) from None
    return normalized
