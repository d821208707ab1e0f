from __future__ import annotations

from types import SimpleNamespace
from uuid import uuid4

import pytest

from immunopass.domain_errors import DomainError
from immunopass.models import Organization, Voucher, VoucherOrder
from immunopass.services.blob_store import BlobStoreError
from immunopass.use_cases.voucher_orders import (
    create_voucher_order_use_case,
    dispatch_voucher_orders_use_case,
    generate_voucher_code,
    materialize_voucher_orders_use_case,
)

HEADER = "name,mobile,id_card_type,id_card_number,employee_id"


class _QueryStub:
    """Evaluates `column == value` filters against the session's rows."""

    def __init__(self, db, model):
        self._db = db
        self._model = model
        self._criteria: dict[str, object] = {}
        self._lock: dict | None = None

    def filter(self, *criteria):
        for criterion in criteria:
            self._criteria[criterion.left.key] = criterion.right.value
        return self

    def order_by(self, *_args):
        return self

    def with_for_update(self, **kwargs):
        self._lock = kwargs
        self._db.lock_calls.append((self._model, kwargs))
        return self

    def _rows(self):
        rows = [
            row
            for row in self._db.rows[self._model]
            if all(getattr(row, key) == value for key, value in self._criteria.items())
        ]
        if self._lock and self._lock.get("skip_locked"):
            rows = [row for row in rows if row.id not in self._db.locked_ids]
        return rows

    def all(self):
        return self._rows()

    def first(self):
        rows = self._rows()
        return rows[0] if rows else None


class _SessionStub:
    def __init__(self, *, organizations=(), orders=(), vouchers=(), locked_ids=()):
        self.rows = {
            Organization: list(organizations),
            VoucherOrder: list(orders),
            Voucher: list(vouchers),
        }
        self.locked_ids = set(locked_ids)
        self.added = []
        self.lock_calls = []
        self.commit_calls = 0
        self.rollback_calls = 0

    def query(self, model):
        if model not in self.rows:
            raise AssertionError(f"Unexpected query model: {model}")
        return _QueryStub(self, model)

    def add(self, obj):
        self.added.append(obj)
        self.rows[type(obj)].append(obj)

    def commit(self):
        self.commit_calls += 1

    def rollback(self):
        self.rollback_calls += 1


class _BlobStoreStub:
    def __init__(self, *, fail_put=False, missing=()):
        self.objects: dict[str, bytes] = {}
        self._fail_put = fail_put
        self._missing = set(missing)

    def put(self, data, content_type, key):
        if self._fail_put:
            raise BlobStoreError("bucket unavailable")
        assert content_type == "text/csv"
        reference = f"mem://{key}"
        self.objects[reference] = data
        return reference

    def get_lines(self, reference):
        if reference in self._missing:
            raise BlobStoreError(f"missing {reference}")
        return self.objects[reference].decode("utf-8").splitlines()


class _SmsStub:
    def __init__(self, outcomes=None):
        self._outcomes = outcomes or {}
        self.sent = []

    def send_voucher(self, name, mobile, voucher_code):
        self.sent.append((name, mobile, voucher_code))
        outcome = self._outcomes.get(mobile, True)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _organization(*, status="ACTIVE", total=10, alloted=0):
    return SimpleNamespace(id=uuid4(), status=status, total_vouchers=total, alloted_vouchers=alloted)


def _account(organization_id):
    return SimpleNamespace(id=uuid4(), organization_id=organization_id)


def _csv(*rows: str) -> bytes:
    return "\n".join([HEADER, *rows]).encode("utf-8")


def _order(*, status, uploaded_file="mem://order.csv", created_by=None):
    return VoucherOrder(
        id=uuid4(),
        organization_id=uuid4(),
        status=status,
        uploaded_file=uploaded_file,
        voucher_count=1,
        created_by=created_by or uuid4(),
    )


def _voucher(order, *, mobile, status="ALLOTTED", retry_count=0, code=None):
    return Voucher(
        id=uuid4(),
        voucher_code=code or generate_voucher_code(),
        order_id=order.id,
        user_name="Beneficiary",
        user_mobile=mobile,
        user_govt_id_type="PAN",
        user_govt_id="ID1",
        user_emp_id="EMP1",
        status=status,
        issuer_id=order.created_by,
        retry_count=retry_count,
    )


# Intake


def test_create_order_requires_organization_link() -> None:
    db = _SessionStub()

    with pytest.raises(DomainError, match="isn't linked to any organization") as exc:
        create_voucher_order_use_case(
            db=db,
            account=_account(None),
            csv_bytes=_csv("John,9876543210,PAN,ID1,EMP1"),
            blob_store=_BlobStoreStub(),
        )

    assert exc.value.code == "ACCOUNT_NOT_LINKED"
    assert exc.value.http_status == 403


@pytest.mark.parametrize("status", ["INACTIVE", "DELETED", None])
def test_create_order_requires_active_organization(status) -> None:
    organization = _organization(status=status or "ACTIVE")
    organizations = [organization] if status else []
    db = _SessionStub(organizations=organizations)

    with pytest.raises(DomainError) as exc:
        create_voucher_order_use_case(
            db=db,
            account=_account(organization.id),
            csv_bytes=_csv("John,9876543210,PAN,ID1,EMP1"),
            blob_store=_BlobStoreStub(),
        )

    assert exc.value.code == "ORGANIZATION_INACTIVE"
    assert exc.value.http_status == 403


def test_create_order_stores_normalized_body_and_reserves_quota() -> None:
    organization = _organization(total=10, alloted=3)
    account = _account(organization.id)
    db = _SessionStub(organizations=[organization])
    blob_store = _BlobStoreStub()

    order = create_voucher_order_use_case(
        db=db,
        account=account,
        csv_bytes=_csv("John123,98765-43210, Aadhar ,ID987,EMP1", "Asha Rao,9123456789,PAN,ABCDE1234F,EMP2", ""),
        blob_store=blob_store,
    )

    assert order.status == "CREATED"
    assert order.voucher_count == 2
    assert order.created_by == account.id
    assert order.organization_id == organization.id
    assert organization.alloted_vouchers == 5
    assert db.added == [order]
    assert db.commit_calls == 1
    assert (Organization, {}) in db.lock_calls
    assert blob_store.objects[order.uploaded_file] == (
        b"John,9876543210,Aadhar,ID987,EMP1\nAsha Rao,9123456789,PAN,ABCDE1234F,EMP2"
    )
    assert order.uploaded_file.startswith("mem://voucher_order_")
    # Vouchers are only created by the materialization job.
    assert db.rows[Voucher] == []


def test_create_order_over_quota_is_rejected_without_partial_allocation() -> None:
    organization = _organization(total=10, alloted=9)
    db = _SessionStub(organizations=[organization])
    blob_store = _BlobStoreStub()

    with pytest.raises(DomainError, match="greater than the available vouchers") as exc:
        create_voucher_order_use_case(
            db=db,
            account=_account(organization.id),
            csv_bytes=_csv("John,9876543210,PAN,ID1,EMP1", "Jane,9876543211,PAN,ID2,EMP2"),
            blob_store=blob_store,
        )

    assert exc.value.code == "VOUCHER_QUOTA_EXCEEDED"
    assert exc.value.details == {"requested": 2, "available": 1}
    assert organization.alloted_vouchers == 9
    assert blob_store.objects == {}
    assert db.added == []
    assert db.commit_calls == 0


def test_sequence_of_orders_never_exceeds_total_vouchers() -> None:
    organization = _organization(total=5, alloted=0)
    account = _account(organization.id)
    db = _SessionStub(organizations=[organization])
    two_rows = _csv("John,9876543210,PAN,ID1,EMP1", "Jane,9876543211,PAN,ID2,EMP2")

    accepted = 0
    rejected = 0
    for _ in range(4):
        try:
            create_voucher_order_use_case(db=db, account=account, csv_bytes=two_rows, blob_store=_BlobStoreStub())
            accepted += 1
        except DomainError as exc:
            assert exc.code == "VOUCHER_QUOTA_EXCEEDED"
            rejected += 1
        assert organization.alloted_vouchers <= organization.total_vouchers

    assert accepted == 2
    assert rejected == 2
    assert organization.alloted_vouchers == 4

    create_voucher_order_use_case(
        db=db,
        account=account,
        csv_bytes=_csv("Last,9876543212,PAN,ID3,EMP3"),
        blob_store=_BlobStoreStub(),
    )
    assert organization.alloted_vouchers == organization.total_vouchers


def test_create_order_propagates_first_invalid_row_error() -> None:
    organization = _organization()
    db = _SessionStub(organizations=[organization])
    blob_store = _BlobStoreStub()

    with pytest.raises(DomainError) as exc:
        create_voucher_order_use_case(
            db=db,
            account=_account(organization.id),
            csv_bytes=_csv("John,9876543210,PAN,ID1,EMP1", "Jane,98765,PAN,ID2,EMP2", "Bad,1,XX,,"),
            blob_store=blob_store,
        )

    assert exc.value.code == "CSV_INVALID_MOBILE"
    assert exc.value.details == {"line": 3}
    assert organization.alloted_vouchers == 0
    assert blob_store.objects == {}


def test_create_order_upload_failure_keeps_quota_untouched() -> None:
    organization = _organization()
    db = _SessionStub(organizations=[organization])

    with pytest.raises(DomainError, match="Error uploading the file to the server.") as exc:
        create_voucher_order_use_case(
            db=db,
            account=_account(organization.id),
            csv_bytes=_csv("John,9876543210,PAN,ID1,EMP1"),
            blob_store=_BlobStoreStub(fail_put=True),
        )

    assert exc.value.code == "VOUCHER_ORDER_UPLOAD_FAILED"
    assert exc.value.http_status == 500
    assert organization.alloted_vouchers == 0
    assert db.commit_calls == 0


@pytest.mark.parametrize(
    ("csv_bytes", "code"),
    [
        (b"\xff\xfe\x00name", "CSV_UNREADABLE"),
        (f"{HEADER}\n\n".encode("utf-8"), "VOUCHER_ORDER_EMPTY"),
        (b"", "VOUCHER_ORDER_EMPTY"),
    ],
)
def test_create_order_rejects_unusable_files(csv_bytes, code) -> None:
    organization = _organization()
    db = _SessionStub(organizations=[organization])

    with pytest.raises(DomainError) as exc:
        create_voucher_order_use_case(
            db=db,
            account=_account(organization.id),
            csv_bytes=csv_bytes,
            blob_store=_BlobStoreStub(),
        )

    assert exc.value.code == code
    assert exc.value.http_status == 400


# Materialization


def test_materialize_without_created_orders_is_noop() -> None:
    processing = _order(status="PROCESSING")
    db = _SessionStub(orders=[processing])

    assert materialize_voucher_orders_use_case(db=db, blob_store=_BlobStoreStub()) == 0
    assert db.added == []
    assert db.commit_calls == 0
    assert processing.status == "PROCESSING"


def test_materialize_creates_allotted_vouchers_and_moves_order_to_processing() -> None:
    blob_store = _BlobStoreStub()
    reference = blob_store.put(
        b"John,9876543210,Aadhar,ID987,EMP1\nAsha Rao,9123456789,PAN,ABCDE1234F,EMP2\n",
        "text/csv",
        "voucher_order_x.csv",
    )
    order = _order(status="CREATED", uploaded_file=reference)
    db = _SessionStub(orders=[order])

    assert materialize_voucher_orders_use_case(db=db, blob_store=blob_store) == 1

    vouchers = db.rows[Voucher]
    assert len(vouchers) == 2
    assert order.status == "PROCESSING"
    assert db.commit_calls == 1
    assert (VoucherOrder, {"skip_locked": True}) in db.lock_calls

    first = vouchers[0]
    assert (first.user_name, first.user_mobile, first.user_govt_id_type, first.user_govt_id, first.user_emp_id) == (
        "John",
        "9876543210",
        "Aadhar",
        "ID987",
        "EMP1",
    )
    for voucher in vouchers:
        assert voucher.status == "ALLOTTED"
        assert voucher.retry_count == 0
        assert voucher.order_id == order.id
        assert voucher.issuer_id == order.created_by
        assert len(voucher.voucher_code) == 8
        assert voucher.voucher_code.isalnum()
    assert len({voucher.voucher_code for voucher in vouchers}) == 2

    # Second pass finds nothing left to do.
    assert materialize_voucher_orders_use_case(db=db, blob_store=blob_store) == 0
    assert len(db.rows[Voucher]) == 2


def test_materialize_regenerates_codes_that_already_exist() -> None:
    blob_store = _BlobStoreStub()
    reference = blob_store.put(
        b"John,9876543210,PAN,ID1,EMP1\nJane,9876543211,PAN,ID2,EMP2",
        "text/csv",
        "voucher_order_y.csv",
    )
    previous_order = _order(status="PROCESSED")
    taken = _voucher(previous_order, mobile="9000000000", code="TAKEN001")
    order = _order(status="CREATED", uploaded_file=reference)
    db = _SessionStub(orders=[order], vouchers=[taken])
    codes = iter(["TAKEN001", "FRESH001", "FRESH001", "FRESH002"])

    materialize_voucher_orders_use_case(db=db, blob_store=blob_store, generate_code=lambda: next(codes))

    new_codes = [voucher.voucher_code for voucher in db.added]
    assert new_codes == ["FRESH001", "FRESH002"]


def test_materialize_isolates_order_without_unique_code_and_continues() -> None:
    blob_store = _BlobStoreStub()
    stuck_ref = blob_store.put(b"John,9876543210,PAN,ID1,EMP1", "text/csv", "voucher_order_z.csv")
    healthy_ref = blob_store.put(b"Jane,9876543211,PAN,ID2,EMP2", "text/csv", "voucher_order_h.csv")
    stuck = _order(status="CREATED", uploaded_file=stuck_ref)
    healthy = _order(status="CREATED", uploaded_file=healthy_ref)
    taken = _voucher(_order(status="PROCESSED"), mobile="9000000000", code="SAMECODE")
    db = _SessionStub(orders=[stuck, healthy], vouchers=[taken])
    codes = iter(["SAMECODE"] * 10 + ["FRESH001"])

    assert materialize_voucher_orders_use_case(db=db, blob_store=blob_store, generate_code=lambda: next(codes)) == 1

    assert stuck.status == "CREATED"
    assert healthy.status == "PROCESSING"
    assert db.rollback_calls == 1
    assert db.commit_calls == 1
    assert [voucher.voucher_code for voucher in db.rows[Voucher] if voucher.order_id == healthy.id] == ["FRESH001"]


class _UndecodableBlobStore(_BlobStoreStub):
    def get_lines(self, reference):
        return b"\xff\xfe".decode("utf-8").splitlines()


def test_materialize_isolates_undecodable_stored_file() -> None:
    blob_store = _UndecodableBlobStore()
    order = _order(status="CREATED", uploaded_file="mem://garbled.csv")
    db = _SessionStub(orders=[order])

    assert materialize_voucher_orders_use_case(db=db, blob_store=blob_store) == 0

    assert order.status == "CREATED"
    assert db.rollback_calls == 1
    assert db.added == []


def test_materialize_isolates_unreadable_order_and_continues() -> None:
    blob_store = _BlobStoreStub(missing={"mem://gone.csv"})
    reference = blob_store.put(b"John,9876543210,PAN,ID1,EMP1", "text/csv", "voucher_order_ok.csv")
    broken = _order(status="CREATED", uploaded_file="mem://gone.csv")
    healthy = _order(status="CREATED", uploaded_file=reference)
    db = _SessionStub(orders=[broken, healthy])

    assert materialize_voucher_orders_use_case(db=db, blob_store=blob_store) == 1

    assert broken.status == "CREATED"
    assert healthy.status == "PROCESSING"
    assert db.rollback_calls == 1
    assert [voucher.order_id for voucher in db.added] == [healthy.id]


def test_materialize_skips_orders_locked_by_another_worker() -> None:
    blob_store = _BlobStoreStub()
    reference = blob_store.put(b"John,9876543210,PAN,ID1,EMP1", "text/csv", "voucher_order_l.csv")
    order = _order(status="CREATED", uploaded_file=reference)
    db = _SessionStub(orders=[order], locked_ids={order.id})

    assert materialize_voucher_orders_use_case(db=db, blob_store=blob_store) == 0
    assert order.status == "CREATED"
    assert db.added == []


# Dispatch


def test_dispatch_retries_only_failed_voucher_and_completes_order_on_second_pass() -> None:
    order = _order(status="PROCESSING")
    vouchers = [
        _voucher(order, mobile="9000000001"),
        _voucher(order, mobile="9000000002"),
        _voucher(order, mobile="9000000003"),
    ]
    db = _SessionStub(orders=[order], vouchers=vouchers)

    first_pass = dispatch_voucher_orders_use_case(
        db=db,
        sms_gateway=_SmsStub({"9000000002": False}),
        max_delivery_attempts=5,
    )

    assert [voucher.status for voucher in vouchers] == ["PROCESSED", "ALLOTTED", "PROCESSED"]
    assert vouchers[1].retry_count == 1
    assert vouchers[1].last_failure_reason == "Failed to send sms"
    assert order.status == "PROCESSING"
    assert (first_pass.orders, first_pass.delivered, first_pass.failed, first_pass.completed_orders) == (1, 2, 1, 0)

    sms = _SmsStub()
    second_pass = dispatch_voucher_orders_use_case(db=db, sms_gateway=sms, max_delivery_attempts=5)

    assert sms.sent == [("Beneficiary", "9000000002", vouchers[1].voucher_code)]
    assert vouchers[1].status == "PROCESSED"
    assert vouchers[1].retry_count == 1
    assert order.status == "PROCESSED"
    assert second_pass.completed_orders == 1
    assert db.commit_calls == 6


def test_dispatch_records_gateway_exception_and_keeps_sweeping() -> None:
    order = _order(status="PROCESSING")
    vouchers = [_voucher(order, mobile="9000000001"), _voucher(order, mobile="9000000002")]
    db = _SessionStub(orders=[order], vouchers=vouchers)
    sms = _SmsStub({"9000000001": TimeoutError("read timed out")})

    summary = dispatch_voucher_orders_use_case(db=db, sms_gateway=sms, max_delivery_attempts=5)

    assert len(sms.sent) == 2
    assert vouchers[0].status == "ALLOTTED"
    assert vouchers[0].retry_count == 1
    assert vouchers[0].last_failure_reason == "read timed out"
    assert vouchers[1].status == "PROCESSED"
    assert summary.failed == 1
    assert order.status == "PROCESSING"


def test_dispatch_marks_voucher_failed_at_ceiling_and_completes_order() -> None:
    order = _order(status="PROCESSING")
    stuck = _voucher(order, mobile="9000000001", retry_count=2)
    done = _voucher(order, mobile="9000000002", status="PROCESSED")
    db = _SessionStub(orders=[order], vouchers=[stuck, done])
    sms = _SmsStub({"9000000001": False})

    summary = dispatch_voucher_orders_use_case(db=db, sms_gateway=sms, max_delivery_attempts=3)

    assert sms.sent == [("Beneficiary", "9000000001", stuck.voucher_code)]
    assert stuck.status == "FAILED"
    assert stuck.retry_count == 3
    assert order.status == "PROCESSED"
    assert summary.completed_orders == 1


def test_dispatch_without_ceiling_keeps_retrying_forever() -> None:
    order = _order(status="PROCESSING")
    stuck = _voucher(order, mobile="9000000001", retry_count=50)
    db = _SessionStub(orders=[order], vouchers=[stuck])

    dispatch_voucher_orders_use_case(
        db=db,
        sms_gateway=_SmsStub({"9000000001": False}),
        max_delivery_attempts=0,
    )

    assert stuck.status == "ALLOTTED"
    assert stuck.retry_count == 51
    assert order.status == "PROCESSING"


def test_dispatch_ignores_orders_in_other_states() -> None:
    created = _order(status="CREATED")
    processed = _order(status="PROCESSED")
    vouchers = [_voucher(created, mobile="9000000001"), _voucher(processed, mobile="9000000002")]
    db = _SessionStub(orders=[created, processed], vouchers=vouchers)
    sms = _SmsStub()

    summary = dispatch_voucher_orders_use_case(db=db, sms_gateway=sms, max_delivery_attempts=5)

    assert sms.sent == []
    assert summary.orders == 0
    assert db.commit_calls == 0


def test_dispatch_commits_each_voucher_before_sending_the_next() -> None:
    order = _order(status="PROCESSING")
    vouchers = [_voucher(order, mobile="9000000001"), _voucher(order, mobile="9000000002")]
    db = _SessionStub(orders=[order], vouchers=vouchers)
    commits_at_send = []

    class _RecordingSms(_SmsStub):
        def send_voucher(self, name, mobile, voucher_code):
            commits_at_send.append(db.commit_calls)
            return super().send_voucher(name, mobile, voucher_code)

    dispatch_voucher_orders_use_case(db=db, sms_gateway=_RecordingSms(), max_delivery_attempts=5)

    assert commits_at_send == [0, 1]
    assert order.status == "PROCESSED"


def test_dispatch_skips_voucher_locked_by_another_worker() -> None:
    order = _order(status="PROCESSING")
    busy = _voucher(order, mobile="9000000001")
    free = _voucher(order, mobile="9000000002")
    db = _SessionStub(orders=[order], vouchers=[busy, free], locked_ids={busy.id})
    sms = _SmsStub()

    summary = dispatch_voucher_orders_use_case(db=db, sms_gateway=sms, max_delivery_attempts=5)

    assert sms.sent == [("Beneficiary", "9000000002", free.voucher_code)]
    assert busy.status == "ALLOTTED"
    assert order.status == "PROCESSING"
    assert summary.delivered == 1
    assert summary.completed_orders == 0
