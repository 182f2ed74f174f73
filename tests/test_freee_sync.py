from __future__ import annotations

import asyncio
import sqlite3
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from expensync.core import database as db_module
from expensync.core.auth import SessionUser
from expensync.integrations.freee_client import FreeeClient
from expensync.services.errors import (
    ExternalAPIError,
    InvalidStateError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from expensync.services.freee_sync import (
    FreeeSyncService,
    build_description,
    end_of_month,
    select_tax_name,
)
from expensync.services.request_lifecycle import (
    EnrichmentPatch,
    RequestLifecycleService,
    SubmitRequest,
    UploadedFile,
)
from expensync.services.storage import FileStorage

from freee_fakes import FakeFreee, connect, oauth_config


@pytest.fixture()
def db(tmp_path, monkeypatch):
    monkeypatch.setenv("EXPENSYNC_DB_PATH", str(tmp_path / "sync.db"))
    db_module._DB_INSTANCE = None
    db = db_module.get_db()
    db.initialize()
    return db


@pytest.fixture()
def fake():
    return FakeFreee()


@pytest.fixture()
def storage(tmp_path):
    return FileStorage(str(tmp_path / "uploads"))


@pytest.fixture()
def lifecycle(db, storage):
    return RequestLifecycleService(db=db, storage=storage)


@pytest.fixture()
def sync(db, fake, storage, lifecycle):
    client = FreeeClient(db=db, config=oauth_config(), storage=storage, transport=fake.transport())
    return FreeeSyncService(db=db, client=client, lifecycle=lifecycle)


@pytest.fixture()
def submitter(db):
    db.upsert_user({"id": "USR-alice", "name": "Alice", "email": "alice@example.com", "freee_partner_id": 321})
    return SessionUser(user_id="USR-alice", role="employee")


def _submit(lifecycle, user, uploads=(), **overrides):
    data = {
        "title": "SaaS subscription",
        "amount": 50000,
        "category": "sga",
        "cost_type": "running_monthly",
        "recording_month": "2024-06",
    }
    data.update(overrides)
    return lifecycle.submit(user, SubmitRequest.parse(data), uploads)


def _approve(lifecycle, request, **enrichment):
    enrichment.setdefault("account_item_id", 10)
    return lifecycle.apply_action(request["id"], "approve", EnrichmentPatch(**enrichment))


class TestHelpers:
    def test_end_of_month(self):
        assert end_of_month("2024-06") == "2024-06-30"
        assert end_of_month("2024-02") == "2024-02-29"
        assert end_of_month("2023-02") == "2023-02-28"

    def test_end_of_month_rejects_garbage(self):
        with pytest.raises(ValidationError):
            end_of_month("2024-13")

    @pytest.mark.parametrize(
        "billable,overseas,qualified,expected",
        [
            (True, False, True, "対象外"),
            (False, True, True, "対象外"),
            (False, False, True, "課対仕入10%"),
            (False, False, False, "課対仕入（控80）10%"),
        ],
    )
    def test_select_tax_name(self, billable, overseas, qualified, expected):
        assert select_tax_name(billable, overseas, qualified) == expected

    def test_description_combines_opted_in_description_and_memo(self):
        assert build_description({"description": "d", "sync_description": False, "admin_memo": None}) is None
        assert build_description({"description": "d", "sync_description": True, "admin_memo": "m"}) == "d\nm"


class TestPreconditions:
    def test_missing_request(self, sync):
        with pytest.raises(NotFoundError):
            asyncio.run(sync.synchronize("missing"))

    def test_status_is_checked_before_account_item(self, sync, lifecycle, submitter, db):
        connect(db)
        request = _submit(lifecycle, submitter)
        with pytest.raises(InvalidStateError) as exc_info:
            asyncio.run(sync.synchronize(request["id"]))
        assert "approved" in exc_info.value.message

    def test_account_item_required(self, sync, lifecycle, submitter, db):
        connect(db)
        request = _approve(lifecycle, _submit(lifecycle, submitter))
        db.update_cost_request(request["id"], account_item_id=None)
        with pytest.raises(ValidationError):
            asyncio.run(sync.synchronize(request["id"]))

    def test_not_connected(self, sync, lifecycle, submitter, fake):
        request = _approve(lifecycle, _submit(lifecycle, submitter))
        with pytest.raises(ServiceUnavailableError):
            asyncio.run(sync.synchronize(request["id"]))
        assert fake.requests == []


class TestSynchronize:
    def test_sga_running_cost_end_to_end(self, sync, lifecycle, submitter, db, fake):
        connect(db)
        request = _approve(lifecycle, _submit(lifecycle, submitter))

        result = asyncio.run(sync.synchronize(request["id"]))

        deal = fake.created_deals[0]
        assert deal["issue_date"] == "2024-06-30"
        assert deal["due_date"] == "2024-06-30"
        assert "partner_id" not in deal
        assert deal["details"][0]["account_item_id"] == 10
        assert deal["details"][0]["amount"] == 50000
        assert deal["details"][0]["tax_code"] == 189

        stored = db.get_cost_request(request["id"])
        assert stored["status"] == "synced_to_freee"
        assert stored["freee_deal_id"] == result["deal_id"]
        assert stored["freee_sync_error"] is None

    def test_expense_uses_usage_date_and_submitter_partner(self, sync, lifecycle, submitter, db, fake):
        connect(db)
        request = _submit(
            lifecycle, submitter,
            title="Taxi", amount=3300, category="expense", cost_type="onetime",
            usage_date="2024-03-15", recording_month=None,
        )
        _approve(lifecycle, request, is_qualified_invoice=True, due_date="2024-04-25")

        asyncio.run(sync.synchronize(request["id"]))

        deal = fake.created_deals[0]
        assert deal["issue_date"] == "2024-03-15"
        assert deal["due_date"] == "2024-04-25"
        assert deal["partner_id"] == 321
        assert deal["details"][0]["tax_code"] == 136
        assert db.get_cost_request(request["id"])["freee_partner_id"] == 321

    def test_billable_uses_billing_partner_and_excluded_tax(self, sync, lifecycle, submitter, db, fake):
        connect(db)
        request = _submit(lifecycle, submitter, category="sga_billable", billing_partner_id=777,
                          billing_partner_name="Client K.K.")
        _approve(lifecycle, request, is_qualified_invoice=True)

        asyncio.run(sync.synchronize(request["id"]))

        deal = fake.created_deals[0]
        assert deal["partner_id"] == 777
        assert deal["details"][0]["tax_code"] == 2

    def test_section_and_tags_are_resolved(self, sync, lifecycle, submitter, db, fake):
        connect(db)
        department = db.create_department("Sales")
        db.replace_cache_rows("section_cache", [{"freee_id": 55, "name": "Sales"}])
        db.replace_cache_rows("memo_tag_cache", [
            {"freee_id": 1, "name": "販管費振込確認用"},
            {"freee_id": 3, "name": "仮"},
        ])
        request = _submit(lifecycle, submitter, department_id=department["id"])
        _approve(lifecycle, request, memo_tag_names="仮, unknown-tag, 販管費振込確認用",
                 admin_memo="note")

        asyncio.run(sync.synchronize(request["id"]))

        detail = fake.created_deals[0]["details"][0]
        assert detail["section_id"] == 55
        assert detail["tag_ids"] == [3, 1]
        assert detail["description"] == "note"

    def test_failed_receipt_upload_is_skipped(self, sync, lifecycle, submitter, db, fake):
        connect(db)
        fake.failing_receipt_names = {"first.pdf"}
        request = _submit(lifecycle, submitter, uploads=[
            UploadedFile("first.pdf", b"%PDF-1", "application/pdf"),
            UploadedFile("second.pdf", b"%PDF-2", "application/pdf"),
        ])
        _approve(lifecycle, request)

        asyncio.run(sync.synchronize(request["id"]))

        receipt_ids = fake.created_deals[0]["details"][0]["receipt_ids"]
        assert len(receipt_ids) == 1
        attachments = {a["file_name"]: a for a in db.list_attachments(request["id"])}
        assert attachments["first.pdf"]["freee_receipt_id"] is None
        assert attachments["second.pdf"]["freee_receipt_id"] == receipt_ids[0]
        assert db.get_cost_request(request["id"])["status"] == "synced_to_freee"

    def test_receipt_id_write_failure_keeps_request_synced(self, sync, lifecycle, submitter, db, fake, monkeypatch):
        connect(db)
        request = _submit(lifecycle, submitter, uploads=[
            UploadedFile("invoice.pdf", b"%PDF-1", "application/pdf"),
        ])
        _approve(lifecycle, request)

        def locked(attachment_id, receipt_id):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(db, "set_attachment_receipt_id", locked)

        result = asyncio.run(sync.synchronize(request["id"]))

        stored = db.get_cost_request(request["id"])
        assert stored["status"] == "synced_to_freee"
        assert stored["freee_deal_id"] == result["deal_id"]
        assert stored["freee_sync_error"] is None
        assert len(fake.created_deals) == 1

    def test_deal_failure_is_recorded_and_status_stays_approved(self, sync, lifecycle, submitter, db, fake):
        connect(db)
        fake.deal_create_status = 400
        request = _approve(lifecycle, _submit(lifecycle, submitter))

        with pytest.raises(ExternalAPIError):
            asyncio.run(sync.synchronize(request["id"]))

        stored = db.get_cost_request(request["id"])
        assert stored["status"] == "approved"
        assert "400" in stored["freee_sync_error"]

    def test_retry_after_failure_clears_error(self, sync, lifecycle, submitter, db, fake):
        connect(db)
        fake.deal_create_status = 500
        request = _approve(lifecycle, _submit(lifecycle, submitter))
        with pytest.raises(ExternalAPIError):
            asyncio.run(sync.synchronize(request["id"]))

        fake.deal_create_status = None
        asyncio.run(sync.synchronize(request["id"]))

        stored = db.get_cost_request(request["id"])
        assert stored["status"] == "synced_to_freee"
        assert stored["freee_sync_error"] is None

    def test_missing_tax_code_is_recorded(self, sync, lifecycle, submitter, db, fake):
        connect(db)
        fake.tax_codes = []
        request = _approve(lifecycle, _submit(lifecycle, submitter))

        with pytest.raises(ValidationError):
            asyncio.run(sync.synchronize(request["id"]))

        stored = db.get_cost_request(request["id"])
        assert stored["status"] == "approved"
        assert "課対仕入（控80）10%" in stored["freee_sync_error"]
        assert fake.created_deals == []

    def test_synced_request_cannot_sync_again(self, sync, lifecycle, submitter, db, fake):
        connect(db)
        request = _approve(lifecycle, _submit(lifecycle, submitter))
        asyncio.run(sync.synchronize(request["id"]))

        with pytest.raises(InvalidStateError):
            asyncio.run(sync.synchronize(request["id"]))
        assert len(fake.created_deals) == 1
