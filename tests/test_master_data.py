from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from expensync.core import database as db_module
from expensync.integrations.freee_client import FreeeClient
from expensync.services.errors import ServiceUnavailableError
from expensync.services.ledger_pull import LedgerPullService, deal_to_ledger_rows
from expensync.services.master_data import (
    REQUIRED_MEMO_TAGS,
    MasterDataService,
    split_tag_names,
)
from expensync.services.storage import FileStorage

from freee_fakes import FakeFreee, connect, oauth_config


@pytest.fixture()
def db(tmp_path, monkeypatch):
    monkeypatch.setenv("EXPENSYNC_DB_PATH", str(tmp_path / "master.db"))
    db_module._DB_INSTANCE = None
    db = db_module.get_db()
    db.initialize()
    return db


@pytest.fixture()
def fake():
    fake = FakeFreee()
    fake.account_items = [
        {"id": 10, "name": "通信費", "shortcut1": "TSUSHIN", "account_category": "経費"},
        {"id": 11, "name": "旅費交通費", "shortcut1": "RYOHI", "account_category": "経費"},
    ]
    fake.partners = [{"id": 1, "name": "Acme Corp"}, {"id": 2, "name": "Acme Labs"}, {"id": 3, "name": "Globex"}]
    fake.tags = [{"id": 7, "name": "給与振込確認用"}]
    fake.sections = [{"id": 55, "name": "Sales"}]
    return fake


@pytest.fixture()
def client(db, fake, tmp_path):
    return FreeeClient(
        db=db,
        config=oauth_config(),
        storage=FileStorage(str(tmp_path / "uploads")),
        transport=fake.transport(),
    )


@pytest.fixture()
def service(db, client):
    return MasterDataService(db=db, client=client)


def test_split_tag_names():
    assert split_tag_names(" a, b,,c ") == ["a", "b", "c"]
    assert split_tag_names(None) == []


class TestMasterSync:
    def test_sync_fills_every_cache(self, db, fake, service):
        connect(db)

        counts = asyncio.run(service.sync_master_data())

        assert counts == {"account_items": 2, "partners": 3, "memo_tags": 3, "sections": 1}
        assert service.master_counts() == counts
        assert db.get_freee_config()["last_sync_at"]

    def test_missing_required_tags_are_created(self, db, fake, service):
        connect(db)

        asyncio.run(service.sync_master_data())

        created = [r for r in fake.requests_to("/api/1/tags", "POST")]
        assert len(created) == 2
        assert {tag["name"] for tag in service.list_memo_tags()} == set(REQUIRED_MEMO_TAGS)

    def test_required_tags_created_when_freee_has_none(self, db, fake, service):
        connect(db)
        fake.tags = []

        counts = asyncio.run(service.sync_master_data())

        assert counts["memo_tags"] == 3
        assert len(fake.requests_to("/api/1/tags", "POST")) == 3

    def test_empty_account_items_keep_previous_cache(self, db, fake, service):
        connect(db)
        asyncio.run(service.sync_master_data())
        fake.account_items = []
        fake.sections = []

        counts = asyncio.run(service.sync_master_data())

        assert counts["account_items"] == 0
        assert db.count_cache_rows("account_item_cache") == 2
        assert db.count_cache_rows("section_cache") == 1

    def test_partners_are_always_replaced(self, db, fake, service):
        connect(db)
        asyncio.run(service.sync_master_data())
        fake.partners = []

        asyncio.run(service.sync_master_data())

        assert db.count_cache_rows("partner_cache") == 0

    def test_sync_requires_company(self, service):
        with pytest.raises(ServiceUnavailableError):
            asyncio.run(service.sync_master_data())


class TestLookups:
    @pytest.fixture(autouse=True)
    def _synced(self, db, service):
        connect(db)
        asyncio.run(service.sync_master_data())

    def test_account_item_search_matches_shortcuts(self, service):
        assert [i["freee_id"] for i in service.search_account_items("RYOHI")] == [11]
        assert len(service.search_account_items("")) == 2

    def test_partner_search(self, service):
        assert [p["name"] for p in service.search_partners("Acme")] == ["Acme Corp", "Acme Labs"]
        assert service.search_partners("  ") == []

    def test_resolve_tag_ids_keeps_order_and_drops_unknown(self, service):
        tags = {t["name"]: t["freee_id"] for t in service.list_memo_tags()}
        ids = service.resolve_tag_ids(["仮", "nope", "給与振込確認用"])
        assert ids == [tags["仮"], 7]

    def test_find_section_id(self, service):
        assert service.find_section_id("Sales") == 55
        assert service.find_section_id("Marketing") is None
        assert service.find_section_id(None) is None

    def test_departments_fall_back_to_sections(self, db, service):
        assert [d["name"] for d in service.list_departments()] == ["Sales"]
        db.create_department("Engineering")
        assert [d["name"] for d in service.list_departments()] == ["Engineering"]


class TestLedgerPull:
    def test_deal_to_ledger_rows(self):
        deal = {
            "id": 9,
            "issue_date": "2024-05-10",
            "due_date": "2024-05-31",
            "partner_name": "Acme Corp",
            "details": [
                {"account_item_name": "通信費", "amount": -1200, "tag_ids": [1, 2], "section_name": "Sales"},
                {"amount": 300},
            ],
        }
        rows = deal_to_ledger_rows(deal, {1: "仮", 2: "給与振込確認用"}, "2024-06-01T00:00:00+00:00")
        assert rows[0]["amount"] == 1200
        assert rows[0]["memo_tag_names"] == "仮,給与振込確認用"
        assert rows[1]["account_item_name"] == "unknown"
        assert rows[1]["memo_tag_names"] is None

    def test_pull_replaces_mirror(self, db, fake, client, service):
        connect(db)
        fake.deals = [
            {
                "id": 1000 + i,
                "issue_date": "2024-04-01",
                "due_date": "2024-04-30",
                "partner_name": "Acme Corp",
                "details": [{"account_item_name": "通信費", "amount": 1000}],
            }
            for i in range(120)
        ]
        db.replace_ledger_rows([{
            "freee_deal_id": 1, "issue_date": "2023-01-01", "account_item_name": "old",
            "amount": 1, "synced_at": "2023-01-01",
        }])
        pull = LedgerPullService(db=db, client=client, master_data=service)

        result = asyncio.run(pull.pull_ledger())

        assert result["deals_count"] == 120
        assert result["rows_count"] == 120
        rows = db.list_ledger_rows()
        assert len(rows) == 120
        assert all(row["account_item_name"] == "通信費" for row in rows)
        assert db.get_freee_config()["last_pl_sync_at"] == result["synced_at"]
        types = {r.url.params["type"] for r in fake.requests_to("/api/1/deals", "GET")}
        assert types == {"expense"}

    def test_pull_requires_company(self, db, client, service):
        pull = LedgerPullService(db=db, client=client, master_data=service)
        with pytest.raises(ServiceUnavailableError):
            asyncio.run(pull.pull_ledger())
