"""
freee master data cache.

Account items, partners, memo tags and sections are mirrored locally so
autocomplete and ID resolution never hit freee per keystroke. Each entity
type is replaced wholesale in its own transaction; staleness between syncs
is acceptable.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from expensync.core.database import ExpensyncDB, get_db, utc_now_iso
from expensync.integrations.freee_client import FreeeClient
from expensync.services.errors import ServiceUnavailableError

logger = logging.getLogger(__name__)

TAG_BANK_TRANSFER = "販管費振込確認用"
TAG_PAYROLL_TRANSFER = "給与振込確認用"
TAG_PROVISIONAL = "仮"
REQUIRED_MEMO_TAGS = (TAG_BANK_TRANSFER, TAG_PAYROLL_TRANSFER, TAG_PROVISIONAL)


def split_tag_names(raw: Optional[str]) -> List[str]:
    """'a, b,,c' -> ['a', 'b', 'c']"""
    if not raw:
        return []
    return [name.strip() for name in raw.split(",") if name.strip()]


class MasterDataService:
    def __init__(self, db: Optional[ExpensyncDB] = None, client: Optional[FreeeClient] = None):
        self.db = db or get_db()
        self._client = client

    @property
    def client(self) -> FreeeClient:
        if self._client is None:
            self._client = FreeeClient(db=self.db)
        return self._client

    def _company_id(self) -> int:
        config = self.db.get_freee_config() or {}
        company_id = config.get("company_id")
        if not company_id:
            raise ServiceUnavailableError("freee company id is not configured")
        return company_id

    async def sync_master_data(self) -> Dict[str, int]:
        """Refresh every cache table from freee and return per-type counts."""
        company_id = self._company_id()
        counts = {"account_items": 0, "partners": 0, "memo_tags": 0, "sections": 0}

        account_items = await self.client.list_account_items(company_id)
        if account_items:
            counts["account_items"] = self.db.replace_cache_rows(
                "account_item_cache",
                [
                    {
                        "freee_id": item["id"],
                        "name": item["name"],
                        "shortcut1": item.get("shortcut1"),
                        "shortcut2": item.get("shortcut2"),
                        "category": item.get("account_category"),
                    }
                    for item in account_items
                ],
            )

        partners = await self.client.list_partners(company_id)
        counts["partners"] = self.db.replace_cache_rows(
            "partner_cache",
            [{"freee_id": p["id"], "name": p["name"]} for p in partners],
        )

        tags = await self.client.list_tags(company_id)
        existing = {tag.get("name") for tag in tags}
        for name in REQUIRED_MEMO_TAGS:
            if name not in existing:
                created = await self.client.create_tag(company_id, name)
                logger.info("Created required memo tag %s (id=%s)", name, created.get("id"))
                tags.append(created)
        counts["memo_tags"] = self.db.replace_cache_rows(
            "memo_tag_cache",
            [{"freee_id": t["id"], "name": t["name"]} for t in tags],
        )

        sections = await self.client.list_sections(company_id)
        if sections:
            counts["sections"] = self.db.replace_cache_rows(
                "section_cache",
                [{"freee_id": s["id"], "name": s["name"]} for s in sections],
            )

        self.db.update_freee_config(last_sync_at=utc_now_iso())
        logger.info("freee master data synced: %s", counts)
        return counts

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def search_account_items(self, query: str = "") -> List[Dict[str, Any]]:
        return self.db.search_account_items(query.strip(), limit=30)

    def search_partners(self, query: str) -> List[Dict[str, Any]]:
        query = (query or "").strip()
        if not query:
            return []
        return self.db.search_partners(query, limit=10)

    def list_memo_tags(self) -> List[Dict[str, Any]]:
        return self.db.list_cache_rows("memo_tag_cache")

    def resolve_tag_ids(self, names: Iterable[str]) -> List[int]:
        """Tag ids in the order of `names`; names missing from the cache are dropped."""
        names = list(names)
        by_name = {row["name"]: row["freee_id"] for row in self.db.find_cache_rows_by_names("memo_tag_cache", names)}
        return [by_name[name] for name in names if name in by_name]

    def tag_names_by_id(self) -> Dict[int, str]:
        return {row["freee_id"]: row["name"] for row in self.db.list_cache_rows("memo_tag_cache")}

    def find_section_id(self, name: Optional[str]) -> Optional[int]:
        if not name:
            return None
        rows = self.db.find_cache_rows_by_names("section_cache", [name])
        return rows[0]["freee_id"] if rows else None

    def list_departments(self) -> List[Dict[str, Any]]:
        """Local departments, or the section cache when none are defined yet."""
        departments = self.db.list_departments()
        if departments:
            return [{"id": d["id"], "name": d["name"]} for d in departments]
        return [
            {"id": s["id"], "name": s["name"], "freee_id": s["freee_id"]}
            for s in self.db.list_cache_rows("section_cache")
        ]

    def master_counts(self) -> Dict[str, int]:
        return {
            "account_items": self.db.count_cache_rows("account_item_cache"),
            "partners": self.db.count_cache_rows("partner_cache"),
            "memo_tags": self.db.count_cache_rows("memo_tag_cache"),
            "sections": self.db.count_cache_rows("section_cache"),
        }
