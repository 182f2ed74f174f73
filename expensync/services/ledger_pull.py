"""
Pull freee expense deals into the local ledger mirror.

One mirror row per deal detail. The whole mirror is swapped in a single
transaction, so the dashboard never reads a half-refreshed ledger.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from expensync.core.database import ExpensyncDB, get_db, utc_now_iso
from expensync.integrations.freee_client import FreeeClient
from expensync.services.errors import ServiceUnavailableError
from expensync.services.master_data import MasterDataService

logger = logging.getLogger(__name__)

UNKNOWN_ACCOUNT_ITEM = "unknown"


def deal_to_ledger_rows(deal: Dict[str, Any], tag_names: Dict[int, str], synced_at: str) -> List[Dict[str, Any]]:
    rows = []
    for detail in deal.get("details") or []:
        names = [tag_names[tag_id] for tag_id in detail.get("tag_ids") or [] if tag_id in tag_names]
        rows.append({
            "freee_deal_id": deal["id"],
            "issue_date": deal["issue_date"],
            "due_date": deal.get("due_date"),
            "partner_name": deal.get("partner_name"),
            "section_name": detail.get("section_name"),
            "account_item_name": detail.get("account_item_name") or UNKNOWN_ACCOUNT_ITEM,
            "amount": abs(detail.get("amount") or 0),
            "memo_tag_names": ",".join(names) if names else None,
            "synced_at": synced_at,
        })
    return rows


class LedgerPullService:
    def __init__(
        self,
        db: Optional[ExpensyncDB] = None,
        client: Optional[FreeeClient] = None,
        master_data: Optional[MasterDataService] = None,
    ):
        self.db = db or get_db()
        self.client = client or FreeeClient(db=self.db)
        self.master_data = master_data or MasterDataService(db=self.db, client=self.client)

    async def pull_ledger(self) -> Dict[str, Any]:
        config = self.db.get_freee_config() or {}
        company_id = config.get("company_id")
        if not company_id:
            raise ServiceUnavailableError("freee company id is not configured")

        tag_names = self.master_data.tag_names_by_id()
        deals = await self.client.list_deals(company_id, deal_type="expense")

        synced_at = utc_now_iso()
        rows: List[Dict[str, Any]] = []
        for deal in deals:
            rows.extend(deal_to_ledger_rows(deal, tag_names, synced_at))

        self.db.replace_ledger_rows(rows)
        self.db.update_freee_config(last_pl_sync_at=synced_at)

        logger.info("Ledger pull: %d deals, %d rows", len(deals), len(rows))
        return {"deals_count": len(deals), "rows_count": len(rows), "synced_at": synced_at}
