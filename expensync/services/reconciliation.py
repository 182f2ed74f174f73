"""
Reconciliation sweep: flag synced requests whose freee deal was deleted.

Each request is checked independently. A network or API failure on one
request is logged and skipped so the rest of the sweep still runs.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from expensync.core.database import ExpensyncDB, get_db
from expensync.integrations.freee_client import FreeeClient
from expensync.services.errors import ServiceUnavailableError
from expensync.services.request_lifecycle import RequestLifecycleService

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    checked: int = 0
    deleted_count: int = 0
    deleted_titles: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "checked": self.checked,
            "deleted": self.deleted_count,
            "titles": list(self.deleted_titles),
        }


class ReconciliationService:
    def __init__(
        self,
        db: Optional[ExpensyncDB] = None,
        client: Optional[FreeeClient] = None,
        lifecycle: Optional[RequestLifecycleService] = None,
    ):
        self.db = db or get_db()
        self.client = client or FreeeClient(db=self.db)
        self.lifecycle = lifecycle or RequestLifecycleService(db=self.db)

    async def sweep(self) -> SweepResult:
        config = self.db.get_freee_config() or {}
        company_id = config.get("company_id")
        if not company_id or not config.get("access_token"):
            raise ServiceUnavailableError("freee is not connected")

        requests = self.db.list_synced_requests()
        result = SweepResult(checked=len(requests))

        for request in requests:
            try:
                exists = await self.client.deal_exists(company_id, request["freee_deal_id"])
                if not exists:
                    self.lifecycle.mark_externally_deleted(request["id"])
                    result.deleted_count += 1
                    result.deleted_titles.append(request["title"])
                    logger.info(
                        "freee deal %s is gone; request %s marked freee_deleted",
                        request["freee_deal_id"], request["id"],
                    )
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Skipping reconciliation of request %s (deal %s): %s",
                    request["id"], request["freee_deal_id"], exc,
                )

        logger.info(
            "Reconciliation sweep: checked=%d deleted=%d",
            result.checked, result.deleted_count,
        )
        return result
