"""
Approved request -> freee deal.

`FreeeSyncService.synchronize` checks the preconditions in a fixed order
(exists, approved, account item set, freee connected), resolves every freee
identifier, uploads attachments as receipts, creates the deal and records
the outcome on the request. Any failure after the preconditions is written
to `freee_sync_error` and re-raised; the status stays `approved` so the admin
can retry.

There is no transaction across the upload / create / local update steps. If
the local update fails after freee accepted the deal, the deal exists in
freee without its id recorded here.
"""
from __future__ import annotations

import calendar
import logging
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from expensync.core.database import ExpensyncDB, get_db
from expensync.integrations.freee_client import DealDetail, DealRequest, FreeeClient
from expensync.services.errors import (
    ExpensyncError,
    ExternalAPIError,
    InvalidStateError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from expensync.services.master_data import MasterDataService, split_tag_names
from expensync.services.request_lifecycle import (
    RequestLifecycleService,
    RequestStatus,
    TaxType,
    is_billable,
    is_expense,
)

logger = logging.getLogger(__name__)

TAX_NAME_EXCLUDED = "対象外"
TAX_NAME_QUALIFIED = "課対仕入10%"
TAX_NAME_NON_QUALIFIED = "課対仕入（控80）10%"


def end_of_month(year_month: str) -> str:
    """'2024-02' -> '2024-02-29'"""
    try:
        year, month = (int(part) for part in year_month.split("-")[:2])
        last_day = calendar.monthrange(year, month)[1]
    except ValueError:
        raise ValidationError(f"Invalid recording month: {year_month}", field="recording_month")
    return f"{year:04d}-{month:02d}-{last_day:02d}"


def select_tax_name(billable: bool, overseas: bool, qualified_invoice: bool) -> str:
    """Billable or overseas is out of scope regardless of the invoice flag."""
    if billable or overseas:
        return TAX_NAME_EXCLUDED
    if qualified_invoice:
        return TAX_NAME_QUALIFIED
    return TAX_NAME_NON_QUALIFIED


def build_description(request: Dict[str, Any]) -> Optional[str]:
    parts: List[str] = []
    if request.get("sync_description") and request.get("description"):
        parts.append(request["description"])
    if request.get("admin_memo"):
        parts.append(request["admin_memo"])
    return "\n".join(parts) or None


class FreeeSyncService:
    def __init__(
        self,
        db: Optional[ExpensyncDB] = None,
        client: Optional[FreeeClient] = None,
        lifecycle: Optional[RequestLifecycleService] = None,
        master_data: Optional[MasterDataService] = None,
    ):
        self.db = db or get_db()
        self.client = client or FreeeClient(db=self.db)
        self.lifecycle = lifecycle or RequestLifecycleService(db=self.db)
        self.master_data = master_data or MasterDataService(db=self.db, client=self.client)

    def _check_preconditions(self, request_id: str) -> tuple:
        request = self.db.get_cost_request(request_id)
        if not request:
            raise NotFoundError("Request", request_id)
        if request["status"] != RequestStatus.APPROVED.value:
            raise InvalidStateError("Only approved requests can be synchronized", status=request["status"])
        if request.get("account_item_id") is None:
            raise ValidationError("No account item is set", field="account_item_id")

        config = self.db.get_freee_config() or {}
        if not config.get("company_id") or not config.get("access_token"):
            raise ServiceUnavailableError("freee is not connected")
        return request, config["company_id"]

    async def synchronize(self, request_id: str) -> Dict[str, Any]:
        """Create the freee deal for an approved request; returns `{deal_id}`."""
        request, company_id = self._check_preconditions(request_id)
        try:
            deal_id, uploaded = await self._synchronize(request, company_id)
        except ExpensyncError as exc:
            logger.error("freee sync failed for %s: %s", request_id, exc.message)
            self.lifecycle.record_sync_error(request_id, exc.message)
            raise
        except Exception as exc:
            logger.exception("freee sync failed for %s", request_id)
            self.lifecycle.record_sync_error(request_id, str(exc))
            raise ExternalAPIError(str(exc)) from exc

        # Deal is recorded; receipt id write failures are only logged.
        for attachment_id, receipt_id in uploaded:
            try:
                self.db.set_attachment_receipt_id(attachment_id, receipt_id)
            except sqlite3.Error as exc:
                logger.warning(
                    "Could not record receipt %s for attachment %s: %s",
                    receipt_id, attachment_id, exc,
                )
        logger.info(
            "Request %s synced to freee as deal %s (%d receipts)",
            request_id, deal_id, len(uploaded),
        )
        return {"deal_id": deal_id}

    async def _synchronize(self, request: Dict[str, Any], company_id: int) -> Tuple[int, List[tuple]]:
        request_id = request["id"]
        category = request["category"]
        billable = is_billable(category)
        expense = is_expense(category)
        overseas = request.get("tax_type") == TaxType.OVERSEAS.value

        if expense:
            if not request.get("usage_date"):
                raise ValidationError("usage_date is not set", field="usage_date")
            issue_date = request["usage_date"]
        else:
            if not request.get("recording_month"):
                raise ValidationError("recording_month is not set", field="recording_month")
            issue_date = end_of_month(request["recording_month"])
        due_date = request.get("due_date") or issue_date

        partner_id = self._resolve_partner_id(request, billable, expense)

        tax_name = select_tax_name(billable, overseas, bool(request.get("is_qualified_invoice")))
        tax_code = await self.client.get_tax_code_by_name(company_id, tax_name)
        if tax_code is None:
            raise ValidationError(f"Tax category '{tax_name}' was not found in freee", field="tax_type")

        section_id = self._resolve_section_id(request)
        tag_ids = self.master_data.resolve_tag_ids(split_tag_names(request.get("memo_tag_names")))

        uploaded: List[tuple] = []
        for attachment in self.db.list_attachments(request_id):
            try:
                receipt_id = await self.client.upload_receipt(
                    company_id,
                    attachment["file_path"],
                    attachment["file_name"],
                    attachment["mime_type"],
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Skipping receipt upload for %s (request %s): %s",
                    attachment["file_name"], request_id, exc,
                )
                continue
            uploaded.append((attachment["id"], receipt_id))

        deal = DealRequest(
            issue_date=issue_date,
            due_date=due_date,
            partner_id=partner_id,
            details=[
                DealDetail(
                    account_item_id=request["account_item_id"],
                    tax_code=tax_code,
                    amount=request["amount"],
                    section_id=section_id,
                    tag_ids=tag_ids,
                    description=build_description(request),
                    receipt_ids=[receipt_id for _, receipt_id in uploaded],
                )
            ],
        )
        deal_id = await self.client.create_deal(company_id, deal)

        self.lifecycle.mark_synced(request_id, deal_id, partner_id)
        return deal_id, uploaded

    def _resolve_partner_id(self, request: Dict[str, Any], billable: bool, expense: bool) -> Optional[int]:
        if billable:
            return request.get("billing_partner_id")
        if expense:
            submitter = self.db.get_user(request["submitter_id"]) if request.get("submitter_id") else None
            return (submitter or {}).get("freee_partner_id")
        return None

    def _resolve_section_id(self, request: Dict[str, Any]) -> Optional[int]:
        if not request.get("department_id"):
            return None
        department = self.db.get_department(request["department_id"])
        if not department:
            return None
        if department.get("freee_section_id"):
            return department["freee_section_id"]
        return self.master_data.find_section_id(department["name"])
