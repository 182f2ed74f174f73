"""
Financial dashboard aggregation.

Two independent inputs, both filtered to one year:

- actuals come from the freee ledger mirror (rows tagged provisional are
  left out), bucketed by issue month for PL and due month for CF;
- projections come from cost requests in submitted / approved / synced,
  bucketed by usage month (expense) or recording month (SG&A) for PL and by
  due date or payment month for CF. Running costs are the SG&A subset with
  a monthly or annual cost type.

Null grouping keys become a placeholder instead of dropping the row.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from expensync.core.config import JST
from expensync.core.database import ExpensyncDB, get_db
from expensync.services.master_data import TAG_PROVISIONAL, split_tag_names
from expensync.services.request_lifecycle import is_billable, is_expense

UNSET = "unset"
UNKNOWN = "unknown"

PROJECTED_STATUSES = ("submitted", "approved", "synced_to_freee")
RUNNING_COST_TYPES = ("running_monthly", "running_annual")


@dataclass
class PlRow:
    department: str
    account_item: str
    partner: str
    pl_month: str
    amount: int


@dataclass
class CfRow:
    due_month: str
    partner: str
    title: str
    amount: int
    due_date: str


@dataclass
class RunningRow:
    department: str
    account_item: str
    partner: str
    title: str
    cost_type: str
    amount: int
    recording_month: str


def _month(value: Optional[str]) -> Optional[str]:
    return value[:7] if value else None


def _year(month: str) -> int:
    return int(month[:4])


def pl_month_for(request: Dict[str, Any]) -> Optional[str]:
    if is_expense(request["category"]):
        return _month(request.get("usage_date"))
    return _month(request.get("recording_month"))


def partner_for(request: Dict[str, Any]) -> str:
    category = request["category"]
    if is_billable(category):
        return request.get("billing_partner_name") or UNKNOWN
    if is_expense(category):
        return request.get("submitter_name") or UNKNOWN
    return request.get("billing_partner_name") or request.get("submitter_name") or UNKNOWN


def build_dashboard(
    ledger_rows: Iterable[Dict[str, Any]],
    requests: Iterable[Dict[str, Any]],
    year: int,
    current_year: int,
    last_pl_sync_at: Optional[str] = None,
) -> Dict[str, Any]:
    years: Set[int] = {current_year}
    actual_pl: List[PlRow] = []
    actual_cf: List[CfRow] = []

    for row in ledger_rows:
        if TAG_PROVISIONAL in split_tag_names(row.get("memo_tag_names")):
            continue
        partner = row.get("partner_name") or UNKNOWN
        account_item = row.get("account_item_name") or UNSET

        pl_month = _month(row.get("issue_date"))
        if pl_month:
            years.add(_year(pl_month))
            if _year(pl_month) == year:
                actual_pl.append(PlRow(
                    department=row.get("section_name") or UNSET,
                    account_item=account_item,
                    partner=partner,
                    pl_month=pl_month,
                    amount=row["amount"],
                ))

        due_month = _month(row.get("due_date"))
        if due_month:
            years.add(_year(due_month))
            if _year(due_month) == year:
                actual_cf.append(CfRow(
                    due_month=due_month,
                    partner=partner,
                    title=account_item,
                    amount=row["amount"],
                    due_date=row["due_date"],
                ))

    projected_pl: List[PlRow] = []
    projected_cf: List[CfRow] = []
    running: List[RunningRow] = []
    departments: Set[str] = set()

    for request in requests:
        if request.get("status") not in PROJECTED_STATUSES:
            continue
        department = request.get("department_name") or UNSET
        account_item = request.get("account_item_name") or UNSET
        partner = partner_for(request)

        pl_month = pl_month_for(request)
        if pl_month:
            years.add(_year(pl_month))
            departments.add(department)
            if _year(pl_month) == year:
                projected_pl.append(PlRow(
                    department=department,
                    account_item=account_item,
                    partner=partner,
                    pl_month=pl_month,
                    amount=request["amount"],
                ))
                if (
                    not is_expense(request["category"])
                    and request.get("cost_type") in RUNNING_COST_TYPES
                ):
                    running.append(RunningRow(
                        department=department,
                        account_item=account_item,
                        partner=partner,
                        title=request["title"],
                        cost_type=request["cost_type"],
                        amount=request["amount"],
                        recording_month=pl_month,
                    ))

        cf_date = request.get("due_date") or request.get("payment_month")
        cf_month = _month(cf_date)
        if cf_month:
            years.add(_year(cf_month))
            if _year(cf_month) == year:
                projected_cf.append(CfRow(
                    due_month=cf_month,
                    partner=partner,
                    title=request["title"],
                    amount=request["amount"],
                    due_date=cf_date,
                ))

    return {
        "actual_pl_rows": [asdict(row) for row in actual_pl],
        "projected_pl_rows": [asdict(row) for row in projected_pl],
        "actual_cf_rows": [asdict(row) for row in actual_cf],
        "projected_cf_rows": [asdict(row) for row in projected_cf],
        "running_rows": [asdict(row) for row in running],
        "departments": sorted(departments),
        "available_years": sorted(years, reverse=True),
        "last_pl_sync_at": last_pl_sync_at,
    }


class DashboardService:
    def __init__(self, db: Optional[ExpensyncDB] = None):
        self.db = db or get_db()

    def get_dashboard(self, year: Optional[int] = None) -> Dict[str, Any]:
        current_year = datetime.now(JST).year
        config = self.db.get_freee_config() or {}
        return build_dashboard(
            ledger_rows=self.db.list_ledger_rows(),
            requests=self.db.list_cost_requests_with_names(PROJECTED_STATUSES),
            year=year or current_year,
            current_year=current_year,
            last_pl_sync_at=config.get("last_pl_sync_at"),
        )
