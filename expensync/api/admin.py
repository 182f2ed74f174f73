"""
Admin endpoints.

- POST /api/admin/sync-freee-deletions  reconciliation sweep
- POST /api/admin/sync-freee-pl         pull the freee ledger now
- GET  /api/admin/dashboard             PL / CF aggregation for a year
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from expensync.api.deps import get_dashboard_service, get_ledger_service, get_reconciliation_service
from expensync.core.auth import SessionUser, require_admin, require_admin_or_executive
from expensync.services.dashboard import DashboardService
from expensync.services.ledger_pull import LedgerPullService
from expensync.services.reconciliation import ReconciliationService

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/sync-freee-deletions")
async def sync_freee_deletions(
    user: SessionUser = Depends(require_admin),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    result = await service.sweep()
    return result.to_dict()


@router.post("/sync-freee-pl")
async def sync_freee_pl(
    user: SessionUser = Depends(require_admin_or_executive),
    service: LedgerPullService = Depends(get_ledger_service),
):
    result = await service.pull_ledger()
    return {"success": True, **result}


@router.get("/dashboard")
def dashboard(
    year: Optional[int] = Query(None),
    user: SessionUser = Depends(require_admin_or_executive),
    service: DashboardService = Depends(get_dashboard_service),
):
    return service.get_dashboard(year)
