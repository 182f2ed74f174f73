"""Entry points for the external scheduler."""
import logging

from fastapi import APIRouter, Depends, Query

from expensync.api.deps import get_ledger_service, get_notifier, verify_cron_secret
from expensync.services.errors import ValidationError
from expensync.services.ledger_pull import LedgerPullService
from expensync.services.payment_notify import PaymentNotifier

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


@router.get("/sync-pl")
async def cron_sync_pl(service: LedgerPullService = Depends(get_ledger_service)):
    result = await service.pull_ledger()
    return {"success": True, **result}


@router.post("/payment-notify")
async def cron_payment_notify(
    phase: str = Query(...),
    notifier: PaymentNotifier = Depends(get_notifier),
):
    if phase == "collect":
        snapshot = notifier.collect()
        return {
            "success": True,
            "date": snapshot.date,
            "recipients": len(snapshot.by_email),
        }
    if phase == "send":
        return {"success": True, **(await notifier.send())}
    raise ValidationError(f"Unknown phase: {phase}", field="phase")
