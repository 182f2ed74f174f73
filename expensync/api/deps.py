"""FastAPI dependencies for Expensync services."""
from typing import Optional

from fastapi import Depends, Header, HTTPException

from expensync.core.config import get_app_config
from expensync.core.database import get_db
from expensync.integrations.freee_client import FreeeClient
from expensync.services.dashboard import DashboardService
from expensync.services.freee_sync import FreeeSyncService
from expensync.services.ledger_pull import LedgerPullService
from expensync.services.mailer import Mailer, get_mailer
from expensync.services.master_data import MasterDataService
from expensync.services.payment_notify import PaymentNotifier, get_payment_notifier
from expensync.services.reconciliation import ReconciliationService
from expensync.services.request_lifecycle import RequestLifecycleService


def get_freee_client() -> FreeeClient:
    return FreeeClient(db=get_db())


def get_lifecycle_service() -> RequestLifecycleService:
    return RequestLifecycleService(db=get_db())


def get_master_data_service(client: FreeeClient = Depends(get_freee_client)) -> MasterDataService:
    return MasterDataService(db=get_db(), client=client)


def get_sync_service(client: FreeeClient = Depends(get_freee_client)) -> FreeeSyncService:
    return FreeeSyncService(db=get_db(), client=client)


def get_reconciliation_service(client: FreeeClient = Depends(get_freee_client)) -> ReconciliationService:
    return ReconciliationService(db=get_db(), client=client)


def get_ledger_service(client: FreeeClient = Depends(get_freee_client)) -> LedgerPullService:
    return LedgerPullService(db=get_db(), client=client)


def get_dashboard_service() -> DashboardService:
    return DashboardService(db=get_db())


def get_mailer_dep() -> Mailer:
    return get_mailer()


def get_notifier() -> PaymentNotifier:
    return get_payment_notifier()


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Scheduler calls carry `Authorization: Bearer $CRON_SECRET` when one is configured."""
    secret = get_app_config().cron_secret
    if secret and authorization != f"Bearer {secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")
