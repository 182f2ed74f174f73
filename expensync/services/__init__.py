# Lazy imports to avoid dependency chains at startup
def __getattr__(name):
    if name == "RequestLifecycleService":
        from expensync.services.request_lifecycle import RequestLifecycleService
        return RequestLifecycleService
    elif name == "FreeeSyncService":
        from expensync.services.freee_sync import FreeeSyncService
        return FreeeSyncService
    elif name == "ReconciliationService":
        from expensync.services.reconciliation import ReconciliationService
        return ReconciliationService
    elif name == "LedgerPullService":
        from expensync.services.ledger_pull import LedgerPullService
        return LedgerPullService
    elif name == "DashboardService":
        from expensync.services.dashboard import DashboardService
        return DashboardService
    elif name == "MasterDataService":
        from expensync.services.master_data import MasterDataService
        return MasterDataService
    elif name == "PaymentNotifier":
        from expensync.services.payment_notify import PaymentNotifier
        return PaymentNotifier
    raise AttributeError(f"module 'expensync.services' has no attribute '{name}'")
