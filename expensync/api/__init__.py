from expensync.api.reports import router as reports_router
from expensync.api.freee import router as freee_router
from expensync.api.master_data import router as master_data_router
from expensync.api.admin import router as admin_router
from expensync.api.cron import router as cron_router

__all__ = ["reports_router", "freee_router", "master_data_router", "admin_router", "cron_router"]
