"""
freee connection endpoints.

- GET  /api/freee/auth        start OAuth (redirect)
- GET  /api/freee/callback    OAuth callback
- GET  /api/freee/status      connection and cache status
- POST /api/freee/disconnect  forget tokens
- POST /api/freee/sync        refresh the master data cache
- GET  /api/freee/tax-codes   freee tax code list
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from expensync.api.deps import get_freee_client, get_master_data_service
from expensync.core.auth import SessionUser, require_admin
from expensync.core.config import get_app_config
from expensync.core.database import get_db
from expensync.integrations.freee_client import FreeeClient
from expensync.integrations.freee_oauth import get_freee_auth_url, validate_oauth_state
from expensync.services.errors import ExpensyncError, ServiceUnavailableError
from expensync.services.master_data import MasterDataService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/freee", tags=["freee"])


def _settings_redirect(query: str) -> RedirectResponse:
    return RedirectResponse(url=f"{get_app_config().base_url}/admin/freee?{query}")


@router.get("/auth")
def start_freee_auth(user: SessionUser = Depends(require_admin)):
    return RedirectResponse(url=get_freee_auth_url(user.user_id))


@router.get("/callback")
async def freee_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    client: FreeeClient = Depends(get_freee_client),
):
    """freee redirects here after consent; the one-time state identifies the admin."""
    if error or not code:
        return _settings_redirect("error=auth_cancelled")

    state_data = validate_oauth_state(state) if state else None
    if not state_data:
        logger.warning("freee callback with invalid or expired state")
        return _settings_redirect("error=invalid_state")

    try:
        tokens = await client.exchange_code(code)
        company_id = await client.fetch_company_id(tokens["access_token"])
    except ExpensyncError as exc:
        logger.error("freee token exchange failed: %s", exc.message)
        return _settings_redirect("error=token_failed")

    expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(tokens.get("expires_in", 21600)))
    get_db().save_freee_connection(
        company_id=company_id,
        access_token=tokens["access_token"],
        refresh_token=tokens.get("refresh_token"),
        token_expires_at=expires_at.isoformat(),
    )
    logger.info("freee connected by %s (company %s)", state_data["user_id"], company_id)
    return _settings_redirect("success=connected")


@router.get("/status")
def freee_status(
    user: SessionUser = Depends(require_admin),
    master_data: MasterDataService = Depends(get_master_data_service),
):
    config = get_db().get_freee_config() or {}
    return {
        "connected": bool(config.get("access_token")),
        "company_id": config.get("company_id"),
        "last_sync_at": config.get("last_sync_at"),
        "last_pl_sync_at": config.get("last_pl_sync_at"),
        "master_counts": master_data.master_counts(),
    }


@router.post("/disconnect")
def freee_disconnect(user: SessionUser = Depends(require_admin)):
    get_db().clear_freee_connection()
    logger.info("freee disconnected by %s", user.user_id)
    return {"success": True}


@router.post("/sync")
async def freee_sync_master_data(
    user: SessionUser = Depends(require_admin),
    master_data: MasterDataService = Depends(get_master_data_service),
):
    results = await master_data.sync_master_data()
    return {"success": True, "results": results}


@router.get("/tax-codes")
async def freee_tax_codes(
    user: SessionUser = Depends(require_admin),
    client: FreeeClient = Depends(get_freee_client),
):
    config = get_db().get_freee_config() or {}
    if not config.get("company_id") or not config.get("access_token"):
        raise ServiceUnavailableError("freee is not connected")
    return {"taxes": await client.list_tax_codes(config["company_id"])}
