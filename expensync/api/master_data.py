"""Autocomplete and lookup endpoints backed by the freee master data cache."""
from fastapi import APIRouter, Depends, Query

from expensync.api.deps import get_master_data_service
from expensync.core.auth import SessionUser, get_current_user
from expensync.services.master_data import MasterDataService

router = APIRouter(prefix="/api", tags=["master-data"])


@router.get("/account-items")
def account_items(
    q: str = Query(""),
    user: SessionUser = Depends(get_current_user),
    service: MasterDataService = Depends(get_master_data_service),
):
    return {"items": service.search_account_items(q)}


@router.get("/partners/search")
def partner_search(
    q: str = Query(""),
    user: SessionUser = Depends(get_current_user),
    service: MasterDataService = Depends(get_master_data_service),
):
    return {"partners": service.search_partners(q)}


@router.get("/memo-tags")
def memo_tags(
    user: SessionUser = Depends(get_current_user),
    service: MasterDataService = Depends(get_master_data_service),
):
    return {"tags": service.list_memo_tags()}


@router.get("/departments")
def departments(
    user: SessionUser = Depends(get_current_user),
    service: MasterDataService = Depends(get_master_data_service),
):
    return {"departments": service.list_departments()}
