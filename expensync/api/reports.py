"""
Cost request endpoints.

- POST  /api/reports                      submit (multipart)
- GET   /api/reports                      list
- GET   /api/reports/{id}                 detail
- PATCH /api/reports/{id}                 admin action / enrichment
- POST  /api/reports/{id}/sync-to-freee   create the freee deal
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Query, UploadFile

from expensync.api.deps import (
    get_lifecycle_service,
    get_mailer_dep,
    get_sync_service,
)
from expensync.core.auth import SessionUser, get_current_user, require_admin
from expensync.core.database import get_db
from expensync.services.freee_sync import FreeeSyncService
from expensync.services.mailer import Mailer
from expensync.services.request_lifecycle import (
    ReportActionRequest,
    RequestLifecycleService,
    SubmitRequest,
    UploadedFile,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/reports", tags=["reports"])


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("yes", "true", "1", "on")


@router.post("")
async def submit_report(
    background_tasks: BackgroundTasks,
    title: str = Form(""),
    description: str = Form(""),
    amount: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    cost_type: Optional[str] = Form(None),
    tax_type: Optional[str] = Form(None),
    payment_method: Optional[str] = Form(None),
    cost_end_date: Optional[str] = Form(None),
    has_receipt: Optional[str] = Form(None),
    supervisor_name: Optional[str] = Form(None),
    billing_partner_name: Optional[str] = Form(None),
    billing_partner_id: Optional[str] = Form(None),
    usage_date: Optional[str] = Form(None),
    recording_month: Optional[str] = Form(None),
    payment_month: Optional[str] = Form(None),
    due_date: Optional[str] = Form(None),
    department_id: Optional[str] = Form(None),
    attachments: List[UploadFile] = File(default=[]),
    user: SessionUser = Depends(get_current_user),
    service: RequestLifecycleService = Depends(get_lifecycle_service),
    mailer: Mailer = Depends(get_mailer_dep),
):
    data = SubmitRequest.parse({
        "title": title,
        "description": description,
        "amount": amount,
        "category": category,
        "cost_type": cost_type,
        "tax_type": tax_type,
        "payment_method": payment_method,
        "cost_end_date": cost_end_date,
        "has_receipt": _truthy(has_receipt),
        "supervisor_name": supervisor_name,
        "billing_partner_name": billing_partner_name,
        "billing_partner_id": billing_partner_id,
        "usage_date": usage_date,
        "recording_month": recording_month,
        "payment_month": payment_month,
        "due_date": due_date,
        "department_id": department_id,
    })

    uploads = []
    for upload in attachments:
        content = await upload.read()
        uploads.append(UploadedFile(
            file_name=upload.filename or "attachment",
            content=content,
            mime_type=upload.content_type or "application/octet-stream",
        ))

    report = service.submit(user, data, uploads)

    submitter = get_db().get_user(user.user_id) or {}
    background_tasks.add_task(
        mailer.notify_submission,
        submitter.get("name") or "unknown",
        report["title"],
        report["amount"],
        report["category"],
        report["id"],
    )
    return {"success": True, "report_id": report["id"]}


@router.get("")
def list_reports(
    status: Optional[str] = Query(None),
    category_group: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    user: SessionUser = Depends(get_current_user),
    service: RequestLifecycleService = Depends(get_lifecycle_service),
):
    return service.list_requests(user, status=status, category_group=category_group, search=search, page=page)


@router.get("/{report_id}")
def get_report(
    report_id: str,
    user: SessionUser = Depends(get_current_user),
    service: RequestLifecycleService = Depends(get_lifecycle_service),
):
    return {"report": service.get_request(user, report_id)}


@router.patch("/{report_id}")
def update_report(
    report_id: str,
    body: ReportActionRequest,
    user: SessionUser = Depends(require_admin),
    service: RequestLifecycleService = Depends(get_lifecycle_service),
):
    report = service.apply_action(report_id, body.action, body)
    return {"success": True, "report": report}


@router.post("/{report_id}/sync-to-freee")
async def sync_report_to_freee(
    report_id: str,
    user: SessionUser = Depends(require_admin),
    service: FreeeSyncService = Depends(get_sync_service),
):
    result = await service.synchronize(report_id)
    return {"success": True, "deal_id": result["deal_id"]}
