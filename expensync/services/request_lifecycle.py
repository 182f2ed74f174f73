"""
Cost request lifecycle.

Status machine for a submitted cost request and the admin operations that
move it: hold, approve (with enrichment), reject, revert, and the
enrichment-only patch. `synced_to_freee` is entered only through
`mark_synced` (the freee sync) and `freee_deleted` only through
`mark_externally_deleted` (the reconciliation sweep).
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import pydantic
from pydantic import BaseModel, Field, field_validator

from expensync.core.auth import SessionUser
from expensync.core.database import ExpensyncDB, get_db, utc_now_iso
from expensync.services.errors import (
    ForbiddenError,
    InvalidStateError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from expensync.services.storage import FileStorage, StoredFile, get_storage

logger = logging.getLogger(__name__)


class RequestStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    ON_HOLD = "on_hold"
    APPROVED = "approved"
    REJECTED = "rejected"
    SYNCED = "synced_to_freee"
    EXTERNALLY_DELETED = "freee_deleted"


class Category(str, Enum):
    SGA = "sga"
    SGA_BILLABLE = "sga_billable"
    EXPENSE = "expense"
    EXPENSE_BILLABLE = "expense_billable"


class CostType(str, Enum):
    RUNNING_MONTHLY = "running_monthly"
    RUNNING_ANNUAL = "running_annual"
    ONETIME = "onetime"


class TaxType(str, Enum):
    INCLUSIVE = "inclusive"
    OVERSEAS = "overseas"


class AdminAction(str, Enum):
    APPROVE = "approve"
    ON_HOLD = "on_hold"
    REJECT = "reject"
    REVERT = "revert"


# Requests are created directly in `submitted`; nothing in the app produces
# `draft`, so it has no outgoing edges.
VALID_TRANSITIONS: Dict[str, set] = {
    RequestStatus.DRAFT.value: set(),
    RequestStatus.SUBMITTED.value: {"on_hold", "approved", "rejected"},
    RequestStatus.ON_HOLD.value: {"approved", "rejected", "submitted"},
    RequestStatus.APPROVED.value: {"rejected", "submitted", "synced_to_freee"},
    RequestStatus.REJECTED.value: {"submitted"},
    RequestStatus.SYNCED.value: {"freee_deleted"},
    RequestStatus.EXTERNALLY_DELETED.value: set(),
}

STATUS_FILTERS: Dict[str, List[str]] = {
    "pending": ["submitted", "on_hold"],
    "approved_or_synced": ["approved", "synced_to_freee"],
}

CATEGORY_GROUPS: Dict[str, List[str]] = {
    "sga": ["sga"],
    "expense": ["expense"],
    "billable": ["sga_billable", "expense_billable"],
}

PAGE_SIZE = 20


def assert_valid_transition(from_status: str, to_status: str) -> None:
    if to_status not in VALID_TRANSITIONS.get(from_status, set()):
        raise InvalidStateTransition(from_status, to_status)


def is_billable(category: str) -> bool:
    return category.endswith("_billable")


def is_expense(category: str) -> bool:
    return category.startswith("expense")


def _first_error(exc: pydantic.ValidationError) -> ValidationError:
    error = exc.errors()[0]
    field = ".".join(str(part) for part in error.get("loc", ()))
    return ValidationError(f"{field}: {error.get('msg')}", field=field or None)


_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MONTH_RE = re.compile(r"^\d{4}-\d{2}(-\d{2})?$")


def validate_date(value: Optional[str]) -> Optional[str]:
    """YYYY-MM-DD naming a real calendar day."""
    if value is None:
        return value
    if not _DATE_RE.match(value):
        raise ValueError("Date must be in YYYY-MM-DD format")
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise ValueError(f"Not a valid date: {value}")
    return value


def validate_month(value: Optional[str]) -> Optional[str]:
    """YYYY-MM, or a full YYYY-MM-DD date."""
    if value is None:
        return value
    if not _MONTH_RE.match(value):
        raise ValueError("Month must be in YYYY-MM format")
    try:
        datetime.strptime(value if len(value) == 10 else f"{value}-01", "%Y-%m-%d")
    except ValueError:
        raise ValueError(f"Not a valid month: {value}")
    return value


# ============================================================================
# REQUEST MODELS
# ============================================================================

ENRICHMENT_FIELDS = (
    "account_item_id",
    "account_item_name",
    "memo_tag_names",
    "tax_type",
    "due_date",
    "recording_month",
    "payment_month",
    "department_id",
    "admin_memo",
    "sync_description",
    "is_qualified_invoice",
)

# Clearing a NOT NULL column resets it to its default.
_CLEAR_DEFAULTS = {
    "tax_type": TaxType.INCLUSIVE.value,
    "sync_description": False,
    "is_qualified_invoice": False,
}


class EnrichmentPatch(BaseModel):
    """
    Admin-settable fields.

    A field left out of the payload keeps its stored value, an explicit null
    clears it, and a value overwrites it.
    """
    account_item_id: Optional[int] = None
    account_item_name: Optional[str] = None
    memo_tag_names: Optional[str] = None
    tax_type: Optional[TaxType] = None
    due_date: Optional[str] = None
    recording_month: Optional[str] = None
    payment_month: Optional[str] = None
    department_id: Optional[str] = None
    admin_memo: Optional[str] = None
    sync_description: Optional[bool] = None
    is_qualified_invoice: Optional[bool] = None

    @field_validator("due_date")
    @classmethod
    def check_date(cls, v):
        return validate_date(v)

    @field_validator("recording_month", "payment_month")
    @classmethod
    def check_month(cls, v):
        return validate_month(v)

    def changes(self) -> Dict[str, Any]:
        """Column updates for the fields present in the payload."""
        present = [name for name in ENRICHMENT_FIELDS if name in self.model_fields_set]
        data = self.model_dump(include=set(present), mode="json")
        for name, default in _CLEAR_DEFAULTS.items():
            if name in data and data[name] is None:
                data[name] = default
        return data


class ReportActionRequest(EnrichmentPatch):
    """PATCH body: an optional action plus enrichment fields."""
    action: Optional[str] = None


class SubmitRequest(BaseModel):
    title: str = ""
    description: str = ""
    amount: int = Field(gt=0)
    category: Category
    cost_type: CostType
    tax_type: TaxType = TaxType.INCLUSIVE
    payment_method: Optional[str] = None
    cost_end_date: Optional[str] = None
    has_receipt: bool = False
    supervisor_name: Optional[str] = None
    billing_partner_name: Optional[str] = None
    billing_partner_id: Optional[int] = None
    usage_date: Optional[str] = None
    recording_month: Optional[str] = None
    payment_month: Optional[str] = None
    due_date: Optional[str] = None
    department_id: Optional[str] = None

    @field_validator("usage_date", "due_date")
    @classmethod
    def check_date(cls, v):
        return validate_date(v)

    @field_validator("recording_month", "payment_month")
    @classmethod
    def check_month(cls, v):
        return validate_month(v)

    @field_validator("cost_end_date")
    @classmethod
    def check_cost_end(cls, v):
        # "unknown" marks an open-ended running cost
        return v if v == "unknown" else validate_month(v)

    @classmethod
    def parse(cls, data: Dict[str, Any]) -> "SubmitRequest":
        """Build from loosely typed input, raising our ValidationError."""
        cleaned = {key: value for key, value in data.items() if value not in (None, "")}
        try:
            return cls(**cleaned)
        except pydantic.ValidationError as exc:
            raise _first_error(exc) from exc


@dataclass
class UploadedFile:
    file_name: str
    content: bytes
    mime_type: str


# ============================================================================
# SERVICE
# ============================================================================

class RequestLifecycleService:
    def __init__(self, db: Optional[ExpensyncDB] = None, storage: Optional[FileStorage] = None):
        self.db = db or get_db()
        self.storage = storage or get_storage()

    def _get_or_404(self, request_id: str) -> Dict[str, Any]:
        request = self.db.get_cost_request(request_id)
        if not request:
            raise NotFoundError("Request", request_id)
        return request

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        user: SessionUser,
        data: SubmitRequest,
        uploads: Sequence[UploadedFile] = (),
    ) -> Dict[str, Any]:
        """Create a request in `submitted` with its attachments."""
        category = data.category.value
        if is_expense(category) and not data.usage_date:
            raise ValidationError("usage_date is required for expense requests", field="usage_date")
        if not is_expense(category) and not data.recording_month:
            raise ValidationError("recording_month is required for SG&A requests", field="recording_month")

        if is_expense(category):
            submitter = self.db.get_user(user.user_id) or {}
            department_id = submitter.get("department_id") or user.department_id
        else:
            department_id = data.department_id

        stored: List[StoredFile] = []
        try:
            for upload in uploads:
                if not upload.content:
                    continue
                stored.append(self.storage.save(upload.content, upload.mime_type, upload.file_name))
        except ValidationError:
            for item in stored:
                self.storage.delete(item.file_path)
            raise

        payload = data.model_dump(mode="json", exclude={"department_id"})
        payload.update({
            "submitter_id": user.user_id,
            "title": data.title or f"{category} 申請",
            "department_id": department_id,
            "status": RequestStatus.SUBMITTED.value,
        })
        request = self.db.create_cost_request(payload)
        for item in stored:
            self.db.add_attachment(request["id"], {
                "file_name": item.file_name,
                "file_path": item.file_path,
                "mime_type": item.mime_type,
                "file_size": item.file_size,
            })

        logger.info(
            "Request %s submitted by %s (%s, %s, %d attachments)",
            request["id"], user.user_id, category, data.amount, len(stored),
        )
        return request

    # ------------------------------------------------------------------
    # Admin actions
    # ------------------------------------------------------------------

    def apply_action(
        self,
        request_id: str,
        action: Optional[str],
        patch: Optional[EnrichmentPatch] = None,
    ) -> Dict[str, Any]:
        """Run one admin action (or an enrichment-only patch when `action` is None)."""
        request = self._get_or_404(request_id)
        status = request["status"]
        changes = patch.changes() if patch else {}

        if action is None:
            if status in (RequestStatus.SYNCED.value, RequestStatus.EXTERNALLY_DELETED.value):
                raise InvalidStateError("Synchronized requests can no longer be edited", status=status)
            if changes:
                self.db.update_cost_request(request_id, **changes)
            return self._get_or_404(request_id)

        try:
            action_enum = AdminAction(action)
        except ValueError:
            raise ValidationError(f"Unknown action: {action}", field="action")

        if action_enum is AdminAction.APPROVE:
            assert_valid_transition(status, RequestStatus.APPROVED.value)
            account_item_id = changes.get("account_item_id", request.get("account_item_id"))
            if account_item_id is None:
                raise ValidationError("An account item is required to approve", field="account_item_id")
            self.db.update_cost_request(request_id, status=RequestStatus.APPROVED.value, **changes)

        elif action_enum is AdminAction.ON_HOLD:
            if status == RequestStatus.ON_HOLD.value:
                return request
            assert_valid_transition(status, RequestStatus.ON_HOLD.value)
            self.db.update_cost_request(request_id, status=RequestStatus.ON_HOLD.value)

        elif action_enum is AdminAction.REJECT:
            assert_valid_transition(status, RequestStatus.REJECTED.value)
            fields: Dict[str, Any] = {"status": RequestStatus.REJECTED.value}
            if "admin_memo" in changes:
                fields["admin_memo"] = changes["admin_memo"]
            self.db.update_cost_request(request_id, **fields)

        elif action_enum is AdminAction.REVERT:
            assert_valid_transition(status, RequestStatus.SUBMITTED.value)
            self.db.update_cost_request(request_id, status=RequestStatus.SUBMITTED.value)

        logger.info("Request %s: %s applied (was %s)", request_id, action_enum.value, status)
        return self._get_or_404(request_id)

    # ------------------------------------------------------------------
    # Transitions owned by freee sync and reconciliation
    # ------------------------------------------------------------------

    def mark_synced(self, request_id: str, deal_id: int, partner_id: Optional[int]) -> Dict[str, Any]:
        request = self._get_or_404(request_id)
        assert_valid_transition(request["status"], RequestStatus.SYNCED.value)
        self.db.update_cost_request(
            request_id,
            status=RequestStatus.SYNCED.value,
            freee_deal_id=deal_id,
            freee_partner_id=partner_id,
            freee_synced_at=utc_now_iso(),
            freee_sync_error=None,
        )
        return self._get_or_404(request_id)

    def record_sync_error(self, request_id: str, message: str) -> None:
        self.db.update_cost_request(request_id, freee_sync_error=message)

    def mark_externally_deleted(self, request_id: str) -> Dict[str, Any]:
        request = self._get_or_404(request_id)
        assert_valid_transition(request["status"], RequestStatus.EXTERNALLY_DELETED.value)
        self.db.update_cost_request(request_id, status=RequestStatus.EXTERNALLY_DELETED.value)
        return self._get_or_404(request_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_requests(
        self,
        user: SessionUser,
        status: Optional[str] = None,
        category_group: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
    ) -> Dict[str, Any]:
        if status in STATUS_FILTERS:
            statuses: Optional[List[str]] = STATUS_FILTERS[status]
        elif status:
            if status not in VALID_TRANSITIONS:
                raise ValidationError(f"Unknown status filter: {status}", field="status")
            statuses = [status]
        else:
            statuses = None

        categories = None
        if category_group:
            if category_group not in CATEGORY_GROUPS:
                raise ValidationError(f"Unknown category group: {category_group}", field="category_group")
            categories = CATEGORY_GROUPS[category_group]

        page = max(page, 1)
        reports, total = self.db.list_cost_requests(
            submitter_id=user.user_id if user.sees_own_requests_only else None,
            statuses=statuses,
            categories=categories,
            search=search or None,
            limit=PAGE_SIZE,
            offset=(page - 1) * PAGE_SIZE,
        )
        return {"reports": reports, "total": total, "page": page, "limit": PAGE_SIZE}

    def get_request(self, user: SessionUser, request_id: str) -> Dict[str, Any]:
        request = self._get_or_404(request_id)
        if user.sees_own_requests_only and request.get("submitter_id") != user.user_id:
            raise ForbiddenError("You can only view your own requests")

        request["attachments"] = self.db.list_attachments(request_id)
        submitter = self.db.get_user(request["submitter_id"]) if request.get("submitter_id") else None
        request["submitter"] = (
            {
                "id": submitter["id"],
                "name": submitter["name"],
                "email": submitter.get("email"),
                "freee_partner_id": submitter.get("freee_partner_id"),
            }
            if submitter else None
        )
        department = self.db.get_department(request["department_id"]) if request.get("department_id") else None
        request["department"] = {"id": department["id"], "name": department["name"]} if department else None
        return request
