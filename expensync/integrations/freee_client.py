"""
freee REST API client.

Owns the OAuth token lifecycle (code exchange, proactive refresh five minutes
before expiry, forced refresh-and-retry once on 401) and wraps the endpoints
the approval pipeline needs: master data, tax codes, deals and receipts.

Token refresh is a read-then-write on the `freee_config` singleton. The write
is a compare-and-swap on the stored refresh token, so two concurrent
refreshers cannot silently overwrite each other: the loser re-reads the
winner's token instead.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from expensync.core.database import ExpensyncDB, get_db
from expensync.integrations.freee_oauth import FreeeOAuthConfig, get_freee_oauth_config
from expensync.services.errors import ExternalAPIError, NotConnectedError
from expensync.services.storage import FileStorage, get_storage

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN = timedelta(minutes=5)
PAGE_SIZE = 100


def _parse_iso(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    try:
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class DealDetail:
    """One line item of a freee deal."""
    account_item_id: int
    tax_code: int
    amount: int
    section_id: Optional[int] = None
    tag_ids: List[int] = field(default_factory=list)
    description: Optional[str] = None
    receipt_ids: List[int] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "account_item_id": self.account_item_id,
            "tax_code": self.tax_code,
            "amount": self.amount,
        }
        if self.section_id:
            payload["section_id"] = self.section_id
        if self.tag_ids:
            payload["tag_ids"] = list(self.tag_ids)
        if self.description:
            payload["description"] = self.description
        if self.receipt_ids:
            payload["receipt_ids"] = list(self.receipt_ids)
        return payload


@dataclass
class DealRequest:
    issue_date: str
    due_date: str
    details: List[DealDetail]
    partner_id: Optional[int] = None
    deal_type: str = "expense"

    def to_payload(self, company_id: int) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "company_id": company_id,
            "issue_date": self.issue_date,
            "due_date": self.due_date,
            "type": self.deal_type,
            "details": [detail.to_payload() for detail in self.details],
        }
        if self.partner_id:
            body["partner_id"] = self.partner_id
        return body


class FreeeClient:
    """
    Async client for the freee accounting API.

    Usage:
        client = FreeeClient()
        deal_id = await client.create_deal(company_id, DealRequest(...))

    `transport` lets tests plug in an `httpx.MockTransport`.
    """

    def __init__(
        self,
        db: Optional[ExpensyncDB] = None,
        config: Optional[FreeeOAuthConfig] = None,
        storage: Optional[FileStorage] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.db = db or get_db()
        self.config = config or get_freee_oauth_config()
        self.storage = storage or get_storage()
        self._transport = transport
        self._timeout = timeout

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    # =========================================================================
    # OAUTH
    # =========================================================================

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """Exchange an authorization code for tokens."""
        async with self._http() as client:
            response = await client.post(
                self.config.token_url,
                data={
                    "grant_type": "authorization_code",
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "code": code,
                    "redirect_uri": self.config.redirect_uri,
                },
                headers={"Accept": "application/json"},
            )
        if not response.is_success:
            raise ExternalAPIError(
                f"Token exchange failed: {response.status_code} {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return response.json()

    async def fetch_company_id(self, access_token: str) -> Optional[int]:
        """Return the first company visible to a freshly issued token."""
        async with self._http() as client:
            response = await client.get(
                f"{self.config.api_base}/api/1/companies",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        if not response.is_success:
            raise ExternalAPIError(
                f"freee API error: {response.status_code} {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        companies = response.json().get("companies") or []
        return companies[0].get("id") if companies else None

    async def refresh_access_token(self) -> str:
        """Refresh the stored tokens and return the new access token."""
        stored = self.db.get_freee_config() or {}
        refresh_token = stored.get("refresh_token")
        if not refresh_token:
            raise NotConnectedError("No freee refresh token is stored")

        async with self._http() as client:
            response = await client.post(
                self.config.token_url,
                data={
                    "grant_type": "refresh_token",
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "refresh_token": refresh_token,
                },
                headers={"Accept": "application/json"},
            )
        if not response.is_success:
            logger.error("freee token refresh failed: %s %s", response.status_code, response.text)
            raise NotConnectedError(f"freee token refresh failed: {response.status_code}")

        tokens = response.json()
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(tokens.get("expires_in", 21600)))
        swapped = self.db.update_freee_tokens(
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token") or refresh_token,
            token_expires_at=expires_at.isoformat(),
            expected_refresh_token=refresh_token,
        )
        if not swapped:
            latest = self.db.get_freee_config() or {}
            if latest.get("access_token") and latest.get("refresh_token") != refresh_token:
                logger.info("freee token was refreshed concurrently; using the stored token")
                return latest["access_token"]
            raise NotConnectedError("freee connection was removed during token refresh")

        logger.info("Refreshed freee access token (expires %s)", expires_at.isoformat())
        return tokens["access_token"]

    async def get_valid_access_token(self) -> str:
        """Return the stored access token, refreshing it when it is about to expire."""
        stored = self.db.get_freee_config()
        if not stored or not stored.get("access_token"):
            raise NotConnectedError()

        expires_at = _parse_iso(stored.get("token_expires_at"))
        if expires_at and expires_at - TOKEN_REFRESH_MARGIN < datetime.now(timezone.utc):
            return await self.refresh_access_token()
        return stored["access_token"]

    # =========================================================================
    # GENERIC REQUESTS
    # =========================================================================

    async def _send(self, method: str, url: str, token: str, **kwargs) -> httpx.Response:
        async with self._http() as client:
            return await client.request(
                method,
                url,
                headers={"Authorization": f"Bearer {token}"},
                **kwargs,
            )

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Call the freee API, retrying once with a fresh token on 401."""
        url = f"{self.config.api_base}{path}"
        kwargs = {"params": params, "json": json, "data": data, "files": files}

        token = await self.get_valid_access_token()
        response = await self._send(method, url, token, **kwargs)

        if response.status_code == 401:
            logger.info("freee returned 401 for %s %s; refreshing token and retrying", method, path)
            token = await self.refresh_access_token()
            response = await self._send(method, url, token, **kwargs)

        if not response.is_success:
            raise ExternalAPIError(
                f"freee API error: {response.status_code} {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        if not response.content:
            return {}
        return response.json()

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("POST", path, json=body)

    # =========================================================================
    # MASTER DATA
    # =========================================================================

    async def list_account_items(self, company_id: int) -> List[Dict[str, Any]]:
        data = await self.get("/api/1/account_items", {"company_id": company_id})
        return data.get("account_items") or []

    async def list_partners(self, company_id: int) -> List[Dict[str, Any]]:
        """All partners, paging until freee returns a short page."""
        partners: List[Dict[str, Any]] = []
        offset = 0
        while True:
            data = await self.get(
                "/api/1/partners",
                {"company_id": company_id, "limit": PAGE_SIZE, "offset": offset},
            )
            page = data.get("partners") or []
            partners.extend(page)
            if len(page) < PAGE_SIZE:
                break
            offset += PAGE_SIZE
        return partners

    async def list_tags(self, company_id: int) -> List[Dict[str, Any]]:
        data = await self.get("/api/1/tags", {"company_id": company_id})
        return data.get("tags") or []

    async def create_tag(self, company_id: int, name: str) -> Dict[str, Any]:
        data = await self.post("/api/1/tags", {"company_id": company_id, "name": name})
        return data["tag"]

    async def list_sections(self, company_id: int) -> List[Dict[str, Any]]:
        data = await self.get("/api/1/sections", {"company_id": company_id})
        return data.get("sections") or []

    async def list_tax_codes(self, company_id: int) -> List[Dict[str, Any]]:
        data = await self.get("/api/1/taxes/codes", {"company_id": company_id})
        return data.get("taxes") or []

    async def get_tax_code_by_name(self, company_id: int, name: str) -> Optional[int]:
        """Tax code whose Japanese name equals `name`, or None."""
        for tax in await self.list_tax_codes(company_id):
            if tax.get("name_ja") == name:
                return tax.get("code")
        return None

    # =========================================================================
    # DEALS
    # =========================================================================

    async def create_deal(self, company_id: int, deal: DealRequest) -> int:
        data = await self.post("/api/1/deals", deal.to_payload(company_id))
        return data["deal"]["id"]

    async def deal_exists(self, company_id: int, deal_id: int) -> bool:
        """False only when freee answers 404; other failures propagate."""
        try:
            await self.get(f"/api/1/deals/{deal_id}", {"company_id": company_id})
        except ExternalAPIError as exc:
            if exc.status_code == 404:
                return False
            raise
        return True

    async def list_deals(self, company_id: int, deal_type: str = "expense") -> List[Dict[str, Any]]:
        deals: List[Dict[str, Any]] = []
        offset = 0
        while True:
            data = await self.get(
                "/api/1/deals",
                {"company_id": company_id, "type": deal_type, "limit": PAGE_SIZE, "offset": offset},
            )
            page = data.get("deals") or []
            deals.extend(page)
            if len(page) < PAGE_SIZE:
                break
            offset += PAGE_SIZE
        return deals

    # =========================================================================
    # RECEIPTS
    # =========================================================================

    async def upload_receipt(self, company_id: int, file_path: str, file_name: str, mime_type: str) -> int:
        """Upload an attachment (local path or URL) as a freee receipt; returns its id."""
        content = await self.storage.read_bytes(file_path)
        data = await self.request(
            "POST",
            "/api/1/receipts",
            data={"company_id": str(company_id)},
            files={"receipt": (file_name, content, mime_type)},
        )
        return data["receipt"]["id"]


def get_freee_client() -> FreeeClient:
    return FreeeClient()
