"""Outbound email through the Resend REST API."""
from __future__ import annotations

import html
import logging
from typing import Optional

import httpx

from expensync.core.config import get_app_config
from expensync.services.errors import ExternalAPIError

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

CATEGORY_LABELS = {
    "expense": "立替経費",
    "expense_billable": "立替経費（取引先請求予定）",
    "sga": "販管費",
    "sga_billable": "販管費（取引先請求予定）",
}


def format_yen(amount: int) -> str:
    return f"¥{amount:,}"


class Mailer:
    def __init__(
        self,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        config = get_app_config()
        self.api_key = config.resend_api_key if api_key is None else api_key
        self.sender = sender or config.mail_from
        self.admin_email = config.admin_notify_email
        self.base_url = config.base_url
        self._transport = transport

    async def send_email(self, to: str, subject: str, html_body: str) -> bool:
        """Send one email. Returns False when mail is not configured."""
        if not self.api_key:
            logger.info("RESEND_API_KEY not set; skipping email to %s (%s)", to, subject)
            return False

        async with httpx.AsyncClient(transport=self._transport, timeout=10.0) as client:
            response = await client.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"from": self.sender, "to": [to], "subject": subject, "html": html_body},
            )
        if not response.is_success:
            raise ExternalAPIError(
                f"Email send failed: {response.status_code} {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return True

    async def notify_submission(
        self,
        submitter_name: str,
        title: str,
        amount: int,
        category: str,
        report_id: str,
    ) -> None:
        """Tell the admin a request was submitted. Never raises."""
        if not self.admin_email:
            logger.info("ADMIN_NOTIFY_EMAIL not set; skipping submission notice for %s", report_id)
            return

        label = CATEGORY_LABELS.get(category, category)
        body = (
            "<p>新しい申請が提出されました。</p>"
            "<table>"
            f"<tr><td>申請者</td><td>{html.escape(submitter_name)}</td></tr>"
            f"<tr><td>種別</td><td>{label}</td></tr>"
            f"<tr><td>件名</td><td>{html.escape(title)}</td></tr>"
            f"<tr><td>金額</td><td>{format_yen(amount)}</td></tr>"
            "</table>"
            f'<p><a href="{self.base_url}/admin/reports/{report_id}">申請を確認する</a></p>'
        )
        try:
            await self.send_email(
                self.admin_email,
                f"新しい申請: {submitter_name}さんから{label}",
                body,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Submission notification failed for %s: %s", report_id, exc)


def get_mailer() -> Mailer:
    return Mailer()
