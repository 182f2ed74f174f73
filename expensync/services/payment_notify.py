"""
Payment-due notifier.

Runs in two phases triggered by the scheduler: `collect` (12:59 JST) takes a
snapshot of today's synced requests tagged for payroll transfer, grouped by
submitter email; `send` (13:00 JST) emails each submitter their list and
total, then drops the snapshot. `send` collects on demand when no snapshot
for today exists.
"""
from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from expensync.core.config import JST
from expensync.core.database import ExpensyncDB, get_db
from expensync.services.mailer import CATEGORY_LABELS, Mailer, format_yen, get_mailer
from expensync.services.master_data import TAG_PAYROLL_TRANSFER, split_tag_names

logger = logging.getLogger(__name__)


def today_jst() -> str:
    return datetime.now(JST).strftime("%Y-%m-%d")


def format_date_jp(date_str: str) -> str:
    year, month, day = date_str.split("-")
    return f"{year}年{int(month)}月{int(day)}日"


@dataclass
class PayeeSummary:
    name: str
    email: str
    reports: List[Dict] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(report["amount"] for report in self.reports)


@dataclass
class PaymentSnapshot:
    date: str
    by_email: Dict[str, PayeeSummary] = field(default_factory=dict)


class PaymentNotifier:
    def __init__(self, db: Optional[ExpensyncDB] = None, mailer: Optional[Mailer] = None):
        self.db = db or get_db()
        self.mailer = mailer or get_mailer()
        self._snapshot: Optional[PaymentSnapshot] = None

    def collect(self, today: Optional[str] = None) -> PaymentSnapshot:
        today = today or today_jst()
        rows = self.db.list_payment_due_requests(today, TAG_PAYROLL_TRANSFER)

        snapshot = PaymentSnapshot(date=today)
        for row in rows:
            # LIKE also matches longer tag names; keep exact tag matches only
            if TAG_PAYROLL_TRANSFER not in split_tag_names(row.get("memo_tag_names")):
                continue
            email = row.get("submitter_email")
            if not email:
                continue
            summary = snapshot.by_email.setdefault(
                email, PayeeSummary(name=row.get("submitter_name") or "", email=email)
            )
            summary.reports.append({
                "title": row["title"],
                "category": row["category"],
                "amount": row["amount"],
            })

        self._snapshot = snapshot
        logger.info(
            "Payment notice collected for %s: %d recipients, %d requests",
            today, len(snapshot.by_email), sum(len(s.reports) for s in snapshot.by_email.values()),
        )
        return snapshot

    async def send(self, today: Optional[str] = None) -> Dict[str, int]:
        today = today or today_jst()
        if self._snapshot is None or self._snapshot.date != today:
            logger.info("No payment snapshot for %s; collecting now", today)
            self.collect(today)

        snapshot = self._snapshot
        sent = failed = 0
        for summary in snapshot.by_email.values():
            subject = (
                f"【経費支払い通知】{format_date_jp(today)} お支払い経費のご確認"
                f"（{format_yen(summary.total)}）"
            )
            try:
                delivered = await self.mailer.send_email(
                    summary.email, subject, build_payment_html(summary, today)
                )
                if not delivered:
                    continue
                sent += 1
                logger.info(
                    "Payment notice sent to %s (%d requests, %s)",
                    summary.email, len(summary.reports), format_yen(summary.total),
                )
            except Exception as exc:  # noqa: BLE001
                failed += 1
                logger.error("Payment notice to %s failed: %s", summary.email, exc)

        self._snapshot = None
        return {"recipients": len(snapshot.by_email), "sent": sent, "failed": failed}


def build_payment_html(summary: PayeeSummary, today: str) -> str:
    rows = "".join(
        "<tr>"
        f"<td>{html.escape(report['title'])}</td>"
        f"<td>{CATEGORY_LABELS.get(report['category'], report['category'])}</td>"
        f'<td style="text-align:right;">{format_yen(report["amount"])}</td>'
        "</tr>"
        for report in summary.reports
    )
    return (
        f"<p>{html.escape(summary.name)} 様</p>"
        f"<p>本日（{format_date_jp(today)}）を支払期日とする以下の経費をお支払いしました。</p>"
        "<table>"
        "<thead><tr><th>件名</th><th>種別</th><th>金額</th></tr></thead>"
        f"<tbody>{rows}</tbody>"
        f'<tfoot><tr><td colspan="2">合計</td><td style="text-align:right;">{format_yen(summary.total)}</td></tr></tfoot>'
        "</table>"
    )


_NOTIFIER: Optional[PaymentNotifier] = None


def get_payment_notifier() -> PaymentNotifier:
    """Process-wide notifier so the collected snapshot survives until `send`."""
    global _NOTIFIER
    if _NOTIFIER is None:
        _NOTIFIER = PaymentNotifier()
    return _NOTIFIER
