from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from expensync.core import database as db_module
from expensync.services.errors import ExternalAPIError
from expensync.services.mailer import Mailer, format_yen
from expensync.services.payment_notify import PaymentNotifier, build_payment_html, format_date_jp

TODAY = "2024-06-25"


class RecordingMailer:
    def __init__(self, failing=()):
        self.sent = []
        self.failing = set(failing)

    async def send_email(self, to, subject, html_body):
        if to in self.failing:
            raise ExternalAPIError("Email send failed: 500", status_code=500)
        self.sent.append({"to": to, "subject": subject, "html": html_body})
        return True


@pytest.fixture()
def db(tmp_path, monkeypatch):
    monkeypatch.setenv("EXPENSYNC_DB_PATH", str(tmp_path / "payments.db"))
    db_module._DB_INSTANCE = None
    db = db_module.get_db()
    db.initialize()
    db.upsert_user({"id": "USR-alice", "name": "Alice", "email": "alice@example.com"})
    db.upsert_user({"id": "USR-bob", "name": "Bob", "email": "bob@example.com"})
    db.upsert_user({"id": "USR-nomail", "name": "No Mail"})
    return db


def _due(db, submitter_id, amount, tags="給与振込確認用", status="synced_to_freee", due_date=TODAY, title=None):
    return db.create_cost_request({
        "submitter_id": submitter_id,
        "title": title or f"Expense {amount}",
        "amount": amount,
        "category": "expense",
        "cost_type": "onetime",
        "usage_date": "2024-06-01",
        "status": status,
        "due_date": due_date,
        "memo_tag_names": tags,
    })


def test_collect_groups_by_submitter_email(db):
    _due(db, "USR-alice", 1000)
    _due(db, "USR-alice", 2500, tags="仮,給与振込確認用")
    _due(db, "USR-bob", 300)
    _due(db, "USR-nomail", 999)
    _due(db, "USR-bob", 400, tags="販管費振込確認用")
    _due(db, "USR-bob", 500, tags="給与振込確認用（旧）")
    _due(db, "USR-bob", 600, status="approved")
    _due(db, "USR-bob", 700, due_date="2024-06-26")

    snapshot = PaymentNotifier(db=db, mailer=RecordingMailer()).collect(TODAY)

    assert snapshot.date == TODAY
    assert set(snapshot.by_email) == {"alice@example.com", "bob@example.com"}
    assert snapshot.by_email["alice@example.com"].total == 3500
    assert [r["amount"] for r in snapshot.by_email["bob@example.com"].reports] == [300]


def test_send_emails_each_recipient_and_clears_snapshot(db):
    _due(db, "USR-alice", 1000)
    _due(db, "USR-bob", 300)
    mailer = RecordingMailer()
    notifier = PaymentNotifier(db=db, mailer=mailer)
    notifier.collect(TODAY)

    result = asyncio.run(notifier.send(TODAY))

    assert result == {"recipients": 2, "sent": 2, "failed": 0}
    alice = next(m for m in mailer.sent if m["to"] == "alice@example.com")
    assert "2024年6月25日" in alice["subject"]
    assert "¥1,000" in alice["subject"]
    assert notifier._snapshot is None


def test_send_collects_when_no_snapshot(db):
    _due(db, "USR-alice", 1000)
    mailer = RecordingMailer()

    result = asyncio.run(PaymentNotifier(db=db, mailer=mailer).send(TODAY))

    assert result["sent"] == 1


def test_stale_snapshot_is_recollected(db):
    notifier = PaymentNotifier(db=db, mailer=RecordingMailer())
    notifier.collect("2024-06-24")
    _due(db, "USR-alice", 1000)

    result = asyncio.run(notifier.send(TODAY))

    assert result["recipients"] == 1


def test_failure_for_one_recipient_does_not_stop_others(db):
    _due(db, "USR-alice", 1000)
    _due(db, "USR-bob", 300)
    mailer = RecordingMailer(failing={"alice@example.com"})

    result = asyncio.run(PaymentNotifier(db=db, mailer=mailer).send(TODAY))

    assert result == {"recipients": 2, "sent": 1, "failed": 1}
    assert [m["to"] for m in mailer.sent] == ["bob@example.com"]


def test_unconfigured_mailer_sends_nothing(db, monkeypatch):
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    _due(db, "USR-alice", 1000)

    result = asyncio.run(PaymentNotifier(db=db, mailer=Mailer(api_key="")).send(TODAY))

    assert result == {"recipients": 1, "sent": 0, "failed": 0}


def test_payment_html_escapes_titles(db):
    _due(db, "USR-alice", 1200, title="<b>Lunch</b>")
    summary = PaymentNotifier(db=db, mailer=RecordingMailer()).collect(TODAY).by_email["alice@example.com"]

    body = build_payment_html(summary, TODAY)

    assert "&lt;b&gt;Lunch&lt;/b&gt;" in body
    assert "立替経費" in body
    assert format_yen(1200) in body


def test_format_helpers():
    assert format_date_jp("2024-06-05") == "2024年6月5日"
    assert format_yen(1234567) == "¥1,234,567"


class TestMailer:
    def test_send_email_posts_to_resend(self):
        captured = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, json={"id": "email-1"})

        mailer = Mailer(api_key="re_test", sender="Expensync <noreply@example.com>",
                        transport=httpx.MockTransport(handler))

        assert asyncio.run(mailer.send_email("a@example.com", "Hello", "<p>hi</p>")) is True
        body = json.loads(captured[0].content)
        assert body["to"] == ["a@example.com"]
        assert captured[0].headers["Authorization"] == "Bearer re_test"

    def test_send_email_raises_on_error(self):
        mailer = Mailer(api_key="re_test", transport=httpx.MockTransport(lambda r: httpx.Response(422, text="bad")))
        with pytest.raises(ExternalAPIError):
            asyncio.run(mailer.send_email("a@example.com", "Hello", "<p>hi</p>"))

    def test_notify_submission_never_raises(self, monkeypatch):
        monkeypatch.setenv("ADMIN_NOTIFY_EMAIL", "admin@example.com")
        mailer = Mailer(api_key="re_test", transport=httpx.MockTransport(lambda r: httpx.Response(500, text="down")))

        asyncio.run(mailer.notify_submission("Alice", "Taxi", 3300, "expense", "req-1"))

    def test_notify_submission_skipped_without_admin_email(self, monkeypatch):
        monkeypatch.delenv("ADMIN_NOTIFY_EMAIL", raising=False)
        calls = []
        mailer = Mailer(api_key="re_test", transport=httpx.MockTransport(
            lambda r: calls.append(r) or httpx.Response(200, json={})
        ))

        asyncio.run(mailer.notify_submission("Alice", "Taxi", 3300, "expense", "req-1"))

        assert calls == []
