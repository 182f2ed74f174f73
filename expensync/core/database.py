"""
Expensync Database

Single source of truth for cost requests, attachments, the freee connection
singleton, the freee master data cache and the mirrored deal ledger.
"""
from __future__ import annotations

import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

FREEE_CONFIG_ID = "singleton"

REQUEST_BOOL_FIELDS = ("has_receipt", "sync_description", "is_qualified_invoice")

REQUEST_COLUMNS = (
    "id", "submitter_id", "title", "description", "amount", "category", "cost_type",
    "tax_type", "payment_method", "cost_end_date", "has_receipt", "supervisor_name",
    "billing_partner_name", "billing_partner_id", "usage_date", "due_date",
    "recording_month", "payment_month", "status", "account_item_id", "account_item_name",
    "department_id", "admin_memo", "sync_description", "is_qualified_invoice",
    "memo_tag_names", "freee_deal_id", "freee_partner_id", "freee_synced_at",
    "freee_sync_error", "source", "created_at", "updated_at",
)

# Master data cache tables and their payload columns (besides id/updated_at).
CACHE_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "account_item_cache": ("freee_id", "name", "shortcut1", "shortcut2", "category"),
    "partner_cache": ("freee_id", "name"),
    "memo_tag_cache": ("freee_id", "name"),
    "section_cache": ("freee_id", "name"),
}

LEDGER_COLUMNS = (
    "freee_deal_id", "issue_date", "due_date", "partner_name", "section_name",
    "account_item_name", "amount", "memo_tag_names", "synced_at",
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_cache_table(table: str) -> None:
    if table not in CACHE_COLUMNS:
        raise ValueError(f"Unknown cache table: {table}")


class ExpensyncDB:
    def __init__(self, db_path: str = "expensync.db"):
        self.db_path = db_path
        self._initialized = False

    def _sqlite_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connect(self):
        conn = self._sqlite_connection()
        try:
            yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        if self._initialized:
            return
        with self.connect() as conn:
            cur = conn.cursor()

            cur.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT UNIQUE,
                    role TEXT NOT NULL DEFAULT 'employee',
                    department_id TEXT,
                    freee_partner_id INTEGER,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS departments (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    freee_section_id INTEGER UNIQUE,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS cost_requests (
                    id TEXT PRIMARY KEY,
                    submitter_id TEXT,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    amount INTEGER NOT NULL,
                    category TEXT NOT NULL,
                    cost_type TEXT NOT NULL,
                    tax_type TEXT NOT NULL DEFAULT 'inclusive',
                    payment_method TEXT,
                    cost_end_date TEXT,
                    has_receipt INTEGER NOT NULL DEFAULT 0,
                    supervisor_name TEXT,
                    billing_partner_name TEXT,
                    billing_partner_id INTEGER,
                    usage_date TEXT,
                    due_date TEXT,
                    recording_month TEXT,
                    payment_month TEXT,
                    status TEXT NOT NULL DEFAULT 'draft',
                    account_item_id INTEGER,
                    account_item_name TEXT,
                    department_id TEXT,
                    admin_memo TEXT,
                    sync_description INTEGER NOT NULL DEFAULT 0,
                    is_qualified_invoice INTEGER NOT NULL DEFAULT 0,
                    memo_tag_names TEXT,
                    freee_deal_id INTEGER,
                    freee_partner_id INTEGER,
                    freee_synced_at TEXT,
                    freee_sync_error TEXT,
                    source TEXT NOT NULL DEFAULT 'app',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cur.execute("CREATE INDEX IF NOT EXISTS idx_cost_requests_status ON cost_requests(status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_cost_requests_submitter ON cost_requests(submitter_id)")

            cur.execute("""
                CREATE TABLE IF NOT EXISTS attachments (
                    id TEXT PRIMARY KEY,
                    report_id TEXT NOT NULL REFERENCES cost_requests(id) ON DELETE CASCADE,
                    file_name TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    mime_type TEXT NOT NULL,
                    file_size INTEGER NOT NULL,
                    freee_receipt_id INTEGER,
                    created_at TEXT NOT NULL
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS freee_config (
                    id TEXT PRIMARY KEY,
                    company_id INTEGER,
                    access_token TEXT,
                    refresh_token TEXT,
                    token_expires_at TEXT,
                    last_sync_at TEXT,
                    last_pl_sync_at TEXT,
                    updated_at TEXT NOT NULL
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS account_item_cache (
                    id TEXT PRIMARY KEY,
                    freee_id INTEGER NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    shortcut1 TEXT,
                    shortcut2 TEXT,
                    category TEXT,
                    updated_at TEXT NOT NULL
                )
            """)
            for table in ("partner_cache", "memo_tag_cache", "section_cache"):
                cur.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        freee_id INTEGER NOT NULL UNIQUE,
                        name TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS freee_deals_cache (
                    id TEXT PRIMARY KEY,
                    freee_deal_id INTEGER NOT NULL,
                    issue_date TEXT NOT NULL,
                    due_date TEXT,
                    partner_name TEXT,
                    section_name TEXT,
                    account_item_name TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    memo_tag_names TEXT,
                    synced_at TEXT NOT NULL
                )
            """)

            conn.commit()
        self._initialized = True

    # ------------------------------------------------------------------
    # Users and departments
    # ------------------------------------------------------------------

    def upsert_user(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.initialize()
        now = utc_now_iso()
        user_id = payload.get("id") or f"USR-{uuid.uuid4().hex}"
        sql = """
            INSERT INTO users
            (id, name, email, role, department_id, freee_partner_id, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id)
            DO UPDATE SET name = excluded.name,
                          email = excluded.email,
                          role = excluded.role,
                          department_id = excluded.department_id,
                          freee_partner_id = excluded.freee_partner_id,
                          is_active = excluded.is_active,
                          updated_at = excluded.updated_at
        """
        params = (
            user_id,
            payload.get("name") or "",
            payload.get("email"),
            payload.get("role") or "employee",
            payload.get("department_id"),
            payload.get("freee_partner_id"),
            0 if payload.get("is_active") is False else 1,
            now,
            now,
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, params)
            conn.commit()
        return self.get_user(user_id)

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cur.fetchone()
        if not row:
            return None
        user = dict(row)
        user["is_active"] = bool(user.get("is_active"))
        return user

    def create_department(self, name: str, freee_section_id: Optional[int] = None) -> Dict[str, Any]:
        self.initialize()
        now = utc_now_iso()
        department_id = f"DEP-{uuid.uuid4().hex}"
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO departments (id, name, freee_section_id, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (department_id, name, freee_section_id, now, now),
            )
            conn.commit()
        return self.get_department(department_id)

    def get_department(self, department_id: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM departments WHERE id = ?", (department_id,))
            row = cur.fetchone()
        return dict(row) if row else None

    def list_departments(self) -> List[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM departments ORDER BY name ASC")
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Cost requests
    # ------------------------------------------------------------------

    @staticmethod
    def _deserialize_request(row: Any) -> Dict[str, Any]:
        item = dict(row)
        for field in REQUEST_BOOL_FIELDS:
            if field in item:
                item[field] = bool(item[field])
        return item

    def create_cost_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.initialize()
        now = utc_now_iso()
        values: Dict[str, Any] = {column: payload.get(column) for column in REQUEST_COLUMNS}
        values["id"] = payload.get("id") or str(uuid.uuid4())
        values["description"] = payload.get("description") or ""
        values["tax_type"] = payload.get("tax_type") or "inclusive"
        values["status"] = payload.get("status") or "draft"
        values["source"] = payload.get("source") or "app"
        for field in REQUEST_BOOL_FIELDS:
            values[field] = 1 if payload.get(field) else 0
        values["created_at"] = payload.get("created_at") or now
        values["updated_at"] = payload.get("updated_at") or now

        placeholders = ", ".join("?" for _ in REQUEST_COLUMNS)
        sql = f"INSERT INTO cost_requests ({', '.join(REQUEST_COLUMNS)}) VALUES ({placeholders})"
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, tuple(values[column] for column in REQUEST_COLUMNS))
            conn.commit()
        return self.get_cost_request(values["id"])

    def update_cost_request(self, request_id: str, **kwargs) -> bool:
        self.initialize()
        if not kwargs:
            return False
        unknown = set(kwargs) - set(REQUEST_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown cost request columns: {sorted(unknown)}")
        kwargs["updated_at"] = utc_now_iso()
        for field in REQUEST_BOOL_FIELDS:
            if field in kwargs and kwargs[field] is not None:
                kwargs[field] = 1 if kwargs[field] else 0
        set_clause = ", ".join(f"{k} = ?" for k in kwargs.keys())
        sql = f"UPDATE cost_requests SET {set_clause} WHERE id = ?"
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (*kwargs.values(), request_id))
            conn.commit()
            return cur.rowcount > 0

    def get_cost_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM cost_requests WHERE id = ?", (request_id,))
            row = cur.fetchone()
        return self._deserialize_request(row) if row else None

    def _request_filters(
        self,
        submitter_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        categories: Optional[Sequence[str]] = None,
        search: Optional[str] = None,
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if submitter_id:
            clauses.append("r.submitter_id = ?")
            params.append(submitter_id)
        if statuses:
            clauses.append(f"r.status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if categories:
            clauses.append(f"r.category IN ({', '.join('?' for _ in categories)})")
            params.extend(categories)
        if search:
            clauses.append("r.title LIKE ?")
            params.append(f"%{search}%")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list_cost_requests(
        self,
        submitter_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        categories: Optional[Sequence[str]] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Return one page of requests (newest first) and the total match count."""
        self.initialize()
        where, params = self._request_filters(submitter_id, statuses, categories, search)
        sql = f"""
            SELECT r.*, u.name AS submitter_name, d.name AS department_name,
                   (SELECT COUNT(*) FROM attachments a WHERE a.report_id = r.id) AS attachment_count
            FROM cost_requests r
            LEFT JOIN users u ON u.id = r.submitter_id
            LEFT JOIN departments d ON d.id = r.department_id
            {where}
            ORDER BY r.created_at DESC
            LIMIT ? OFFSET ?
        """
        count_sql = f"SELECT COUNT(*) AS total FROM cost_requests r {where}"
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (*params, limit, offset))
            rows = cur.fetchall()
            cur.execute(count_sql, params)
            total = cur.fetchone()["total"]
        return [self._deserialize_request(row) for row in rows], int(total)

    def list_cost_requests_with_names(self, statuses: Sequence[str]) -> List[Dict[str, Any]]:
        """Requests in the given statuses joined with submitter and department names."""
        self.initialize()
        where, params = self._request_filters(statuses=statuses)
        sql = f"""
            SELECT r.*, u.name AS submitter_name, d.name AS department_name
            FROM cost_requests r
            LEFT JOIN users u ON u.id = r.submitter_id
            LEFT JOIN departments d ON d.id = r.department_id
            {where}
            ORDER BY r.created_at ASC
        """
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [self._deserialize_request(row) for row in rows]

    def list_synced_requests(self) -> List[Dict[str, Any]]:
        self.initialize()
        sql = """
            SELECT * FROM cost_requests
            WHERE status = 'synced_to_freee' AND freee_deal_id IS NOT NULL
            ORDER BY created_at ASC
        """
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql)
            rows = cur.fetchall()
        return [self._deserialize_request(row) for row in rows]

    def list_payment_due_requests(self, due_date: str, memo_tag: str) -> List[Dict[str, Any]]:
        """Synced requests due on `due_date` whose memo tags mention `memo_tag`."""
        self.initialize()
        sql = """
            SELECT r.*, u.name AS submitter_name, u.email AS submitter_email
            FROM cost_requests r
            LEFT JOIN users u ON u.id = r.submitter_id
            WHERE r.due_date = ? AND r.status = 'synced_to_freee' AND r.memo_tag_names LIKE ?
            ORDER BY r.created_at ASC
        """
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (due_date, f"%{memo_tag}%"))
            rows = cur.fetchall()
        return [self._deserialize_request(row) for row in rows]

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def add_attachment(self, report_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.initialize()
        attachment_id = payload.get("id") or str(uuid.uuid4())
        sql = """
            INSERT INTO attachments
            (id, report_id, file_name, file_path, mime_type, file_size, freee_receipt_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (
                attachment_id,
                report_id,
                payload["file_name"],
                payload["file_path"],
                payload["mime_type"],
                payload["file_size"],
                payload.get("freee_receipt_id"),
                utc_now_iso(),
            ))
            conn.commit()
        return self.get_attachment(attachment_id)

    def get_attachment(self, attachment_id: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM attachments WHERE id = ?", (attachment_id,))
            row = cur.fetchone()
        return dict(row) if row else None

    def list_attachments(self, report_id: str) -> List[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT * FROM attachments WHERE report_id = ? ORDER BY created_at ASC, rowid ASC",
                (report_id,),
            )
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    def set_attachment_receipt_id(self, attachment_id: str, freee_receipt_id: int) -> bool:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                "UPDATE attachments SET freee_receipt_id = ? WHERE id = ?",
                (freee_receipt_id, attachment_id),
            )
            conn.commit()
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # freee connection singleton
    # ------------------------------------------------------------------

    def get_freee_config(self) -> Optional[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM freee_config WHERE id = ?", (FREEE_CONFIG_ID,))
            row = cur.fetchone()
        return dict(row) if row else None

    def save_freee_connection(
        self,
        company_id: Optional[int],
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: Optional[str],
    ) -> None:
        self.initialize()
        now = utc_now_iso()
        sql = """
            INSERT INTO freee_config
            (id, company_id, access_token, refresh_token, token_expires_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (id)
            DO UPDATE SET company_id = excluded.company_id,
                          access_token = excluded.access_token,
                          refresh_token = excluded.refresh_token,
                          token_expires_at = excluded.token_expires_at,
                          updated_at = excluded.updated_at
        """
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (FREEE_CONFIG_ID, company_id, access_token, refresh_token, token_expires_at, now))
            conn.commit()

    def update_freee_tokens(
        self,
        access_token: str,
        refresh_token: str,
        token_expires_at: str,
        expected_refresh_token: str,
    ) -> bool:
        """
        Compare-and-swap the stored tokens.

        Only writes when the stored refresh token still equals
        `expected_refresh_token`. Returns False when a concurrent refresh
        already rotated it; the caller should re-read the config.
        """
        self.initialize()
        sql = """
            UPDATE freee_config
            SET access_token = ?, refresh_token = ?, token_expires_at = ?, updated_at = ?
            WHERE id = ? AND refresh_token = ?
        """
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (
                access_token, refresh_token, token_expires_at, utc_now_iso(),
                FREEE_CONFIG_ID, expected_refresh_token,
            ))
            conn.commit()
            return cur.rowcount > 0

    def update_freee_config(self, **kwargs) -> bool:
        self.initialize()
        allowed = {"company_id", "last_sync_at", "last_pl_sync_at"}
        unknown = set(kwargs) - allowed
        if unknown:
            raise ValueError(f"Unknown freee config columns: {sorted(unknown)}")
        if not kwargs:
            return False
        kwargs["updated_at"] = utc_now_iso()
        set_clause = ", ".join(f"{k} = ?" for k in kwargs.keys())
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(f"UPDATE freee_config SET {set_clause} WHERE id = ?", (*kwargs.values(), FREEE_CONFIG_ID))
            conn.commit()
            return cur.rowcount > 0

    def clear_freee_connection(self) -> None:
        self.initialize()
        sql = """
            UPDATE freee_config
            SET access_token = NULL, refresh_token = NULL, token_expires_at = NULL,
                company_id = NULL, last_sync_at = NULL, updated_at = ?
            WHERE id = ?
        """
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (utc_now_iso(), FREEE_CONFIG_ID))
            conn.commit()

    # ------------------------------------------------------------------
    # Master data cache
    # ------------------------------------------------------------------

    def replace_cache_rows(self, table: str, rows: Iterable[Dict[str, Any]]) -> int:
        """Swap the whole content of a cache table inside one transaction."""
        self.initialize()
        columns = CACHE_COLUMNS[table]
        now = utc_now_iso()
        values = [
            (uuid.uuid4().hex, *(row.get(column) for column in columns), now)
            for row in rows
        ]
        sql = (
            f"INSERT INTO {table} (id, {', '.join(columns)}, updated_at) "
            f"VALUES ({', '.join('?' for _ in range(len(columns) + 2))})"
        )
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute(f"DELETE FROM {table}")
                cur.executemany(sql, values)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return len(values)

    def list_cache_rows(self, table: str) -> List[Dict[str, Any]]:
        self.initialize()
        _check_cache_table(table)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT * FROM {table} ORDER BY name ASC")
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    def count_cache_rows(self, table: str) -> int:
        self.initialize()
        _check_cache_table(table)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT COUNT(*) AS total FROM {table}")
            return int(cur.fetchone()["total"])

    def find_cache_rows_by_names(self, table: str, names: Sequence[str]) -> List[Dict[str, Any]]:
        self.initialize()
        _check_cache_table(table)
        if not names:
            return []
        sql = f"SELECT * FROM {table} WHERE name IN ({', '.join('?' for _ in names)})"
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, tuple(names))
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    def search_account_items(self, query: str, limit: int = 30) -> List[Dict[str, Any]]:
        self.initialize()
        if query:
            pattern = f"%{query}%"
            sql = """
                SELECT * FROM account_item_cache
                WHERE name LIKE ? OR shortcut1 LIKE ? OR shortcut2 LIKE ?
                ORDER BY name ASC LIMIT ?
            """
            params: Tuple[Any, ...] = (pattern, pattern, pattern, limit)
        else:
            sql = "SELECT * FROM account_item_cache ORDER BY name ASC LIMIT ?"
            params = (limit,)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    def search_partners(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        self.initialize()
        sql = "SELECT freee_id, name FROM partner_cache WHERE name LIKE ? ORDER BY name ASC LIMIT ?"
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (f"%{query}%", limit))
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Deal ledger mirror
    # ------------------------------------------------------------------

    def replace_ledger_rows(self, rows: Iterable[Dict[str, Any]]) -> int:
        """Swap the whole ledger mirror inside one transaction."""
        self.initialize()
        values = [
            (uuid.uuid4().hex, *(row.get(column) for column in LEDGER_COLUMNS))
            for row in rows
        ]
        sql = (
            f"INSERT INTO freee_deals_cache (id, {', '.join(LEDGER_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in range(len(LEDGER_COLUMNS) + 1))})"
        )
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute("DELETE FROM freee_deals_cache")
                cur.executemany(sql, values)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return len(values)

    def list_ledger_rows(self) -> List[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM freee_deals_cache ORDER BY issue_date ASC")
            rows = cur.fetchall()
        return [dict(row) for row in rows]


_DB_INSTANCE: Optional[ExpensyncDB] = None


def get_db() -> ExpensyncDB:
    global _DB_INSTANCE
    if _DB_INSTANCE is None:
        _DB_INSTANCE = ExpensyncDB(db_path=os.getenv("EXPENSYNC_DB_PATH", "expensync.db"))
    return _DB_INSTANCE
