"""
folioflow Database

Single source of truth for the actor directory, folios, projects, their
history, the notification log, the idempotency ledger and the sequence
counters.

Postgres is used when DATABASE_URL is set; otherwise SQLite. Every
multi-step change goes through `transaction()`, which takes the write lock
up front (BEGIN IMMEDIATE on SQLite, row locks via FOR UPDATE on Postgres)
and commits or rolls back as a unit.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from folioflow.core.models import Actor, Role, ROLE_LABELS, ROLE_LEVELS
from folioflow.core.settings import get_settings

try:
    import psycopg
    from psycopg.rows import dict_row
    HAS_POSTGRES = True
except ImportError:  # pragma: no cover
    psycopg = None
    dict_row = None
    HAS_POSTGRES = False


logger = logging.getLogger(__name__)

_CLOCK_LOCK = threading.Lock()
_LAST_TS: Optional[datetime] = None


def now_iso() -> str:
    """UTC ISO timestamp, strictly increasing within this process."""
    global _LAST_TS
    with _CLOCK_LOCK:
        now = datetime.now(timezone.utc)
        if _LAST_TS is not None and now <= _LAST_TS:
            now = _LAST_TS + timedelta(microseconds=1)
        _LAST_TS = now
        return now.isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


class FolioDB:
    def __init__(self, db_path: str = "folioflow.db", dsn: Optional[str] = None):
        settings = get_settings()
        self.dsn = dsn if dsn is not None else settings.database_url
        self.db_path = db_path
        self.allow_sqlite_fallback = settings.db_fallback_sqlite
        dsn_lower = (self.dsn or "").strip().lower()
        self.use_postgres = bool(
            HAS_POSTGRES
            and dsn_lower
            and (dsn_lower.startswith("postgres://") or dsn_lower.startswith("postgresql://"))
        )
        self._initialized = False
        self._init_lock = threading.Lock()
        self._fallback_warned = False

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _sqlite_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self):
        if self.use_postgres:
            try:
                conn = psycopg.connect(self.dsn, row_factory=dict_row)
            except Exception as exc:
                if not self.allow_sqlite_fallback:
                    raise
                if not self._fallback_warned:
                    logger.warning(
                        "Postgres unavailable (%s). Falling back to SQLite at %s. "
                        "Set FOLIOFLOW_DB_FALLBACK_SQLITE=false to disable fallback.",
                        exc,
                        self.db_path,
                    )
                    self._fallback_warned = True
                self.use_postgres = False
                conn = self._sqlite_connection()
        else:
            conn = self._sqlite_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """Yield a cursor inside one write transaction; commit on success, roll back on error."""
        self.initialize()
        with self.connect() as conn:
            if isinstance(conn, sqlite3.Connection):
                conn.isolation_level = None
                cur = conn.cursor()
                cur.execute("BEGIN IMMEDIATE")
                try:
                    yield cur
                except BaseException:
                    cur.execute("ROLLBACK")
                    raise
                cur.execute("COMMIT")
            else:
                cur = conn.cursor()
                try:
                    yield cur
                except BaseException:
                    conn.rollback()
                    raise
                conn.commit()

    @property
    def lock_clause(self) -> str:
        """Row-lock suffix for SELECTs inside `transaction()`."""
        return " FOR UPDATE" if self.use_postgres else ""

    def _prepare_sql(self, sql: str) -> str:
        if self.use_postgres:
            return sql.replace("?", "%s")
        return sql

    # ------------------------------------------------------------------
    # Cursor helpers (usable inside a transaction)
    # ------------------------------------------------------------------

    def execute(self, cur, sql: str, params: Iterable[Any] = ()) -> int:
        cur.execute(self._prepare_sql(sql), tuple(params))
        return cur.rowcount

    def fetchone(self, cur, sql: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
        cur.execute(self._prepare_sql(sql), tuple(params))
        row = cur.fetchone()
        return dict(row) if row else None

    def fetchall(self, cur, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        cur.execute(self._prepare_sql(sql), tuple(params))
        return [dict(row) for row in cur.fetchall()]

    # ------------------------------------------------------------------
    # Standalone helpers (own connection, autocommit per call)
    # ------------------------------------------------------------------

    def query_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            return self.fetchone(conn.cursor(), sql, params)

    def query_all(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            return self.fetchall(conn.cursor(), sql, params)

    def write(self, sql: str, params: Iterable[Any] = ()) -> int:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            rowcount = self.execute(cur, sql, params)
            conn.commit()
            return rowcount

    def ping(self) -> Dict[str, Any]:
        row = self.query_one("SELECT 1 AS ok")
        return {"ok": bool(row and row.get("ok") == 1), "backend": "postgres" if self.use_postgres else "sqlite"}

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _table_columns(self, cur, table: str) -> set[str]:
        if self.use_postgres:
            cur.execute(
                self._prepare_sql("SELECT column_name FROM information_schema.columns WHERE table_name = ?"),
                (table,),
            )
            return {str(row["column_name"]) for row in cur.fetchall()}
        cur.execute(f"PRAGMA table_info({table})")
        return {str(row["name"]) for row in cur.fetchall()}

    def _ensure_column(self, cur, table: str, column: str, definition: str) -> None:
        if column in self._table_columns(cur, table):
            return
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def _ensure_numeric(self, cur, table: str, column: str, precision: str = "12,2") -> None:
        """Widen a float column to NUMERIC on Postgres. SQLite columns keep their affinity."""
        if not self.use_postgres:
            return
        cur.execute(
            self._prepare_sql(
                "SELECT data_type FROM information_schema.columns WHERE table_name = ? AND column_name = ?"
            ),
            (table, column),
        )
        row = cur.fetchone()
        if not row or row["data_type"] not in ("real", "double precision"):
            return
        cur.execute(
            f"ALTER TABLE {table} ALTER COLUMN {column} TYPE NUMERIC({precision}) "
            f"USING ROUND({column}::numeric, 2)"
        )

    def initialize(self) -> None:
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            self._create_schema()
            self._initialized = True

    def _create_schema(self) -> None:
        with self.connect() as conn:
            cur = conn.cursor()

            cur.execute("""
                CREATE TABLE IF NOT EXISTS org_units (
                    id TEXT PRIMARY KEY,
                    code TEXT UNIQUE NOT NULL,
                    name TEXT NOT NULL,
                    created_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS roles (
                    id TEXT PRIMARY KEY,
                    code TEXT UNIQUE NOT NULL,
                    name TEXT NOT NULL,
                    level INTEGER NOT NULL DEFAULT 0
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS actors (
                    id TEXT PRIMARY KEY,
                    phone TEXT UNIQUE NOT NULL,
                    name TEXT NOT NULL,
                    email TEXT,
                    org_unit_id TEXT REFERENCES org_units(id),
                    role_id TEXT NOT NULL REFERENCES roles(id),
                    active INTEGER DEFAULT 1,
                    created_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS idempotency_ledger (
                    delivery_id TEXT PRIMARY KEY,
                    source_phone TEXT,
                    received_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS sequence_counters (
                    prefix TEXT NOT NULL,
                    period_key TEXT NOT NULL,
                    last_sequence INTEGER NOT NULL,
                    PRIMARY KEY (prefix, period_key)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    code TEXT UNIQUE NOT NULL,
                    org_unit_id TEXT NOT NULL REFERENCES org_units(id),
                    name TEXT NOT NULL,
                    start_date TEXT,
                    estimated_close_date TEXT,
                    actual_close_date TEXT,
                    status TEXT NOT NULL,
                    zp_approved INTEGER DEFAULT 0,
                    approved_by TEXT,
                    created_by_id TEXT REFERENCES actors(id),
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS folios (
                    id TEXT PRIMARY KEY,
                    code TEXT UNIQUE NOT NULL,
                    org_unit_id TEXT NOT NULL REFERENCES org_units(id),
                    created_by_id TEXT REFERENCES actors(id),
                    beneficiary TEXT,
                    purpose TEXT,
                    amount NUMERIC(12,2),
                    category TEXT,
                    subcategory TEXT,
                    unit_ref TEXT,
                    priority TEXT DEFAULT 'normal',
                    status TEXT NOT NULL,
                    quote_attachment_ref TEXT,
                    approved_by TEXT,
                    approved_at TEXT,
                    prior_status TEXT,
                    project_ref TEXT,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS folio_history (
                    id TEXT PRIMARY KEY,
                    record_id TEXT NOT NULL,
                    record_code TEXT NOT NULL,
                    status TEXT NOT NULL,
                    comment TEXT,
                    actor_phone TEXT,
                    actor_role TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS project_history (
                    id TEXT PRIMARY KEY,
                    record_id TEXT NOT NULL,
                    record_code TEXT NOT NULL,
                    status TEXT NOT NULL,
                    comment TEXT,
                    actor_phone TEXT,
                    actor_role TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS project_attachments (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    project_code TEXT NOT NULL,
                    attachment_ref TEXT NOT NULL,
                    content_type TEXT,
                    uploaded_by TEXT,
                    created_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS notification_log (
                    id TEXT PRIMARY KEY,
                    record_code TEXT NOT NULL,
                    org_unit_id TEXT,
                    event_kind TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    error_detail TEXT,
                    created_at TEXT
                )
            """)

            cur.execute("CREATE INDEX IF NOT EXISTS idx_actors_role_unit ON actors(role_id, org_unit_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_folios_unit_status ON folios(org_unit_id, status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_folios_project ON folios(project_ref)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_folios_created ON folios(created_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_projects_unit ON projects(org_unit_id, status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_folio_history_code ON folio_history(record_code, created_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_project_history_code ON project_history(record_code, created_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_notification_log_code ON notification_log(record_code)")

            # Evolve existing DBs without external migration dependency.
            self._ensure_column(cur, "folios", "prior_status", "TEXT")
            self._ensure_column(cur, "folios", "project_ref", "TEXT")
            self._ensure_column(cur, "folios", "updated_at", "TEXT")
            self._ensure_column(cur, "actors", "email", "TEXT")
            self._ensure_column(cur, "roles", "level", "INTEGER NOT NULL DEFAULT 0")
            self._ensure_numeric(cur, "folios", "amount")

            for role in Role:
                cur.execute(
                    self._prepare_sql(
                        "INSERT INTO roles (id, code, name, level) VALUES (?, ?, ?, ?) "
                        "ON CONFLICT (code) DO NOTHING"
                    ),
                    (f"ROLE-{role.value}", role.value, ROLE_LABELS[role], ROLE_LEVELS[role]),
                )

            conn.commit()

    # ------------------------------------------------------------------
    # Directory: org units and actors
    # ------------------------------------------------------------------

    def upsert_org_unit(self, code: str, name: Optional[str] = None) -> Dict[str, Any]:
        self.initialize()
        code = str(code or "").strip().upper()
        if not code:
            raise ValueError("org unit code is required")
        self.write(
            "INSERT INTO org_units (id, code, name, created_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT (code) DO UPDATE SET name = EXCLUDED.name",
            (new_id("OU"), code, name or code, now_iso()),
        )
        return self.get_org_unit(code)

    def get_org_unit(self, code: str) -> Optional[Dict[str, Any]]:
        code = str(code or "").strip().upper()
        if not code:
            return None
        return self.query_one("SELECT * FROM org_units WHERE code = ?", (code,))

    def get_org_unit_by_id(self, org_unit_id: str) -> Optional[Dict[str, Any]]:
        return self.query_one("SELECT * FROM org_units WHERE id = ?", (org_unit_id,))

    def find_org_unit(self, value: str) -> Optional[Dict[str, Any]]:
        """Match an org unit by code or, failing that, by case-insensitive name."""
        found = self.get_org_unit(value)
        if found:
            return found
        return self.query_one(
            "SELECT * FROM org_units WHERE LOWER(name) = ?",
            (str(value or "").strip().lower(),),
        )

    def add_actor(
        self,
        phone: str,
        name: str,
        role: Role,
        org_unit_code: Optional[str] = None,
        email: Optional[str] = None,
        active: bool = True,
    ) -> Dict[str, Any]:
        """Register an actor. The phone is stored exactly as given."""
        self.initialize()
        org_unit_id = None
        if org_unit_code:
            unit = self.get_org_unit(org_unit_code) or self.upsert_org_unit(org_unit_code)
            org_unit_id = unit["id"]
        actor_id = new_id("USR")
        self.write(
            "INSERT INTO actors (id, phone, name, email, org_unit_id, role_id, active, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (actor_id, phone, name, email, org_unit_id, f"ROLE-{Role(role).value}", 1 if active else 0, now_iso()),
        )
        return self.query_one("SELECT * FROM actors WHERE id = ?", (actor_id,))

    _ACTOR_SELECT = """
        SELECT a.id AS user_id, a.phone, a.name, a.email, a.active,
               r.code AS role, r.level AS role_level,
               o.id AS org_unit_id, o.code AS org_unit_code, o.name AS org_unit_name
        FROM actors a
        JOIN roles r ON r.id = a.role_id
        LEFT JOIN org_units o ON o.id = a.org_unit_id
    """

    def get_actor_by_phone(self, phone: str) -> Optional[Dict[str, Any]]:
        return self.query_one(
            self._ACTOR_SELECT + " WHERE a.phone = ? AND a.active = 1",
            (phone,),
        )

    def list_active_actors(
        self,
        roles: Optional[List[Role]] = None,
        org_unit_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        sql = self._ACTOR_SELECT + " WHERE a.active = 1"
        params: List[Any] = []
        if roles:
            sql += " AND r.code IN (" + ",".join("?" for _ in roles) + ")"
            params.extend(Role(r).value for r in roles)
        if org_unit_id:
            sql += " AND a.org_unit_id = ?"
            params.append(org_unit_id)
        sql += " ORDER BY a.created_at ASC"
        return self.query_all(sql, params)

    @staticmethod
    def actor_from_row(row: Dict[str, Any], canonical_phone: str) -> Optional[Actor]:
        role = Role.parse(row.get("role"))
        if role is None:
            return None
        return Actor(
            user_id=row["user_id"],
            name=row.get("name") or "",
            role=role,
            canonical_phone=canonical_phone,
            org_unit_id=row.get("org_unit_id"),
            org_unit=row.get("org_unit_code"),
            org_unit_name=row.get("org_unit_name"),
            email=row.get("email"),
        )

    # ------------------------------------------------------------------
    # Record reads shared by engines and reports
    # ------------------------------------------------------------------

    FOLIO_SELECT = """
        SELECT f.*, o.code AS org_unit_code, o.name AS org_unit_name
        FROM folios f
        JOIN org_units o ON o.id = f.org_unit_id
    """

    PROJECT_SELECT = """
        SELECT p.*, o.code AS org_unit_code, o.name AS org_unit_name
        FROM projects p
        JOIN org_units o ON o.id = p.org_unit_id
    """


_DB_INSTANCE: Optional[FolioDB] = None


def get_db() -> FolioDB:
    global _DB_INSTANCE
    if _DB_INSTANCE is None:
        _DB_INSTANCE = FolioDB(db_path=get_settings().db_path)
    return _DB_INSTANCE


def reset_db() -> None:
    global _DB_INSTANCE
    _DB_INSTANCE = None
