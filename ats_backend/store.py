from __future__ import annotations

import json
import os
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from .errors import DuplicateEmail, QuotaExhausted
from .logs import get_logger

try:
    import psycopg2  # type: ignore
    from psycopg2.extras import RealDictCursor  # type: ignore
except Exception:  # pragma: no cover - optional dependency at runtime
    psycopg2 = None
    RealDictCursor = None

logger = get_logger("store")

PLAN_FREE = "free"
PLAN_PRO = "pro"
PLAN_TIERS = {PLAN_FREE, PLAN_PRO}
WELCOME_FREE_CREDITS = 3

DB_ERRORS: tuple[type[Exception], ...] = (sqlite3.Error,)
DB_INTEGRITY_ERRORS: tuple[type[Exception], ...] = (sqlite3.IntegrityError,)
if psycopg2 is not None:
    DB_INTEGRITY_ERRORS = DB_INTEGRITY_ERRORS + (psycopg2.IntegrityError,)
    DB_ERRORS = DB_ERRORS + (psycopg2.Error,)


class Account(BaseModel):
    id: int
    email: str
    name: str | None = None
    password_hash: str
    password_salt: str
    plan: str = PLAN_FREE
    credits_remaining: int = 0
    created_at: str

    @property
    def is_metered(self) -> bool:
        return self.plan == PLAN_FREE


class AnalysisRecord(BaseModel):
    id: int
    user_id: int
    resume_text: str
    job_description: str
    score: int
    missing_keywords: list[str]
    suggestions: list[str]
    created_at: str


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def dump_meta(meta: dict[str, Any] | None) -> str:
    return json.dumps(meta or {}, separators=(",", ":"), sort_keys=True)


class DBCursor:
    """Cursor wrapper that rewrites ``?`` placeholders for psycopg2."""

    def __init__(self, raw_cursor: Any, backend: str):
        self._raw_cursor = raw_cursor
        self._backend = backend

    def execute(self, query: str, params: Any = None) -> "DBCursor":
        if self._backend == "postgres":
            query = query.replace("?", "%s")
            if isinstance(params, list):
                params = tuple(params)
        if params is None:
            self._raw_cursor.execute(query)
        else:
            self._raw_cursor.execute(query, params)
        return self

    def fetchone(self) -> Any:
        return self._raw_cursor.fetchone()

    def fetchall(self) -> list[Any]:
        return self._raw_cursor.fetchall()

    @property
    def rowcount(self) -> int:
        return int(getattr(self._raw_cursor, "rowcount", 0))

    @property
    def lastrowid(self) -> Any:
        return getattr(self._raw_cursor, "lastrowid", None)


SQLITE_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        password_hash TEXT NOT NULL,
        password_salt TEXT NOT NULL,
        plan_tier TEXT NOT NULL DEFAULT 'free',
        credits INTEGER NOT NULL DEFAULT 0 CHECK (credits >= 0),
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS analyses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users (id),
        resume_text TEXT NOT NULL,
        job_description TEXT NOT NULL,
        score INTEGER NOT NULL,
        missing_keywords TEXT NOT NULL,
        suggestions TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credit_transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users (id),
        action TEXT NOT NULL,
        delta INTEGER NOT NULL,
        balance_after INTEGER NOT NULL,
        meta_json TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_analyses_user ON analyses (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_credit_transactions_user ON credit_transactions (user_id)",
]

POSTGRES_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        password_hash TEXT NOT NULL,
        password_salt TEXT NOT NULL,
        plan_tier TEXT NOT NULL DEFAULT 'free',
        credits INTEGER NOT NULL DEFAULT 0 CHECK (credits >= 0),
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS analyses (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES users (id),
        resume_text TEXT NOT NULL,
        job_description TEXT NOT NULL,
        score INTEGER NOT NULL,
        missing_keywords TEXT NOT NULL,
        suggestions TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credit_transactions (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES users (id),
        action TEXT NOT NULL,
        delta INTEGER NOT NULL,
        balance_after INTEGER NOT NULL,
        meta_json TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_analyses_user ON analyses (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_credit_transactions_user ON credit_transactions (user_id)",
]

ACCOUNT_COLUMNS = "id, email, name, password_hash, password_salt, plan_tier, credits, created_at"
ANALYSIS_COLUMNS = "id, user_id, resume_text, job_description, score, missing_keywords, suggestions, created_at"


def account_from_row(row: Any) -> Account:
    return Account(
        id=int(row["id"]),
        email=str(row["email"]),
        name=row["name"],
        password_hash=str(row["password_hash"]),
        password_salt=str(row["password_salt"]),
        plan=str(row["plan_tier"]),
        credits_remaining=int(row["credits"]),
        created_at=str(row["created_at"]),
    )


def analysis_from_row(row: Any) -> AnalysisRecord:
    return AnalysisRecord(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        resume_text=str(row["resume_text"]),
        job_description=str(row["job_description"]),
        score=int(row["score"]),
        missing_keywords=json.loads(row["missing_keywords"]),
        suggestions=json.loads(row["suggestions"]),
        created_at=str(row["created_at"]),
    )


class AccountStore:
    """Accounts, analysis records and the credit ledger.

    One connection is held between :meth:`open` and :meth:`close` and is
    replaced on the next call if the server drops it. Every
    operation runs under ``self._lock`` so a read-modify sequence on the
    shared connection cannot interleave with another request's transaction.
    Credit changes are still written as conditional updates so the rule
    ``credits >= 0`` holds even against other processes sharing the database.
    """

    def __init__(self, database_url: str = "", sqlite_path: str = ":memory:"):
        self.backend = "postgres" if database_url.startswith("postgresql://") else "sqlite"
        self.database_url = database_url
        self.sqlite_path = sqlite_path
        self._connection: Any = None
        self._opened = False
        self._lock = threading.Lock()

    # lifecycle

    def open(self) -> "AccountStore":
        with self._lock:
            self._opened = True
            try:
                self._init_schema()
            except Exception:
                self._opened = False
                raise
        return self

    def close(self) -> None:
        with self._lock:
            self._opened = False
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    def _connect(self) -> Any:
        if self.backend == "postgres":
            if psycopg2 is None:
                raise RuntimeError("DATABASE_URL is configured but psycopg2 is not installed.")
            logger.info("Using external Postgres database for account storage.")
            return psycopg2.connect(self.database_url, connect_timeout=10)

        db_dir = os.path.dirname(self.sqlite_path)
        if db_dir and self.sqlite_path != ":memory:":
            os.makedirs(db_dir, exist_ok=True)
        connection = sqlite3.connect(self.sqlite_path, timeout=15, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        logger.info("Using account database path: %s", self.sqlite_path)
        return connection

    def _init_schema(self) -> None:
        statements = POSTGRES_SCHEMA if self.backend == "postgres" else SQLITE_SCHEMA
        cursor = self._cursor()
        try:
            for statement in statements:
                cursor.execute(statement)
            self._connection.commit()
        except Exception:
            self._recover()
            raise

    # helpers

    def _cursor(self) -> DBCursor:
        if not self._opened:
            raise RuntimeError("AccountStore is not open.")
        # psycopg2 flags a connection the server dropped with a non-zero ``closed``.
        if self._connection is None or getattr(self._connection, "closed", 0):
            self._connection = self._connect()
        if self.backend == "postgres":
            return DBCursor(self._connection.cursor(cursor_factory=RealDictCursor), self.backend)
        return DBCursor(self._connection.cursor(), self.backend)

    def _recover(self) -> None:
        """Roll back after a failed statement; forget the connection if it is gone."""
        if self._connection is None:
            return
        if getattr(self._connection, "closed", 0):
            logger.warning("Database connection was closed by the server; reconnecting on next use.")
            self._connection = None
            return
        try:
            self._connection.rollback()
        except DB_ERRORS as exc:
            logger.warning("Rollback failed (%s); reconnecting on next use.", exc)
            self._connection = None

    def _begin_write(self, cursor: DBCursor) -> None:
        # psycopg2 opens its transaction implicitly on the first statement.
        if self.backend == "sqlite":
            cursor.execute("BEGIN IMMEDIATE")

    def _inserted_id(self, cursor: DBCursor) -> int:
        raw_id = cursor.lastrowid
        if raw_id not in (None, "", 0):
            return int(raw_id)
        if self.backend == "postgres":
            row = cursor.execute("SELECT LASTVAL() AS id").fetchone()
            if row and row["id"] is not None:
                return int(row["id"])
        raise RuntimeError("Unable to determine inserted row id for the current transaction.")

    def _fetchone(self, query: str, params: Any) -> Any:
        with self._lock:
            try:
                row = self._cursor().execute(query, params).fetchone()
                self._connection.commit()
            except Exception:
                self._recover()
                raise
            return row

    def _fetchall(self, query: str, params: Any) -> list[Any]:
        with self._lock:
            try:
                rows = self._cursor().execute(query, params).fetchall()
                self._connection.commit()
            except Exception:
                self._recover()
                raise
            return rows

    def _write_ledger(
        self, cursor: DBCursor, user_id: int, action: str, delta: int, balance_after: int, meta: dict[str, Any] | None
    ) -> None:
        cursor.execute(
            """
            INSERT INTO credit_transactions (user_id, action, delta, balance_after, meta_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (user_id, action, delta, balance_after, dump_meta(meta), now_utc_iso()),
        )

    def _debit_one(self, cursor: DBCursor, user_id: int, action: str, meta: dict[str, Any] | None) -> int | None:
        cursor.execute("UPDATE users SET credits = credits - 1 WHERE id = ? AND credits > 0", (user_id,))
        if cursor.rowcount != 1:
            return None
        row = cursor.execute("SELECT credits FROM users WHERE id = ?", (user_id,)).fetchone()
        balance = int(row["credits"])
        self._write_ledger(cursor, user_id, action, -1, balance, meta)
        return balance

    # accounts

    def create_account(
        self,
        email: str,
        password_hash: str,
        password_salt: str,
        name: str | None = None,
        plan: str = PLAN_FREE,
        credits: int = WELCOME_FREE_CREDITS,
    ) -> Account:
        if plan not in PLAN_TIERS:
            raise ValueError(f"unknown plan tier: {plan}")
        with self._lock:
            cursor = self._cursor()
            try:
                self._begin_write(cursor)
                cursor.execute(
                    """
                    INSERT INTO users (email, name, password_hash, password_salt, plan_tier, credits, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (email, name, password_hash, password_salt, plan, credits, now_utc_iso()),
                )
                user_id = self._inserted_id(cursor)
                if credits:
                    self._write_ledger(cursor, user_id, "welcome_credits", credits, credits, {"source": "signup"})
                self._connection.commit()
            except DB_INTEGRITY_ERRORS as exc:
                self._recover()
                raise DuplicateEmail() from exc
            except Exception:
                self._recover()
                raise

        account = self.get_account(user_id)
        if account is None:
            raise RuntimeError("Account vanished right after creation.")
        return account

    def get_account(self, account_id: int) -> Account | None:
        row = self._fetchone(f"SELECT {ACCOUNT_COLUMNS} FROM users WHERE id = ?", (account_id,))
        return account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Account | None:
        row = self._fetchone(f"SELECT {ACCOUNT_COLUMNS} FROM users WHERE email = ?", (email,))
        return account_from_row(row) if row else None

    def decrement_credits(self, account_id: int, action: str = "analyze", meta: dict[str, Any] | None = None) -> int | None:
        """Take one credit if one is left; returns the new balance or ``None``."""
        with self._lock:
            cursor = self._cursor()
            try:
                self._begin_write(cursor)
                balance = self._debit_one(cursor, account_id, action, meta)
                self._connection.commit()
                return balance
            except Exception:
                self._recover()
                raise

    # analyses

    def record_analysis(
        self,
        account: Account,
        resume_text: str,
        job_description: str,
        score: int,
        missing_keywords: list[str],
        suggestions: list[str],
    ) -> tuple[AnalysisRecord, int | None]:
        """Insert an analysis and, for metered accounts, charge one credit.

        Both writes share one transaction. When the conditional debit finds no
        credit left (another request spent it first) the insert is rolled back
        and :class:`QuotaExhausted` is raised. Returns the record and the
        balance after the debit, or ``None`` for unmetered accounts.
        """
        created_at = now_utc_iso()
        with self._lock:
            cursor = self._cursor()
            try:
                self._begin_write(cursor)
                cursor.execute(
                    """
                    INSERT INTO analyses (user_id, resume_text, job_description, score, missing_keywords, suggestions, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        account.id,
                        resume_text,
                        job_description,
                        score,
                        json.dumps(missing_keywords),
                        json.dumps(suggestions),
                        created_at,
                    ),
                )
                analysis_id = self._inserted_id(cursor)
                balance: int | None = None
                if account.is_metered:
                    balance = self._debit_one(cursor, account.id, "analyze", {"analysis_id": analysis_id})
                    if balance is None:
                        raise QuotaExhausted()
                self._connection.commit()
            except Exception:
                self._recover()
                raise

        record = AnalysisRecord(
            id=analysis_id,
            user_id=account.id,
            resume_text=resume_text,
            job_description=job_description,
            score=score,
            missing_keywords=list(missing_keywords),
            suggestions=list(suggestions),
            created_at=created_at,
        )
        return record, balance

    def get_analysis(self, analysis_id: int) -> AnalysisRecord | None:
        row = self._fetchone(f"SELECT {ANALYSIS_COLUMNS} FROM analyses WHERE id = ?", (analysis_id,))
        return analysis_from_row(row) if row else None

    def count_analyses(self, account_id: int) -> int:
        row = self._fetchone("SELECT COUNT(*) AS count FROM analyses WHERE user_id = ?", (account_id,))
        return int(row["count"] if row else 0)

    def list_credit_transactions(self, account_id: int) -> list[dict[str, Any]]:
        rows = self._fetchall(
            "SELECT action, delta, balance_after, meta_json, created_at FROM credit_transactions WHERE user_id = ? ORDER BY id",
            (account_id,),
        )
        return [
            {
                "action": str(row["action"]),
                "delta": int(row["delta"]),
                "balance_after": int(row["balance_after"]),
                "meta": json.loads(row["meta_json"] or "{}"),
                "created_at": str(row["created_at"]),
            }
            for row in rows
        ]
