"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema migration.

The store is the only synchronization point between processes, so every
balance or status change is issued as a single conditional statement and
callers inspect the affected row count.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Anonymous sessions (self-issued owners)
CREATE TABLE IF NOT EXISTS anonymous_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    token TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL,
    last_active_at TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    user_agent TEXT,
    ip_address TEXT
);

-- Credit accounts, one per owner
CREATE TABLE IF NOT EXISTS credit_accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER UNIQUE,
    anonymous_session_id INTEGER UNIQUE REFERENCES anonymous_sessions(id),
    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (user_id IS NOT NULL OR anonymous_session_id IS NOT NULL),
    CHECK (user_id IS NULL OR anonymous_session_id IS NULL)
);

-- Lightning top-up invoices
CREATE TABLE IF NOT EXISTS payment_invoices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER,
    anonymous_session_id INTEGER REFERENCES anonymous_sessions(id),
    external_invoice_id TEXT NOT NULL UNIQUE,
    amount INTEGER NOT NULL CHECK (amount > 0),
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'paid', 'failed', 'expired')),
    payment_request TEXT,
    description TEXT,
    created_at TEXT NOT NULL,
    paid_at TEXT,
    CHECK ((status = 'paid') = (paid_at IS NOT NULL))
);

-- Append-only spend log
CREATE TABLE IF NOT EXISTS credit_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER,
    anonymous_session_id INTEGER REFERENCES anonymous_sessions(id),
    resource_id INTEGER,
    amount INTEGER NOT NULL CHECK (amount > 0),
    action TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_sessions_active ON anonymous_sessions(active);
CREATE INDEX IF NOT EXISTS idx_invoices_status ON payment_invoices(status, created_at);
CREATE INDEX IF NOT EXISTS idx_usage_created ON credit_usage(created_at);
CREATE INDEX IF NOT EXISTS idx_usage_user ON credit_usage(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_usage_session ON credit_usage(anonymous_session_id, created_at);
"""

POSTGRES_SCHEMA_SQL = """
-- Anonymous sessions
CREATE TABLE IF NOT EXISTS anonymous_sessions (
    id SERIAL PRIMARY KEY,
    token TEXT NOT NULL UNIQUE,
    created_at TIMESTAMPTZ NOT NULL,
    last_active_at TIMESTAMPTZ NOT NULL,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    user_agent VARCHAR(500),
    ip_address VARCHAR(45)
);

-- Credit accounts
CREATE TABLE IF NOT EXISTS credit_accounts (
    id SERIAL PRIMARY KEY,
    user_id INTEGER UNIQUE,
    anonymous_session_id INTEGER UNIQUE REFERENCES anonymous_sessions(id),
    balance BIGINT NOT NULL DEFAULT 0 CHECK (balance >= 0),
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    CHECK (user_id IS NOT NULL OR anonymous_session_id IS NOT NULL),
    CHECK (user_id IS NULL OR anonymous_session_id IS NULL)
);

-- Invoices
CREATE TABLE IF NOT EXISTS payment_invoices (
    id SERIAL PRIMARY KEY,
    user_id INTEGER,
    anonymous_session_id INTEGER REFERENCES anonymous_sessions(id) ON DELETE SET NULL,
    external_invoice_id VARCHAR(255) NOT NULL UNIQUE,
    amount BIGINT NOT NULL CHECK (amount > 0),
    status VARCHAR(50) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'paid', 'failed', 'expired')),
    payment_request TEXT,
    description TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    paid_at TIMESTAMPTZ,
    CHECK ((status = 'paid') = (paid_at IS NOT NULL))
);

-- Usage log
CREATE TABLE IF NOT EXISTS credit_usage (
    id SERIAL PRIMARY KEY,
    user_id INTEGER,
    anonymous_session_id INTEGER REFERENCES anonymous_sessions(id) ON DELETE SET NULL,
    resource_id INTEGER,
    amount BIGINT NOT NULL CHECK (amount > 0),
    action VARCHAR(100) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_sessions_active ON anonymous_sessions(active);
CREATE INDEX IF NOT EXISTS idx_invoices_status ON payment_invoices(status, created_at);
CREATE INDEX IF NOT EXISTS idx_usage_created ON credit_usage(created_at);
CREATE INDEX IF NOT EXISTS idx_usage_user ON credit_usage(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_usage_session ON credit_usage(anonymous_session_id, created_at);
"""


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.connection() as conn:
            db.execute("SELECT * FROM credit_accounts", conn=conn)

    Queries are written with ``?`` placeholders and translated for
    PostgreSQL. Passing ``conn`` runs a statement inside an enclosing
    ``connection()`` block so several statements commit as one unit.
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///credits.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._initialized = False
        self._init_lock = threading.Lock()

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests and CLI re-configuration)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "credits.db"

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe)."""
        if self.is_postgres:
            with self._postgres_connection() as conn:
                yield conn
        else:
            with self._sqlite_connection() as conn:
                yield conn

    def _sqlite_raw(self) -> sqlite3.Connection:
        """Per-thread SQLite connection with WAL mode for concurrency."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            db_path = self._get_sqlite_path()
            self._local.conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
                # Transactions are opened explicitly with BEGIN IMMEDIATE
                isolation_level=None,
            )
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")
        return self._local.conn

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite transaction block on the per-thread connection."""
        conn = self._sqlite_raw()
        # Take the write lock up front so check-and-update statements in
        # the same block cannot interleave with another writer.
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, one per block."""
        import psycopg2
        from psycopg2.extras import RealDictCursor

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            now = datetime.now(timezone.utc).isoformat()
            if self.is_postgres:
                with self.connection() as conn:
                    cursor = conn.cursor()
                    cursor.execute(POSTGRES_SCHEMA_SQL)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
            else:
                # executescript manages its own transaction
                conn = self._sqlite_raw()
                conn.executescript(SCHEMA_SQL)
                conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now)
                )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def _adapt(self, query: str) -> str:
        """Translate ``?`` placeholders for psycopg2."""
        if self.is_postgres:
            return query.replace("?", "%s")
        return query

    def _run(self, conn: Any, query: str, params: tuple) -> Any:
        if self.is_postgres:
            cursor = conn.cursor()
            cursor.execute(self._adapt(query), params)
            return cursor
        return conn.execute(query, params)

    def execute(self, query: str, params: tuple = (), conn: Any = None) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        if conn is not None:
            cursor = self._run(conn, query, params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

        with self.connection() as own_conn:
            return self.execute(query, params, conn=own_conn)

    def execute_write(self, query: str, params: tuple = (), conn: Any = None) -> int:
        """Execute a write statement and return the affected row count."""
        if conn is not None:
            return self._run(conn, query, params).rowcount

        with self.connection() as own_conn:
            return self._run(own_conn, query, params).rowcount

    def insert(self, query: str, params: tuple = (), conn: Any = None) -> int:
        """Execute an INSERT and return the new row id."""
        if conn is None:
            with self.connection() as own_conn:
                return self.insert(query, params, conn=own_conn)

        if self.is_postgres:
            cursor = self._run(conn, query + " RETURNING id", params)
            return cursor.fetchone()["id"]
        return self._run(conn, query, params).lastrowid

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
