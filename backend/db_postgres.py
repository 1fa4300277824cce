"""
Postgres database connection utility.
Backs sessions, conversations, messages, rate-limit windows, audio cache and webhook audit logs.
"""
import atexit
import logging
import threading
from typing import Optional

import psycopg2
import psycopg2.pool
from psycopg2.extensions import register_adapter
from psycopg2.extras import RealDictCursor, Json

from config import POSTGRES_CONNECTION_STRING

# Register adapter to handle dicts as JSON automatically
register_adapter(dict, Json)

logger = logging.getLogger("au_gold")

# ---------------------------------------------------------------------------
# Connection pool: shared across all threads / requests
# ---------------------------------------------------------------------------
_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
_pool_lock = threading.Lock()
_POOL_MIN = 2
_POOL_MAX = 20


def _get_pool() -> psycopg2.pool.ThreadedConnectionPool:
    """Return the singleton connection pool, creating it lazily on first call."""
    global _pool
    if _pool is not None:
        return _pool
    with _pool_lock:
        if _pool is None:
            _pool = psycopg2.pool.ThreadedConnectionPool(
                _POOL_MIN,
                _POOL_MAX,
                POSTGRES_CONNECTION_STRING,
            )
            atexit.register(_pool.closeall)
            logger.info(f"[db_postgres] Connection pool created (min={_POOL_MIN}, max={_POOL_MAX})")
    return _pool


def get_db_connection():
    """
    Borrow a connection from the pool.

    Callers must hand it back with `return_db_connection` (or use the
    execute_query / execute_update helpers, which do that for you).
    """
    pool = _get_pool()
    try:
        return pool.getconn()
    except psycopg2.pool.PoolError as e:
        logger.error(f"[db_postgres] Pool exhausted, all {_POOL_MAX} connections in use: {e}")
        raise


def return_db_connection(conn, error: bool = False) -> None:
    """Return a borrowed connection to the pool."""
    pool = _get_pool()
    try:
        pool.putconn(conn, close=error)
    except psycopg2.pool.PoolError as e:
        logger.warning(f"[db_postgres] Could not return connection to pool: {e}")


def execute_query(
    query: str,
    params: Optional[tuple] = None,
    fetch: bool = True,
    commit: bool = False,
):
    """Execute a query and return results. Borrows + auto-returns a pooled connection."""
    conn = get_db_connection()
    error = False
    try:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params)
            result = cur.fetchall() if fetch else None
            if commit or not fetch:
                conn.commit()
            return result
    except Exception as e:
        error = True
        logger.error(f"[db_postgres] Query failed: {e}")
        try:
            conn.rollback()
        except psycopg2.Error:
            pass
        raise
    finally:
        return_db_connection(conn, error=error)


def execute_update(query: str, params: Optional[tuple] = None):
    """Execute an update/insert query."""
    return execute_query(query, params, fetch=False)


def execute_returning(query: str, params: Optional[tuple] = None) -> Optional[dict]:
    """Execute a write with a RETURNING clause, commit, and return the first row (or None)."""
    rows = execute_query(query, params, fetch=True, commit=True)
    return rows[0] if rows else None


# ---------------------------------------------------------------------------
# Schema initialisation: run once at startup via main.py lifespan
# ---------------------------------------------------------------------------

def init_postgres_db():
    """Initialize all PostgreSQL tables if they don't exist."""
    statements = [
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            username VARCHAR(255) UNIQUE NOT NULL,
            password_hash VARCHAR(255) NOT NULL,
            is_admin BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            fingerprint TEXT NOT NULL,
            wallet_address TEXT,
            token_balance DOUBLE PRECISION NOT NULL DEFAULT 0,
            tier TEXT NOT NULL DEFAULT 'Free Trial',
            user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
            memory_bank TEXT,
            cookie_token TEXT,
            cookie_expiry TIMESTAMPTZ,
            last_seen TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        """,
        "CREATE INDEX IF NOT EXISTS idx_sessions_fingerprint ON sessions(fingerprint);",
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_cookie_token
        ON sessions(cookie_token)
        WHERE cookie_token IS NOT NULL;
        """,
        """
        CREATE TABLE IF NOT EXISTS conversations (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            title TEXT,
            summary TEXT,
            last_summary_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        """,
        "CREATE INDEX IF NOT EXISTS idx_conversations_session ON conversations(session_id, updated_at DESC);",
        """
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
            role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
            content TEXT NOT NULL,
            is_image BOOLEAN NOT NULL DEFAULT FALSE,
            image_url TEXT,
            audio_url TEXT,
            metadata JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        """,
        "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at);",
        """
        CREATE TABLE IF NOT EXISTS audio_cache (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            conversation_id TEXT NOT NULL,
            message_id TEXT,
            audio_url TEXT NOT NULL,
            secure_token TEXT UNIQUE NOT NULL,
            text TEXT NOT NULL,
            duration INTEGER,
            voice_settings JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS rate_limits (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            period_start TIMESTAMPTZ NOT NULL,
            period_end TIMESTAMPTZ NOT NULL,
            messages_used INTEGER NOT NULL DEFAULT 0,
            voice_minutes_used INTEGER NOT NULL DEFAULT 0
        );
        """,
        "CREATE INDEX IF NOT EXISTS idx_rate_limits_session ON rate_limits(session_id, period_end DESC);",
        """
        CREATE TABLE IF NOT EXISTS webhook_logs (
            id TEXT PRIMARY KEY,
            session_id TEXT,
            conversation_id TEXT,
            request_data JSONB NOT NULL,
            response_data JSONB,
            status TEXT NOT NULL CHECK (status IN ('success', 'error')),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        """,
        "CREATE INDEX IF NOT EXISTS idx_webhook_logs_created ON webhook_logs(created_at DESC);",
    ]

    # Use a raw direct connection for schema init (pool may not exist yet)
    conn = psycopg2.connect(POSTGRES_CONNECTION_STRING)
    try:
        with conn.cursor() as cur:
            for stmt in statements:
                if stmt.strip():
                    cur.execute(stmt)
        conn.commit()
        logger.info("[db_postgres] Schema initialised, all tables and indexes verified.")
    except Exception as e:
        logger.error(f"[db_postgres] Schema init failed: {e}")
        conn.rollback()
        raise
    finally:
        conn.close()
