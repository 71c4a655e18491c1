import sqlite3
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

from leadscore.core.config import settings

logger = logging.getLogger(__name__)

# Global Connection Pool
async_pg_pool = None

IN_FLIGHT_STATUSES = ("pending", "processing")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_unique_violation(exc: BaseException) -> bool:
    """True for a unique-constraint violation from either SQLite or PostgreSQL."""
    if isinstance(exc, sqlite3.IntegrityError):
        return "UNIQUE" in str(exc).upper()
    return type(exc).__name__ == "UniqueViolationError"


def row_to_dict(row: Any) -> Optional[dict]:
    if row is None:
        return None
    # asyncpg Record and aiosqlite Row both expose keys()
    return {key: row[key] for key in row.keys()}


# ─── ASYNC PostgreSQL Wrapper ────────────────────────────────────────────────
class AsyncPostgresCursor:
    """Wraps asyncpg connection to support '?' placeholders"""
    def __init__(self, conn):
        self.conn = conn
        self._last_result = None

    async def execute(self, sql: str, params: Tuple = ()) -> Any:
        # asyncpg uses $1, $2, $3. We must convert ? -> $n
        params = list(params)

        counter = 0
        def replace_placeholder(match):
            nonlocal counter
            if match.group(1): return match.group(1)
            counter += 1
            return f"${counter}"

        pattern = r"(\'[^\']*\'|\"[^\"]*\")|\?"
        pg_sql = re.sub(pattern, replace_placeholder, sql)

        self._last_result = await self.conn.fetch(pg_sql, *params)
        return self

    async def fetchone(self) -> Optional[Any]:
        if self._last_result and len(self._last_result) > 0:
            return self._last_result[0]
        return None

    async def fetchall(self) -> List[Any]:
        return self._last_result or []


class AsyncPostgresConnection:
    """Wraps asyncpg pool connection"""
    def __init__(self, conn):
        self.conn = conn
        self._tx = None

    async def execute(self, sql: str, params: Tuple = ()) -> AsyncPostgresCursor:
        cursor = AsyncPostgresCursor(self.conn)
        await cursor.execute(sql, params)
        return cursor

    async def begin(self):
        self._tx = self.conn.transaction()
        await self._tx.start()

    async def commit(self):
        # Statements outside begin() are auto-committed by asyncpg
        if self._tx is not None:
            await self._tx.commit()
            self._tx = None

    async def rollback(self):
        if self._tx is not None:
            await self._tx.rollback()
            self._tx = None


# ─── ASYNC SQLite Wrapper ────────────────────────────────────────────────────
class AsyncSqliteConnection:
    """Wraps aiosqlite connection"""
    def __init__(self, conn):
        self.conn = conn

    async def execute(self, sql: str, params: Tuple = ()):
        return await self.conn.execute(sql, params)

    async def begin(self):
        # sqlite3 opens the transaction implicitly on the first write
        pass

    async def commit(self):
        await self.conn.commit()

    async def rollback(self):
        await self.conn.rollback()


# ─── Initialization ──────────────────────────────────────────────────────────
def init_db():
    """Sync Initialization (Schema Creation) - Runs on Startup"""
    if settings.DATABASE_URL:
        _init_postgres_sync()
    else:
        _init_sqlite_sync()

async def init_async_db():
    """Async Initialization (Pool Creation)"""
    if settings.DATABASE_URL:
        global async_pg_pool
        import asyncpg
        if not async_pg_pool:
            async_pg_pool = await asyncpg.create_pool(
                dsn=settings.DATABASE_URL,
                min_size=1,
                max_size=20
            )
            logger.info("Async PostgreSQL Pool initialized.")

async def close_async_db():
    """Async Cleanup"""
    global async_pg_pool
    if async_pg_pool:
        await async_pg_pool.close()
        async_pg_pool = None
        logger.info("Async PostgreSQL Pool closed.")

# ─── Sync Implementation Details ─────────────────────────────────────────────
def _init_sqlite_sync():
    conn = sqlite3.connect(settings.SQLITE_PATH)
    try:
        cursor = conn.cursor()
        _create_schema(cursor, dialect="sqlite")
        conn.commit()
    finally:
        conn.close()

def _init_postgres_sync():
    import psycopg2

    conn = psycopg2.connect(settings.DATABASE_URL)
    try:
        cursor = conn.cursor()
        _create_schema(cursor, dialect="postgres")
        conn.commit()
    except Exception as e:
        conn.rollback()
        logger.error(f"Postgres Init Failed: {e}")
        raise
    finally:
        conn.close()

def _create_schema(cursor, dialect: str):
    serial = "SERIAL PRIMARY KEY" if dialect == "postgres" else "INTEGER PRIMARY KEY AUTOINCREMENT"
    boolean = "BOOLEAN" if dialect == "postgres" else "INTEGER"
    real = "DOUBLE PRECISION" if dialect == "postgres" else "REAL"

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS jobs (
        job_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        business_profile_id TEXT NOT NULL,
        job_type TEXT NOT NULL,
        status TEXT NOT NULL,
        credits_reserved INTEGER NOT NULL DEFAULT 0,
        result_json TEXT,
        error_message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT
    )
    """)
    # Duplicate guard: at most one in-flight job per (account, subject)
    cursor.execute("""
    CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_in_flight
    ON jobs(account_id, subject_id)
    WHERE status IN ('pending', 'processing')
    """)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_jobs_account ON jobs(account_id)")

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS business_profiles (
        business_profile_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        business_name TEXT NOT NULL,
        business_one_liner TEXT,
        target_audience TEXT,
        context_json TEXT,
        created_at TEXT NOT NULL
    )
    """)

    cursor.execute(f"""
    CREATE TABLE IF NOT EXISTS leads (
        lead_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        business_profile_id TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        display_name TEXT,
        bio TEXT,
        follower_count INTEGER NOT NULL DEFAULT 0,
        following_count INTEGER NOT NULL DEFAULT 0,
        post_count INTEGER NOT NULL DEFAULT 0,
        external_url TEXT,
        profile_pic_url TEXT,
        is_verified {boolean} NOT NULL DEFAULT FALSE,
        is_private {boolean} NOT NULL DEFAULT FALSE,
        is_business_account {boolean} NOT NULL DEFAULT FALSE,
        updated_at TEXT NOT NULL,
        UNIQUE (account_id, business_profile_id, subject_id)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS balances (
        account_id TEXT PRIMARY KEY,
        credit_balance INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """)

    cursor.execute(f"""
    CREATE TABLE IF NOT EXISTS credit_transactions (
        id {serial},
        account_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        balance_after INTEGER NOT NULL,
        transaction_type TEXT NOT NULL,
        reference_id TEXT,
        description TEXT,
        created_at TEXT NOT NULL
    )
    """)
    # One reservation and at most one refund per job
    cursor.execute("""
    CREATE UNIQUE INDEX IF NOT EXISTS idx_credit_tx_job
    ON credit_transactions(reference_id, transaction_type)
    WHERE transaction_type IN ('reservation', 'refund')
    """)

    cursor.execute(f"""
    CREATE TABLE IF NOT EXISTS job_metrics (
        job_id TEXT PRIMARY KEY,
        provider TEXT,
        cache_hit {boolean} NOT NULL DEFAULT FALSE,
        fetch_ms {real} NOT NULL DEFAULT 0,
        generation_ms {real} NOT NULL DEFAULT 0,
        total_ms {real} NOT NULL DEFAULT 0,
        prompt_tokens INTEGER NOT NULL DEFAULT 0,
        completion_tokens INTEGER NOT NULL DEFAULT 0,
        ai_cost_usd {real} NOT NULL DEFAULT 0,
        scraping_cost_usd {real} NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """)

# ─── Context Factories ───────────────────────────────────────────────────────
@asynccontextmanager
async def get_async_db_connection():
    """Async Connection"""
    if settings.DATABASE_URL:
        # Postgres Async
        if not async_pg_pool: await init_async_db()
        async with async_pg_pool.acquire() as conn:
            yield AsyncPostgresConnection(conn)
    else:
        # SQLite Async
        import aiosqlite
        async with aiosqlite.connect(settings.SQLITE_PATH) as conn:
            conn.row_factory = aiosqlite.Row
            yield AsyncSqliteConnection(conn)
