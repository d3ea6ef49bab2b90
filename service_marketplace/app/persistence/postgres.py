"""
PostgreSQL persistence layer for the marketplace gateway.
"""

import uuid
from datetime import datetime
from typing import Any, List, Optional, Sequence

import asyncpg

from shared.logging import get_logger
from shared.errors import UpstreamError

from ..models import Credential, CredentialType, HistoryEntry, UsageRecord
from .base import MarketplaceStore, USAGE_QUERY_LIMIT

DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

CREDENTIAL_COLUMNS = """
    id, type, key_hash, key_prefix, feed_id, subscription_id, provider_address,
    consumer_address, name, description, rate_limit, usage_count, created_at,
    expires_at, revoked_at, last_used_at
"""

USAGE_COLUMNS = """
    id, api_key_id, feed_id, subscription_id, endpoint, method, status_code,
    response_time, ip_address, user_agent, queries_used, data_size, timestamp
"""


def _credential(row: asyncpg.Record) -> Credential:
    return Credential(
        id=row["id"],
        type=CredentialType(row["type"]),
        key_hash=row["key_hash"],
        key_prefix=row["key_prefix"],
        feed_id=row["feed_id"],
        subscription_id=row["subscription_id"],
        provider_address=row["provider_address"],
        consumer_address=row["consumer_address"],
        name=row["name"],
        description=row["description"],
        rate_limit=row["rate_limit"],
        usage_count=row["usage_count"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        revoked_at=row["revoked_at"],
        last_used_at=row["last_used_at"],
    )


def _usage(row: asyncpg.Record) -> UsageRecord:
    return UsageRecord(
        id=row["id"],
        credential_id=row["api_key_id"],
        feed_id=row["feed_id"],
        subscription_id=row["subscription_id"],
        endpoint=row["endpoint"],
        method=row["method"],
        status_code=row["status_code"],
        response_time_ms=row["response_time"],
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        queries_used=row["queries_used"],
        data_size=row["data_size"],
        timestamp=row["timestamp"],
    )


class PostgresStore(MarketplaceStore):
    """asyncpg pool backed store.

    ``statement_cache_size=0`` is required behind transaction poolers
    (pgbouncer, Supabase pooler) that cannot keep prepared statements.
    """

    def __init__(self, dsn: str, name: str = "direct", statement_cache_size: Optional[int] = None,
                 min_size: int = 1, max_size: int = 10):
        self.dsn = dsn
        self.name = name
        self.statement_cache_size = statement_cache_size
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger(f"marketplace.persistence.{name}")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        kwargs = {}
        if self.statement_cache_size is not None:
            kwargs["statement_cache_size"] = self.statement_cache_size
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30,
                **kwargs
            )
            await self._create_tables()
        except DB_ERRORS as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            if self.pool:
                await self.pool.close()
                self.pool = None
            raise UpstreamError("database", str(e), {"strategy": self.name}) from e

        self.logger.info("PostgreSQL persistence started", strategy=self.name)

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    id VARCHAR(64) PRIMARY KEY,
                    type VARCHAR(16) NOT NULL,
                    key_hash VARCHAR(64) NOT NULL UNIQUE,
                    key_prefix VARCHAR(16) NOT NULL,
                    feed_id VARCHAR(128),
                    subscription_id VARCHAR(128),
                    provider_address VARCHAR(128),
                    consumer_address VARCHAR(128),
                    name TEXT,
                    description TEXT,
                    rate_limit INTEGER,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    expires_at TIMESTAMP WITH TIME ZONE,
                    revoked_at TIMESTAMP WITH TIME ZONE,
                    last_used_at TIMESTAMP WITH TIME ZONE
                );
            """)
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_api_keys_provider ON api_keys(provider_address);")
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_api_keys_consumer ON api_keys(consumer_address);")
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_api_keys_feed ON api_keys(feed_id);")

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS usage_logs (
                    id VARCHAR(64) PRIMARY KEY,
                    api_key_id VARCHAR(64) NOT NULL REFERENCES api_keys(id),
                    feed_id VARCHAR(128),
                    subscription_id VARCHAR(128),
                    endpoint TEXT NOT NULL,
                    method VARCHAR(10) NOT NULL,
                    status_code INTEGER NOT NULL,
                    response_time INTEGER NOT NULL,
                    ip_address VARCHAR(64),
                    user_agent TEXT,
                    queries_used INTEGER NOT NULL DEFAULT 0,
                    data_size INTEGER NOT NULL DEFAULT 0,
                    timestamp TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_usage_logs_key_time ON usage_logs(api_key_id, timestamp DESC);"
            )

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS feed_blob_history (
                    id BIGSERIAL PRIMARY KEY,
                    feed_id VARCHAR(128) NOT NULL,
                    blob_id VARCHAR(128) NOT NULL,
                    recorded_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_feed_blob_history_feed_time "
                "ON feed_blob_history(feed_id, recorded_at DESC);"
            )

    async def _run(self, method: str, query: str, *args) -> Any:
        if self.pool is None:
            raise UpstreamError("database", "store not started")
        try:
            async with self.pool.acquire() as conn:
                return await getattr(conn, method)(query, *args)
        except DB_ERRORS as e:
            self.logger.error("Database query failed", error=str(e))
            raise UpstreamError("database", str(e)) from e

    async def ping(self) -> bool:
        try:
            return await self._run("fetchval", "SELECT 1") == 1
        except UpstreamError:
            return False

    async def insert_credential(self, credential: Credential) -> Credential:
        await self._run("execute", f"""
            INSERT INTO api_keys ({CREDENTIAL_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
        """,
            credential.id, credential.type.value, credential.key_hash, credential.key_prefix,
            credential.feed_id, credential.subscription_id, credential.provider_address,
            credential.consumer_address, credential.name, credential.description,
            credential.rate_limit, credential.usage_count, credential.created_at,
            credential.expires_at, credential.revoked_at, credential.last_used_at
        )
        return credential

    async def find_credential_by_hash(self, key_hash: str) -> Optional[Credential]:
        row = await self._run("fetchrow", f"SELECT {CREDENTIAL_COLUMNS} FROM api_keys WHERE key_hash = $1", key_hash)
        return _credential(row) if row else None

    async def get_credential(self, credential_id: str) -> Optional[Credential]:
        row = await self._run("fetchrow", f"SELECT {CREDENTIAL_COLUMNS} FROM api_keys WHERE id = $1", credential_id)
        return _credential(row) if row else None

    async def touch_credential(self, credential_id: str, used_at: datetime):
        await self._run(
            "execute",
            "UPDATE api_keys SET usage_count = usage_count + 1, last_used_at = $2 WHERE id = $1",
            credential_id, used_at
        )

    async def revoke_credential(self, credential_id: str, revoked_at: datetime) -> Optional[Credential]:
        row = await self._run("fetchrow", f"""
            UPDATE api_keys SET revoked_at = COALESCE(revoked_at, $2)
            WHERE id = $1
            RETURNING {CREDENTIAL_COLUMNS}
        """, credential_id, revoked_at)
        return _credential(row) if row else None

    async def _list_credentials(self, where: str, *args) -> List[Credential]:
        rows = await self._run("fetch", f"""
            SELECT {CREDENTIAL_COLUMNS} FROM api_keys
            WHERE {where} AND revoked_at IS NULL
            ORDER BY created_at DESC
        """, *args)
        return [_credential(row) for row in rows]

    async def list_credentials_by_provider(self, provider_address: str) -> List[Credential]:
        return await self._list_credentials("provider_address = $1 AND type = $2",
                                            provider_address, CredentialType.PROVIDER.value)

    async def list_credentials_by_subscriber(self, consumer_address: str) -> List[Credential]:
        return await self._list_credentials("consumer_address = $1 AND type = $2",
                                            consumer_address, CredentialType.SUBSCRIBER.value)

    async def list_credentials_by_feed(self, feed_id: str) -> List[Credential]:
        return await self._list_credentials("feed_id = $1", feed_id)

    async def insert_usage(self, record: UsageRecord):
        await self._run("execute", f"""
            INSERT INTO usage_logs ({USAGE_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
        """,
            record.id or str(uuid.uuid4()), record.credential_id, record.feed_id,
            record.subscription_id, record.endpoint, record.method, record.status_code,
            record.response_time_ms, record.ip_address, record.user_agent,
            record.queries_used, record.data_size, record.timestamp
        )

    async def query_usage(self, credential_ids: Sequence[str], feed_id: Optional[str] = None,
                          start: Optional[datetime] = None, end: Optional[datetime] = None,
                          limit: int = USAGE_QUERY_LIMIT) -> List[UsageRecord]:
        rows = await self._run("fetch", f"""
            SELECT {USAGE_COLUMNS} FROM usage_logs
            WHERE api_key_id = ANY($1::varchar[])
              AND ($2::varchar IS NULL OR feed_id = $2)
              AND ($3::timestamptz IS NULL OR timestamp >= $3)
              AND ($4::timestamptz IS NULL OR timestamp <= $4)
            ORDER BY timestamp DESC
            LIMIT $5
        """, list(credential_ids), feed_id, start, end, limit)
        return [_usage(row) for row in rows]

    async def recent_usage(self, credential_id: str, limit: int = 10) -> List[UsageRecord]:
        return await self.query_usage([credential_id], limit=limit)

    async def append_history(self, entry: HistoryEntry):
        await self._run(
            "execute",
            "INSERT INTO feed_blob_history (feed_id, blob_id, recorded_at) VALUES ($1, $2, $3)",
            entry.feed_id, entry.blob_id, entry.recorded_at
        )

    async def list_history(self, feed_id: str, start: Optional[datetime] = None,
                           end: Optional[datetime] = None, limit: int = 100) -> List[HistoryEntry]:
        rows = await self._run("fetch", """
            SELECT feed_id, blob_id, recorded_at FROM feed_blob_history
            WHERE feed_id = $1
              AND ($2::timestamptz IS NULL OR recorded_at >= $2)
              AND ($3::timestamptz IS NULL OR recorded_at <= $3)
            ORDER BY recorded_at DESC
            LIMIT $4
        """, feed_id, start, end, limit)
        return [HistoryEntry(feed_id=row["feed_id"], blob_id=row["blob_id"], recorded_at=row["recorded_at"])
                for row in rows]
