"""
Persistence strategy selection.

The strategy is decided once when the service starts. Callers only ever
see a ``MarketplaceStore``; which connection path sits behind it is not
re-evaluated per call.
"""

from typing import List
from urllib.parse import urlparse

from shared.config import MarketplaceConfig
from shared.logging import get_logger
from shared.errors import UpstreamError, ValidationError

from .base import MarketplaceStore
from .memory import MemoryStore
from .postgres import PostgresStore

STRATEGIES = ("auto", "pooled", "direct", "memory")
POOLER_PORTS = {6543}

logger = get_logger("marketplace.persistence.strategy")


def is_pooler_url(url: str) -> bool:
    """Transaction pooler URLs (pgbouncer, Supabase pooler)."""
    if not url:
        return False
    parsed = urlparse(url)
    return (
        "pgbouncer=true" in (parsed.query or "")
        or "pooler" in (parsed.hostname or "")
        or parsed.port in POOLER_PORTS
    )


def _strip_pgbouncer_flag(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.query:
        return url
    query = "&".join(part for part in parsed.query.split("&") if part and part != "pgbouncer=true")
    return parsed._replace(query=query).geturl()


def candidate_stores(config: MarketplaceConfig) -> List[MarketplaceStore]:
    """Stores to try, in order, for the configured strategy."""
    strategy = config.database_strategy.lower()
    if strategy not in STRATEGIES:
        raise ValidationError(f"Unknown DATABASE_STRATEGY '{config.database_strategy}'",
                              {"allowed": list(STRATEGIES)})

    pooled_url = config.database_url
    direct_url = config.direct_database_url or config.database_url

    if strategy == "memory":
        return [MemoryStore()]
    if strategy == "pooled":
        return [PostgresStore(_strip_pgbouncer_flag(pooled_url), name="pooled", statement_cache_size=0)]
    if strategy == "direct":
        return [PostgresStore(direct_url, name="direct")]

    if not pooled_url and not config.direct_database_url:
        return [MemoryStore()]
    if is_pooler_url(pooled_url):
        candidates: List[MarketplaceStore] = [
            PostgresStore(_strip_pgbouncer_flag(pooled_url), name="pooled", statement_cache_size=0)
        ]
        if config.direct_database_url:
            candidates.append(PostgresStore(config.direct_database_url, name="direct"))
        return candidates
    return [PostgresStore(direct_url, name="direct")]


async def open_store(config: MarketplaceConfig) -> MarketplaceStore:
    """Start the first candidate store that comes up."""
    candidates = candidate_stores(config)
    last_error = None
    for store in candidates:
        try:
            await store.start()
        except UpstreamError as e:
            logger.warning("Store strategy failed to start", strategy=store.name, error=e.reason)
            last_error = e
            continue
        logger.info("Store strategy selected", strategy=store.name)
        return store

    raise last_error
