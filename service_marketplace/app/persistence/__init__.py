"""
Persistence for API keys, usage logs and feed blob history.

All strategies (pooled or direct PostgreSQL, in-memory) implement
``MarketplaceStore``; ``open_store`` picks one at startup.
"""

from .base import MarketplaceStore
from .memory import MemoryStore
from .postgres import PostgresStore
from .strategy import open_store, candidate_stores, is_pooler_url

__all__ = [
    "MarketplaceStore",
    "MemoryStore",
    "PostgresStore",
    "candidate_stores",
    "is_pooler_url",
    "open_store",
]
