"""
Storage interface shared by every persistence strategy.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence

from ..models import Credential, HistoryEntry, UsageRecord

USAGE_QUERY_LIMIT = 10000


class MarketplaceStore(ABC):
    """API keys, usage logs and feed blob history."""

    name = "store"

    async def start(self):
        """Open connections and create tables."""

    async def stop(self):
        """Release connections."""

    @abstractmethod
    async def ping(self) -> bool:
        ...

    # Credentials

    @abstractmethod
    async def insert_credential(self, credential: Credential) -> Credential:
        ...

    @abstractmethod
    async def find_credential_by_hash(self, key_hash: str) -> Optional[Credential]:
        ...

    @abstractmethod
    async def get_credential(self, credential_id: str) -> Optional[Credential]:
        ...

    @abstractmethod
    async def touch_credential(self, credential_id: str, used_at: datetime):
        """Increment the usage counter and set the last-used time."""

    @abstractmethod
    async def revoke_credential(self, credential_id: str, revoked_at: datetime) -> Optional[Credential]:
        """Set the revocation time if unset; return the stored record, or None if unknown."""

    @abstractmethod
    async def list_credentials_by_provider(self, provider_address: str) -> List[Credential]:
        """Non-revoked PROVIDER keys, newest first."""

    @abstractmethod
    async def list_credentials_by_subscriber(self, consumer_address: str) -> List[Credential]:
        """Non-revoked SUBSCRIBER keys, newest first."""

    @abstractmethod
    async def list_credentials_by_feed(self, feed_id: str) -> List[Credential]:
        ...

    # Usage

    @abstractmethod
    async def insert_usage(self, record: UsageRecord):
        ...

    @abstractmethod
    async def query_usage(self, credential_ids: Sequence[str], feed_id: Optional[str] = None,
                          start: Optional[datetime] = None, end: Optional[datetime] = None,
                          limit: int = USAGE_QUERY_LIMIT) -> List[UsageRecord]:
        """Usage rows for the given keys, newest first."""

    @abstractmethod
    async def recent_usage(self, credential_id: str, limit: int = 10) -> List[UsageRecord]:
        ...

    # Feed blob history

    @abstractmethod
    async def append_history(self, entry: HistoryEntry):
        ...

    @abstractmethod
    async def list_history(self, feed_id: str, start: Optional[datetime] = None,
                           end: Optional[datetime] = None, limit: int = 100) -> List[HistoryEntry]:
        """Past blob pointers of a feed, newest first."""
