"""
In-process store for local runs and tests.
"""

import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from shared.logging import get_logger

from ..models import Credential, CredentialType, HistoryEntry, UsageRecord
from .base import MarketplaceStore, USAGE_QUERY_LIMIT


def _in_range(value: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start and value < start:
        return False
    if end and value > end:
        return False
    return True


class MemoryStore(MarketplaceStore):
    """Dictionary-backed store. Returned records are copies."""

    name = "memory"

    def __init__(self):
        self.logger = get_logger("marketplace.persistence.memory")
        self._credentials: Dict[str, Credential] = {}
        self._by_hash: Dict[str, str] = {}
        self._usage: List[UsageRecord] = []
        self._history: List[HistoryEntry] = []

    async def start(self):
        self.logger.info("In-memory store started")

    async def ping(self) -> bool:
        return True

    async def insert_credential(self, credential: Credential) -> Credential:
        self._credentials[credential.id] = replace(credential)
        self._by_hash[credential.key_hash] = credential.id
        return replace(credential)

    async def find_credential_by_hash(self, key_hash: str) -> Optional[Credential]:
        credential_id = self._by_hash.get(key_hash)
        return await self.get_credential(credential_id) if credential_id else None

    async def get_credential(self, credential_id: str) -> Optional[Credential]:
        credential = self._credentials.get(credential_id)
        return replace(credential) if credential else None

    async def touch_credential(self, credential_id: str, used_at: datetime):
        credential = self._credentials.get(credential_id)
        if credential:
            credential.usage_count += 1
            credential.last_used_at = used_at

    async def revoke_credential(self, credential_id: str, revoked_at: datetime) -> Optional[Credential]:
        credential = self._credentials.get(credential_id)
        if credential is None:
            return None
        if credential.revoked_at is None:
            credential.revoked_at = revoked_at
        return replace(credential)

    def _list(self, predicate) -> List[Credential]:
        matches = [replace(c) for c in self._credentials.values() if c.revoked_at is None and predicate(c)]
        return sorted(matches, key=lambda c: c.created_at, reverse=True)

    async def list_credentials_by_provider(self, provider_address: str) -> List[Credential]:
        return self._list(lambda c: c.type == CredentialType.PROVIDER and c.provider_address == provider_address)

    async def list_credentials_by_subscriber(self, consumer_address: str) -> List[Credential]:
        return self._list(lambda c: c.type == CredentialType.SUBSCRIBER and c.consumer_address == consumer_address)

    async def list_credentials_by_feed(self, feed_id: str) -> List[Credential]:
        return self._list(lambda c: c.feed_id == feed_id)

    async def insert_usage(self, record: UsageRecord):
        self._usage.append(replace(record, id=record.id or str(uuid.uuid4())))

    async def query_usage(self, credential_ids: Sequence[str], feed_id: Optional[str] = None,
                          start: Optional[datetime] = None, end: Optional[datetime] = None,
                          limit: int = USAGE_QUERY_LIMIT) -> List[UsageRecord]:
        ids = set(credential_ids)
        rows = [
            r for r in self._usage
            if r.credential_id in ids
            and (feed_id is None or r.feed_id == feed_id)
            and _in_range(r.timestamp, start, end)
        ]
        rows.sort(key=lambda r: r.timestamp, reverse=True)
        return rows[:limit]

    async def recent_usage(self, credential_id: str, limit: int = 10) -> List[UsageRecord]:
        return await self.query_usage([credential_id], limit=limit)

    async def append_history(self, entry: HistoryEntry):
        self._history.append(replace(entry))

    async def list_history(self, feed_id: str, start: Optional[datetime] = None,
                           end: Optional[datetime] = None, limit: int = 100) -> List[HistoryEntry]:
        rows = [h for h in self._history if h.feed_id == feed_id and _in_range(h.recorded_at, start, end)]
        rows.sort(key=lambda h: h.recorded_at, reverse=True)
        return rows[:limit]
