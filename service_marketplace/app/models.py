"""
Domain models for the marketplace gateway.

Ledger objects (``Feed``, ``Subscription``) are read-only snapshots parsed
from Move object content. ``Credential`` and ``UsageRecord`` are owned by
the relational store. Request bodies use camelCase on the wire.
"""

from typing import Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _u64(value: Any, default: int = 0) -> int:
    """Move u64 fields arrive as decimal strings."""
    if value is None or value == "":
        return default
    return int(value)


class CredentialType(str, Enum):
    """API key types."""
    PROVIDER = "PROVIDER"
    SUBSCRIBER = "SUBSCRIBER"


class SubscriptionTier(IntEnum):
    """Subscription tiers as encoded on the ledger."""
    PAY_PER_QUERY = 0
    MONTHLY = 1
    PREMIUM = 2


@dataclass
class Credential:
    """Issued API key record. Only the hash of the secret is ever stored."""
    id: str
    type: CredentialType
    key_hash: str
    key_prefix: str
    feed_id: Optional[str] = None
    subscription_id: Optional[str] = None
    provider_address: Optional[str] = None
    consumer_address: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    rate_limit: Optional[int] = None
    usage_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or utcnow())

    def to_public_dict(self) -> Dict[str, Any]:
        """Serializable view without the hash."""
        return {
            "id": self.id,
            "type": self.type.value,
            "keyPrefix": self.key_prefix,
            "feedId": self.feed_id,
            "subscriptionId": self.subscription_id,
            "providerAddress": self.provider_address,
            "consumerAddress": self.consumer_address,
            "name": self.name,
            "description": self.description,
            "rateLimit": self.rate_limit,
            "usageCount": self.usage_count,
            "createdAt": _iso(self.created_at),
            "expiresAt": _iso(self.expires_at),
            "revokedAt": _iso(self.revoked_at),
            "lastUsedAt": _iso(self.last_used_at),
        }


@dataclass
class Feed:
    """Ledger-owned data feed."""
    id: str
    provider: str
    name: str
    category: str
    description: str
    location: str
    price_per_query: int
    monthly_subscription_price: int
    is_premium: bool
    walrus_blob_id: str
    created_at: int
    last_updated: int
    is_active: bool
    update_frequency: int
    total_subscribers: int = 0
    total_revenue: int = 0

    @classmethod
    def from_fields(cls, object_id: str, fields: Dict[str, Any]) -> "Feed":
        return cls(
            id=object_id,
            provider=fields.get("provider", ""),
            name=fields.get("name", ""),
            category=fields.get("category", ""),
            description=fields.get("description", ""),
            location=fields.get("location", ""),
            price_per_query=_u64(fields.get("price_per_query")),
            monthly_subscription_price=_u64(fields.get("monthly_subscription_price")),
            is_premium=bool(fields.get("is_premium", False)),
            walrus_blob_id=fields.get("walrus_blob_id", ""),
            created_at=_u64(fields.get("created_at")),
            last_updated=_u64(fields.get("last_updated")),
            is_active=bool(fields.get("is_active", False)),
            update_frequency=_u64(fields.get("update_frequency")),
            total_subscribers=_u64(fields.get("total_subscribers")),
            total_revenue=_u64(fields.get("total_revenue")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "location": self.location,
            "pricePerQuery": self.price_per_query,
            "monthlySubscriptionPrice": self.monthly_subscription_price,
            "isPremium": self.is_premium,
            "walrusBlobId": self.walrus_blob_id,
            "createdAt": self.created_at,
            "lastUpdated": self.last_updated,
            "isActive": self.is_active,
            "updateFrequency": self.update_frequency,
            "totalSubscribers": self.total_subscribers,
            "totalRevenue": self.total_revenue,
        }


@dataclass
class Subscription:
    """Ledger-owned subscription. Expiry is in ledger epochs."""
    id: str
    consumer: str
    feed_id: str
    tier: int
    start_epoch: int
    expiry_epoch: int
    payment_amount: int
    queries_used: int
    is_active: bool

    @classmethod
    def from_fields(cls, object_id: str, fields: Dict[str, Any]) -> "Subscription":
        return cls(
            id=object_id,
            consumer=fields.get("consumer", ""),
            feed_id=fields.get("feed_id", ""),
            tier=_u64(fields.get("tier")),
            start_epoch=_u64(fields.get("start_epoch")),
            expiry_epoch=_u64(fields.get("expiry_epoch")),
            payment_amount=_u64(fields.get("payment_amount")),
            queries_used=_u64(fields.get("queries_used")),
            is_active=bool(fields.get("is_active", False)),
        )

    def is_valid_at(self, epoch: int) -> bool:
        """Active and not past its expiry epoch (the expiry epoch itself is valid)."""
        return self.is_active and epoch <= self.expiry_epoch

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "consumer": self.consumer,
            "feedId": self.feed_id,
            "tier": self.tier,
            "startEpoch": self.start_epoch,
            "expiryEpoch": self.expiry_epoch,
            "paymentAmount": self.payment_amount,
            "queriesUsed": self.queries_used,
            "isActive": self.is_active,
        }


@dataclass
class UsageRecord:
    """One authorized request, keyed by credential. Append-only."""
    credential_id: str
    endpoint: str
    method: str
    status_code: int
    response_time_ms: int
    feed_id: Optional[str] = None
    subscription_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    queries_used: int = 0
    data_size: int = 0
    timestamp: datetime = field(default_factory=utcnow)
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "apiKeyId": self.credential_id,
            "feedId": self.feed_id,
            "subscriptionId": self.subscription_id,
            "endpoint": self.endpoint,
            "method": self.method,
            "statusCode": self.status_code,
            "responseTime": self.response_time_ms,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "queriesUsed": self.queries_used,
            "dataSize": self.data_size,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class HistoryEntry:
    """A past blob pointer of a feed."""
    feed_id: str
    blob_id: str
    recorded_at: datetime = field(default_factory=utcnow)


class CamelModel(BaseModel):
    """Request body accepting camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterFeedRequest(CamelModel):
    """Request model for feed registration."""
    provider: Optional[str] = Field(None, description="Provider address, defaults to the gateway address")
    name: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    price_per_query: int = Field(0, ge=0)
    monthly_subscription_price: int = Field(0, ge=0)
    is_premium: bool = False
    update_frequency: int = Field(300, ge=0, description="Update cadence in seconds")
    initial_data: Any = None
    encryption_key: Optional[str] = Field(None, description="Key for premium payloads, generated when absent")


class UpdateFeedDataRequest(CamelModel):
    """Request model for pushing a new payload to a feed."""
    data: Any = Field(..., description="New payload")
    provider: Optional[str] = None
    encryption_key: Optional[str] = None


class RatingRequest(CamelModel):
    stars: Optional[int] = None
    comment: str = ""

    def is_valid(self) -> bool:
        return self.stars is not None and 1 <= self.stars <= 5


class SubscribeRequest(CamelModel):
    consumer: Optional[str] = None
    tier: Optional[int] = None
    payment_amount: int = Field(0, ge=0)


class VerifyRequest(CamelModel):
    consumer: Optional[str] = None


class UploadRequest(CamelModel):
    data: Any = None
    encrypt: bool = False
    encryption_key: Optional[str] = None


class IoTUpdateRequest(CamelModel):
    """Legacy device ingestion body."""
    feed_id: Optional[str] = None
    device_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    provider: Optional[str] = None


class IoTFeedUpdateRequest(CamelModel):
    """Feed-scoped device ingestion body."""
    device_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class ProviderKeyRequest(CamelModel):
    feed_id: Optional[str] = None
    provider_address: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    rate_limit: Optional[int] = Field(None, ge=1)


class SubscriberKeyRequest(CamelModel):
    subscription_id: Optional[str] = None
    consumer_address: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
