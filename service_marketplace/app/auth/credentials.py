"""
API key issuance and validation.

Keys look like ``pk_<token>`` (provider) or ``sk_<token>`` (subscriber)
where the token is 24 random bytes, base64url encoded. Only the SHA-256
hash and the first 8 characters are persisted; the raw key is returned
once from ``issue`` and cannot be recovered afterwards.
"""

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from shared.background import BackgroundTaskSet
from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger

from ..models import Credential, CredentialType, utcnow
from ..persistence.base import MarketplaceStore

KEY_TAGS = {CredentialType.PROVIDER: "pk", CredentialType.SUBSCRIBER: "sk"}
TOKEN_BYTES = 24
PREFIX_LENGTH = 8

REASON_INVALID = "invalid"
REASON_REVOKED = "revoked"
REASON_EXPIRED = "expired"
REASON_MALFORMED = "malformed"


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_secret(credential_type: CredentialType) -> str:
    return f"{KEY_TAGS[credential_type]}_{secrets.token_urlsafe(TOKEN_BYTES)}"


def _has_known_tag(secret: str) -> bool:
    return any(secret.startswith(f"{tag}_") for tag in KEY_TAGS.values())


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class ValidationResult:
    valid: bool
    credential: Optional[Credential] = None
    reason: Optional[str] = None


@dataclass
class IssuedCredential:
    """Result of issuance. ``secret`` exists only on this object."""
    id: str
    secret: str
    prefix: str
    type: CredentialType
    created_at: datetime
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "key": self.secret,
            "keyPrefix": self.prefix,
            "type": self.type.value,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }


class CredentialValidator:
    """Issues, validates and revokes API keys."""

    def __init__(self, store: MarketplaceStore, background: Optional[BackgroundTaskSet] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.background = background if background is not None else BackgroundTaskSet("credentials")
        self.clock = clock
        self.logger = get_logger("marketplace.credentials")

    async def issue(self, credential_type: CredentialType, *,
                    feed_id: Optional[str] = None,
                    subscription_id: Optional[str] = None,
                    provider_address: Optional[str] = None,
                    consumer_address: Optional[str] = None,
                    name: Optional[str] = None,
                    description: Optional[str] = None,
                    expires_at: Optional[datetime] = None,
                    rate_limit: Optional[int] = None) -> IssuedCredential:
        """Create a key bound to a provider+feed or a consumer+subscription."""
        if credential_type == CredentialType.PROVIDER and not (feed_id and provider_address):
            raise ValidationError("feedId and providerAddress are required")
        if credential_type == CredentialType.SUBSCRIBER and not (subscription_id and consumer_address):
            raise ValidationError("subscriptionId and consumerAddress are required")

        secret = generate_secret(credential_type)
        credential = Credential(
            id=str(uuid.uuid4()),
            type=credential_type,
            key_hash=hash_secret(secret),
            key_prefix=secret[:PREFIX_LENGTH],
            feed_id=feed_id if credential_type == CredentialType.PROVIDER else None,
            subscription_id=subscription_id if credential_type == CredentialType.SUBSCRIBER else None,
            provider_address=provider_address if credential_type == CredentialType.PROVIDER else None,
            consumer_address=consumer_address if credential_type == CredentialType.SUBSCRIBER else None,
            name=name,
            description=description,
            rate_limit=rate_limit,
            created_at=self.clock(),
            expires_at=_as_utc(expires_at),
        )
        stored = await self.store.insert_credential(credential)

        self.logger.info(
            "API key issued",
            credential_id=stored.id,
            type=credential_type.value,
            key_prefix=stored.key_prefix,
            feed_id=stored.feed_id,
            subscription_id=stored.subscription_id
        )
        return IssuedCredential(
            id=stored.id,
            secret=secret,
            prefix=stored.key_prefix,
            type=credential_type,
            created_at=stored.created_at,
            expires_at=stored.expires_at,
        )

    async def validate(self, secret: Optional[str]) -> ValidationResult:
        """Resolve a presented key.

        Reasons are checked in order: invalid, revoked, expired, malformed.
        A successful validation schedules the usage bump in the background.
        """
        if not secret or not _has_known_tag(secret):
            return ValidationResult(valid=False, reason=REASON_INVALID)

        credential = await self.store.find_credential_by_hash(hash_secret(secret))
        if credential is None:
            return ValidationResult(valid=False, reason=REASON_INVALID)
        if credential.is_revoked():
            return ValidationResult(valid=False, credential=credential, reason=REASON_REVOKED)
        if credential.is_expired(self.clock()):
            return ValidationResult(valid=False, credential=credential, reason=REASON_EXPIRED)
        if credential.key_prefix != secret[:PREFIX_LENGTH]:
            return ValidationResult(valid=False, credential=credential, reason=REASON_MALFORMED)

        self.background.spawn(self._touch(credential.id), name=f"touch:{credential.id}")
        return ValidationResult(valid=True, credential=credential)

    async def _touch(self, credential_id: str):
        try:
            await self.store.touch_credential(credential_id, self.clock())
        except Exception as e:
            self.logger.warning("Failed to update API key usage", credential_id=credential_id, error=str(e))

    async def revoke(self, credential_id: str) -> Credential:
        """Revoke a key. Revoking an already revoked key keeps the first timestamp."""
        credential = await self.store.revoke_credential(credential_id, self.clock())
        if credential is None:
            raise NotFoundError("API key not found", {"id": credential_id})
        self.logger.info("API key revoked", credential_id=credential_id, revoked_at=credential.revoked_at.isoformat())
        return credential

    async def list_for_provider(self, provider_address: str) -> List[Credential]:
        return await self.store.list_credentials_by_provider(provider_address)

    async def list_for_subscriber(self, consumer_address: str) -> List[Credential]:
        return await self.store.list_credentials_by_subscriber(consumer_address)

    async def list_for_feed(self, feed_id: str) -> List[Credential]:
        return await self.store.list_credentials_by_feed(feed_id)

    async def details(self, credential_id: str) -> Dict[str, Any]:
        """Public view of a key with its 10 most recent usage records."""
        credential = await self.store.get_credential(credential_id)
        if credential is None:
            raise NotFoundError("API key not found", {"id": credential_id})
        usage = await self.store.recent_usage(credential_id, limit=10)
        details = credential.to_public_dict()
        details["usageLogs"] = [record.to_dict() for record in usage]
        return details
