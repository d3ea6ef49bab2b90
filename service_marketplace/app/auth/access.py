"""
Access decisions for feed reads and writes.

Every decision re-reads the subscription and the current epoch from the
ledger; nothing here is cached. Any failure to read ledger state denies.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..models import Credential, CredentialType, Feed

PATH_CREDENTIAL = "credential"
PATH_LEGACY = "legacy"
PATH_PROVIDER_KEY = "provider_key"
PATH_PROVIDER_ADDRESS = "provider_address"

GRANTED = "granted"
NO_CREDENTIALS = "no_credentials"
SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
FEED_NOT_FOUND = "feed_not_found"
FEED_MISMATCH = "feed_mismatch"
CONSUMER_MISMATCH = "consumer_mismatch"
PROVIDER_MISMATCH = "provider_mismatch"
INACTIVE = "inactive"
EXPIRED = "expired"
UPSTREAM_ERROR = "upstream_error"


@dataclass
class AuthContext:
    """Credentials presented with a request or a live subscribe message."""
    credential: Optional[Credential] = None
    subscription_id: Optional[str] = None
    consumer_address: Optional[str] = None
    provider_address: Optional[str] = None

    @property
    def has_read_credentials(self) -> bool:
        return self.credential is not None or bool(self.subscription_id and self.consumer_address)


@dataclass
class AccessDecision:
    granted: bool
    reason: str
    path: Optional[str] = None
    bound_subscription_id: Optional[str] = None
    bound_credential_id: Optional[str] = None


class AccessDecisionEngine:
    """Grants or denies access by combining credentials with ledger state."""

    def __init__(self, ledger, metrics: Optional[MetricsCollector] = None):
        self.ledger = ledger
        self.metrics = metrics
        self.logger = get_logger("marketplace.access")

    async def authorize(self, feed_id: str, context: AuthContext) -> AccessDecision:
        """Read access to ``feed_id``.

        The credential path is tried first, then the legacy subscription +
        consumer path. The first path that grants wins.
        """
        decision = AccessDecision(granted=False, reason=NO_CREDENTIALS)
        credential = context.credential

        if credential and credential.type == CredentialType.SUBSCRIBER and credential.subscription_id:
            granted, reason = await self._check(credential.subscription_id, credential.consumer_address, feed_id)
            decision = AccessDecision(
                granted=granted,
                reason=reason,
                path=PATH_CREDENTIAL,
                bound_subscription_id=credential.subscription_id if granted else None,
                bound_credential_id=credential.id if granted else None,
            )
            if granted:
                return self._record(feed_id, context, decision)

        if context.subscription_id and context.consumer_address:
            granted, reason = await self._check(context.subscription_id, context.consumer_address, feed_id)
            decision = AccessDecision(
                granted=granted,
                reason=reason,
                path=PATH_LEGACY,
                bound_subscription_id=context.subscription_id if granted else None,
            )

        return self._record(feed_id, context, decision)

    async def check_subscription(self, subscription_id: str, consumer_address: str) -> bool:
        """Validity and ownership of a subscription, without a feed binding."""
        granted, reason = await self._check(subscription_id, consumer_address)
        if not granted:
            self.logger.info("Subscription check failed", subscription_id=subscription_id, reason=reason)
        return granted

    async def authorize_write(self, feed_id: str, context: AuthContext,
                              feed: Optional[Feed] = None) -> AccessDecision:
        """Provider-side check for pushing data to ``feed_id``."""
        credential = context.credential
        if credential and credential.type == CredentialType.PROVIDER:
            granted = credential.feed_id == feed_id
            decision = AccessDecision(
                granted=granted,
                reason=GRANTED if granted else FEED_MISMATCH,
                path=PATH_PROVIDER_KEY,
                bound_credential_id=credential.id if granted else None,
            )
            return self._record(feed_id, context, decision)

        if not context.provider_address:
            return self._record(feed_id, context, AccessDecision(granted=False, reason=NO_CREDENTIALS))

        if feed is None:
            try:
                feed = await self.ledger.get_feed(feed_id)
            except Exception as e:
                self.logger.error("Ledger read failed during write authorization",
                                  feed_id=feed_id, error=str(e), error_type=type(e).__name__)
                return self._record(feed_id, context, AccessDecision(
                    granted=False, reason=UPSTREAM_ERROR, path=PATH_PROVIDER_ADDRESS))

        if feed is None:
            reason = FEED_NOT_FOUND
        elif feed.provider != context.provider_address:
            reason = PROVIDER_MISMATCH
        else:
            reason = GRANTED
        return self._record(feed_id, context, AccessDecision(
            granted=reason == GRANTED, reason=reason, path=PATH_PROVIDER_ADDRESS))

    async def _check(self, subscription_id: str, consumer_address: Optional[str],
                     feed_id: Optional[str] = None) -> Tuple[bool, str]:
        """Apply the subscription validity rule against current ledger state."""
        try:
            subscription = await self.ledger.get_subscription(subscription_id)
        except Exception as e:
            self.logger.error("Ledger read failed during authorization",
                              subscription_id=subscription_id, error=str(e), error_type=type(e).__name__)
            return False, UPSTREAM_ERROR

        if subscription is None:
            return False, SUBSCRIPTION_NOT_FOUND
        if feed_id is not None and subscription.feed_id != feed_id:
            return False, FEED_MISMATCH
        if not consumer_address or subscription.consumer != consumer_address:
            return False, CONSUMER_MISMATCH
        if not subscription.is_active:
            return False, INACTIVE

        try:
            epoch = await self.ledger.get_current_epoch()
        except Exception as e:
            self.logger.error("Ledger epoch read failed during authorization",
                              subscription_id=subscription_id, error=str(e), error_type=type(e).__name__)
            return False, UPSTREAM_ERROR

        if not subscription.is_valid_at(epoch):
            return False, EXPIRED
        return True, GRANTED

    def _record(self, feed_id: str, context: AuthContext, decision: AccessDecision) -> AccessDecision:
        if self.metrics:
            self.metrics.record_access_decision(decision.granted, decision.path or "none")

        log = self.logger.info if decision.granted else self.logger.warning
        log(
            "Access granted" if decision.granted else "Access denied",
            feed_id=feed_id,
            path=decision.path,
            reason=decision.reason,
            credential_id=context.credential.id if context.credential else None,
            subscription_id=decision.bound_subscription_id or context.subscription_id
        )
        return decision
