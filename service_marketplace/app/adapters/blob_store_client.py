"""
Walrus blob store client.

Payloads are stored as JSON (or raw text). Premium payloads are sealed
with Fernet under a key derived from a caller secret and wrapped in an
envelope that records the salt and a short hint of the secret.
"""

import base64
import os
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from shared.config import MarketplaceConfig
from shared.logging import get_logger
from shared.errors import NotFoundError, UpstreamError, ValidationError
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.retry import RetryConfig, RetryError, retry_call
from shared.metrics import MetricsCollector

from ..payload import decode, encode

KDF_ITERATIONS = 100_000
KEY_HINT_LENGTH = 8


@dataclass
class UploadResult:
    blob_id: str
    stored: Any = None
    encryption_key: Optional[str] = None


def _derive_fernet(secret: str, salt: bytes) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return Fernet(base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8"))))


def is_encrypted(payload: Any) -> bool:
    return isinstance(payload, dict) and payload.get("encrypted") is True and "data" in payload


def seal(payload: Any, secret: str) -> Dict[str, Any]:
    """Encrypt a payload into the stored envelope."""
    salt = os.urandom(16)
    token = _derive_fernet(secret, salt).encrypt(encode(payload))
    return {
        "encrypted": True,
        "data": token.decode("ascii"),
        "salt": base64.b64encode(salt).decode("ascii"),
        "keyHint": secret[:KEY_HINT_LENGTH],
    }


def unseal(envelope: Any, secret: str) -> Any:
    """Decrypt an envelope. Anything that is not an envelope is returned unchanged."""
    if not is_encrypted(envelope):
        return envelope
    try:
        salt = base64.b64decode(envelope["salt"])
        plaintext = _derive_fernet(secret, salt).decrypt(envelope["data"].encode("ascii"))
    except (InvalidToken, KeyError, ValueError) as e:
        raise ValidationError("Invalid decryption key") from e
    return decode(plaintext)


class BlobStoreClient:
    """Client for the Walrus publisher and aggregator."""

    RETRYABLE = (httpx.TransportError, httpx.HTTPStatusError)

    def __init__(self, config: MarketplaceConfig,
                 http_client: Optional[httpx.AsyncClient] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.publisher_url = config.walrus_publisher_url.rstrip("/")
        self.aggregator_url = config.walrus_aggregator_url.rstrip("/")
        self.epochs = config.walrus_epochs
        self.metrics = metrics or MetricsCollector(config.service_name)
        self.logger = get_logger("marketplace.blob_store_client")
        self.http = http_client or httpx.AsyncClient(timeout=config.upstream_timeout)
        self.retry_config = RetryConfig.fixed(config.upstream_retries, config.upstream_retry_delay)
        self.circuit_breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=30.0, name="blob_store")

    async def close(self):
        await self.http.aclose()

    async def upload(self, payload: Any, encrypt: bool = False,
                     encryption_key: Optional[str] = None) -> UploadResult:
        """Store a payload and return its blob id.

        When encrypting without a caller key a fresh one is generated and
        returned here; it is not kept anywhere else.
        """
        generated = None
        body = payload
        if encrypt:
            if not encryption_key:
                encryption_key = generated = secrets.token_urlsafe(32)
            body = seal(payload, encryption_key)

        try:
            with self.metrics.time_upstream("blob_store", "upload"):
                response = await self.http.put(
                    f"{self.publisher_url}/v1/blobs",
                    params={"epochs": self.epochs},
                    content=encode(body),
                )
            response.raise_for_status()
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.logger.error("Blob upload failed", error=str(e))
            raise UpstreamError("blob_store", str(e), {"operation": "upload"}) from e

        blob_id = (
            ((result.get("newlyCreated") or {}).get("blobObject") or {}).get("blobId")
            or (result.get("alreadyCertified") or {}).get("blobId")
        )
        if not blob_id:
            raise UpstreamError("blob_store", "no blob id in publisher response", {"operation": "upload"})

        self.logger.info("Blob stored", blob_id=blob_id, encrypted=encrypt)
        return UploadResult(blob_id=blob_id, stored=body, encryption_key=generated)

    async def _get(self, blob_id: str) -> Optional[bytes]:
        response = await self.http.get(f"{self.aggregator_url}/v1/blobs/{blob_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.content

    async def retrieve(self, blob_id: str) -> Any:
        """Fetch the stored form of a blob (an envelope for premium feeds)."""
        try:
            with self.metrics.time_upstream("blob_store", "retrieve"):
                raw = await retry_call(self.circuit_breaker.call, self._get, blob_id,
                                       exceptions=self.RETRYABLE, config=self.retry_config,
                                       name="blob_store.retrieve")
        except RetryError as e:
            raise UpstreamError("blob_store", str(e.last_exception), {"blobId": blob_id}) from e
        except CircuitBreakerOpenException as e:
            raise UpstreamError("blob_store", str(e), {"blobId": blob_id}) from e

        if raw is None:
            raise NotFoundError("Blob not found", {"blobId": blob_id})
        return decode(raw)

    def decrypt(self, payload: Any, key: str) -> Any:
        return unseal(payload, key)

    async def exists(self, blob_id: str) -> bool:
        try:
            response = await self.http.head(f"{self.aggregator_url}/v1/blobs/{blob_id}")
        except httpx.HTTPError as e:
            self.logger.warning("Blob existence check failed", blob_id=blob_id, error=str(e))
            return False
        return response.status_code == 200
