"""
Blob cache package.

Keeps recently fetched feed payloads for a short TTL so hot feeds and
previews do not hit the blob store on every request.
"""

from .blob_cache import (
    BlobCache,
    MemoryBlobCache,
    RedisBlobCache,
    create_blob_cache,
    data_key,
    preview_key,
)

__all__ = [
    "BlobCache",
    "MemoryBlobCache",
    "RedisBlobCache",
    "create_blob_cache",
    "data_key",
    "preview_key",
]
