"""
Adapters package for the marketplace gateway.

HTTP clients for the two external systems of record:

- LedgerClient: Sui JSON-RPC reads and signed Move calls
- BlobStoreClient: Walrus upload/retrieval with optional payload sealing

Reads carry a fixed-delay retry and a circuit breaker; mutations are
single-shot.
"""

from .ledger_client import LedgerClient, SuiSigner
from .blob_store_client import BlobStoreClient, UploadResult

__all__ = [
    "BlobStoreClient",
    "LedgerClient",
    "SuiSigner",
    "UploadResult",
]
