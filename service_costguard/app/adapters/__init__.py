"""
Adapters package for the Cost Guard service.

Concrete collaborators behind the core's interfaces:

- document_store: durable JSON documents with atomic transactions
- blob_store: binary blobs with existence check and public URLs
- places_client / scoring_client: upstream providers over httpx

Components receive these by reference; nothing here is a module-level
singleton.
"""

from .document_store import (
    DocumentStore,
    InMemoryDocumentStore,
    RedisDocumentStore,
    Transaction,
)
from .blob_store import BlobStore, InMemoryBlobStore, RedisBlobStore, StoredBlob
from .places_client import PlacesClient, PhotoFetchError
from .scoring_client import ScoringClient

__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
    "RedisDocumentStore",
    "Transaction",
    "BlobStore",
    "InMemoryBlobStore",
    "RedisBlobStore",
    "StoredBlob",
    "PlacesClient",
    "PhotoFetchError",
    "ScoringClient",
]
