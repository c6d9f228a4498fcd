"""
Durable document store adapters.

Every cost-guard record (cache entries, rate limit counters, usage records)
is a JSON document addressed by ``(collection, id)``. Cross-process
consistency comes only from ``run_transaction``: the function it runs reads
through the transaction, buffers its writes, and the writes commit together
or not at all.
"""

import asyncio
import copy
import json
import random
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import redis.asyncio as redis
from redis.exceptions import WatchError

from shared.logging import get_logger
from shared.errors import StoreError, TransactionConflictError

T = TypeVar("T")

Document = Dict[str, Any]


def deep_merge(base: Document, fields: Document) -> Document:
    """Merge ``fields`` into a copy of ``base``; nested dicts merge key by key."""
    merged = copy.deepcopy(base)
    for key, value in fields.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class Transaction(ABC):
    """Handle passed to a transaction function."""

    def __init__(self):
        self._writes: List[Tuple[str, str, Document, bool]] = []

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Read a document as part of the transaction."""

    def set(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None:
        """Buffer a write; it is applied only if the transaction commits."""
        self._writes.append((collection, doc_id, copy.deepcopy(fields), merge))

    @property
    def writes(self) -> List[Tuple[str, str, Document, bool]]:
        return self._writes

    def _check_read_allowed(self) -> None:
        if self._writes:
            raise StoreError("Transactions must perform all reads before any writes")


class DocumentStore(ABC):
    """Document store contract used by the cost-guard components."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return the document or ``None`` when absent."""

    @abstractmethod
    async def set(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None:
        """Write a document; ``merge`` upserts into the existing one."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Remove a document if it exists."""

    @abstractmethod
    async def list_documents(self, collection: str) -> List[Tuple[str, Document]]:
        """Return every ``(id, document)`` pair in a collection."""

    @abstractmethod
    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run ``fn`` atomically and return its result."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class _MemoryTransaction(Transaction):
    def __init__(self, store: "InMemoryDocumentStore"):
        super().__init__()
        self._store = store

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        self._check_read_allowed()
        return self._store._read(collection, doc_id)


class InMemoryDocumentStore(DocumentStore):
    """Process-local store; transactions are serialised by one lock."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = asyncio.Lock()
        self.logger = get_logger("costguard.store.memory")

    def _read(self, collection: str, doc_id: str) -> Optional[Document]:
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def _write(self, collection: str, doc_id: str, fields: Document, merge: bool) -> None:
        docs = self._collections.setdefault(collection, {})
        if merge and doc_id in docs:
            docs[doc_id] = deep_merge(docs[doc_id], fields)
        else:
            docs[doc_id] = copy.deepcopy(fields)

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        return self._read(collection, doc_id)

    async def set(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None:
        async with self._lock:
            self._write(collection, doc_id, fields, merge)

    async def delete(self, collection: str, doc_id: str) -> None:
        async with self._lock:
            self._collections.get(collection, {}).pop(doc_id, None)

    async def list_documents(self, collection: str) -> List[Tuple[str, Document]]:
        return [
            (doc_id, copy.deepcopy(doc))
            for doc_id, doc in self._collections.get(collection, {}).items()
        ]

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        async with self._lock:
            tx = _MemoryTransaction(self)
            result = await fn(tx)
            for collection, doc_id, fields, merge in tx.writes:
                self._write(collection, doc_id, fields, merge)
            return result


class _RedisTransaction(Transaction):
    def __init__(self, store: "RedisDocumentStore", pipe):
        super().__init__()
        self._store = store
        self._pipe = pipe
        self.snapshots: Dict[str, Optional[Document]] = {}

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        self._check_read_allowed()
        key = self._store._make_key(collection, doc_id)
        # WATCH puts the pipeline in immediate mode until MULTI
        await self._pipe.watch(key)
        doc = self._store._decode(await self._pipe.get(key))
        self.snapshots[key] = doc
        return copy.deepcopy(doc) if doc is not None else None


class RedisDocumentStore(DocumentStore):
    """Documents stored as JSON strings, transactions via WATCH/MULTI/EXEC."""

    def __init__(
        self,
        redis_url: str,
        prefix: str = "costguard",
        max_attempts: int = 50,
        retry_backoff: float = 0.002,
        max_retry_backoff: float = 0.05,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.max_retry_backoff = max_retry_backoff
        self.logger = get_logger("costguard.store.redis")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30
            )
        return self._redis

    def _make_key(self, collection: str, doc_id: str) -> str:
        return f"{self.prefix}:{collection}:{doc_id}"

    @staticmethod
    def _decode(raw: Any) -> Optional[Document]:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    @staticmethod
    def _encode(doc: Document) -> str:
        return json.dumps(doc, separators=(",", ":"))

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        redis_client = await self._get_redis()
        return self._decode(await redis_client.get(self._make_key(collection, doc_id)))

    async def set(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None:
        if merge:
            async def _merge(tx: Transaction) -> None:
                await tx.get(collection, doc_id)
                tx.set(collection, doc_id, fields, merge=True)

            await self.run_transaction(_merge)
            return

        redis_client = await self._get_redis()
        await redis_client.set(self._make_key(collection, doc_id), self._encode(fields))

    async def delete(self, collection: str, doc_id: str) -> None:
        redis_client = await self._get_redis()
        await redis_client.delete(self._make_key(collection, doc_id))

    async def list_documents(self, collection: str) -> List[Tuple[str, Document]]:
        redis_client = await self._get_redis()
        key_prefix = self._make_key(collection, "")
        documents = []
        async for key in redis_client.scan_iter(match=f"{key_prefix}*"):
            doc = self._decode(await redis_client.get(key))
            if doc is not None:
                documents.append((key[len(key_prefix):], doc))
        return documents

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        redis_client = await self._get_redis()

        for attempt in range(1, self.max_attempts + 1):
            async with redis_client.pipeline(transaction=True) as pipe:
                tx = _RedisTransaction(self, pipe)
                try:
                    result = await fn(tx)
                    await self._commit(pipe, tx)
                    return result
                except WatchError:
                    self.logger.debug("Transaction conflict, retrying", attempt=attempt)
            if attempt < self.max_attempts:
                await asyncio.sleep(self._conflict_delay(attempt))

        self.logger.warning("Transaction aborted after repeated conflicts", attempts=self.max_attempts)
        raise TransactionConflictError(
            "Transaction aborted after repeated conflicts",
            details={"attempts": self.max_attempts}
        )

    def _conflict_delay(self, attempt: int) -> float:
        """Full-jitter exponential backoff capped at ``max_retry_backoff``."""
        ceiling = min(self.max_retry_backoff, self.retry_backoff * 2 ** (attempt - 1))
        return random.uniform(0, ceiling)

    async def _commit(self, pipe, tx: _RedisTransaction) -> None:
        # Resolve merge bases first, while still in immediate mode
        pending: Dict[str, Optional[Document]] = {}
        for collection, doc_id, fields, merge in tx.writes:
            key = self._make_key(collection, doc_id)
            if key in pending:
                base = pending[key]
            elif key in tx.snapshots:
                base = tx.snapshots[key]
            elif merge:
                await pipe.watch(key)
                base = self._decode(await pipe.get(key))
            else:
                base = None
            pending[key] = deep_merge(base, fields) if (merge and base is not None) else fields

        if not pending:
            # Read-only transaction
            await pipe.reset()
            return

        pipe.multi()
        for key, doc in pending.items():
            pipe.set(key, self._encode(doc))
        await pipe.execute()

    async def ping(self) -> bool:
        redis_client = await self._get_redis()
        return bool(await redis_client.ping())

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
