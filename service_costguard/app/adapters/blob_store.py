"""
Durable blob store adapters for cached binary resources (place photos).
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import quote

import redis.asyncio as redis

from shared.logging import get_logger

LONG_LIVED_CACHE_CONTROL = "public, max-age=31536000"


@dataclass
class StoredBlob:
    """A blob plus the metadata written alongside it."""
    data: bytes
    content_type: str
    public_read: bool = False
    cache_control: str = LONG_LIVED_CACHE_CONTROL
    metadata: Dict[str, str] = field(default_factory=dict)


class BlobStore(ABC):
    """Blob store contract: existence check, write, read and public URL."""

    def __init__(self, public_base_url: str):
        self.public_base_url = public_base_url.rstrip("/")

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Return whether a blob is stored at ``path``."""

    @abstractmethod
    async def put(
        self,
        path: str,
        data: bytes,
        content_type: str,
        public_read: bool = False,
        metadata: Optional[Dict[str, str]] = None,
        cache_control: str = LONG_LIVED_CACHE_CONTROL,
    ) -> None:
        """Store ``data`` at ``path``, replacing any previous blob."""

    @abstractmethod
    async def get(self, path: str) -> Optional[StoredBlob]:
        """Return the stored blob or ``None``."""

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{quote(path)}"

    async def close(self) -> None:
        return None


class InMemoryBlobStore(BlobStore):
    """Dict-backed blob store for local runs and tests."""

    def __init__(self, public_base_url: str = "http://localhost:8020/api/v1/blobs"):
        super().__init__(public_base_url)
        self._blobs: Dict[str, StoredBlob] = {}
        self.put_count = 0

    async def exists(self, path: str) -> bool:
        return path in self._blobs

    async def put(self, path, data, content_type, public_read=False, metadata=None,
                  cache_control=LONG_LIVED_CACHE_CONTROL) -> None:
        self.put_count += 1
        self._blobs[path] = StoredBlob(
            data=bytes(data),
            content_type=content_type,
            public_read=public_read,
            cache_control=cache_control,
            metadata=dict(metadata or {}),
        )

    async def get(self, path: str) -> Optional[StoredBlob]:
        return self._blobs.get(path)


class RedisBlobStore(BlobStore):
    """One Redis hash per blob: payload, content type, ACL and metadata."""

    def __init__(self, redis_url: str, public_base_url: str, prefix: str = "costguard"):
        super().__init__(public_base_url)
        self.redis_url = redis_url
        self.prefix = prefix
        self.logger = get_logger("costguard.blobs.redis")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            # Binary payloads, so no response decoding
            self._redis = redis.from_url(
                self.redis_url,
                socket_connect_timeout=5,
                socket_timeout=10,
            )
        return self._redis

    def _make_key(self, path: str) -> str:
        return f"{self.prefix}:blob:{path}"

    async def exists(self, path: str) -> bool:
        redis_client = await self._get_redis()
        return bool(await redis_client.exists(self._make_key(path)))

    async def put(self, path, data, content_type, public_read=False, metadata=None,
                  cache_control=LONG_LIVED_CACHE_CONTROL) -> None:
        redis_client = await self._get_redis()
        await redis_client.hset(self._make_key(path), mapping={
            "data": bytes(data),
            "content_type": content_type,
            "public_read": "1" if public_read else "0",
            "cache_control": cache_control,
            "metadata": json.dumps(metadata or {}),
        })
        self.logger.debug("Stored blob", path=path, size=len(data), public_read=public_read)

    async def get(self, path: str) -> Optional[StoredBlob]:
        redis_client = await self._get_redis()
        raw = await redis_client.hgetall(self._make_key(path))
        if not raw:
            return None
        fields = {k.decode("utf-8") if isinstance(k, bytes) else k: v for k, v in raw.items()}
        return StoredBlob(
            data=fields["data"],
            content_type=fields["content_type"].decode("utf-8"),
            public_read=fields.get("public_read") == b"1",
            cache_control=fields.get("cache_control", LONG_LIVED_CACHE_CONTROL.encode()).decode("utf-8"),
            metadata=json.loads(fields.get("metadata", b"{}")),
        )

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
