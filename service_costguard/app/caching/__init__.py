"""
Cost Guard caching package.

Durable TTL cache keyed by logical resource identity. Expiry is lazy and
cache failures never fail the primary operation.
"""

from .ttl_cache import CacheDurations, CacheEntry, TTLCache, make_cache_key

__all__ = ["CacheDurations", "CacheEntry", "TTLCache", "make_cache_key"]
