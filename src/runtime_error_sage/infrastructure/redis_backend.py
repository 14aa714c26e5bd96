"""Redis backend for the pattern store.

Requires the ``redis`` extra (``pip install runtime-error-sage[redis]``).
Redis transport errors are re-raised as ``ConnectionError`` so the store's
reconnect logic treats them like any other unreachable backend.
"""

from __future__ import annotations

import logging
from typing import Any

import redis

logger = logging.getLogger(__name__)

DEFAULT_URL = "redis://localhost:6379/0"


class RedisPatternBackend:
    """:class:`PatternBackend` over a Redis (or Redis-compatible) server.

    Parameters
    ----------
    url:
        Connection URL, used when *client* is not given.
    client:
        A ready ``redis.Redis`` client (tests pass ``fakeredis`` here).
        Must be created with ``decode_responses=True``.
    socket_timeout:
        Seconds before a Redis call gives up.
    ttl_seconds:
        Optional expiry applied to every write; ``None`` keeps keys forever
        and leaves retention to the store's purge.
    """

    def __init__(
        self,
        url: str = DEFAULT_URL,
        client: Any = None,
        socket_timeout: float = 5.0,
        ttl_seconds: int | None = None,
    ) -> None:
        self.url = url
        self.ttl_seconds = ttl_seconds
        if client is None:
            client = redis.from_url(url, decode_responses=True, socket_timeout=socket_timeout)
        self._redis = client

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except redis.RedisError as exc:
            logger.debug("Redis ping to %s failed: %s", self.url, exc)
            return False

    def get(self, key: str) -> str | None:
        try:
            value = self._redis.get(key)
        except redis.RedisError as exc:
            raise ConnectionError(f"Redis GET {key} failed: {exc}") from exc
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    def set(self, key: str, value: str) -> None:
        try:
            self._redis.set(key, value, ex=self.ttl_seconds)
        except redis.RedisError as exc:
            raise ConnectionError(f"Redis SET {key} failed: {exc}") from exc

    def delete(self, key: str) -> bool:
        try:
            return bool(self._redis.delete(key))
        except redis.RedisError as exc:
            raise ConnectionError(f"Redis DEL {key} failed: {exc}") from exc

    def keys(self, prefix: str) -> list[str]:
        try:
            found = self._redis.scan_iter(match=f"{_escape_glob(prefix)}*", count=500)
            return sorted(k.decode("utf-8") if isinstance(k, bytes) else k for k in found)
        except redis.RedisError as exc:
            raise ConnectionError(f"Redis SCAN {prefix}* failed: {exc}") from exc

    def close(self) -> None:
        try:
            self._redis.close()
        except redis.RedisError:
            logger.debug("Ignoring error while closing Redis client", exc_info=True)


def _escape_glob(prefix: str) -> str:
    out = []
    for ch in prefix:
        if ch in "*?[]\\":
            out.append("\\")
        out.append(ch)
    return "".join(out)
