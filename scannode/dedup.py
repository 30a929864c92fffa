"""Redis-backed alert deduplication."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol

logger = logging.getLogger(__name__)

RETRY_MAX = 3


class _RedisLike(Protocol):
    def set(self, name: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> Any:
        ...


Connect = Callable[..., _RedisLike]


@dataclass(frozen=True)
class DeduplicationSettings:
    """Deduplication configuration; one of redis or redis_cluster is needed."""

    enabled: bool = True
    redis: Optional[Mapping[str, Any]] = None
    redis_cluster: Optional[Mapping[str, Any]] = None
    ttl_seconds: int = 0


def _new_client(settings: DeduplicationSettings, connect: Connect) -> _RedisLike:
    if settings.redis is not None:
        return connect(settings.redis, cluster=False)
    if settings.redis_cluster is not None:
        return connect(settings.redis_cluster, cluster=True)
    raise ValueError("redis or redisCluster is required in deduplicationConfig section")


class DeduplicationStore:
    """Tells whether an id is seen for the first time within the TTL.

    ``connect(options, cluster=...)`` must return a client with a redis-style
    ``set(name, value, ex=None, nx=False)`` method.
    """

    def __init__(self, settings: DeduplicationSettings, connect: Connect) -> None:
        self._settings = settings
        self._connect = connect
        self._lock = threading.Lock()
        self._ttl = settings.ttl_seconds or None
        self._client = _new_client(settings, connect)

    def _reconnect(self) -> None:
        self._client = _new_client(self._settings, self._connect)

    def is_first(self, key: str) -> bool:
        """Atomically mark ``key`` as seen; True if it was not seen before."""
        with self._lock:
            last_error: Exception | None = None
            for _ in range(RETRY_MAX):
                try:
                    return bool(self._client.set(key, "1", ex=self._ttl, nx=True))
                except Exception as exc:
                    logger.error("error checking for duplicate on redis (reconnecting): %s", exc)
                    last_error = exc
                    self._reconnect()
            assert last_error is not None
            raise last_error


def new_deduplication_store(
    settings: DeduplicationSettings | None, connect: Connect
) -> DeduplicationStore | None:
    """Create a store, or return None when deduplication is not configured."""
    if settings is None or not settings.enabled:
        logger.info("not enabling redis deduplication (not configured)")
        return None
    try:
        return DeduplicationStore(settings, connect)
    except Exception as exc:
        logger.error("failed to initialize deduplication store: %s", exc)
        raise