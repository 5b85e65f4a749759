"""Materialized season classification cache.

Each season has one cache entry, ``classification:{season_id}``, holding the
JSON of a :class:`SeasonClassificationSnapshot`, next to a version counter
kept under ``classification:{season_id}:version``. The entry is only ever
replaced whole, and only by :meth:`ClassificationCache.recompute`.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, TypeVar

import pydantic
import redis
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from standings.errors import (
    CacheUnavailableError,
    ConfigurationError,
    NotFoundError,
    RecomputeTimeoutError,
)
from standings.schemas import SeasonClassificationSnapshot
from standings.services import build_season_snapshot, parse_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

KEY_PREFIX = "classification"


def classification_key(season_id: str) -> str:
    return f"{KEY_PREFIX}:{season_id}"


def version_key(season_id: str) -> str:
    return f"{KEY_PREFIX}:{season_id}:version"


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes, ttl_seconds: Optional[int] = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def incr(self, key: str, amount: int = 1) -> int: ...


class RedisCacheStore:
    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 2.0) -> "RedisCacheStore":
        return cls(redis.Redis.from_url(url, socket_timeout=socket_timeout))

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self._client.get(key)
        except RedisError as exc:
            raise CacheUnavailableError(f"Cache store unavailable: {exc}") from exc

    def set(self, key: str, value: bytes, ttl_seconds: Optional[int] = None) -> None:
        try:
            self._client.set(key, value, ex=ttl_seconds or None)
        except RedisError as exc:
            raise CacheUnavailableError(f"Cache store unavailable: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except RedisError as exc:
            raise CacheUnavailableError(f"Cache store unavailable: {exc}") from exc

    def incr(self, key: str, amount: int = 1) -> int:
        try:
            return int(self._client.incr(key, amount))
        except RedisError as exc:
            raise CacheUnavailableError(f"Cache store unavailable: {exc}") from exc


class RecomputeCoordinator:
    """
    At most one running computation per key.

    Work runs on a private pool, so a caller that gives up waiting never
    cancels a computation other callers may be waiting on.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="recompute")
        self._lock = threading.Lock()
        self._inflight: dict[str, Future] = {}

    def submit(self, key: str, fn: Callable[[], T]) -> tuple[Future, bool]:
        """Return the in-flight future for ``key`` and whether this call started it."""
        with self._lock:
            existing = self._inflight.get(key)
            # A finished future may linger until its done-callback runs.
            if existing is not None and not existing.done():
                return existing, False
            future = self._executor.submit(fn)
            self._inflight[key] = future
        future.add_done_callback(lambda f: self._forget(key, f))
        return future, True

    def run(self, key: str, fn: Callable[[], T], timeout: Optional[float] = None) -> T:
        future, started = self.submit(key, fn)
        if not started:
            logger.info("Joining in-flight recompute for %s", key)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            raise RecomputeTimeoutError(
                f"Recompute for {key} is still running; retry later"
            ) from None

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._inflight

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _forget(self, key: str, future: Future) -> None:
        with self._lock:
            if self._inflight.get(key) is future:
                del self._inflight[key]


class ClassificationCache:
    def __init__(
        self,
        store: CacheStore,
        session_factory: Callable[[], Session],
        ttl_seconds: int = 0,
        wait_timeout: Optional[float] = 30.0,
        workers: int = 4,
        dsq_counts_as_participation: bool = False,
    ) -> None:
        self.store = store
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self.wait_timeout = wait_timeout
        self.dsq_counts_as_participation = dsq_counts_as_participation
        self._coordinator = RecomputeCoordinator(max_workers=workers)

    def recompute(self, season_id: str) -> SeasonClassificationSnapshot:
        season_id = parse_id(season_id, "seasonId")
        return self._coordinator.run(
            season_id, lambda: self._recompute(season_id), timeout=self.wait_timeout
        )

    def get_optimized(self, season_id: str) -> SeasonClassificationSnapshot:
        season_id = parse_id(season_id, "seasonId")
        raw = self.store.get(classification_key(season_id))
        if raw is None:
            raise NotFoundError("Season classification has not been materialized")
        return SeasonClassificationSnapshot.model_validate_json(raw)

    def get_raw(self, season_id: str) -> bytes:
        season_id = parse_id(season_id, "seasonId")
        raw = self.store.get(classification_key(season_id))
        if raw is None:
            raise NotFoundError("Season classification has not been materialized")
        return raw

    def invalidate(self, season_id: str) -> None:
        season_id = parse_id(season_id, "seasonId")
        self.store.delete(classification_key(season_id))
        logger.info("Classification cache invalidated for season %s", season_id)

    def peek(self, season_id: str) -> Optional[SeasonClassificationSnapshot]:
        """Cached snapshot, or None when absent, unreadable or the store is down."""
        try:
            return self.get_optimized(season_id)
        except NotFoundError:
            return None
        except CacheUnavailableError as exc:
            logger.warning("Reading season %s without cache: %s", season_id, exc.detail)
            return None
        except pydantic.ValidationError:
            logger.warning("Ignoring unreadable cache entry for season %s", season_id)
            return None

    def close(self) -> None:
        self._coordinator.shutdown(wait=True)

    def _recompute(self, season_id: str) -> SeasonClassificationSnapshot:
        started = time.perf_counter()
        logger.info("Recomputing classification for season %s", season_id)
        with self.session_factory() as db:
            try:
                snapshot = build_season_snapshot(
                    db,
                    season_id,
                    dsq_counts_as_participation=self.dsq_counts_as_participation,
                )
            except ConfigurationError as exc:
                logger.error(
                    "Recompute aborted for season %s, cached snapshot left untouched: %s",
                    season_id,
                    exc.detail,
                )
                raise

        version = self._next_version(season_id)
        snapshot = snapshot.model_copy(
            update={"version": version, "last_updated": datetime.now(timezone.utc)}
        )
        self.store.set(
            classification_key(season_id),
            snapshot.model_dump_json().encode("utf-8"),
            ttl_seconds=self.ttl_seconds or None,
        )
        logger.info(
            "Season %s classification v%d materialized (%d categories, %d pilots) in %.3fs",
            season_id,
            snapshot.version,
            snapshot.total_categories,
            snapshot.total_pilots,
            time.perf_counter() - started,
        )
        return snapshot

    def _next_version(self, season_id: str) -> int:
        # INCR is atomic, so concurrent writers never share a version. The counter
        # outlives the snapshot; if it was lost, jump past the stored snapshot.
        version = self.store.incr(version_key(season_id))
        stored = self._stored_version(season_id)
        if stored >= version:
            version = self.store.incr(version_key(season_id), stored - version + 1)
        return version

    def _stored_version(self, season_id: str) -> int:
        raw = self.store.get(classification_key(season_id))
        if raw is None:
            return 0
        try:
            return SeasonClassificationSnapshot.model_validate_json(raw).version
        except pydantic.ValidationError:
            logger.warning("Replacing unreadable cache entry for season %s", season_id)
            return 0
