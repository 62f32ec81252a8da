"""
Idempotency guard for webhook deliveries.

Remembers which gateway event ids were handled in a trailing window (24h by
default) so re-deliveries can be short-circuited before they reach the order
state machine. The guard is advisory: the state machine's conditional updates
are what keep a missed duplicate (restart, second instance, concurrent
delivery) from double-applying side effects.

Two stores are provided:
1. In-process dict with expiry timestamps, swept by a background task
2. Redis keys with a TTL, shared between instances
"""
import asyncio
import contextlib
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog

from config import Settings, get_settings
from core.events import UNKNOWN_EVENT_ID
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class IdempotencyStore(ABC):
    """Storage interface for processed event ids."""

    @abstractmethod
    async def contains(self, event_id: str) -> bool:
        """Return True if ``event_id`` is present and not expired."""

    @abstractmethod
    async def add(self, event_id: str, ttl_seconds: int) -> None:
        """Remember ``event_id`` for ``ttl_seconds``."""

    async def purge_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        return 0

    async def close(self) -> None:
        """Release any held resources."""


class InMemoryIdempotencyStore(IdempotencyStore):
    """Process-local store. Lost on restart and not shared between instances."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expiry: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._expiry)

    async def contains(self, event_id: str) -> bool:
        expires_at = self._expiry.get(event_id)
        return expires_at is not None and expires_at > self._clock()

    async def add(self, event_id: str, ttl_seconds: int) -> None:
        self._expiry[event_id] = self._clock() + ttl_seconds

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [event_id for event_id, expires_at in self._expiry.items() if expires_at <= now]
        for event_id in expired:
            del self._expiry[event_id]
        metrics.set_tracked_events(len(self._expiry))
        return len(expired)


class RedisIdempotencyStore(IdempotencyStore):
    """Shared store backed by Redis keys with a TTL; expiry is Redis's job."""

    key_prefix = "webhook:processed:"

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        """
        Args:
            redis_client: Optional Redis client (created from settings if omitted)
        """
        self.settings = get_settings()
        self.redis_client = redis_client
        self._owns_client = redis_client is None

    def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    async def contains(self, event_id: str) -> bool:
        redis = self._ensure_redis()
        return bool(await redis.exists(f"{self.key_prefix}{event_id}"))

    async def add(self, event_id: str, ttl_seconds: int) -> None:
        redis = self._ensure_redis()
        await redis.setex(f"{self.key_prefix}{event_id}", ttl_seconds, "1")

    async def close(self) -> None:
        """Close Redis connection if this store created it."""
        if self.redis_client is not None and self._owns_client:
            await self.redis_client.aclose()
            self.redis_client = None


class ExpirySweeper:
    """
    Background task that periodically purges expired ids from a store.

    The task is owned by whoever calls :meth:`start` (the application
    lifespan) and ends with :meth:`stop`.
    """

    def __init__(self, store: IdempotencyStore, interval_seconds: float = 3600):
        self.store = store
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start sweeping on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="idempotency-expiry-sweeper")
        logger.info("idempotency_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Cancel the sweep task and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("idempotency_sweeper_stopped")

    async def sweep_once(self) -> int:
        removed = await self.store.purge_expired()
        logger.info("idempotency_sweep_completed", removed=removed)
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep_once()
            except Exception as e:
                logger.warning("idempotency_sweep_error", error=str(e))


class IdempotencyGuard:
    """
    Decides whether a webhook delivery should be processed.

    Store errors degrade to "process": dropping a genuinely new event is
    worse than re-running an idempotent transition.
    """

    def __init__(self, store: IdempotencyStore, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        """
        Args:
            store: Processed-event store
            ttl_seconds: How long a processed id suppresses re-deliveries
        """
        self.store = store
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def requires_review(event_id: str) -> bool:
        """Deliveries without a derivable identity need a human look."""
        return event_id == UNKNOWN_EVENT_ID

    async def should_process(self, event_id: str) -> bool:
        """
        Check whether a delivery is new.

        Args:
            event_id: Resolved gateway event identity

        Returns:
            bool: False only if the id was processed within the window
        """
        if event_id == UNKNOWN_EVENT_ID:
            logger.warning("webhook_event_identity_unknown", action="processing_without_dedup")
            return True

        try:
            seen = await self.store.contains(event_id)
        except Exception as e:
            logger.warning("idempotency_check_error", error=str(e), event_id=event_id)
            return True

        if seen:
            logger.info("webhook_event_already_processed", event_id=event_id)
        return not seen

    async def mark_processed(self, event_id: str) -> None:
        """
        Record a dispatched event id.

        Args:
            event_id: Resolved gateway event identity
        """
        if event_id == UNKNOWN_EVENT_ID:
            return
        try:
            await self.store.add(event_id, self.ttl_seconds)
            logger.debug("webhook_marked_processed", event_id=event_id)
        except Exception as e:
            logger.warning("idempotency_mark_error", error=str(e), event_id=event_id)


def create_idempotency_store(settings: Optional[Settings] = None) -> IdempotencyStore:
    """Build the store selected by ``IDEMPOTENCY_BACKEND``."""
    settings = settings or get_settings()
    if settings.idempotency_backend == "redis":
        return RedisIdempotencyStore()
    return InMemoryIdempotencyStore()
