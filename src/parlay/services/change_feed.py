"""Change Feed - at-least-once delivery of record changes to handlers.

This service:
- Polls the record store's change_log for each subscription
- Delivers batches of ChangeRecords filtered by record type
- Advances a subscription's persisted cursor only after its handler returns
- Leaves the cursor in place when a handler raises, so the same batch is
  redelivered on the next poll

Ordering within one record's history follows change_log order. Handlers
must be idempotent: they compare old and new images before acting.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

from parlay.core.config import ConfigManager
from parlay.core.lifecycle import BaseComponent, HealthCheckResult
from parlay.domain.models import ChangeRecord, RecordType
from parlay.services.metrics import MetricsEmitter
from parlay.services.record_store import RecordStore

log = structlog.get_logger()

DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_BATCH_SIZE = 25
# Consecutive failures of one batch before the feed reports degraded health
DEFAULT_STUCK_AFTER_FAILURES = 5

BatchHandler = Callable[[list[ChangeRecord]], Awaitable[None]]


@dataclass
class Subscription:
    """A named consumer of one record type's changes."""

    name: str
    record_type: RecordType
    handler: BatchHandler
    batch_size: int
    consecutive_failures: int = 0
    delivered: int = 0
    last_error: Optional[str] = None


class ChangeFeed(BaseComponent):
    """Dispatches change_log entries to subscribed handlers.

    Usage:
        feed = ChangeFeed(store, config)
        feed.subscribe("bet_executor", RecordType.BET, executor.handle_batch)
        await feed.start()      # background polling
        await feed.drain()      # or process until caught up, then return
    """

    def __init__(
        self,
        store: RecordStore,
        config: Optional[ConfigManager] = None,
        metrics: Optional[MetricsEmitter] = None,
    ):
        super().__init__(name="change_feed")
        self._store = store
        self._metrics = metrics
        self._log = log.bind(component="change_feed")

        self._poll_interval = (
            config.get_float("feed.poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS)
            if config else DEFAULT_POLL_INTERVAL_SECONDS
        )
        self._batch_size = (
            config.get_int("feed.batch_size", DEFAULT_BATCH_SIZE)
            if config else DEFAULT_BATCH_SIZE
        )
        self._stuck_after = (
            config.get_int("feed.stuck_after_failures", DEFAULT_STUCK_AFTER_FAILURES)
            if config else DEFAULT_STUCK_AFTER_FAILURES
        )

        self._subscriptions: dict[str, Subscription] = {}
        self._poll_task: Optional[asyncio.Task] = None
        self._poll_lock = asyncio.Lock()

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    def subscribe(
        self,
        name: str,
        record_type: RecordType,
        handler: BatchHandler,
        batch_size: Optional[int] = None,
    ) -> None:
        """Register a handler for one record type.

        Raises:
            ValueError: If the subscription name is already taken.
        """
        if name in self._subscriptions:
            raise ValueError(f"Subscription {name} already registered")
        self._subscriptions[name] = Subscription(
            name=name,
            record_type=record_type,
            handler=handler,
            batch_size=batch_size or self._batch_size,
        )
        self._log.info("feed_subscribed", subscription=name, record_type=record_type.value)

    async def _do_start(self) -> None:
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._log.info(
            "change_feed_started",
            subscriptions=list(self._subscriptions),
            poll_interval=self._poll_interval,
        )

    async def _do_stop(self) -> None:
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        self._log.info("change_feed_stopped")

    async def _do_health_check(self) -> HealthCheckResult:
        stuck = [
            s.name for s in self._subscriptions.values()
            if s.consecutive_failures >= self._stuck_after
        ]
        details: dict[str, Any] = {
            s.name: {"delivered": s.delivered, "failures": s.consecutive_failures}
            for s in self._subscriptions.values()
        }
        if stuck:
            return HealthCheckResult.degraded(
                f"Subscriptions stuck: {', '.join(stuck)}", **details
            )
        return HealthCheckResult.healthy(**details)

    async def _poll_loop(self) -> None:
        while True:
            try:
                delivered = await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.error("feed_poll_error", error=str(e))
                delivered = 0
            if delivered == 0:
                await asyncio.sleep(self._poll_interval)

    async def poll_once(self) -> int:
        """Deliver at most one batch to every subscription.

        Returns:
            Number of change records successfully delivered.
        """
        async with self._poll_lock:
            delivered = 0
            for subscription in self._subscriptions.values():
                delivered += await self._deliver(subscription)
            return delivered

    async def _deliver(self, subscription: Subscription) -> int:
        cursor = await self._store.get_cursor(subscription.name)
        changes = await self._store.read_changes(
            cursor, limit=subscription.batch_size, record_type=subscription.record_type
        )
        if not changes:
            return 0

        start = time.monotonic()
        try:
            await subscription.handler(changes)
        except Exception as e:
            subscription.consecutive_failures += 1
            subscription.last_error = str(e)
            self._log.error(
                "feed_batch_failed",
                subscription=subscription.name,
                first_seq=changes[0].seq,
                last_seq=changes[-1].seq,
                attempt=subscription.consecutive_failures,
                error=str(e),
                error_type=type(e).__name__,
            )
            if self._metrics:
                self._metrics.record_feed_batch(
                    subscription.name, "failed", time.monotonic() - start
                )
            return 0

        await self._store.set_cursor(subscription.name, changes[-1].seq)
        subscription.consecutive_failures = 0
        subscription.last_error = None
        subscription.delivered += len(changes)

        if self._metrics:
            self._metrics.record_feed_batch(
                subscription.name, "ok", time.monotonic() - start
            )
        self._log.debug(
            "feed_batch_delivered",
            subscription=subscription.name,
            count=len(changes),
            last_seq=changes[-1].seq,
        )
        return len(changes)

    async def drain(self, max_rounds: int = 1000) -> int:
        """Poll until no subscription makes progress.

        A subscription whose handler keeps failing stops contributing
        progress, so drain() returns instead of spinning on it.

        Returns:
            Total change records delivered.
        """
        total = 0
        for _ in range(max_rounds):
            delivered = await self.poll_once()
            if delivered == 0:
                break
            total += delivered
        return total
