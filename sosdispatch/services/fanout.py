"""Notification fan-out: per-alert subscription streams and gateway delivery.

Delivery to gateways is at-least-once and happens on a worker pool after
the transition has committed. A failed delivery is retried, then logged;
it never reaches the code that made the transition.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Iterable, Protocol

from sosdispatch.core.config import Settings
from sosdispatch.core.errors import NotificationDeliveryFailure
from sosdispatch.core.retry import backoff_delays
from sosdispatch.models.enums import NotificationKind

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NotificationEvent:
    """One copy of a lifecycle event addressed to one target."""

    event_id: str
    alert_id: str
    target_id: str
    kind: NotificationKind
    payload: dict[str, Any]
    alert_version: int
    emitted_at: datetime = field(default_factory=_utcnow)

    def to_message(self) -> dict[str, Any]:
        """Wire form handed to gateways and websocket clients."""
        return {
            "event": f"alert.{self.kind.value.lower()}",
            "event_id": self.event_id,
            "alert_id": self.alert_id,
            "kind": self.kind.value,
            "alert_version": self.alert_version,
            "emitted_at": self.emitted_at.isoformat(),
            "data": self.payload,
        }


class PushGateway(Protocol):
    """Transport that can reach a user or topic."""

    name: str

    def notify(self, target_id: str, message: dict[str, Any]) -> None: ...


class Subscription:
    """An in-process stream of events for one alert.

    ``accept`` drops duplicates (by event_id) and anything older than the
    newest alert version already delivered, so a consumer sees versions in
    order even if deliveries race.
    """

    def __init__(self, alert_id: str, subscriber_id: str, history: int = 256) -> None:
        self.alert_id = alert_id
        self.subscriber_id = subscriber_id
        self.last_version = 0
        self.closed = False
        self._queue: asyncio.Queue[NotificationEvent | None] = asyncio.Queue()
        try:
            self._loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self._seen: set[str] = set()
        self._seen_order: deque[str] = deque()
        self._history = history
        self._lock = threading.Lock()

    def accept(self, event: NotificationEvent) -> bool:
        with self._lock:
            if self.closed or event.event_id in self._seen:
                return False
            if event.alert_version < self.last_version:
                logger.debug(
                    "Dropping v%s event for %s, subscriber %s already at v%s",
                    event.alert_version,
                    event.alert_id,
                    self.subscriber_id,
                    self.last_version,
                )
                return False
            self.last_version = event.alert_version
            self._seen.add(event.event_id)
            self._seen_order.append(event.event_id)
            if len(self._seen_order) > self._history:
                self._seen.discard(self._seen_order.popleft())
            return True

    def offer(self, event: NotificationEvent) -> bool:
        """Queue ``event`` if accepted. Safe to call from any thread."""
        if not self.accept(event):
            return False
        self._put(event)
        return True

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
        self._put(None)

    def _put(self, item: NotificationEvent | None) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        else:
            self._queue.put_nowait(item)

    async def get(self, timeout: float | None = None) -> NotificationEvent | None:
        """Next event, or None once the subscription is closed."""
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)

    async def events(self) -> AsyncIterator[NotificationEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class NotificationFanout:
    """Publishes lifecycle events to subscribers and push gateways."""

    def __init__(
        self,
        gateways: Iterable[PushGateway],
        config: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.gateways = list(gateways)
        self.config = config
        self.clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=max(config.notification_workers, 1),
            thread_name_prefix="fanout",
        )
        self._subs: dict[str, dict[int, Subscription]] = {}
        self._subs_lock = threading.Lock()
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    # ---------- subscriptions ----------

    def subscribe(self, alert_id: str, subscriber_id: str) -> Subscription:
        sub = Subscription(alert_id, subscriber_id)
        with self._subs_lock:
            self._subs.setdefault(alert_id, {})[id(sub)] = sub
        logger.debug("Subscriber %s watching alert %s", subscriber_id, alert_id)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._subs_lock:
            subs = self._subs.get(sub.alert_id)
            if subs:
                subs.pop(id(sub), None)
                if not subs:
                    del self._subs[sub.alert_id]
        sub.close()

    def subscriber_count(self, alert_id: str) -> int:
        with self._subs_lock:
            return len(self._subs.get(alert_id, {}))

    # ---------- publishing ----------

    def publish(
        self,
        alert_id: str,
        kind: NotificationKind,
        alert_version: int,
        payload: dict[str, Any],
        targets: Iterable[str],
    ) -> list[NotificationEvent]:
        """Emit one event per target and per current subscriber.

        Subscribers receive their copy before this returns; gateway
        deliveries are queued on the worker pool.
        """
        now = self.clock()

        with self._subs_lock:
            subs = list(self._subs.get(alert_id, {}).values())
        for sub in subs:
            sub.offer(
                NotificationEvent(
                    event_id=str(uuid.uuid4()),
                    alert_id=alert_id,
                    target_id=sub.subscriber_id,
                    kind=kind,
                    payload=payload,
                    alert_version=alert_version,
                    emitted_at=now,
                )
            )

        events: list[NotificationEvent] = []
        for target_id in dict.fromkeys(t for t in targets if t):
            event = NotificationEvent(
                event_id=str(uuid.uuid4()),
                alert_id=alert_id,
                target_id=target_id,
                kind=kind,
                payload=payload,
                alert_version=alert_version,
                emitted_at=now,
            )
            events.append(event)
            for gateway in self.gateways:
                self._submit(gateway, event)

        logger.debug(
            "Published %s v%s for alert %s to %s targets and %s subscribers",
            kind.value,
            alert_version,
            alert_id,
            len(events),
            len(subs),
        )
        return events

    def _submit(self, gateway: PushGateway, event: NotificationEvent) -> None:
        future = self._executor.submit(self._deliver, gateway, event)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _deliver(self, gateway: PushGateway, event: NotificationEvent) -> bool:
        attempts = max(self.config.notification_retry_attempts, 1)
        delays = backoff_delays(attempts, self.config.notification_retry_backoff_seconds)
        message = event.to_message()
        for attempt, delay in enumerate(delays + [None], start=1):
            try:
                gateway.notify(event.target_id, message)
                return True
            except Exception as exc:
                if delay is None:
                    failure = NotificationDeliveryFailure(
                        f"{gateway.name} could not deliver {event.event_id} to {event.target_id} "
                        f"after {attempt} attempts: {exc}"
                    )
                    logger.error("%s", failure.message)
                    return False
                logger.warning(
                    "%s delivery of %s to %s failed (attempt %s/%s): %s",
                    gateway.name,
                    event.event_id,
                    event.target_id,
                    attempt,
                    attempts,
                    exc,
                )
                time.sleep(delay)
        return False

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for queued deliveries. Returns False if some are still running at ``timeout``."""
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, timeout: float | None = 5.0) -> None:
        self.drain(timeout)
        with self._subs_lock:
            subs = [s for group in self._subs.values() for s in group.values()]
            self._subs.clear()
        for sub in subs:
            sub.close()
        self._executor.shutdown(wait=False)
