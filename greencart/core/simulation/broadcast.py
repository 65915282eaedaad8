from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from greencart.utils.metrics import SIMULATION_MESSAGES_TOTAL, SIMULATION_SUBSCRIBER_DROPS_TOTAL

# Never skipped on a full queue; the oldest queued message is evicted instead.
TERMINAL_KINDS = frozenset({"simulationEnd"})


@dataclass(eq=False)
class Subscription:
    channel: str
    queue: "asyncio.Queue[dict[str, Any]]"
    loop: asyncio.AbstractEventLoop
    dropped: int = field(default=0)


class ChannelBroadcaster:
    """In-process pub/sub keyed by run id.

    At-most-once, best-effort delivery to subscribers joined at publish time:
    no queuing for absent subscribers and no replay. A full subscriber queue
    drops the message instead of blocking the publisher; only the end-of-run
    message displaces an older one.
    """

    def __init__(self, *, queue_max: int = 1000, logger: Optional[logging.Logger] = None) -> None:
        self._lock = threading.RLock()
        self._channels: dict[str, list[Subscription]] = {}
        self._queue_max = max(1, int(queue_max))
        self._logger = logger or logging.getLogger(__name__)

        # In-memory drop counters; surfaced in logs.
        self._drop_total = 0
        self._drop_by_kind: dict[str, int] = {}

    def join(self, channel: str) -> Subscription:
        """Creates a subscription on `channel`. Must be called from the consumer's event loop.

        The channel does not need to belong to an existing or active run.
        """
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_max)
        sub = Subscription(channel=channel, queue=queue, loop=asyncio.get_running_loop())
        with self._lock:
            self._channels.setdefault(channel, []).append(sub)
        return sub

    def leave(self, channel: str, sub: Subscription) -> None:
        with self._lock:
            subs = self._channels.get(channel)
            if not subs:
                return
            try:
                subs.remove(sub)
            except ValueError:
                return
            if not subs:
                del self._channels[channel]

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._channels.get(channel, ()))

    def publish(self, channel: str, message: dict[str, Any]) -> int:
        """Delivers `message` to current subscribers of `channel`; returns the delivered count.

        Subscribers living on another event loop (e.g. a test client thread) are
        handed the message via `call_soon_threadsafe` and counted as delivered.
        """
        kind = str(message.get("kind") or "")
        SIMULATION_MESSAGES_TOTAL.labels(kind=kind).inc()

        with self._lock:
            subs = list(self._channels.get(channel, ()))

        try:
            current_loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None

        delivered = 0
        for sub in subs:
            if sub.loop is not current_loop:
                try:
                    sub.loop.call_soon_threadsafe(self._offer, sub, message, kind)
                except RuntimeError:
                    # Consumer loop is closed: the subscription can never be drained.
                    self._drop_dead(sub, kind)
                    continue
                delivered += 1
            elif self._offer(sub, message, kind):
                delivered += 1
        return delivered

    def _drop_dead(self, sub: Subscription, kind: str) -> None:
        sub.dropped += 1
        self.leave(sub.channel, sub)
        with self._lock:
            self._drop_total += 1
            self._drop_by_kind[kind] = self._drop_by_kind.get(kind, 0) + 1
        SIMULATION_SUBSCRIBER_DROPS_TOTAL.labels(kind=kind).inc()
        self._logger.warning(
            "simulation.broadcast.dead_subscriber_removed kind=%s channel=%s", kind, sub.channel
        )

    def _offer(self, sub: Subscription, message: dict[str, Any], kind: str) -> bool:
        try:
            sub.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            pass

        if kind in TERMINAL_KINDS:
            # The end-of-run message must reach the consumer: evict the oldest queued one.
            try:
                evicted = sub.queue.get_nowait()
            except asyncio.QueueEmpty:
                evicted = None
            if evicted is not None:
                sub.dropped += 1
                SIMULATION_SUBSCRIBER_DROPS_TOTAL.labels(kind=str(evicted.get("kind") or "")).inc()
            try:
                sub.queue.put_nowait(message)
                self._logger.warning(
                    "simulation.broadcast.queue_full_evict kind=%s channel=%s", kind, sub.channel
                )
                return True
            except asyncio.QueueFull:
                pass

        sub.dropped += 1
        with self._lock:
            self._drop_total += 1
            self._drop_by_kind[kind] = self._drop_by_kind.get(kind, 0) + 1
            drops_total = self._drop_total
            drops_by_kind = self._drop_by_kind[kind]
        SIMULATION_SUBSCRIBER_DROPS_TOTAL.labels(kind=kind).inc()
        self._logger.warning(
            "simulation.broadcast.queue_full_drop kind=%s channel=%s qsize=%d drops_total=%d drops_by_kind=%d",
            kind,
            sub.channel,
            sub.queue.qsize(),
            drops_total,
            drops_by_kind,
        )
        return False
