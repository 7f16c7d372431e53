"""Push channel: broadcast the current snapshot to viewers on a fixed cadence."""

import asyncio
import itertools
from collections.abc import Awaitable, Callable

import structlog

from procscope.errors import ViewerSendFailure
from procscope.models import Snapshot
from procscope.store import SnapshotStore

log = structlog.get_logger()

Sender = Callable[[Snapshot], Awaitable[None]]


class Subscription:
    """One viewer's push timer. Created by PushHub.subscribe."""

    def __init__(self, sub_id: int, name: str) -> None:
        self.id = sub_id
        self.name = name
        self.sent = 0
        self.error: ViewerSendFailure | None = None
        self.task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self.task is None or self.task.done()

    def __repr__(self) -> str:
        return f"<Subscription {self.id} {self.name!r} sent={self.sent} closed={self.closed}>"


class PushHub:
    """
    Fans the current snapshot out to subscribed viewers.

    Every subscription runs its own task on its own timer and only reads
    the store; pushing never triggers a refresh. A send that fails or
    exceeds send_timeout drops that subscription alone.
    """

    def __init__(self, store: SnapshotStore, interval: float = 5.0, send_timeout: float = 2.0) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._store = store
        self._interval = interval
        self._send_timeout = send_timeout
        self._ids = itertools.count(1)
        self._subscriptions: dict[int, Subscription] = {}

    def __len__(self) -> int:
        return len(self._subscriptions)

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    def subscribe(self, send: Sender, name: str = "") -> Subscription:
        """Start pushing to send every interval. Must be called from the event loop."""
        loop = asyncio.get_running_loop()
        sub = Subscription(next(self._ids), name)
        sub.task = loop.create_task(self._run(sub, send), name=f"push-{sub.id}")
        self._subscriptions[sub.id] = sub
        log.info("viewer_subscribed", viewer=sub.id, name=name, viewers=len(self._subscriptions))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Stop pushing to sub. No send happens after this returns."""
        if sub.task is not None:
            sub.task.cancel()
        if self._subscriptions.pop(sub.id, None) is not None:
            log.info("viewer_unsubscribed", viewer=sub.id, sent=sub.sent, viewers=len(self._subscriptions))

    async def _run(self, sub: Subscription, send: Sender) -> None:
        loop = asyncio.get_running_loop()
        start = loop.time()
        tick = 0
        try:
            while True:
                tick += 1
                delay = start + tick * self._interval - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)
                snapshot = self._store.read_current()
                try:
                    await asyncio.wait_for(send(snapshot), timeout=self._send_timeout)
                except Exception as exc:
                    sub.error = ViewerSendFailure(f"push to viewer {sub.id} failed: {exc!r}")
                    log.warning("viewer_dropped", viewer=sub.id, name=sub.name, error=repr(exc))
                    return
                sub.sent += 1
                # A slow send skips missed ticks instead of bursting to catch up.
                tick = max(tick, int((loop.time() - start) / self._interval))
        finally:
            self._subscriptions.pop(sub.id, None)

    async def close(self) -> None:
        """Cancel every subscription and wait for the tasks to finish."""
        subs = list(self._subscriptions.values())
        for sub in subs:
            self.unsubscribe(sub)
        tasks = [sub.task for sub in subs if sub.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
