"""Tests for the push hub."""

import asyncio

import pytest

from procscope.errors import ViewerSendFailure
from procscope.push import PushHub
from procscope.store import SnapshotStore
from test_store import commit


class Viewer:
    """Collects the snapshots pushed to it."""

    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.received = []
        self.fail = fail
        self.delay = delay

    async def send(self, snapshot) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionResetError("viewer went away")
        self.received.append(snapshot)


@pytest.mark.asyncio
async def test_each_viewer_receives_on_its_own_timer():
    """Three viewers at a 0.2s cadence get two pushes in 0.5s."""
    hub = PushHub(SnapshotStore(), interval=0.2)
    viewers = [Viewer() for _ in range(3)]
    for viewer in viewers:
        hub.subscribe(viewer.send)

    await asyncio.sleep(0.5)
    try:
        assert [len(v.received) for v in viewers] == [2, 2, 2]
    finally:
        await hub.close()


@pytest.mark.asyncio
async def test_closing_one_viewer_does_not_delay_others():
    """Test unsubscribing one viewer leaves others on schedule."""
    hub = PushHub(SnapshotStore(), interval=0.2)
    viewers = [Viewer() for _ in range(3)]
    subs = [hub.subscribe(v.send) for v in viewers]

    await asyncio.sleep(0.3)
    hub.unsubscribe(subs[0])
    await asyncio.sleep(0.2)
    try:
        assert len(viewers[0].received) == 1
        assert [len(v.received) for v in viewers[1:]] == [2, 2]
        assert subs[0].closed
        assert len(hub) == 2
    finally:
        await hub.close()


@pytest.mark.asyncio
async def test_no_push_after_unsubscribe():
    """Test nothing is sent after unsubscribe."""
    hub = PushHub(SnapshotStore(), interval=0.1)
    viewer = Viewer()
    sub = hub.subscribe(viewer.send)

    hub.unsubscribe(sub)
    await asyncio.sleep(0.3)

    assert viewer.received == []
    assert sub.closed


@pytest.mark.asyncio
async def test_failed_send_drops_only_that_viewer():
    """Test a failing viewer is dropped alone."""
    hub = PushHub(SnapshotStore(), interval=0.1)
    broken = Viewer(fail=True)
    healthy = Viewer()
    broken_sub = hub.subscribe(broken.send, name="broken")
    healthy_sub = hub.subscribe(healthy.send, name="healthy")

    await asyncio.sleep(0.35)
    try:
        assert broken_sub.closed
        assert isinstance(broken_sub.error, ViewerSendFailure)
        assert not healthy_sub.closed
        assert len(healthy.received) == 3
        assert hub.subscriptions == [healthy_sub]
    finally:
        await hub.close()


@pytest.mark.asyncio
async def test_slow_viewer_is_dropped_after_send_timeout():
    """Test a send over send_timeout drops the viewer."""
    hub = PushHub(SnapshotStore(), interval=0.1, send_timeout=0.05)
    slow = Viewer(delay=1.0)
    fast = Viewer()
    slow_sub = hub.subscribe(slow.send)
    hub.subscribe(fast.send)

    await asyncio.sleep(0.35)
    try:
        assert slow_sub.closed
        assert slow.received == []
        assert len(fast.received) == 3
    finally:
        await hub.close()


@pytest.mark.asyncio
async def test_push_reads_current_snapshot_without_refreshing():
    """Test pushes read the store without refreshing."""
    store = SnapshotStore()
    hub = PushHub(store, interval=0.1)
    viewer = Viewer()
    hub.subscribe(viewer.send)

    await asyncio.sleep(0.15)
    snapshot = commit(store, 2)
    await asyncio.sleep(0.1)
    try:
        assert viewer.received[0].cycle == 0
        assert viewer.received[1] is snapshot
        assert store.read_current().cycle == 1
    finally:
        await hub.close()


@pytest.mark.asyncio
async def test_close_cancels_everything():
    """Test close cancels every subscription."""
    hub = PushHub(SnapshotStore(), interval=0.1)
    subs = [hub.subscribe(Viewer().send) for _ in range(5)]

    await hub.close()

    assert len(hub) == 0
    assert all(sub.closed for sub in subs)


def test_interval_must_be_positive():
    """Test a non-positive interval is rejected."""
    with pytest.raises(ValueError):
        PushHub(SnapshotStore(), interval=0)
