"""HTTP and WebSocket surface for procscope."""

import asyncio
from collections.abc import Callable
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from procscope.collectors import Collaborators, KillResult, send_kill_signal
from procscope.config import Settings
from procscope.forest import IsolationForest
from procscope.models import Snapshot
from procscope.pipeline import RefreshPipeline, RefreshScheduler
from procscope.push import PushHub, Subscription
from procscope.store import MemoryRecordStore, SnapshotStore, SqliteRecordStore

log = structlog.get_logger()


def build_store(settings: Settings) -> SnapshotStore:
    """Snapshot store persisted to sqlite when settings.database is set."""
    if settings.database:
        process_records = SqliteRecordStore(settings.database, "processes")
        stats_records = SqliteRecordStore(settings.database, "system_stats", max_records=settings.history_limit)
    else:
        process_records = MemoryRecordStore()
        stats_records = MemoryRecordStore(max_records=settings.history_limit)
    return SnapshotStore(
        history_limit=settings.history_limit,
        process_records=process_records,
        stats_records=stats_records,
    )


def build_pipeline(settings: Settings, collaborators: Collaborators | None = None) -> RefreshPipeline:
    forest = IsolationForest(
        n_trees=settings.n_trees,
        max_samples=settings.max_samples,
        contamination=settings.contamination,
        random_seed=settings.random_seed,
        min_samples=settings.min_samples,
    )
    return RefreshPipeline(
        store=build_store(settings),
        collaborators=collaborators or Collaborators.from_psutil(),
        forest=forest,
        training_window=settings.training_window,
        collaborator_timeout=settings.collaborator_timeout,
        max_workers=settings.max_workers,
    )


def create_app(
    settings: Settings | None = None,
    pipeline: RefreshPipeline | None = None,
    kill: Callable[[int], KillResult] = send_kill_signal,
) -> FastAPI:
    """
    Build the FastAPI application.

    The background scheduler starts with the app and stops at shutdown,
    along with every push subscription.
    """
    settings = settings or Settings()
    pipeline = pipeline or build_pipeline(settings)
    store = pipeline.store
    hub = PushHub(store, interval=settings.push_interval, send_timeout=settings.send_timeout)
    scheduler = RefreshScheduler(pipeline, settings.refresh_interval) if settings.refresh_interval > 0 else None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if scheduler is not None:
            scheduler.start()
        log.info(
            "server_started",
            refresh_interval=settings.refresh_interval,
            push_interval=settings.push_interval,
        )
        try:
            yield
        finally:
            if scheduler is not None:
                # Joining the scheduler thread can wait on an in-flight cycle.
                await asyncio.to_thread(scheduler.stop)
            await hub.close()
            pipeline.close()
            store.close()
            log.info("server_stopped")

    app = FastAPI(title="procscope", lifespan=lifespan)
    app.state.settings = settings
    app.state.pipeline = pipeline
    app.state.hub = hub
    app.state.scheduler = scheduler

    def history_limit(limit: int | None) -> int:
        return store.history_limit if limit is None else min(limit, store.history_limit)

    # Sync handlers run in the worker pool, so a refresh never blocks the event loop.
    @app.get("/processes")
    def pull_refresh() -> dict:
        """Run (or join) a refresh cycle and return the resulting snapshot."""
        snapshot: Snapshot = pipeline.refresh()
        return snapshot.to_dict()

    @app.get("/snapshot")
    def current_snapshot() -> dict:
        return store.read_current().to_dict()

    @app.get("/processes/history")
    def process_history(limit: int | None = Query(default=None, ge=1)) -> list[dict]:
        return [sample.to_dict() for sample in store.read_history(history_limit(limit))]

    @app.get("/system-stats/history")
    def stats_history(limit: int | None = Query(default=None, ge=1)) -> list[dict]:
        return [stats.to_dict() for stats in store.read_stats_history(history_limit(limit))]

    @app.post("/processes/{pid}/kill")
    def kill_process(pid: int) -> JSONResponse:
        result = kill(pid)
        return JSONResponse(result.to_dict(), status_code=200 if result.success else 500)

    @app.websocket("/ws")
    async def push_channel(websocket: WebSocket) -> None:
        await websocket.accept()

        async def send(snapshot: Snapshot) -> None:
            await websocket.send_json(snapshot.to_push_payload())

        client = websocket.client
        sub = hub.subscribe(send, name=f"{client.host}:{client.port}" if client else "ws")
        # Viewers send nothing meaningful; reading only detects the close.
        receiver = asyncio.ensure_future(wait_for_disconnect(websocket))
        try:
            done, _ = await asyncio.wait({receiver, sub.task}, return_when=asyncio.FIRST_COMPLETED)
            if receiver not in done:
                await close_dropped(websocket, sub)
        finally:
            receiver.cancel()
            hub.unsubscribe(sub)

    return app


async def wait_for_disconnect(websocket: WebSocket) -> None:
    """Drain incoming frames, text or binary, until the viewer hangs up."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def close_dropped(websocket: WebSocket, sub: Subscription) -> None:
    """Close a viewer whose subscription ended: 1011 after a failed push, 1001 on shutdown."""
    try:
        await websocket.close(code=1011 if sub.error is not None else 1001)
    except (RuntimeError, OSError, WebSocketDisconnect) as exc:
        log.debug("viewer_close_failed", viewer=sub.id, error=repr(exc))
