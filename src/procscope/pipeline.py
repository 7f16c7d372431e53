"""Refresh pipeline: sample, score and commit one snapshot per cycle."""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import replace
from enum import Enum

import numpy as np
import structlog

from procscope.collectors import Collaborators, ProcessInfo, call_with_timeout
from procscope.errors import InvalidFeatureError
from procscope.features import extract_features, feature_matrix
from procscope.forest import IsolationForest
from procscope.models import ProcessSample, Snapshot, SystemStats, utcnow
from procscope.store import SnapshotStore

log = structlog.get_logger()

HOST_METRICS = ("cpu_percent", "memory_percent", "disk_percent", "network_counter")


class RefreshState(Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    SCORING = "scoring"
    COMMITTING = "committing"
    FAILED = "failed"


class RefreshPipeline:
    """
    Runs refresh cycles against a SnapshotStore.

    Only one cycle executes at a time. A refresh requested while a cycle is
    in flight is coalesced: the caller waits for that cycle and gets its
    result instead of starting another one.

    A cycle that fails at any stage leaves the store untouched, so readers
    keep seeing the previous snapshot.
    """

    def __init__(
        self,
        store: SnapshotStore,
        collaborators: Collaborators,
        forest: IsolationForest | None = None,
        training_window: int = 100,
        collaborator_timeout: float = 2.0,
        max_workers: int = 16,
    ) -> None:
        self._store = store
        self._collaborators = collaborators
        self._forest = forest or IsolationForest()
        self._training_window = max(0, training_window)
        self._timeout = collaborator_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="procscope-sample")
        # Host metrics get their own pool so a hung metric never starves listing or sampling.
        self._host_executor = ThreadPoolExecutor(max_workers=len(HOST_METRICS), thread_name_prefix="procscope-host")
        self._host_pending: dict[str, Future] = {}
        self._cond = threading.Condition()
        self._running = False
        self._generation = 0
        self._state = RefreshState.IDLE
        self.last_error: BaseException | None = None
        self.failed_cycles = 0

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def store(self) -> SnapshotStore:
        return self._store

    def refresh(self) -> Snapshot:
        """Run one cycle (or join the one in flight) and return the current snapshot."""
        with self._cond:
            if self._running:
                generation = self._generation
                log.debug("refresh_coalesced")
                while self._running and self._generation == generation:
                    self._cond.wait()
                return self._store.read_current()
            self._running = True

        try:
            return self._run_cycle()
        finally:
            with self._cond:
                self._running = False
                self._generation += 1
                self._cond.notify_all()

    def _run_cycle(self) -> Snapshot:
        started = time.monotonic()
        captured_at = utcnow()
        self._state = RefreshState.COLLECTING
        host_futures: dict[str, Future] = {}
        try:
            host_futures = self._start_host_stats()
            listing = call_with_timeout(
                self._executor, "list_processes", self._collaborators.list_processes, self._timeout
            )
            if self._collaborators.forget_missing is not None:
                self._collaborators.forget_missing(info.pid for info in listing)
            samples, vectors = self._sample_processes(listing, captured_at)

            self._state = RefreshState.SCORING
            if not samples:
                for future in host_futures.values():
                    future.cancel()
                self._state = RefreshState.COMMITTING
                snapshot = self._store.replace_current([], SystemStats.zero(captured_at), 0, 0)
                log.warning("refresh_empty", cycle=snapshot.cycle, listed=len(listing))
                return snapshot

            scored = self._score(samples, vectors)

            self._state = RefreshState.COMMITTING
            stats = self._collect_host_stats(host_futures, captured_at)
            snapshot = self._store.replace_current(scored, stats, len(listing), len(scored))
        except Exception as exc:
            for future in host_futures.values():
                future.cancel()
            self._state = RefreshState.FAILED
            self.last_error = exc
            self.failed_cycles += 1
            log.error("refresh_failed", error=str(exc), error_type=type(exc).__name__)
            return self._store.read_current()
        finally:
            self._state = RefreshState.IDLE

        self.last_error = None
        log.info(
            "refresh_committed",
            cycle=snapshot.cycle,
            total=snapshot.total_processes,
            monitored=snapshot.monitored_processes,
            anomalies=len(snapshot.anomalies),
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return snapshot

    def _start_host_stats(self) -> dict[str, Future]:
        collab = self._collaborators
        calls = {
            "cpu_percent": collab.host_cpu_percent,
            "memory_percent": collab.host_memory_percent,
            "disk_percent": collab.host_disk_percent,
            "network_counter": collab.host_network_counter,
        }
        futures = {}
        for name, func in calls.items():
            pending = self._host_pending.get(name)
            if pending is not None and not pending.done():
                # At most one call per metric is outstanding; a hung one is not resubmitted.
                log.debug("host_stat_pending", metric=name)
                futures[name] = pending
            else:
                futures[name] = self._host_pending[name] = self._host_executor.submit(func)
        return futures

    def _collect_host_stats(self, futures: dict[str, Future], captured_at) -> SystemStats:
        """Resolve host metrics; an unavailable metric is reported as 0.0."""
        wait(futures.values(), timeout=self._timeout)
        values: dict[str, float] = {}
        for name in HOST_METRICS:
            future = futures[name]
            try:
                if not future.done():
                    raise TimeoutError(f"{name} still running after {self._timeout}s")
                values[name] = float(future.result())
            except Exception as exc:
                future.cancel()
                log.warning("host_stat_unavailable", metric=name, error=repr(exc))
                values[name] = 0.0
        return SystemStats(captured_at=captured_at, **values)

    def _sample_processes(
        self, listing: list[ProcessInfo], captured_at
    ) -> tuple[list[ProcessSample], list[np.ndarray]]:
        """
        Sample usage for every listed process in parallel.

        Processes whose usage cannot be read in time, or whose features are
        invalid, are filtered out.
        """
        futures = {
            self._executor.submit(self._collaborators.sample_usage, info.pid): info
            for info in listing
            if info.pid > 0
        }
        done, not_done = wait(futures, timeout=self._timeout)
        for future in not_done:
            future.cancel()

        samples: list[ProcessSample] = []
        vectors: list[np.ndarray] = []
        unavailable = invalid = 0
        for future, info in futures.items():
            if future not in done or future.exception() is not None:
                unavailable += 1
                continue
            usage = future.result()
            if usage is None:
                unavailable += 1
                continue
            sample = ProcessSample(
                name=info.name,
                pid=info.pid,
                parent_pid=info.parent_pid,
                cpu_percent=usage.cpu_percent,
                memory_mb=usage.memory_mb,
                priority=info.priority,
                user=info.user,
                command=info.command,
                anomaly=False,
                status=info.status,
                captured_at=captured_at,
            )
            try:
                vectors.append(extract_features(sample))
            except InvalidFeatureError as exc:
                invalid += 1
                log.warning("sample_rejected", pid=info.pid, error=str(exc))
                continue
            samples.append(sample)

        if unavailable or invalid:
            log.debug("samples_dropped", unavailable=unavailable, invalid=invalid, kept=len(samples))
        return samples, vectors

    def _score(self, samples: list[ProcessSample], vectors: list[np.ndarray]) -> list[ProcessSample]:
        """Flag anomalies among samples, judged together with recent history."""
        history = self._store.read_history(self._training_window) if self._training_window else []
        batch = np.vstack([np.vstack(vectors), feature_matrix(history)])
        result = self._forest.fit_predict(batch)
        if result.skipped:
            log.info("scoring_skipped", batch=len(batch), min_samples=self._forest.min_samples)

        n = len(samples)
        return [
            replace(sample, anomaly=bool(flag), anomaly_score=float(score))
            for sample, flag, score in zip(samples, result.flags[:n], result.scores[:n])
        ]

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._host_executor.shutdown(wait=False, cancel_futures=True)


class RefreshScheduler:
    """
    Drives a RefreshPipeline from a background daemon thread.

    Errors never stop the loop; the pipeline already contains them.
    """

    def __init__(self, pipeline: RefreshPipeline, interval: float = 10.0) -> None:
        self._pipeline = pipeline
        self._interval = max(0.1, interval)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def interval(self) -> float:
        return self._interval

    @interval.setter
    def interval(self, value: float) -> None:
        self._interval = max(0.1, value)  # Minimum 0.1 seconds

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name="RefreshScheduler",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self._pipeline.refresh()
            self._stop_event.wait(timeout=self._interval)
