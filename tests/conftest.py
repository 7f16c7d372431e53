"""Shared fixtures: a scriptable fake host for the refresh pipeline."""

import threading
import time

import pytest

from procscope.collectors import Collaborators, ProcessInfo, Usage
from procscope.errors import CollaboratorUnavailable
from procscope.forest import IsolationForest
from procscope.pipeline import RefreshPipeline
from procscope.store import SnapshotStore

SCENARIO = [(1, 10, 0), (2, 12, 0), (1, 11, 0), (2, 9, 0), (1, 10, 0), (95, 900, 0)]


class FakeHost:
    """
    In-memory stand-in for psutil.

    processes maps pid -> (cpu_percent, memory_mb, priority). Individual
    behaviours (failing listing, missing usage, slow calls) are toggled by
    setting attributes.
    """

    def __init__(self, processes: dict[int, tuple] | None = None) -> None:
        self.processes = dict(processes or {})
        self.fail_listing = False
        self.listing_gate: threading.Event | None = None
        self.listing_calls = 0
        self.unavailable: set[int] = set()
        self.raising: set[int] = set()
        self.slow: set[int] = set()
        self.slow_seconds = 1.0
        self.host = {"cpu": 12.5, "memory": 40.0, "disk": 55.0, "network": 4096.0}
        self.failing_host: set[str] = set()
        self.hanging_host: set[str] = set()
        self.host_gate = threading.Event()
        self.host_calls: dict[str, int] = {}

    @classmethod
    def from_vectors(cls, vectors) -> "FakeHost":
        return cls({pid: vector for pid, vector in enumerate(vectors, start=1)})

    def list_processes(self) -> list[ProcessInfo]:
        self.listing_calls += 1
        if self.listing_gate is not None:
            self.listing_gate.wait(timeout=5.0)
        if self.fail_listing:
            raise CollaboratorUnavailable("list_processes")
        return [
            ProcessInfo(
                pid=pid,
                name=f"proc{pid}",
                parent_pid=1,
                priority=int(vector[2]),
                user="tester",
                command=f"/usr/bin/proc{pid} --flag",
                status="running",
            )
            for pid, vector in self.processes.items()
        ]

    def sample_usage(self, pid: int) -> Usage | None:
        if pid in self.raising:
            raise RuntimeError(f"usage read failed for {pid}")
        if pid in self.slow:
            time.sleep(self.slow_seconds)
        if pid in self.unavailable or pid not in self.processes:
            return None
        cpu, memory, _ = self.processes[pid]
        return Usage(cpu_percent=float(cpu), memory_mb=float(memory))

    def _host(self, name: str) -> float:
        self.host_calls[name] = self.host_calls.get(name, 0) + 1
        if name in self.hanging_host:
            self.host_gate.wait(timeout=30.0)
        if name in self.failing_host:
            raise OSError(f"{name} unavailable")
        return self.host[name]

    def collaborators(self) -> Collaborators:
        return Collaborators(
            list_processes=self.list_processes,
            sample_usage=self.sample_usage,
            host_cpu_percent=lambda: self._host("cpu"),
            host_memory_percent=lambda: self._host("memory"),
            host_disk_percent=lambda: self._host("disk"),
            host_network_counter=lambda: self._host("network"),
        )


def make_pipeline(
    host: FakeHost,
    store: SnapshotStore | None = None,
    training_window: int = 0,
    timeout: float = 2.0,
    **forest_kwargs,
) -> RefreshPipeline:
    forest_kwargs.setdefault("random_seed", 42)
    return RefreshPipeline(
        store=store or SnapshotStore(history_limit=100),
        collaborators=host.collaborators(),
        forest=IsolationForest(**forest_kwargs),
        training_window=training_window,
        collaborator_timeout=timeout,
        max_workers=4,
    )


@pytest.fixture
def scenario_host() -> FakeHost:
    return FakeHost.from_vectors(SCENARIO)


@pytest.fixture
def pipeline(scenario_host):
    pipe = make_pipeline(scenario_host)
    yield pipe
    pipe.close()
