"""psutil-backed collaborators: process listing, usage, host stats, kill."""

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import TypeVar

import psutil
import structlog

from procscope.errors import CollaboratorUnavailable

log = structlog.get_logger()

T = TypeVar("T")

MB = 1024 * 1024


@dataclass(slots=True, frozen=True)
class ProcessInfo:
    """Static description of a listed process."""

    pid: int
    name: str
    parent_pid: int
    priority: int
    user: str
    command: str
    status: str


@dataclass(slots=True, frozen=True)
class Usage:
    """Point-in-time resource usage of one process."""

    cpu_percent: float
    memory_mb: float


@dataclass(slots=True, frozen=True)
class KillResult:
    success: bool
    message: str = ""
    error: str = ""

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True, "message": self.message}
        return {"success": False, "error": self.error}


def list_processes() -> list[ProcessInfo]:
    """
    List running processes.

    Processes that vanish or deny access mid-listing are skipped.
    """
    processes: list[ProcessInfo] = []
    attrs = ["pid", "name", "ppid", "nice", "username", "cmdline", "status"]

    for proc in psutil.process_iter(attrs=attrs):
        try:
            info = proc.info
            cmdline = info.get("cmdline") or []
            processes.append(
                ProcessInfo(
                    pid=info.get("pid", 0),
                    name=info.get("name") or "",
                    parent_pid=info.get("ppid") or 0,
                    priority=info.get("nice") or 0,
                    user=info.get("username") or "",
                    command=" ".join(cmdline) if cmdline else info.get("name") or "",
                    status=info.get("status") or "?",
                )
            )
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    return processes


class ProcessUsageSampler:
    """
    Samples CPU and memory per pid.

    psutil measures cpu_percent between two calls on the same Process
    object, so objects are cached across cycles. The first sample of a new
    process reports 0.0 CPU.
    """

    def __init__(self) -> None:
        self._cache: dict[int, psutil.Process] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._cache)

    def _process(self, pid: int) -> psutil.Process:
        with self._lock:
            proc = self._cache.get(pid)
        # A cached object for a recycled pid no longer matches its process.
        if proc is None or not proc.is_running():
            proc = psutil.Process(pid)
            with self._lock:
                self._cache[pid] = proc
        return proc

    def sample(self, pid: int) -> Usage | None:
        """Usage of pid, or None when it cannot be read."""
        try:
            proc = self._process(pid)
            with proc.oneshot():
                cpu = proc.cpu_percent(interval=None)
                rss = proc.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            with self._lock:
                self._cache.pop(pid, None)
            return None
        return Usage(cpu_percent=float(cpu), memory_mb=rss / MB)

    def prune(self, alive: Iterable[int]) -> None:
        """Forget cached processes that are no longer listed."""
        alive = set(alive)
        with self._lock:
            for pid in [pid for pid in self._cache if pid not in alive]:
                del self._cache[pid]


def host_cpu_percent() -> float:
    return float(psutil.cpu_percent(interval=None))


def host_memory_percent() -> float:
    return float(psutil.virtual_memory().percent)


def host_disk_percent(path: str = "/") -> float:
    return float(psutil.disk_usage(path).percent)


def host_network_counter() -> float:
    """Total bytes received on all interfaces since boot."""
    return float(psutil.net_io_counters().bytes_recv)


def send_kill_signal(pid: int) -> KillResult:
    """Send SIGKILL to pid. Delivery does not guarantee termination."""
    if pid <= 0:
        return KillResult(success=False, error=f"Invalid pid {pid}")
    try:
        psutil.Process(pid).kill()
    except psutil.Error as exc:
        log.warning("kill_failed", pid=pid, error=str(exc))
        return KillResult(success=False, error=str(exc) or exc.__class__.__name__)
    log.info("kill_sent", pid=pid)
    return KillResult(success=True, message=f"Process {pid} killed successfully")


def call_with_timeout(executor: Executor, name: str, func: Callable[[], T], timeout: float) -> T:
    """Run func on executor, raising CollaboratorUnavailable on failure or timeout."""
    future = executor.submit(func)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        raise CollaboratorUnavailable(name, exc) from exc
    except Exception as exc:
        raise CollaboratorUnavailable(name, exc) from exc


@dataclass(slots=True)
class Collaborators:
    """External calls made by the refresh pipeline."""

    list_processes: Callable[[], list[ProcessInfo]]
    sample_usage: Callable[[int], Usage | None]
    host_cpu_percent: Callable[[], float]
    host_memory_percent: Callable[[], float]
    host_disk_percent: Callable[[], float]
    host_network_counter: Callable[[], float]
    forget_missing: Callable[[Iterable[int]], None] | None = None

    @classmethod
    def from_psutil(cls) -> "Collaborators":
        sampler = ProcessUsageSampler()
        # The first call only primes psutil's CPU counter.
        psutil.cpu_percent(interval=None)
        return cls(
            list_processes=list_processes,
            sample_usage=sampler.sample,
            host_cpu_percent=host_cpu_percent,
            host_memory_percent=host_memory_percent,
            host_disk_percent=host_disk_percent,
            host_network_counter=host_network_counter,
            forget_missing=sampler.prune,
        )
