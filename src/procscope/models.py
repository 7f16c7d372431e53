"""Data models for procscope."""

from dataclasses import dataclass, field
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class ProcessSample:
    """Immutable sample of one process taken during a refresh cycle."""

    name: str
    pid: int
    parent_pid: int
    cpu_percent: float  # raw, 0.0 - 100.0 * core_count
    memory_mb: float  # RSS in MiB
    priority: int  # nice value
    user: str
    command: str
    anomaly: bool
    status: str
    captured_at: datetime
    anomaly_score: float = 0.0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "pid": self.pid,
            "parentPid": self.parent_pid,
            "cpuPercent": self.cpu_percent,
            "memoryMB": self.memory_mb,
            "priority": self.priority,
            "user": self.user,
            "command": self.command,
            "anomaly": self.anomaly,
            "anomalyScore": self.anomaly_score,
            "status": self.status,
            "capturedAt": self.captured_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessSample":
        return cls(
            name=data["name"],
            pid=int(data["pid"]),
            parent_pid=int(data["parentPid"]),
            cpu_percent=float(data["cpuPercent"]),
            memory_mb=float(data["memoryMB"]),
            priority=int(data["priority"]),
            user=data["user"],
            command=data["command"],
            anomaly=bool(data["anomaly"]),
            status=data["status"],
            captured_at=datetime.fromisoformat(data["capturedAt"]),
            anomaly_score=float(data.get("anomalyScore", 0.0)),
        )


@dataclass(slots=True, frozen=True)
class SystemStats:
    """Host-wide resource usage captured once per refresh cycle."""

    cpu_percent: float
    memory_percent: float
    disk_percent: float
    network_counter: float  # cumulative bytes received
    captured_at: datetime

    @classmethod
    def zero(cls, captured_at: datetime | None = None) -> "SystemStats":
        """Zeroed stats, used when nothing could be sampled."""
        return cls(0.0, 0.0, 0.0, 0.0, captured_at or utcnow())

    def to_dict(self) -> dict:
        return {
            "cpuPercent": self.cpu_percent,
            "memoryPercent": self.memory_percent,
            "diskPercent": self.disk_percent,
            "networkCounter": self.network_counter,
            "capturedAt": self.captured_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SystemStats":
        return cls(
            cpu_percent=float(data["cpuPercent"]),
            memory_percent=float(data["memoryPercent"]),
            disk_percent=float(data["diskPercent"]),
            network_counter=float(data["networkCounter"]),
            captured_at=datetime.fromisoformat(data["capturedAt"]),
        )


@dataclass(slots=True, frozen=True)
class Snapshot:
    """
    The complete state produced by one refresh cycle.

    Snapshots are never patched: the store swaps the whole object, so a
    reader holding a reference always sees processes and stats of the
    same cycle.
    """

    processes: tuple[ProcessSample, ...] = ()
    system_stats: SystemStats = field(default_factory=SystemStats.zero)
    total_processes: int = 0
    monitored_processes: int = 0
    cycle: int = 0

    @property
    def anomalies(self) -> list[ProcessSample]:
        """Processes flagged by the scorer in this snapshot."""
        return [proc for proc in self.processes if proc.anomaly]

    def to_dict(self) -> dict:
        """Payload returned by the pull endpoint."""
        return {
            "processes": [proc.to_dict() for proc in self.processes],
            "systemStats": self.system_stats.to_dict(),
            "totalProcesses": self.total_processes,
            "monitoredProcesses": self.monitored_processes,
        }

    def to_push_payload(self) -> dict:
        """Payload broadcast to push viewers."""
        return {
            "processes": [proc.to_dict() for proc in self.processes],
            "systemStats": self.system_stats.to_dict(),
        }
