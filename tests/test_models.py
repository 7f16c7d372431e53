"""Tests for procscope data models."""

from datetime import datetime, timezone

from procscope.models import ProcessSample, Snapshot, SystemStats

CAPTURED = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def make_sample(**overrides) -> ProcessSample:
    values = dict(
        name="test_process",
        pid=123,
        parent_pid=1,
        cpu_percent=50.0,
        memory_mb=25.5,
        priority=0,
        user="testuser",
        command="/usr/bin/test --run",
        anomaly=False,
        status="running",
        captured_at=CAPTURED,
    )
    values.update(overrides)
    return ProcessSample(**values)


def test_process_sample_creation():
    """Test ProcessSample dataclass creation."""
    sample = make_sample()

    assert sample.pid == 123
    assert sample.name == "test_process"
    assert sample.user == "testuser"
    assert sample.cpu_percent == 50.0
    assert sample.memory_mb == 25.5
    assert sample.anomaly is False
    assert sample.anomaly_score == 0.0


def test_process_sample_is_frozen():
    """Test that ProcessSample is immutable (frozen)."""
    sample = make_sample()

    try:
        sample.anomaly = True
        raise AssertionError("Should have raised FrozenInstanceError")
    except AttributeError:
        pass  # Expected behavior for frozen dataclass


def test_process_sample_uses_slots():
    """Test that ProcessSample uses __slots__."""
    assert not hasattr(make_sample(), "__dict__")


def test_process_sample_json_keys():
    """Test the camelCase JSON shape of a sample."""
    data = make_sample(anomaly=True, anomaly_score=0.71).to_dict()

    assert data["parentPid"] == 1
    assert data["cpuPercent"] == 50.0
    assert data["memoryMB"] == 25.5
    assert data["anomaly"] is True
    assert data["anomalyScore"] == 0.71
    assert data["capturedAt"] == "2026-01-02T03:04:05+00:00"


def test_process_sample_from_dict():
    """Test a sample survives its JSON shape."""
    sample = make_sample(anomaly=True, anomaly_score=0.6)
    assert ProcessSample.from_dict(sample.to_dict()) == sample


def test_system_stats_zero():
    """Test zeroed stats keep the capture time."""
    stats = SystemStats.zero(CAPTURED)

    assert stats.cpu_percent == 0.0
    assert stats.memory_percent == 0.0
    assert stats.disk_percent == 0.0
    assert stats.network_counter == 0.0
    assert stats.captured_at == CAPTURED


def test_empty_snapshot():
    """Test the default snapshot is the empty, pre-refresh one."""
    snapshot = Snapshot()

    assert snapshot.cycle == 0
    assert snapshot.processes == ()
    assert snapshot.anomalies == []
    payload = snapshot.to_dict()
    assert payload["processes"] == []
    assert payload["totalProcesses"] == 0
    assert payload["monitoredProcesses"] == 0
    assert payload["systemStats"]["cpuPercent"] == 0.0


def test_snapshot_payloads():
    """Test pull and push payload shapes."""
    snapshot = Snapshot(
        processes=(make_sample(pid=1), make_sample(pid=2, anomaly=True)),
        system_stats=SystemStats(10.0, 20.0, 30.0, 1024.0, CAPTURED),
        total_processes=5,
        monitored_processes=2,
        cycle=3,
    )

    assert [p.pid for p in snapshot.anomalies] == [2]
    pull = snapshot.to_dict()
    assert set(pull) == {"processes", "systemStats", "totalProcesses", "monitoredProcesses"}
    assert pull["totalProcesses"] == 5
    push = snapshot.to_push_payload()
    assert set(push) == {"processes", "systemStats"}
    assert push["systemStats"]["networkCounter"] == 1024.0
