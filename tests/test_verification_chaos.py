"""Verification Test: Chaos Monkey - random process termination resilience.

Processes exit between being listed and having their usage read. The
refresh pipeline must drop them quietly and keep committing snapshots.
"""

import multiprocessing
import random
import time

from procscope.collectors import Collaborators
from procscope.forest import IsolationForest
from procscope.pipeline import RefreshPipeline, RefreshScheduler
from procscope.store import SnapshotStore


def dummy_worker(duration: float = 60.0) -> None:
    """A dummy worker process that sleeps for a given duration."""
    try:
        time.sleep(duration)
    except (KeyboardInterrupt, SystemExit):
        pass


def wait_for_cycle(store: SnapshotStore, cycle: int, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if store.read_current().cycle >= cycle:
            return True
        time.sleep(0.05)
    return False


class TestChaosMonkey:
    """Chaos Monkey verification suite tests."""

    def test_pipeline_survives_process_termination(self):
        """
        Kill half of a set of dummy processes while the scheduler is
        refreshing. Every cycle must still commit.
        """
        processes = []
        for _ in range(50):
            p = multiprocessing.Process(target=dummy_worker, args=(60.0,))
            p.start()
            processes.append(p)

        store = SnapshotStore()
        pipeline = RefreshPipeline(
            store,
            Collaborators.from_psutil(),
            forest=IsolationForest(n_trees=25, random_seed=0),
        )
        scheduler = RefreshScheduler(pipeline, interval=0.3)

        try:
            scheduler.start()
            assert wait_for_cycle(store, 1, timeout=10.0)

            for p in random.sample(processes, 25):
                if p.is_alive():
                    p.terminate()
                time.sleep(0.05)

            reached = store.read_current().cycle + 3
            assert wait_for_cycle(store, reached, timeout=10.0)
            assert scheduler.is_running
            assert pipeline.failed_cycles == 0

            assert store.read_current().monitored_processes > 0
        finally:
            scheduler.stop()
            pipeline.close()
            for p in processes:
                if p.is_alive():
                    p.terminate()
            for p in processes:
                p.join(timeout=1.0)

    def test_pull_refresh_during_churn(self):
        """Back-to-back refreshes while processes start and exit never fail."""
        store = SnapshotStore()
        pipeline = RefreshPipeline(store, Collaborators.from_psutil(), forest=IsolationForest(n_trees=10))
        churn = []
        try:
            for _ in range(10):
                p = multiprocessing.Process(target=dummy_worker, args=(0.1,))
                p.start()
                churn.append(p)
                snapshot = pipeline.refresh()
                assert snapshot.monitored_processes > 0
            assert pipeline.failed_cycles == 0
            assert store.read_current().cycle == 10
        finally:
            pipeline.close()
            for p in churn:
                p.join(timeout=2.0)
