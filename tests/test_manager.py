"""
Tests for the work queue and controller manager
"""

import threading
import time
from unittest.mock import Mock

import pytest

from healthcheck_manager.config import ManagerConfig
from healthcheck_manager.errors import ConflictError
from healthcheck_manager.manager import ControllerManager, WorkQueue, create_manager
from healthcheck_manager.models import HealthPolicy
from healthcheck_manager.reconciler import ReconcileResult
from healthcheck_manager.store import InMemoryStore


class TestWorkQueue:
    """Tests for WorkQueue."""

    def test_deduplicates_pending_keys(self):
        queue = WorkQueue()
        queue.add("p1")
        queue.add("p1")
        queue.add("p2")

        assert len(queue) == 2
        assert queue.get(timeout=0.1) == "p1"
        assert queue.get(timeout=0.1) == "p2"

    def test_key_readded_while_processing(self):
        queue = WorkQueue()
        queue.add("p1")
        key = queue.get(timeout=0.1)

        queue.add("p1")
        # Not handed out twice concurrently
        assert queue.get(timeout=0.05) is None

        queue.done(key)
        assert queue.get(timeout=0.1) == "p1"

    def test_get_times_out(self):
        assert WorkQueue().get(timeout=0.01) is None

    def test_add_after(self):
        queue = WorkQueue()
        queue.add_after("p1", 0.05)
        assert len(queue) == 0
        assert queue.get(timeout=2) == "p1"

    def test_shutdown_unblocks(self):
        queue = WorkQueue()
        results = []
        worker = threading.Thread(target=lambda: results.append(queue.get()))
        worker.start()

        queue.shutdown()
        worker.join(timeout=2)

        assert results == [None]
        queue.add("p1")
        assert len(queue) == 0


class TestControllerManager:
    """Tests for ControllerManager."""

    @pytest.fixture
    def store(self):
        return InMemoryStore()

    @pytest.fixture
    def reconciler(self):
        reconciler = Mock()
        reconciler.rebuild.return_value = []
        reconciler.handle_event.return_value = []
        reconciler.reconcile.return_value = ReconcileResult()
        return reconciler

    @pytest.fixture
    def manager(self, store, reconciler):
        config = ManagerConfig(concurrent_reconciles=2, resync_seconds=3600)
        return ControllerManager(config, store, reconciler, Mock(), error_backoff=0.01)

    def test_events_enqueue_policies(self, store, reconciler, manager):
        reconciler.handle_event.return_value = ["p1"]
        store.put_policy(HealthPolicy(name="p1"))
        assert manager.queue.get(timeout=0.1) == "p1"

    def test_process_next_reconciles(self, manager, reconciler):
        manager.queue.add("p1")
        assert manager.process_next(timeout=0.1)
        reconciler.reconcile.assert_called_once_with("p1")
        assert not manager.process_next(timeout=0.01)

    def test_requeue_after(self, manager, reconciler):
        reconciler.reconcile.return_value = ReconcileResult(requeue_after=0.05)
        manager.queue.add("p1")
        manager.process_next(timeout=0.1)

        assert manager.queue.get(timeout=2) == "p1"

    def test_error_backoff(self, manager, reconciler):
        reconciler.reconcile.side_effect = ConflictError("stale")
        manager.queue.add("p1")
        manager.process_next(timeout=0.1)

        assert manager.queue.get(timeout=2) == "p1"
        assert manager._error_delay("p1") == pytest.approx(0.02)

    def test_enqueue_all(self, store, manager):
        store.put_policy(HealthPolicy(name="p1"))
        store.put_policy(HealthPolicy(name="p2"))
        manager.enqueue_all()
        assert len(manager.queue) == 2

    def test_start_and_stop(self, manager, reconciler):
        reconciler.rebuild.return_value = ["p1"]
        manager.start()
        try:
            assert manager.is_running
            deadline = time.time() + 5
            while not reconciler.reconcile.called and time.time() < deadline:
                time.sleep(0.01)
            reconciler.reconcile.assert_called_with("p1")
            assert manager.get_status()["running"]
        finally:
            manager.stop()
        assert not manager.is_running
        manager.deployer.shutdown.assert_called_once()


class TestCreateManager:
    """Tests for wiring from manifests."""

    def test_from_manifests(self, tmp_path):
        manifest = tmp_path / "policy.yaml"
        manifest.write_text(
            "apiVersion: lib.projectsveltos.io/v1alpha1\n"
            "kind: ClusterHealthCheck\n"
            "metadata:\n"
            "  name: production\n"
            "spec:\n"
            "  clusterSelector: env=prod\n"
        )
        manager = create_manager(ManagerConfig(), [str(manifest)])
        try:
            assert [p.name for p in manager.store.list_policies()] == ["production"]
            assert manager.capability_watcher is None
        finally:
            manager.deployer.shutdown()
