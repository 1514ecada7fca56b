"""
Tests for Cluster API capability detection
"""

from unittest.mock import MagicMock, Mock

import pytest
from kubernetes.client.rest import ApiException

from healthcheck_manager.capability import CAPI_CLUSTER_CRD, CapabilityState, CapabilityWatcher


def crd(name="clusters.cluster.x-k8s.io", group="cluster.x-k8s.io", generation=1):
    return {
        "metadata": {"name": name, "generation": generation},
        "spec": {"group": group},
    }


class TestDetection:
    """Tests for CRD lookup with bounded retries."""

    @pytest.fixture
    def extensions_api(self):
        return Mock()

    def make_watcher(self, extensions_api, **kwargs):
        return CapabilityWatcher(
            extensions_api=extensions_api, terminate=Mock(), backoff=0, **kwargs,
        )

    def test_present(self, extensions_api):
        watcher = self.make_watcher(extensions_api)
        assert watcher.detect() == CapabilityState.PRESENT
        extensions_api.read_custom_resource_definition.assert_called_once_with(CAPI_CLUSTER_CRD)

    def test_absent(self, extensions_api):
        extensions_api.read_custom_resource_definition.side_effect = ApiException(status=404, reason="Not Found")
        watcher = self.make_watcher(extensions_api)
        assert watcher.detect() == CapabilityState.ABSENT
        assert extensions_api.read_custom_resource_definition.call_count == 1

    def test_transient_errors_retried(self, extensions_api):
        extensions_api.read_custom_resource_definition.side_effect = [
            ApiException(status=500, reason="Internal"),
            ApiException(status=503, reason="Unavailable"),
            MagicMock(),
        ]
        watcher = self.make_watcher(extensions_api)
        assert watcher.detect() == CapabilityState.PRESENT
        assert extensions_api.read_custom_resource_definition.call_count == 3

    def test_retries_exhausted_assumes_absent(self, extensions_api):
        extensions_api.read_custom_resource_definition.side_effect = ApiException(status=500, reason="Internal")
        watcher = self.make_watcher(extensions_api, max_retries=3)
        assert watcher.detect() == CapabilityState.ABSENT
        assert extensions_api.read_custom_resource_definition.call_count == 3


class TestDefinitionEvents:
    """Tests for restart decisions on CRD watch events."""

    @pytest.fixture
    def watcher(self):
        return CapabilityWatcher(extensions_api=Mock(), terminate=Mock(), backoff=0)

    def test_absent_install_restarts(self, watcher):
        watcher.handle_definition_event("ADDED", crd())
        watcher.terminate.assert_called_once()
        assert watcher.restart_requested

    def test_absent_partial_install_does_not_restart(self, watcher):
        watcher.handle_definition_event("ADDED", crd(name="clusterclasses.cluster.x-k8s.io"))
        watcher.handle_definition_event("MODIFIED", crd(name="machines.cluster.x-k8s.io"))
        watcher.terminate.assert_not_called()
        assert not watcher.restart_requested

    def test_other_groups_ignored(self, watcher):
        watcher.handle_definition_event("ADDED", crd(name="widgets.example.com", group="example.com"))
        watcher.terminate.assert_not_called()

    def test_restart_only_once(self, watcher):
        watcher.handle_definition_event("ADDED", crd())
        watcher.handle_definition_event("MODIFIED", crd())
        assert watcher.terminate.call_count == 1

    def test_present_initial_list_does_not_restart(self, watcher):
        watcher.state = CapabilityState.PRESENT
        watcher._generations = {"clusters.cluster.x-k8s.io": 1}
        watcher._generations_seen_at_start = {"clusters.cluster.x-k8s.io"}

        watcher.handle_definition_event("ADDED", crd(generation=1))
        watcher.handle_definition_event("MODIFIED", crd(generation=1))
        watcher.terminate.assert_not_called()

    def test_present_spec_change_restarts(self, watcher):
        watcher.state = CapabilityState.PRESENT
        watcher._generations = {"clusters.cluster.x-k8s.io": 1}
        watcher._generations_seen_at_start = {"clusters.cluster.x-k8s.io"}

        watcher.handle_definition_event("MODIFIED", crd(generation=2))
        watcher.terminate.assert_called_once()

    def test_present_removal_restarts(self, watcher):
        watcher.state = CapabilityState.PRESENT
        watcher.handle_definition_event("DELETED", crd())
        watcher.terminate.assert_called_once()


class TestRun:
    """Tests for the watcher startup sequence."""

    def test_present_registers(self):
        extensions_api = Mock()
        listed = Mock()
        listed.spec.group = "cluster.x-k8s.io"
        listed.metadata.name = "clusters.cluster.x-k8s.io"
        listed.metadata.generation = 3
        extensions_api.list_custom_resource_definition.return_value.items = [listed]
        on_present = Mock()

        watcher = CapabilityWatcher(
            extensions_api=extensions_api, on_present=on_present, terminate=Mock(), backoff=0,
        )
        watcher.watch_definitions = Mock()
        watcher.run()

        assert watcher.state == CapabilityState.PRESENT
        on_present.assert_called_once()
        assert watcher._generations == {"clusters.cluster.x-k8s.io": 3}
        watcher.watch_definitions.assert_called_once()

    def test_absent_only_watches(self):
        extensions_api = Mock()
        extensions_api.read_custom_resource_definition.side_effect = ApiException(status=404)
        on_present = Mock()

        watcher = CapabilityWatcher(
            extensions_api=extensions_api, on_present=on_present, terminate=Mock(), backoff=0,
        )
        watcher.watch_definitions = Mock()
        watcher.run()

        assert watcher.state == CapabilityState.ABSENT
        on_present.assert_not_called()
        watcher.watch_definitions.assert_called_once()

    def test_registration_failure_restarts(self):
        on_present = Mock(side_effect=RuntimeError("watch failed"))
        extensions_api = Mock()
        extensions_api.list_custom_resource_definition.return_value.items = []
        watcher = CapabilityWatcher(
            extensions_api=extensions_api, on_present=on_present, terminate=Mock(), backoff=0,
        )
        watcher.watch_definitions = Mock()
        watcher.run()

        watcher.terminate.assert_called_once()
        watcher.watch_definitions.assert_not_called()
