"""
Tests for the command-line interface
"""

from click.testing import CliRunner

from healthcheck_manager import __version__
from healthcheck_manager.cli import cli


MANIFEST = """
apiVersion: lib.projectsveltos.io/v1alpha1
kind: ClusterHealthCheck
metadata:
  name: production
spec:
  clusterSelector: env=prod
  livenessChecks:
  - name: addons
    type: Addons
  notifications:
  - name: event
    type: KubernetesEvent
---
apiVersion: lib.projectsveltos.io/v1alpha1
kind: SveltosCluster
metadata:
  name: edge
  namespace: edge
  labels:
    env: prod
status:
  ready: true
"""


class TestCLI:
    """Tests for healthcheck-manager commands."""

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_status_from_manifests(self, tmp_path):
        manifest = tmp_path / "manifest.yaml"
        manifest.write_text(MANIFEST)

        result = CliRunner().invoke(cli, ["status", "-f", str(manifest), "--settle", "1"])

        assert result.exit_code == 0, result.output
        assert "production" in result.output
        assert "edge/edge" in result.output
