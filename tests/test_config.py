"""
Tests for configuration
"""

import importlib
from unittest.mock import patch

import pytest

from healthcheck_manager import config


class TestConfig:
    """Tests for environment-driven configuration."""

    def test_defaults(self):
        cfg = config.ManagerConfig()
        assert cfg.workers == 20
        assert cfg.conflict_retries == 5
        assert cfg.capi_max_retries == 20
        assert cfg.report_mode == config.ReportMode.COLLECT_FROM_MANAGEMENT_CLUSTER

    def test_from_env(self):
        env = {
            "SHARD_KEY": "shard-a",
            "WORKER_NUMBER": "4",
            "REPORT_MODE": "1",
            "RESYNC_SECONDS": "15",
            "KUBECONFIG": "/tmp/kubeconfig",
        }
        with patch.dict("os.environ", env):
            importlib.reload(config)
            cfg = config.ManagerConfig.from_env()
        importlib.reload(config)

        assert cfg.shard_key == "shard-a"
        assert cfg.workers == 4
        assert cfg.report_mode.name == "AGENT_SEND_REPORTS"
        assert cfg.resync_seconds == 15
        assert cfg.kubeconfig == "/tmp/kubeconfig"

    def test_invalid_report_mode(self):
        with patch.dict("os.environ", {"REPORT_MODE": "7"}):
            with pytest.raises(ValueError):
                importlib.reload(config)
        importlib.reload(config)
