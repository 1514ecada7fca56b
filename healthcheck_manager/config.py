"""
healthcheck-manager Configuration

Centralized configuration, read from environment variables. CLI options
override these defaults.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ReportMode(Enum):
    """How HealthCheckReports reach the management cluster."""
    COLLECT_FROM_MANAGEMENT_CLUSTER = 0
    AGENT_SEND_REPORTS = 1


# =============================================================================
# Sharding
# =============================================================================

SHARD_KEY = os.environ.get("SHARD_KEY", "")


# =============================================================================
# Concurrency
# =============================================================================

# Workers evaluate health checks against managed clusters
WORKER_NUMBER = int(os.environ.get("WORKER_NUMBER", "20"))

# Maximum number of policies reconciled in parallel
CONCURRENT_RECONCILES = int(os.environ.get("CONCURRENT_RECONCILES", "10"))

JOB_TIMEOUT_SECONDS = float(os.environ.get("JOB_TIMEOUT_SECONDS", "30"))


# =============================================================================
# Reconciliation
# =============================================================================

REPORT_MODE = ReportMode(int(os.environ.get("REPORT_MODE", "0")))
RESYNC_SECONDS = int(os.environ.get("RESYNC_SECONDS", "60"))
CONFLICT_RETRIES = int(os.environ.get("CONFLICT_RETRIES", "5"))


# =============================================================================
# Cluster API detection
# =============================================================================

CAPI_MAX_RETRIES = int(os.environ.get("CAPI_MAX_RETRIES", "20"))
CAPI_RETRY_SECONDS = float(os.environ.get("CAPI_RETRY_SECONDS", "1"))


LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


@dataclass
class ManagerConfig:
    """
    Controller manager configuration.

    Attributes:
        shard_key: Shard owned by this replica (empty = unsharded policies only)
        workers: Deployer worker threads
        concurrent_reconciles: Reconcile worker threads
        job_timeout: Per-job deadline in seconds
        report_mode: How HealthCheckReports are collected
        resync_seconds: Interval of the periodic re-evaluation of every policy
        conflict_retries: Status update attempts on version conflicts
        capi_max_retries: Cluster API lookup attempts before assuming absent
        capi_retry_seconds: Delay between Cluster API lookup attempts
        kubeconfig: Kubeconfig path (None = in-cluster, then default)
    """
    shard_key: str = ""
    workers: int = 20
    concurrent_reconciles: int = 10
    job_timeout: float = 30.0
    report_mode: ReportMode = ReportMode.COLLECT_FROM_MANAGEMENT_CLUSTER
    resync_seconds: int = 60
    conflict_retries: int = 5
    capi_max_retries: int = 20
    capi_retry_seconds: float = 1.0
    kubeconfig: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ManagerConfig":
        return cls(
            shard_key=SHARD_KEY,
            workers=WORKER_NUMBER,
            concurrent_reconciles=CONCURRENT_RECONCILES,
            job_timeout=JOB_TIMEOUT_SECONDS,
            report_mode=REPORT_MODE,
            resync_seconds=RESYNC_SECONDS,
            conflict_retries=CONFLICT_RETRIES,
            capi_max_retries=CAPI_MAX_RETRIES,
            capi_retry_seconds=CAPI_RETRY_SECONDS,
            kubeconfig=os.environ.get("KUBECONFIG") or None,
        )


if __name__ == "__main__":
    config = ManagerConfig.from_env()
    print("healthcheck-manager Configuration")
    print("=" * 50)
    for name, value in vars(config).items():
        print(f"  {name}: {value}")
