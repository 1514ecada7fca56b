"""
Deployer - keyed worker pool

Runs evaluation jobs on a thread pool. At most one job per key is in flight;
results are kept until collected or cleaned. Failures are stored as terminal
results, never retried here.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .models import ClusterType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobKey:
    """Identifies one (cluster, policy, feature) job."""
    cluster_namespace: str
    cluster_name: str
    policy_name: str
    feature_id: str
    cluster_type: ClusterType

    def __str__(self) -> str:
        return (
            f"{self.cluster_type.value}:{self.cluster_namespace}/{self.cluster_name}"
            f":{self.feature_id}:{self.policy_name}"
        )


@dataclass
class JobResult:
    """Terminal outcome of a job."""
    value: Any = None
    error: Optional[BaseException] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


class JobContext:
    """
    Cancellation and deadline handle passed to every job.

    Work functions forward remaining() as the timeout of each remote call
    and stop early when cancelled() is set.
    """

    def __init__(self, key: JobKey, timeout: float, cancel_event: threading.Event):
        self.key = key
        self.timeout = timeout
        self._cancel_event = cancel_event
        self._deadline = time.monotonic() + timeout

    def remaining(self) -> float:
        return max(0.0, self._deadline - time.monotonic())

    def cancelled(self) -> bool:
        return self._cancel_event.is_set() or self.remaining() <= 0


WorkFn = Callable[[JobContext], Any]


class ThreadPoolDeployer:
    """
    Worker pool with per-key deduplication.

    Example:
        deployer = ThreadPoolDeployer(workers=20)
        queued = deployer.ensure_job(key, work_fn)
        ...
        result, done = deployer.get_result(key)
    """

    def __init__(self, workers: int = 20, job_timeout: float = 30.0):
        self.workers = workers
        self.job_timeout = job_timeout
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="deployer")
        self._lock = threading.Lock()
        self._in_progress: Dict[JobKey, Future] = {}
        self._results: Dict[JobKey, JobResult] = {}
        self._cancel_event = threading.Event()

    def ensure_job(self, key: JobKey, work_fn: WorkFn) -> bool:
        """
        Queue a job unless one for the same key is already in flight.

        Returns:
            True if a new job was queued, False if one was already running
        """
        with self._lock:
            if key in self._in_progress:
                return False
            self._results.pop(key, None)
            context = JobContext(key, self.job_timeout, self._cancel_event)
            future = self._executor.submit(self._run, key, work_fn, context)
            self._in_progress[key] = future
        logger.debug(f"Queued job {key}")
        return True

    def _run(self, key: JobKey, work_fn: WorkFn, context: JobContext) -> None:
        start_time = time.time()
        try:
            value = work_fn(context)
            result = JobResult(value=value)
        except Exception as e:
            logger.warning(f"Job {key} failed: {e}")
            result = JobResult(error=e)
        result.duration_ms = (time.time() - start_time) * 1000

        with self._lock:
            self._in_progress.pop(key, None)
            self._results[key] = result

    def is_in_progress(self, key: JobKey) -> bool:
        with self._lock:
            return key in self._in_progress

    def get_result(self, key: JobKey) -> Tuple[Optional[JobResult], bool]:
        """
        Return (result, done). done is False while the job runs or when no
        job was ever queued for the key.
        """
        with self._lock:
            result = self._results.get(key)
            return result, result is not None

    def clean_result(self, key: JobKey) -> None:
        with self._lock:
            self._results.pop(key, None)

    def shutdown(self, wait: bool = False) -> None:
        """Cancel queued jobs and signal running ones to stop."""
        self._cancel_event.set()
        self._executor.shutdown(wait=wait, cancel_futures=True)
        logger.info("Deployer stopped")
