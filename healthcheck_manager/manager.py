"""
Controller Manager

Runs the reconciliation loop: a deduplicating work queue of policy names,
a bounded pool of reconcile workers, a periodic resync (APScheduler) and the
capability watcher.
"""

import logging
import threading
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional, Set

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .capability import CapabilityWatcher
from .config import ManagerConfig
from .deployer import ThreadPoolDeployer
from .errors import HealthCheckManagerError
from .reconciler import HealthCheckReconciler
from .store import Store, WatchEvent

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    Deduplicating work queue.

    - a key added several times before a worker picks it is processed once
    - a key is never processed by two workers at the same time; re-adding a
      key while it is processed queues it again once done() is called
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._queue: List[str] = []
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._shutting_down = False
        self._timers: Set[threading.Timer] = set()

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return

        def fire():
            with self._cond:
                self._timers.discard(timer)
            self.add(key)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        with self._cond:
            if self._shutting_down:
                return
            self._timers.add(timer)
        timer.start()

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block until a key is available; None on shutdown or timeout."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                if not self._cond.wait(timeout):
                    return None
            if self._shutting_down:
                return None
            key = self._queue.pop(0)
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
            self._cond.notify_all()


class ControllerManager:
    """
    Hosts the reconciler and its workers.

    Example:
        manager = ControllerManager(config, store, reconciler, deployer)
        manager.start()
        ...
        manager.stop()
    """

    def __init__(
        self,
        config: ManagerConfig,
        store: Store,
        reconciler: HealthCheckReconciler,
        deployer: ThreadPoolDeployer,
        capability_watcher: Optional[CapabilityWatcher] = None,
        error_backoff: float = 5.0,
        max_error_backoff: float = 300.0,
    ):
        self.config = config
        self.store = store
        self.reconciler = reconciler
        self.deployer = deployer
        self.capability_watcher = capability_watcher
        self.error_backoff = error_backoff
        self.max_error_backoff = max_error_backoff

        self.queue = WorkQueue()
        self._workers: List[threading.Thread] = []
        self._scheduler: Optional[BackgroundScheduler] = None
        self._errors: Dict[str, int] = {}
        self._errors_lock = threading.Lock()
        self._running = False
        self._stop_event = threading.Event()

        store.subscribe(self._on_event)

    @property
    def is_running(self) -> bool:
        return self._running

    def _on_event(self, event: WatchEvent) -> None:
        for name in self.reconciler.handle_event(event):
            self.queue.add(name)

    def enqueue_all(self) -> None:
        """Queue every policy; used at startup and by the periodic resync."""
        try:
            names = [p.name for p in self.store.list_policies()]
        except HealthCheckManagerError as e:
            logger.error(f"Failed to list policies for resync: {e}")
            return
        for name in names:
            self.queue.add(name)
        logger.debug(f"Resync queued {len(names)} policies")

    def start(self) -> None:
        if self._running:
            logger.warning("Controller manager is already running")
            return

        for name in self.reconciler.rebuild():
            self.queue.add(name)

        for i in range(self.config.concurrent_reconciles):
            worker = threading.Thread(target=self._worker, name=f"reconciler-{i}", daemon=True)
            worker.start()
            self._workers.append(worker)

        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self.enqueue_all,
            trigger=IntervalTrigger(seconds=self.config.resync_seconds),
            id="resync",
            name="Periodic policy resync",
            replace_existing=True,
        )
        self._scheduler.start()

        if self.capability_watcher is not None:
            self.capability_watcher.start()

        self._running = True
        logger.info(
            f"Controller manager started "
            f"(reconcilers={self.config.concurrent_reconciles}, workers={self.config.workers}, "
            f"resync={self.config.resync_seconds}s, shard={self.config.shard_key or '-'})"
        )

    def stop(self) -> None:
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        if self.capability_watcher is not None:
            self.capability_watcher.stop()
        self._stop_event.set()
        self.queue.shutdown()
        for worker in self._workers:
            worker.join(timeout=5)
        self._workers = []
        self.deployer.shutdown()
        self._running = False
        logger.info("Controller manager stopped")

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Reconcile one queued policy. Returns False if none was available."""
        name = self.queue.get(timeout=timeout)
        if name is None:
            return False
        try:
            result = self.reconciler.reconcile(name)
        except HealthCheckManagerError as e:
            delay = self._error_delay(name)
            logger.error(f"Reconcile of {name} failed, retrying in {delay}s: {e}")
            self.queue.add_after(name, delay)
        except Exception as e:
            delay = self._error_delay(name)
            logger.exception(f"Unexpected error reconciling {name}: {e}")
            self.queue.add_after(name, delay)
        else:
            with self._errors_lock:
                self._errors.pop(name, None)
            if result.requeue_after is not None:
                self.queue.add_after(name, result.requeue_after)
        finally:
            self.queue.done(name)
        return True

    def _error_delay(self, name: str) -> float:
        with self._errors_lock:
            failures = self._errors.get(name, 0)
            self._errors[name] = failures + 1
        return min(self.error_backoff * (2 ** failures), self.max_error_backoff)

    def _worker(self) -> None:
        while not self._stop_event.is_set():
            self.process_next(timeout=1.0)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "shard_key": self.config.shard_key,
            "report_mode": self.config.report_mode.name,
            "concurrent_reconciles": self.config.concurrent_reconciles,
            "workers": self.config.workers,
            "resync_seconds": self.config.resync_seconds,
            "queued": len(self.queue),
            "capability": (
                self.capability_watcher.state.value if self.capability_watcher else None
            ),
            "timestamp": datetime.now(UTC).isoformat(),
        }


def create_manager(
    config: ManagerConfig,
    manifests: Optional[List[str]] = None,
) -> ControllerManager:
    """
    Wire store, index, dispatcher, evaluator and notifier into a manager.

    Args:
        config: Manager configuration
        manifests: YAML files/directories to run from instead of a
            management cluster

    Returns:
        ControllerManager, not started
    """
    from .dispatcher import Dispatcher
    from .evaluator import Evaluator
    from .index import SelectorIndex
    from .models import NotificationType
    from .notifications import NotificationDispatcher

    deployer = ThreadPoolDeployer(workers=config.workers, job_timeout=config.job_timeout)
    index = SelectorIndex(shard_key=config.shard_key)
    capability_watcher = None

    if manifests:
        from .loader import ManifestLoader
        from .notifications import LogSink
        from .reports import InMemoryReportSource
        from .store import InMemoryStore

        store = InMemoryStore()
        reports = InMemoryReportSource()
        ManifestLoader(store, reports).load_paths(manifests)
        notifier = NotificationDispatcher({t: LogSink() for t in NotificationType})
    else:
        from .kube import get_api_client
        from .notifications import KubernetesEventSink, SlackSink
        from .reports import KubernetesReportSource
        from .store import KubernetesStore

        api_client = get_api_client(config.kubeconfig)
        store = KubernetesStore(api_client, request_timeout=config.job_timeout)
        reports = KubernetesReportSource(api_client)
        notifier = NotificationDispatcher({
            NotificationType.KUBERNETES_EVENT: KubernetesEventSink(api_client),
            NotificationType.SLACK: SlackSink(),
        })
        capability_watcher = CapabilityWatcher(
            api_client,
            max_retries=config.capi_max_retries,
            backoff=config.capi_retry_seconds,
        )

    reconciler = HealthCheckReconciler(
        store=store,
        index=index,
        dispatcher=Dispatcher(deployer),
        evaluator=Evaluator(reports, default_timeout=config.job_timeout),
        notifier=notifier,
        conflict_retries=config.conflict_retries,
    )
    manager = ControllerManager(config, store, reconciler, deployer, capability_watcher)

    if capability_watcher is not None:
        def register_capi() -> None:
            store.watch_capi_clusters()
            for name in reconciler.rebuild():
                manager.queue.add(name)

        capability_watcher.on_present = register_capi

    return manager
