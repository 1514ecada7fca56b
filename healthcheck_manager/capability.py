"""
Capability Watcher - late installation of the Cluster API

Two states:
- ABSENT: Cluster API CRDs not installed; only SveltosClusters are managed
- PRESENT: Cluster API installed; CAPI Clusters are watched and reconciled

Watches and controllers are registered at startup only. When the Cluster API
gets installed later, or its definition changes while PRESENT, the watcher
terminates the process with SIGTERM and the supervisor restarts it.
"""

import logging
import os
import signal
import threading
import time
from enum import Enum
from typing import Callable, Dict, Optional, Set

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from .errors import CapabilityError

logger = logging.getLogger(__name__)

CAPI_GROUP = "cluster.x-k8s.io"
CAPI_CLUSTER_CRD = "clusters.cluster.x-k8s.io"


class CapabilityState(Enum):
    ABSENT = "absent"
    PRESENT = "present"


def terminate_process() -> None:
    """Ask the hosting process to shut down; the supervisor restarts it."""
    os.kill(os.getpid(), signal.SIGTERM)


class CapabilityWatcher:
    """
    Detects the Cluster API and restarts the process when it changes.

    Example:
        watcher = CapabilityWatcher(on_present=register_capi_watches)
        watcher.start()
    """

    def __init__(
        self,
        api_client: Optional[client.ApiClient] = None,
        on_present: Optional[Callable[[], None]] = None,
        max_retries: int = 20,
        backoff: float = 1.0,
        terminate: Callable[[], None] = terminate_process,
        extensions_api=None,
    ):
        self.extensions_api = extensions_api or client.ApiextensionsV1Api(api_client)
        self.on_present = on_present
        self.max_retries = max_retries
        self.backoff = backoff
        self.terminate = terminate
        self.state = CapabilityState.ABSENT
        self.restart_requested = False
        self._generations: Dict[str, int] = {}
        self._generations_seen_at_start: Set[str] = set()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def check_installed(self) -> bool:
        """
        Return True if the Cluster API Cluster CRD exists.

        Raises:
            CapabilityError: On lookup errors other than not-found
        """
        try:
            self.extensions_api.read_custom_resource_definition(CAPI_CLUSTER_CRD)
        except ApiException as e:
            if e.status == 404:
                return False
            raise CapabilityError(f"failed to read CRD {CAPI_CLUSTER_CRD}: {e.reason}")
        return True

    def detect(self) -> CapabilityState:
        """
        Poll for the Cluster API with bounded retries on lookup errors.

        ABSENT is assumed until PRESENT is proven, including when every
        retry failed.
        """
        for attempt in range(1, self.max_retries + 1):
            try:
                present = self.check_installed()
            except CapabilityError as e:
                logger.info(f"Failed to verify if CAPI is present ({attempt}/{self.max_retries}): {e}")
                if self._stop_event.wait(self.backoff):
                    break
                continue
            return CapabilityState.PRESENT if present else CapabilityState.ABSENT

        logger.warning("Could not verify if CAPI is present, assuming absent")
        return CapabilityState.ABSENT

    def restart(self, reason: str) -> None:
        """Request a clean process restart (once)."""
        if self.restart_requested:
            return
        self.restart_requested = True
        logger.warning(f"Restarting: {reason}")
        self.terminate()

    def handle_definition_event(self, event_type: str, crd: Dict) -> None:
        """
        React to a CustomResourceDefinition watch event.

        ABSENT: only the Cluster definition appearing triggers a restart.
        PRESENT: a spec change (generation bump) or removal triggers a restart.
        """
        spec = crd.get("spec") or {}
        if spec.get("group") != CAPI_GROUP:
            return
        metadata = crd.get("metadata") or {}
        name = metadata.get("name", "")
        generation = metadata.get("generation")

        if self.state == CapabilityState.ABSENT:
            if event_type in ("ADDED", "MODIFIED") and name == CAPI_CLUSTER_CRD:
                self.restart(f"CAPI definition {name} installed")
            return

        if event_type == "DELETED":
            self.restart(f"CAPI definition {name} removed")
            return

        if event_type == "ADDED" and name not in self._generations_seen_at_start:
            self.restart(f"CAPI definition {name} added")
            return

        known = self._generations.get(name)
        self._generations[name] = generation
        if event_type == "MODIFIED" and known is not None and known != generation:
            self.restart(f"CAPI definition {name} changed")

    def run(self) -> None:
        """Detect the capability, register it if present, then watch definitions."""
        self.state = self.detect()

        if self.state == CapabilityState.PRESENT:
            logger.info("CAPI present.")
            self._seed_generations()
            if self.on_present is not None:
                try:
                    self.on_present()
                except Exception as e:
                    logger.error(f"Failed to register CAPI watches: {e}")
                    self.restart("CAPI registration failed")
                    return
        else:
            logger.info("CAPI currently not present. Starting CRD watcher")

        self.watch_definitions()

    def _seed_generations(self) -> None:
        try:
            crds = self.extensions_api.list_custom_resource_definition()
        except ApiException as e:
            logger.warning(f"Failed to list CRDs: {e.reason}")
            return
        for crd in crds.items:
            if crd.spec.group == CAPI_GROUP:
                self._generations[crd.metadata.name] = crd.metadata.generation
                self._generations_seen_at_start.add(crd.metadata.name)

    def watch_definitions(self) -> None:
        """Stream CRD events until stopped or a restart is requested."""
        while not self._stop_event.is_set() and not self.restart_requested:
            w = watch.Watch()
            try:
                for event in w.stream(self.extensions_api.list_custom_resource_definition,
                                      timeout_seconds=300):
                    crd = event.get("raw_object") or {}
                    self.handle_definition_event(event.get("type", ""), crd)
                    if self._stop_event.is_set() or self.restart_requested:
                        w.stop()
                        return
            except ApiException as e:
                logger.warning(f"CRD watch failed: {e.reason}")
                time.sleep(self.backoff)
            except Exception as e:
                logger.error(f"CRD watch crashed: {e}")
                time.sleep(self.backoff)

    def start(self) -> None:
        """Run on a background thread, independent of reconcile workers."""
        self._thread = threading.Thread(target=self.run, name="capability-watcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
