"""
Store - typed access to policies, clusters and health definitions

Two implementations of the same contract:
- InMemoryStore: process-local, used for local runs (YAML manifests) and tests
- KubernetesStore: custom resources in the management cluster

Status updates are conditional on resource_version; a stale version raises
ConflictError and the caller re-reads and re-applies its change.
"""

import copy
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from .errors import ConflictError, NotFoundError, StoreError
from .models import (
    CAPI_API_VERSION, Cluster, ClusterType, HealthDefinition, HealthPolicy, ObjectRef,
)

logger = logging.getLogger(__name__)


class ObjectKind(Enum):
    POLICY = "ClusterHealthCheck"
    CLUSTER = "Cluster"
    HEALTH_DEFINITION = "HealthCheck"


class EventType(Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class WatchEvent:
    """Change notification delivered to subscribers."""
    kind: ObjectKind
    type: EventType
    obj: Any


Subscriber = Callable[[WatchEvent], None]


class Store(ABC):
    """Store/watch contract used by the engine."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def _notify(self, event: WatchEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Watch subscriber failed on {event.kind.value} {event.type.value}: {e}")

    @abstractmethod
    def get_policy(self, name: str) -> HealthPolicy:
        """Raises NotFoundError."""

    @abstractmethod
    def list_policies(self) -> List[HealthPolicy]:
        pass

    @abstractmethod
    def update_policy_status(self, policy: HealthPolicy) -> HealthPolicy:
        """Conditional on policy.resource_version; raises ConflictError."""

    @abstractmethod
    def get_cluster(self, ref: ObjectRef) -> Cluster:
        """Raises NotFoundError."""

    @abstractmethod
    def list_clusters(self) -> List[Cluster]:
        pass

    @abstractmethod
    def get_health_definition(self, name: str) -> HealthDefinition:
        """Raises NotFoundError."""

    @abstractmethod
    def list_health_definitions(self) -> List[HealthDefinition]:
        pass


class InMemoryStore(Store):
    """
    Process-local store with watch notifications.

    Status updates bump the resource version but do not emit watch events,
    mirroring a generation-changed filter on the watch side.

    Example:
        store = InMemoryStore()
        store.subscribe(lambda event: print(event.kind, event.type))
        store.put_cluster(Cluster(namespace="ns", name="c1", labels={"env": "prod"}))
    """

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()
        self._versions = itertools.count(1)
        self._policies: Dict[str, HealthPolicy] = {}
        self._clusters: Dict[ObjectRef, Cluster] = {}
        self._definitions: Dict[str, HealthDefinition] = {}

    def _next_version(self) -> str:
        return str(next(self._versions))

    # Policies

    def put_policy(self, policy: HealthPolicy) -> HealthPolicy:
        """Create or replace a policy spec, keeping the stored status."""
        with self._lock:
            stored = copy.deepcopy(policy)
            existing = self._policies.get(policy.name)
            if existing is not None:
                stored.status = copy.deepcopy(existing.status)
            stored.resource_version = self._next_version()
            self._policies[policy.name] = stored
            result = copy.deepcopy(stored)
        event_type = EventType.MODIFIED if existing is not None else EventType.ADDED
        self._notify(WatchEvent(ObjectKind.POLICY, event_type, copy.deepcopy(result)))
        return result

    def delete_policy(self, name: str) -> None:
        with self._lock:
            policy = self._policies.pop(name, None)
        if policy is None:
            raise NotFoundError(f"ClusterHealthCheck {name} not found")
        self._notify(WatchEvent(ObjectKind.POLICY, EventType.DELETED, policy))

    def get_policy(self, name: str) -> HealthPolicy:
        with self._lock:
            policy = self._policies.get(name)
            if policy is None:
                raise NotFoundError(f"ClusterHealthCheck {name} not found")
            return copy.deepcopy(policy)

    def list_policies(self) -> List[HealthPolicy]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._policies.values()]

    def update_policy_status(self, policy: HealthPolicy) -> HealthPolicy:
        with self._lock:
            current = self._policies.get(policy.name)
            if current is None:
                raise NotFoundError(f"ClusterHealthCheck {policy.name} not found")
            if policy.resource_version != current.resource_version:
                raise ConflictError(
                    f"ClusterHealthCheck {policy.name} has version {current.resource_version}, "
                    f"update based on {policy.resource_version}"
                )
            current.status = copy.deepcopy(policy.status)
            current.resource_version = self._next_version()
            return copy.deepcopy(current)

    # Clusters

    def put_cluster(self, cluster: Cluster) -> Cluster:
        with self._lock:
            stored = copy.deepcopy(cluster)
            stored.resource_version = self._next_version()
            existing = self._clusters.get(cluster.ref)
            self._clusters[cluster.ref] = stored
            result = copy.deepcopy(stored)
        event_type = EventType.MODIFIED if existing is not None else EventType.ADDED
        self._notify(WatchEvent(ObjectKind.CLUSTER, event_type, copy.deepcopy(result)))
        return result

    def delete_cluster(self, ref: ObjectRef) -> None:
        with self._lock:
            cluster = self._clusters.pop(ref, None)
        if cluster is None:
            raise NotFoundError(f"{ref} not found")
        self._notify(WatchEvent(ObjectKind.CLUSTER, EventType.DELETED, cluster))

    def get_cluster(self, ref: ObjectRef) -> Cluster:
        with self._lock:
            cluster = self._clusters.get(ref)
            if cluster is None:
                raise NotFoundError(f"{ref} not found")
            return copy.deepcopy(cluster)

    def list_clusters(self) -> List[Cluster]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._clusters.values()]

    # Health definitions

    def put_health_definition(self, definition: HealthDefinition) -> HealthDefinition:
        with self._lock:
            stored = copy.deepcopy(definition)
            stored.resource_version = self._next_version()
            existing = self._definitions.get(definition.name)
            self._definitions[definition.name] = stored
            result = copy.deepcopy(stored)
        event_type = EventType.MODIFIED if existing is not None else EventType.ADDED
        self._notify(WatchEvent(ObjectKind.HEALTH_DEFINITION, event_type, copy.deepcopy(result)))
        return result

    def delete_health_definition(self, name: str) -> None:
        with self._lock:
            definition = self._definitions.pop(name, None)
        if definition is None:
            raise NotFoundError(f"HealthCheck {name} not found")
        self._notify(WatchEvent(ObjectKind.HEALTH_DEFINITION, EventType.DELETED, definition))

    def get_health_definition(self, name: str) -> HealthDefinition:
        with self._lock:
            definition = self._definitions.get(name)
            if definition is None:
                raise NotFoundError(f"HealthCheck {name} not found")
            return copy.deepcopy(definition)

    def list_health_definitions(self) -> List[HealthDefinition]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._definitions.values()]


# Custom resource coordinates
_POLICY_CRD = ("lib.projectsveltos.io", "v1alpha1", "clusterhealthchecks")
_DEFINITION_CRD = ("lib.projectsveltos.io", "v1alpha1", "healthchecks")
_SVELTOS_CLUSTER_CRD = ("lib.projectsveltos.io", "v1alpha1", "sveltosclusters")
_CAPI_CLUSTER_CRD = ("cluster.x-k8s.io", "v1beta1", "clusters")


class KubernetesStore(Store):
    """
    Store backed by custom resources in the management cluster.

    CAPI Clusters are only listed and watched once watch_capi_clusters() is
    called, which the capability watcher does when the Cluster API is present.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None, request_timeout: float = 30.0):
        super().__init__()
        self.custom_api = client.CustomObjectsApi(api_client)
        self.request_timeout = request_timeout
        self.capi_enabled = False
        self._watch_threads: List[threading.Thread] = []
        self._stop_event = threading.Event()

    def _api_call(self, description: str, fn, *args, **kwargs) -> Any:
        try:
            return fn(*args, _request_timeout=self.request_timeout, **kwargs)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(f"{description}: not found")
            if e.status == 409:
                raise ConflictError(f"{description}: {e.reason}")
            raise StoreError(f"{description}: {e.reason}")

    def get_policy(self, name: str) -> HealthPolicy:
        data = self._api_call(
            f"get ClusterHealthCheck {name}",
            self.custom_api.get_cluster_custom_object, *_POLICY_CRD, name,
        )
        return HealthPolicy.from_dict(data)

    def list_policies(self) -> List[HealthPolicy]:
        data = self._api_call(
            "list ClusterHealthChecks", self.custom_api.list_cluster_custom_object, *_POLICY_CRD,
        )
        return [HealthPolicy.from_dict(item) for item in data.get("items") or []]

    def update_policy_status(self, policy: HealthPolicy) -> HealthPolicy:
        data = self._api_call(
            f"update ClusterHealthCheck {policy.name} status",
            self.custom_api.replace_cluster_custom_object_status,
            *_POLICY_CRD, policy.name, policy.to_dict(),
        )
        return HealthPolicy.from_dict(data)

    def _cluster_crd(self, ref: ObjectRef):
        if ref.cluster_type == ClusterType.SVELTOS:
            return _SVELTOS_CLUSTER_CRD
        return _CAPI_CLUSTER_CRD

    def get_cluster(self, ref: ObjectRef) -> Cluster:
        group, version, plural = self._cluster_crd(ref)
        data = self._api_call(
            f"get {ref}", self.custom_api.get_namespaced_custom_object,
            group, version, ref.namespace, plural, ref.name,
        )
        return Cluster.from_dict(data)

    def list_clusters(self) -> List[Cluster]:
        crds = [_SVELTOS_CLUSTER_CRD]
        if self.capi_enabled:
            crds.append(_CAPI_CLUSTER_CRD)
        clusters = []
        for crd in crds:
            try:
                data = self._api_call(
                    f"list {crd[2]}", self.custom_api.list_cluster_custom_object, *crd,
                )
            except NotFoundError:
                logger.info(f"{crd[2]}.{crd[0]} not installed")
                continue
            clusters.extend(Cluster.from_dict(item) for item in data.get("items") or [])
        return clusters

    def get_health_definition(self, name: str) -> HealthDefinition:
        data = self._api_call(
            f"get HealthCheck {name}",
            self.custom_api.get_cluster_custom_object, *_DEFINITION_CRD, name,
        )
        return HealthDefinition.from_dict(data)

    def list_health_definitions(self) -> List[HealthDefinition]:
        data = self._api_call(
            "list HealthChecks", self.custom_api.list_cluster_custom_object, *_DEFINITION_CRD,
        )
        return [HealthDefinition.from_dict(item) for item in data.get("items") or []]

    # Watches

    def start_watches(self) -> None:
        """Start background watches for policies, definitions and SveltosClusters."""
        self._start_watch(ObjectKind.POLICY, _POLICY_CRD, HealthPolicy.from_dict)
        self._start_watch(ObjectKind.HEALTH_DEFINITION, _DEFINITION_CRD, HealthDefinition.from_dict)
        self._start_watch(ObjectKind.CLUSTER, _SVELTOS_CLUSTER_CRD, Cluster.from_dict)

    def watch_capi_clusters(self) -> None:
        """Start watching CAPI Clusters (Cluster API installed)."""
        if self.capi_enabled:
            return
        self.capi_enabled = True
        self._start_watch(ObjectKind.CLUSTER, _CAPI_CLUSTER_CRD, Cluster.from_dict)
        logger.info(f"Watching {CAPI_API_VERSION} Clusters")

    def stop(self) -> None:
        self._stop_event.set()

    def _start_watch(self, kind: ObjectKind, crd, parse) -> None:
        thread = threading.Thread(
            target=self._watch_loop, args=(kind, crd, parse),
            name=f"watch-{crd[2]}", daemon=True,
        )
        thread.start()
        self._watch_threads.append(thread)

    def _watch_loop(self, kind: ObjectKind, crd, parse) -> None:
        resource_version = None
        while not self._stop_event.is_set():
            w = watch.Watch()
            try:
                kwargs = {"timeout_seconds": 300}
                if resource_version:
                    kwargs["resource_version"] = resource_version
                for raw in w.stream(self.custom_api.list_cluster_custom_object, *crd, **kwargs):
                    if self._stop_event.is_set():
                        w.stop()
                        return
                    obj = raw.get("object") or {}
                    if raw.get("type") == "ERROR":
                        logger.warning(f"Watch {crd[2]} error: {obj.get('message')}")
                        resource_version = None
                        break
                    resource_version = (obj.get("metadata") or {}).get("resourceVersion")
                    try:
                        event_type = EventType(raw.get("type"))
                    except ValueError:
                        continue
                    self._notify(WatchEvent(kind, event_type, parse(obj)))
            except ApiException as e:
                if e.status == 410:
                    resource_version = None
                    continue
                logger.warning(f"Watch {crd[2]} failed: {e.reason}")
                time.sleep(5)
            except Exception as e:
                logger.error(f"Watch {crd[2]} crashed: {e}")
                time.sleep(5)
