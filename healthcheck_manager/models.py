"""
Health Check Data Models

Defines the object references, custom resources and status records the
engine reads and writes. Every resource round-trips to the camelCase dict
shape of its Kubernetes custom resource via to_dict()/from_dict().
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Optional, Any

from .errors import SelectorError
from .selector import from_label_selector


CAPI_API_VERSION = "cluster.x-k8s.io/v1beta1"
SVELTOS_API_VERSION = "lib.projectsveltos.io/v1alpha1"

CLUSTER_KIND = "Cluster"
SVELTOS_CLUSTER_KIND = "SveltosCluster"
POLICY_KIND = "ClusterHealthCheck"
HEALTH_CHECK_KIND = "HealthCheck"

SHARD_ANNOTATION = "sharding.projectsveltos.io/key"

FEATURE_CLUSTER_HEALTH_CHECK = "ClusterHealthCheck"


class ClusterType(Enum):
    """Kind of managed cluster."""
    CAPI = "Capi"
    SVELTOS = "Sveltos"


class LivenessType(Enum):
    """Types of liveness checks."""
    ADDONS = "Addons"
    HEALTH_CHECK = "HealthCheck"


class NotificationType(Enum):
    """Supported notification channels."""
    KUBERNETES_EVENT = "KubernetesEvent"
    SLACK = "Slack"


class ConditionStatus(Enum):
    """Status of a single liveness condition."""
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class NotificationStatus(Enum):
    """Delivery status of a notification for one cluster."""
    PENDING = "Pending"
    DELIVERED = "Delivered"
    FAILED = "Failed"


class EntryState(Enum):
    """Lifecycle of a cluster entry inside a policy status."""
    NOT_YET_EVALUATED = "NotYetEvaluated"
    EVALUATED = "Evaluated"
    REMOVED = "Removed"


class ClusterStatus(Enum):
    """Processing status of a (cluster, policy) pair."""
    PROVISIONING = "Provisioning"
    PROVISIONED = "Provisioned"
    FAILED = "Failed"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ObjectRef:
    """
    Typed identifier of a Kubernetes object.

    Compared and hashed by value, so it is usable as a dict key and as a
    member of an ObjectSet.
    """
    namespace: str
    name: str
    kind: str
    api_version: str

    @property
    def cluster_type(self) -> ClusterType:
        """Cluster type derived from the kind (clusters only)."""
        if self.kind == SVELTOS_CLUSTER_KIND:
            return ClusterType.SVELTOS
        return ClusterType.CAPI

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "kind": self.kind,
            "apiVersion": self.api_version,
        }
        if self.namespace:
            data["namespace"] = self.namespace
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectRef":
        return cls(
            namespace=data.get("namespace", "") or "",
            name=data["name"],
            kind=data.get("kind", ""),
            api_version=data.get("apiVersion", ""),
        )

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}:{self.namespace}/{self.name}"
        return f"{self.kind}:{self.name}"


# Aliases used where the role of the reference matters
ClusterRef = ObjectRef
PolicyRef = ObjectRef
HealthDefinitionRef = ObjectRef


def cluster_ref(namespace: str, name: str, cluster_type: ClusterType = ClusterType.CAPI) -> ObjectRef:
    """Build the reference of a CAPI Cluster or a SveltosCluster."""
    if cluster_type == ClusterType.SVELTOS:
        return ObjectRef(namespace, name, SVELTOS_CLUSTER_KIND, SVELTOS_API_VERSION)
    return ObjectRef(namespace, name, CLUSTER_KIND, CAPI_API_VERSION)


def policy_ref(name: str) -> ObjectRef:
    return ObjectRef("", name, POLICY_KIND, SVELTOS_API_VERSION)


def health_definition_ref(name: str) -> ObjectRef:
    return ObjectRef("", name, HEALTH_CHECK_KIND, SVELTOS_API_VERSION)


@dataclass
class LivenessCheck:
    """
    One evaluable unit of health.

    Attributes:
        name: Check name, unique within a policy
        type: Addons or HealthCheck
        source_ref: HealthCheck definition referenced (HealthCheck type only)
    """
    name: str
    type: LivenessType
    source_ref: Optional[ObjectRef] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"name": self.name, "type": self.type.value}
        if self.source_ref:
            data["livenessSourceRef"] = self.source_ref.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LivenessCheck":
        source = data.get("livenessSourceRef")
        return cls(
            name=data["name"],
            type=LivenessType(data["type"]),
            source_ref=ObjectRef.from_dict(source) if source else None,
        )


@dataclass
class Notification:
    """A notification to send when a cluster becomes healthy."""
    name: str
    type: NotificationType
    notification_ref: Optional[ObjectRef] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"name": self.name, "type": self.type.value}
        if self.notification_ref:
            data["notificationRef"] = self.notification_ref.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notification":
        ref = data.get("notificationRef")
        return cls(
            name=data["name"],
            type=NotificationType(data["type"]),
            notification_ref=ObjectRef.from_dict(ref) if ref else None,
        )


@dataclass
class Condition:
    """
    Result of one liveness check for one cluster.

    Attributes:
        type: Condition type derived from the liveness check
        status: True, False or Unknown
        message: Human-readable detail (failure reason, error)
        last_transition_time: When status last changed
    """
    type: str
    status: ConditionStatus
    message: str = ""
    last_transition_time: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "status": self.status.value,
            "lastTransitionTime": self.last_transition_time,
        }
        if self.message:
            data["message"] = self.message
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=ConditionStatus(data.get("status", "Unknown")),
            message=data.get("message", ""),
            last_transition_time=data.get("lastTransitionTime") or now_iso(),
        )


@dataclass
class NotificationSummary:
    """Delivery state of one notification for one cluster."""
    name: str
    status: NotificationStatus
    failure_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"name": self.name, "status": self.status.value}
        if self.failure_message:
            data["failureMessage"] = self.failure_message
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationSummary":
        return cls(
            name=data["name"],
            status=NotificationStatus(data["status"]),
            failure_message=data.get("failureMessage"),
        )


@dataclass
class ClusterCondition:
    """
    Per-cluster evaluation record inside a policy status.

    Attributes:
        cluster_ref: Cluster this entry belongs to
        conditions: One condition per liveness check, replaced wholesale
        notification_summaries: Delivery state per configured notification
        passing: Aggregate result of the last evaluation
        evaluated: False until the first evaluation is merged
    """
    cluster_ref: ObjectRef
    conditions: List[Condition] = field(default_factory=list)
    notification_summaries: List[NotificationSummary] = field(default_factory=list)
    passing: bool = False
    evaluated: bool = False

    @property
    def state(self) -> EntryState:
        if self.evaluated:
            return EntryState.EVALUATED
        return EntryState.NOT_YET_EVALUATED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clusterInfo": {"cluster": self.cluster_ref.to_dict()},
            "conditions": [c.to_dict() for c in self.conditions],
            "notificationSummaries": [n.to_dict() for n in self.notification_summaries],
            "passing": self.passing,
            "state": self.state.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterCondition":
        return cls(
            cluster_ref=ObjectRef.from_dict(data["clusterInfo"]["cluster"]),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            notification_summaries=[
                NotificationSummary.from_dict(n) for n in data.get("notificationSummaries") or []
            ],
            passing=bool(data.get("passing", False)),
            evaluated=data.get("state") == EntryState.EVALUATED.value,
        )


@dataclass
class HealthPolicyStatus:
    """Observed state of a HealthPolicy."""
    matching_clusters: List[ObjectRef] = field(default_factory=list)
    cluster_conditions: List[ClusterCondition] = field(default_factory=list)
    failure_message: Optional[str] = None

    def find_entry(self, ref: ObjectRef) -> Optional[ClusterCondition]:
        """Linear scan by value equality of the cluster reference."""
        for entry in self.cluster_conditions:
            if entry.cluster_ref == ref:
                return entry
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "matchingClusters": [r.to_dict() for r in self.matching_clusters],
            "clusterConditions": [c.to_dict() for c in self.cluster_conditions],
        }
        if self.failure_message:
            data["failureMessage"] = self.failure_message
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "HealthPolicyStatus":
        data = data or {}
        return cls(
            matching_clusters=[ObjectRef.from_dict(r) for r in data.get("matchingClusters") or []],
            cluster_conditions=[
                ClusterCondition.from_dict(c) for c in data.get("clusterConditions") or []
            ],
            failure_message=data.get("failureMessage"),
        )


@dataclass
class HealthPolicy:
    """
    ClusterHealthCheck: selects clusters and lists liveness checks and
    notifications to run against them.

    Attributes:
        name: Policy name (cluster-scoped)
        selector: Label selector over cluster labels
        liveness_checks: Ordered liveness checks
        notifications: Ordered notifications
        shard_key: Restricts evaluation to the replica owning this shard
        selector_error: Why a structured selector could not be converted
        labels: Object labels
        resource_version: Store version used for conditional updates
        status: Observed status
    """
    name: str
    selector: str = ""
    liveness_checks: List[LivenessCheck] = field(default_factory=list)
    notifications: List[Notification] = field(default_factory=list)
    shard_key: Optional[str] = None
    selector_error: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    resource_version: Optional[str] = None
    status: HealthPolicyStatus = field(default_factory=HealthPolicyStatus)

    @property
    def ref(self) -> ObjectRef:
        return policy_ref(self.name)

    def to_dict(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"name": self.name}
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.shard_key:
            metadata["annotations"] = {SHARD_ANNOTATION: self.shard_key}
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": SVELTOS_API_VERSION,
            "kind": POLICY_KIND,
            "metadata": metadata,
            "spec": {
                "clusterSelector": self.selector,
                "livenessChecks": [c.to_dict() for c in self.liveness_checks],
                "notifications": [n.to_dict() for n in self.notifications],
            },
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthPolicy":
        metadata = data.get("metadata", {})
        spec = data.get("spec", {})
        selector = spec.get("clusterSelector") or ""
        selector_error = None
        if isinstance(selector, dict):
            # v1beta1 shape: {"labelSelector": {"matchLabels": ..., "matchExpressions": [...]}}
            try:
                selector = from_label_selector(selector.get("labelSelector") or {})
            except SelectorError as e:
                selector, selector_error = "", str(e)
        return cls(
            name=metadata["name"],
            selector=selector,
            liveness_checks=[LivenessCheck.from_dict(c) for c in spec.get("livenessChecks") or []],
            notifications=[Notification.from_dict(n) for n in spec.get("notifications") or []],
            shard_key=(metadata.get("annotations") or {}).get(SHARD_ANNOTATION) or None,
            selector_error=selector_error,
            labels=dict(metadata.get("labels") or {}),
            resource_version=metadata.get("resourceVersion"),
            status=HealthPolicyStatus.from_dict(data.get("status")),
        )


@dataclass
class Cluster:
    """A managed cluster as seen from the management cluster."""
    namespace: str
    name: str
    cluster_type: ClusterType = ClusterType.CAPI
    labels: Dict[str, str] = field(default_factory=dict)
    paused: bool = False
    ready: bool = True
    shard_key: Optional[str] = None
    resource_version: Optional[str] = None

    @property
    def ref(self) -> ObjectRef:
        return cluster_ref(self.namespace, self.name, self.cluster_type)

    def to_dict(self) -> Dict[str, Any]:
        ref = self.ref
        metadata: Dict[str, Any] = {
            "namespace": self.namespace,
            "name": self.name,
            "labels": dict(self.labels),
        }
        if self.shard_key:
            metadata["annotations"] = {SHARD_ANNOTATION: self.shard_key}
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        if self.cluster_type == ClusterType.SVELTOS:
            status = {"ready": self.ready}
        else:
            status = {"controlPlaneReady": self.ready}
        return {
            "apiVersion": ref.api_version,
            "kind": ref.kind,
            "metadata": metadata,
            "spec": {"paused": self.paused},
            "status": status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Cluster":
        metadata = data.get("metadata", {})
        status = data.get("status") or {}
        if data.get("kind") == SVELTOS_CLUSTER_KIND:
            cluster_type = ClusterType.SVELTOS
            ready = bool(status.get("ready", False))
        else:
            cluster_type = ClusterType.CAPI
            ready = bool(status.get("controlPlaneReady", False))
        return cls(
            namespace=metadata.get("namespace", ""),
            name=metadata["name"],
            cluster_type=cluster_type,
            labels=dict(metadata.get("labels") or {}),
            paused=bool((data.get("spec") or {}).get("paused", False)),
            ready=ready,
            shard_key=(metadata.get("annotations") or {}).get(SHARD_ANNOTATION) or None,
            resource_version=metadata.get("resourceVersion"),
        )


@dataclass
class ResourceSelector:
    """Selects resources in the managed cluster a HealthCheck looks at."""
    group: str
    version: str
    kind: str
    namespace: str = ""
    label_filters: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {"group": self.group, "version": self.version, "kind": self.kind}
        if self.namespace:
            data["namespace"] = self.namespace
        if self.label_filters:
            data["labelFilters"] = list(self.label_filters)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceSelector":
        return cls(
            group=data.get("group", ""),
            version=data.get("version", ""),
            kind=data["kind"],
            namespace=data.get("namespace", ""),
            label_filters=list(data.get("labelFilters") or []),
        )


@dataclass
class HealthDefinition:
    """
    HealthCheck: a named evaluation rule deployed to managed clusters.

    The evaluation expression is opaque to the engine; it is shipped to the
    managed cluster, which reports back a HealthCheckReport.
    """
    name: str
    resource_selectors: List[ResourceSelector] = field(default_factory=list)
    evaluate_health: str = ""
    resource_version: Optional[str] = None

    @property
    def ref(self) -> ObjectRef:
        return health_definition_ref(self.name)

    def to_dict(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"name": self.name}
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": SVELTOS_API_VERSION,
            "kind": HEALTH_CHECK_KIND,
            "metadata": metadata,
            "spec": {
                "resourceSelectors": [s.to_dict() for s in self.resource_selectors],
                "evaluateHealth": self.evaluate_health,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthDefinition":
        metadata = data.get("metadata", {})
        spec = data.get("spec", {})
        return cls(
            name=metadata["name"],
            resource_selectors=[
                ResourceSelector.from_dict(s) for s in spec.get("resourceSelectors") or []
            ],
            evaluate_health=spec.get("evaluateHealth", ""),
            resource_version=metadata.get("resourceVersion"),
        )


@dataclass
class ClusterInfo:
    """Outcome of processing one policy for one cluster."""
    cluster_ref: ObjectRef
    status: ClusterStatus
    failure_message: Optional[str] = None
