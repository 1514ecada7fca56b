"""
Remote Reports

Read-only access to what managed clusters report back: HealthCheckReports
(result of a HealthCheck definition evaluated in a managed cluster) and the
add-on provisioning state of a cluster.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

from .errors import ReportError
from .models import ObjectRef

logger = logging.getLogger(__name__)

REPORT_GROUP = "lib.projectsveltos.io"
REPORT_VERSION = "v1alpha1"
REPORT_PLURAL = "healthcheckreports"

SUMMARY_GROUP = "config.projectsveltos.io"
SUMMARY_VERSION = "v1alpha1"
SUMMARY_PLURAL = "clustersummaries"

HEALTH_CHECK_NAME_LABEL = "projectsveltos.io/healthcheck-name"
CLUSTER_NAME_LABEL = "projectsveltos.io/cluster-name"
CLUSTER_TYPE_LABEL = "projectsveltos.io/cluster-type"


class HealthStatus(Enum):
    """Health of one resource as evaluated in the managed cluster."""
    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    SUSPENDED = "Suspended"


class FeatureStatus(Enum):
    """Provisioning status of one add-on feature."""
    PROVISIONED = "Provisioned"
    PROVISIONING = "Provisioning"
    FAILED = "Failed"
    FAILED_NON_RETRIABLE = "FailedNonRetriable"
    REMOVING = "Removing"
    REMOVED = "Removed"


@dataclass
class ResourceStatus:
    resource: ObjectRef
    health_status: HealthStatus
    message: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceStatus":
        return cls(
            resource=ObjectRef.from_dict(data["objectRef"]),
            health_status=HealthStatus(data.get("healthStatus", "Degraded")),
            message=data.get("message", ""),
        )


@dataclass
class HealthCheckReport:
    """
    Latest evaluation of a HealthCheck in one managed cluster.

    Attributes:
        health_check_name: HealthCheck definition evaluated
        cluster_ref: Managed cluster the report comes from
        resource_statuses: One entry per resource matched by the definition
    """
    health_check_name: str
    cluster_ref: ObjectRef
    resource_statuses: List[ResourceStatus] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return all(r.health_status == HealthStatus.HEALTHY for r in self.resource_statuses)

    def failing(self) -> List[ResourceStatus]:
        return [r for r in self.resource_statuses if r.health_status != HealthStatus.HEALTHY]

    @classmethod
    def from_dict(cls, data: Dict[str, Any], cluster_ref: ObjectRef) -> "HealthCheckReport":
        spec = data.get("spec", {})
        return cls(
            health_check_name=spec.get("healthCheckName", ""),
            cluster_ref=cluster_ref,
            resource_statuses=[
                ResourceStatus.from_dict(r) for r in spec.get("resourceStatuses") or []
            ],
        )


@dataclass
class AddonStatus:
    """Provisioning state of one add-on feature in a cluster."""
    feature_id: str
    status: FeatureStatus
    failure_message: Optional[str] = None


class ReportSource(ABC):
    """Read-only view of managed-cluster reports."""

    @abstractmethod
    def get_health_check_report(
        self,
        definition: ObjectRef,
        cluster: ObjectRef,
        timeout: Optional[float] = None,
    ) -> Optional[HealthCheckReport]:
        """Latest report for (definition, cluster); None if none arrived yet."""

    @abstractmethod
    def get_addon_status(
        self,
        cluster: ObjectRef,
        policy_name: str,
        timeout: Optional[float] = None,
    ) -> List[AddonStatus]:
        """Add-on provisioning state for the cluster."""


class InMemoryReportSource(ReportSource):
    """Report source fed directly, used by local runs and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._reports: Dict[Tuple[str, ObjectRef], HealthCheckReport] = {}
        self._addons: Dict[ObjectRef, List[AddonStatus]] = {}

    def put_health_check_report(self, report: HealthCheckReport) -> None:
        with self._lock:
            self._reports[(report.health_check_name, report.cluster_ref)] = report

    def put_addon_status(self, cluster: ObjectRef, statuses: List[AddonStatus]) -> None:
        with self._lock:
            self._addons[cluster] = list(statuses)

    def get_health_check_report(self, definition, cluster, timeout=None):
        with self._lock:
            return self._reports.get((definition.name, cluster))

    def get_addon_status(self, cluster, policy_name, timeout=None):
        with self._lock:
            return list(self._addons.get(cluster, []))


class KubernetesReportSource(ReportSource):
    """
    Reads HealthCheckReports and ClusterSummaries stored in the management
    cluster, in the namespace of the managed cluster.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        self.custom_api = client.CustomObjectsApi(api_client)

    @staticmethod
    def _cluster_labels(cluster: ObjectRef) -> List[str]:
        return [
            f"{CLUSTER_NAME_LABEL}={cluster.name}",
            f"{CLUSTER_TYPE_LABEL}={cluster.cluster_type.value.lower()}",
        ]

    def get_health_check_report(self, definition, cluster, timeout=None):
        labels = [f"{HEALTH_CHECK_NAME_LABEL}={definition.name}"] + self._cluster_labels(cluster)
        try:
            response = self.custom_api.list_namespaced_custom_object(
                REPORT_GROUP, REPORT_VERSION, cluster.namespace, REPORT_PLURAL,
                label_selector=",".join(labels),
                _request_timeout=timeout,
            )
        except ApiException as e:
            raise ReportError(f"Failed to list HealthCheckReports for {cluster}: {e.reason}")

        items = response.get("items") or []
        if not items:
            return None
        if len(items) > 1:
            logger.warning(f"Found {len(items)} HealthCheckReports for {definition.name} in {cluster}")
        return HealthCheckReport.from_dict(items[0], cluster)

    def get_addon_status(self, cluster, policy_name, timeout=None):
        try:
            response = self.custom_api.list_namespaced_custom_object(
                SUMMARY_GROUP, SUMMARY_VERSION, cluster.namespace, SUMMARY_PLURAL,
                label_selector=",".join(self._cluster_labels(cluster)),
                _request_timeout=timeout,
            )
        except ApiException as e:
            raise ReportError(f"Failed to list ClusterSummaries for {cluster}: {e.reason}")

        statuses = []
        for summary in response.get("items") or []:
            for feature in (summary.get("status") or {}).get("featureSummaries") or []:
                statuses.append(AddonStatus(
                    feature_id=feature.get("featureID", ""),
                    status=FeatureStatus(feature.get("status", "Provisioning")),
                    failure_message=feature.get("failureMessage"),
                ))
        return statuses
