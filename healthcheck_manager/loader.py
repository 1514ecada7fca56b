"""
Manifest Loader

Loads ClusterHealthChecks, clusters, HealthChecks and reports from YAML
manifests into an InMemoryStore and InMemoryReportSource, for running the
manager without a management cluster.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

import yaml

from .models import (
    CLUSTER_KIND, Cluster, HEALTH_CHECK_KIND, HealthDefinition, HealthPolicy,
    POLICY_KIND, SVELTOS_CLUSTER_KIND, cluster_ref, ClusterType,
)
from .reports import (
    AddonStatus, CLUSTER_NAME_LABEL, CLUSTER_TYPE_LABEL, FeatureStatus, HealthCheckReport,
    InMemoryReportSource,
)
from .store import InMemoryStore

logger = logging.getLogger(__name__)


def _report_cluster(document: Dict[str, Any]):
    metadata = document.get("metadata", {})
    spec = document.get("spec", {})
    labels = metadata.get("labels") or {}
    name = spec.get("clusterName") or labels.get(CLUSTER_NAME_LABEL, "")
    raw_type = spec.get("clusterType") or labels.get(CLUSTER_TYPE_LABEL, "capi")
    cluster_type = ClusterType.SVELTOS if raw_type.lower() == "sveltos" else ClusterType.CAPI
    namespace = spec.get("clusterNamespace") or metadata.get("namespace", "")
    return cluster_ref(namespace, name, cluster_type)


class ManifestLoader:
    """
    Loads YAML manifests (multi-document files allowed).

    Example:
        loader = ManifestLoader(store, reports)
        loader.load_paths(["manifests/"])
    """

    def __init__(self, store: InMemoryStore, reports: InMemoryReportSource):
        self.store = store
        self.reports = reports

    def load_paths(self, paths: Iterable[Union[str, Path]]) -> int:
        """
        Load every *.yaml / *.yml file under the given files or directories.

        Returns:
            Number of objects loaded
        """
        count = 0
        for path in paths:
            path = Path(path)
            if path.is_dir():
                files = sorted(list(path.glob("*.yaml")) + list(path.glob("*.yml")))
            else:
                files = [path]
            for yaml_file in files:
                count += self.load_file(yaml_file)
        return count

    def load_file(self, path: Path) -> int:
        with open(path) as f:
            documents = [d for d in yaml.safe_load_all(f) if d]
        loaded = self.load_documents(documents)
        logger.info(f"Loaded {loaded} objects from {path}")
        return loaded

    def load_documents(self, documents: List[Dict[str, Any]]) -> int:
        count = 0
        for document in documents:
            kind = document.get("kind")
            if kind == POLICY_KIND:
                self.store.put_policy(HealthPolicy.from_dict(document))
            elif kind in (CLUSTER_KIND, SVELTOS_CLUSTER_KIND):
                self.store.put_cluster(Cluster.from_dict(document))
            elif kind == HEALTH_CHECK_KIND:
                self.store.put_health_definition(HealthDefinition.from_dict(document))
            elif kind == "HealthCheckReport":
                self.reports.put_health_check_report(
                    HealthCheckReport.from_dict(document, _report_cluster(document))
                )
            elif kind == "ClusterSummary":
                self._load_cluster_summary(document)
            else:
                logger.warning(f"Skipping unsupported kind {kind}")
                continue
            count += 1
        return count

    def _load_cluster_summary(self, document: Dict[str, Any]) -> None:
        statuses = [
            AddonStatus(
                feature_id=f.get("featureID", ""),
                status=FeatureStatus(f.get("status", "Provisioning")),
                failure_message=f.get("failureMessage"),
            )
            for f in (document.get("status") or {}).get("featureSummaries") or []
        ]
        cluster = _report_cluster(document)
        # A cluster can have one ClusterSummary per profile
        existing = self.reports.get_addon_status(cluster, "")
        self.reports.put_addon_status(cluster, existing + statuses)
