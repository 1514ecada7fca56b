"""
Selector Index

Keeps, for every policy, the set of matching clusters and the reverse
cluster -> policies map, plus the health definition -> policies map used to
re-trigger only the policies depending on an edited HealthCheck.

All maps are mutated together under a single lock; readers only ever get
copies, never handles to the live maps.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from . import selector as label_selector
from .errors import IndexDesyncError, SelectorError
from .models import HealthPolicy, LivenessType, ObjectRef, health_definition_ref
from .objectset import ObjectSet

logger = logging.getLogger(__name__)


@dataclass
class PolicyMatch:
    """
    Result of (re)indexing a policy.

    Attributes:
        matches: Clusters currently matching the policy
        added: Clusters that started matching with this update
        removed: Clusters that stopped matching with this update
        error: Selector parse error, if the selector is malformed
    """
    matches: ObjectSet
    added: ObjectSet = field(default_factory=ObjectSet)
    removed: ObjectSet = field(default_factory=ObjectSet)
    error: Optional[SelectorError] = None


class SelectorIndex:
    """
    Bidirectional policy <-> cluster index.

    A cluster matches a policy iff its labels satisfy the policy selector and
    the policy either has no shard key or its shard key equals this replica's
    shard. On every update the changed side is re-evaluated against the full
    snapshot of the other side.

    Example:
        index = SelectorIndex(shard_key="")
        index.update_cluster_labels(cluster_ref, {"env": "prod"})
        result = index.update_policy(policy)
        print(result.matches)
    """

    def __init__(self, shard_key: str = ""):
        self.shard_key = shard_key or ""
        self._lock = threading.Lock()
        self._cluster_to_policies: Dict[ObjectRef, ObjectSet] = {}
        self._policy_to_clusters: Dict[ObjectRef, ObjectSet] = {}
        # (selector, shard key) snapshot per policy
        self._policy_selectors: Dict[ObjectRef, Tuple[str, str]] = {}
        self._health_def_to_policies: Dict[ObjectRef, ObjectSet] = {}
        self._policy_to_health_defs: Dict[ObjectRef, ObjectSet] = {}
        self._cluster_labels: Dict[ObjectRef, Dict[str, str]] = {}

    def owns(self, shard_key: Optional[str]) -> bool:
        """True if this replica manages policies with the given shard key."""
        return not shard_key or shard_key == self.shard_key

    @staticmethod
    def _health_refs(policy: HealthPolicy) -> ObjectSet:
        refs = ObjectSet()
        for check in policy.liveness_checks:
            if check.type == LivenessType.HEALTH_CHECK and check.source_ref:
                refs.insert(health_definition_ref(check.source_ref.name))
        return refs

    def _link(self, policy: ObjectRef, cluster: ObjectRef) -> None:
        self._policy_to_clusters.setdefault(policy, ObjectSet()).insert(cluster)
        self._cluster_to_policies.setdefault(cluster, ObjectSet()).insert(policy)

    def _unlink(self, policy: ObjectRef, cluster: ObjectRef) -> None:
        clusters = self._policy_to_clusters.get(policy)
        if clusters is not None:
            clusters.erase(cluster)
        policies = self._cluster_to_policies.get(cluster)
        if policies is not None:
            policies.erase(policy)
            if not policies.len():
                del self._cluster_to_policies[cluster]

    def _set_health_refs(self, policy: ObjectRef, refs: ObjectSet) -> None:
        for old in self._policy_to_health_defs.pop(policy, ObjectSet()):
            dependents = self._health_def_to_policies.get(old)
            if dependents is not None:
                dependents.erase(policy)
                if not dependents.len():
                    del self._health_def_to_policies[old]
        if refs.len():
            self._policy_to_health_defs[policy] = refs.copy()
            for ref in refs:
                self._health_def_to_policies.setdefault(ref, ObjectSet()).insert(policy)

    def update_policy(self, policy: HealthPolicy) -> PolicyMatch:
        """
        Index a created or updated policy.

        A malformed selector makes the policy match zero clusters; the parse
        error is returned so the caller can surface it on the policy.
        """
        ref = policy.ref
        shard_key = policy.shard_key or ""
        error = None
        try:
            if policy.selector_error:
                raise SelectorError(policy.selector_error)
            label_selector.validate(policy.selector)
        except SelectorError as e:
            logger.warning(f"Policy {policy.name} has malformed selector: {e}")
            error = e
        health_refs = self._health_refs(policy)

        with self._lock:
            previous = self._policy_to_clusters.get(ref, ObjectSet()).copy()
            current = ObjectSet()
            if error is None and self.owns(shard_key):
                for cluster, labels in self._cluster_labels.items():
                    if label_selector.matches(labels, policy.selector):
                        current.insert(cluster)

            for cluster in previous.difference(current):
                self._unlink(ref, cluster)
            self._policy_to_clusters.setdefault(ref, ObjectSet())
            for cluster in current:
                self._link(ref, cluster)

            self._policy_selectors[ref] = (policy.selector, shard_key)
            self._set_health_refs(ref, health_refs)

        return PolicyMatch(
            matches=current,
            added=current.difference(previous),
            removed=previous.difference(current),
            error=error,
        )

    def remove_policy(self, ref: ObjectRef) -> ObjectSet:
        """Drop a policy; returns the clusters it was matching."""
        with self._lock:
            previous = self._policy_to_clusters.get(ref, ObjectSet()).copy()
            for cluster in previous:
                self._unlink(ref, cluster)
            self._policy_to_clusters.pop(ref, None)
            self._policy_selectors.pop(ref, None)
            self._set_health_refs(ref, ObjectSet())
        return previous

    def update_cluster_labels(self, ref: ObjectRef, labels: Dict[str, str]) -> ObjectSet:
        """
        Index a created or relabeled cluster.

        Returns:
            Union of the policies matching before and after the update, i.e.
            every policy whose status may need to change.
        """
        with self._lock:
            self._cluster_labels[ref] = dict(labels or {})
            previous = self._cluster_to_policies.get(ref, ObjectSet()).copy()
            current = ObjectSet()
            for policy, (expression, shard_key) in self._policy_selectors.items():
                if not self.owns(shard_key):
                    continue
                try:
                    if label_selector.matches(labels or {}, expression):
                        current.insert(policy)
                except SelectorError:
                    continue

            for policy in previous.difference(current):
                self._unlink(policy, ref)
            for policy in current:
                self._link(policy, ref)

        return previous.union(current)

    def remove_cluster(self, ref: ObjectRef) -> ObjectSet:
        """Drop a cluster; returns the policies it was matching."""
        with self._lock:
            self._cluster_labels.pop(ref, None)
            previous = self._cluster_to_policies.get(ref, ObjectSet()).copy()
            for policy in previous:
                self._unlink(policy, ref)
        return previous

    def matches_for_policy(self, ref: ObjectRef) -> ObjectSet:
        with self._lock:
            return self._policy_to_clusters.get(ref, ObjectSet()).copy()

    def policies_for_cluster(self, ref: ObjectRef) -> ObjectSet:
        with self._lock:
            return self._cluster_to_policies.get(ref, ObjectSet()).copy()

    def policies_for_health_definition(self, ref: ObjectRef) -> ObjectSet:
        with self._lock:
            return self._health_def_to_policies.get(ref, ObjectSet()).copy()

    def known_policies(self) -> ObjectSet:
        with self._lock:
            return ObjectSet(self._policy_selectors.keys())

    def has_cluster(self, ref: ObjectRef) -> bool:
        with self._lock:
            return ref in self._cluster_labels

    def selector_changed(self, policy: HealthPolicy) -> bool:
        """
        Cheap check whether re-indexing the policy could change its matches
        or its health definition dependencies.
        """
        health_refs = self._health_refs(policy)
        with self._lock:
            snapshot = self._policy_selectors.get(policy.ref)
            if snapshot != (policy.selector, policy.shard_key or ""):
                return True
            return self._policy_to_health_defs.get(policy.ref, ObjectSet()) != health_refs

    def verify(self) -> None:
        """
        Check that policy->clusters and cluster->policies are exact inverses.

        Raises:
            IndexDesyncError: If any asymmetry is found
        """
        with self._lock:
            for policy, clusters in self._policy_to_clusters.items():
                for cluster in clusters:
                    if not self._cluster_to_policies.get(cluster, ObjectSet()).has(policy):
                        raise IndexDesyncError(f"{policy} -> {cluster} has no reverse entry")
            for cluster, policies in self._cluster_to_policies.items():
                for policy in policies:
                    if not self._policy_to_clusters.get(policy, ObjectSet()).has(cluster):
                        raise IndexDesyncError(f"{cluster} -> {policy} has no forward entry")
            for health_ref, policies in self._health_def_to_policies.items():
                for policy in policies:
                    if not self._policy_to_health_defs.get(policy, ObjectSet()).has(health_ref):
                        raise IndexDesyncError(f"{health_ref} -> {policy} has no forward entry")
