"""
Reconciliation Driver

Turns store watch events into policy reconcile requests and reconciles one
policy at a time:

1. re-index the policy and compute matching clusters
2. collect finished jobs and ensure a job per matching (cluster, policy)
3. persist matching clusters, add entries for new matches and prune
   entries of clusters that no longer match or no longer exist

Each job evaluates the policy against its cluster, merges the conditions
into the policy status and delivers pending notifications.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .aggregator import (
    DEFAULT_CONFLICT_RETRIES, ensure_entry, is_cluster_entry_removed, remove_cluster_entry,
    update_conditions_for_cluster, update_notification_summaries_for_cluster,
    update_status_with_retry,
)
from .deployer import JobContext
from .dispatcher import Dispatcher
from .errors import NotFoundError, ReportError
from .evaluator import EvaluationResult, Evaluator
from .index import SelectorIndex
from .models import (
    Cluster, ClusterInfo, ClusterStatus, FEATURE_CLUSTER_HEALTH_CHECK, HealthPolicy,
    HealthPolicyStatus, NotificationStatus, ObjectRef, policy_ref,
)
from .notifications import NotificationDispatcher
from .objectset import ObjectSet
from .store import EventType, ObjectKind, Store, WatchEvent

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """
    Outcome of reconciling one policy.

    Attributes:
        requeue_after: Seconds after which the policy should be reconciled
            again, None when nothing is pending
        cluster_infos: Per-cluster processing outcome
    """
    requeue_after: Optional[float] = None
    cluster_infos: List[ClusterInfo] = field(default_factory=list)


class HealthCheckReconciler:
    """
    Reconciles ClusterHealthCheck policies.

    Example:
        reconciler = HealthCheckReconciler(store, index, dispatcher, evaluator, notifier)
        reconciler.rebuild()
        for name in reconciler.handle_event(event):
            reconciler.reconcile(name)
    """

    def __init__(
        self,
        store: Store,
        index: SelectorIndex,
        dispatcher: Dispatcher,
        evaluator: Evaluator,
        notifier: NotificationDispatcher,
        conflict_retries: int = DEFAULT_CONFLICT_RETRIES,
        provisioning_requeue: float = 5.0,
        failure_requeue: float = 10.0,
        max_failure_requeue: float = 300.0,
    ):
        self.store = store
        self.index = index
        self.dispatcher = dispatcher
        self.evaluator = evaluator
        self.notifier = notifier
        self.conflict_retries = conflict_retries
        self.provisioning_requeue = provisioning_requeue
        self.failure_requeue = failure_requeue
        self.max_failure_requeue = max_failure_requeue

        self._lock = threading.Lock()
        self._spec_snapshots: Dict[str, dict] = {}
        self._failures: Dict[tuple, int] = {}

        self.register_features()

    def register_features(self) -> None:
        self.dispatcher.register_feature(FEATURE_CLUSTER_HEALTH_CHECK, self.process_policy_for_cluster)

    # Startup

    def rebuild(self) -> List[str]:
        """
        Rebuild the index from the store.

        Returns:
            Names of the policies owned by this replica, all of which need
            a reconcile
        """
        for cluster in self.store.list_clusters():
            self.index.update_cluster_labels(cluster.ref, cluster.labels)
        names = []
        for policy in self.store.list_policies():
            self._remember_spec(policy)
            if not self.index.owns(policy.shard_key):
                continue
            self.index.update_policy(policy)
            names.append(policy.name)
        logger.info(f"Index rebuilt with {len(names)} policies")
        return names

    # Events

    def _remember_spec(self, policy: HealthPolicy) -> bool:
        """Record the policy spec; True if it differs from the last seen one."""
        spec = policy.to_dict()["spec"]
        spec["shardKey"] = policy.shard_key
        spec["selectorError"] = policy.selector_error
        with self._lock:
            changed = self._spec_snapshots.get(policy.name) != spec
            self._spec_snapshots[policy.name] = spec
        return changed

    def handle_event(self, event: WatchEvent) -> List[str]:
        """
        Update the index for a watch event.

        Returns:
            Names of the policies to reconcile
        """
        if event.kind == ObjectKind.POLICY:
            return self._on_policy_event(event)
        if event.kind == ObjectKind.CLUSTER:
            return self._on_cluster_event(event)
        if event.kind == ObjectKind.HEALTH_DEFINITION:
            return self._on_health_definition_event(event)
        return []

    def _on_policy_event(self, event: WatchEvent) -> List[str]:
        policy: HealthPolicy = event.obj
        if event.type == EventType.DELETED:
            with self._lock:
                self._spec_snapshots.pop(policy.name, None)
            return [policy.name]
        changed = self._remember_spec(policy)
        if not self.index.owns(policy.shard_key):
            self._release_policy(policy.name)
            return []
        if not changed and not self.index.selector_changed(policy):
            # Status-only update
            return []
        return [policy.name]

    def _on_cluster_event(self, event: WatchEvent) -> List[str]:
        cluster: Cluster = event.obj
        if event.type == EventType.DELETED:
            policies = self.index.remove_cluster(cluster.ref)
        else:
            policies = self.index.update_cluster_labels(cluster.ref, cluster.labels)
        return [ref.name for ref in policies]

    def _on_health_definition_event(self, event: WatchEvent) -> List[str]:
        policies = self.index.policies_for_health_definition(event.obj.ref)
        return [ref.name for ref in policies]

    # Reconcile

    def reconcile(self, policy_name: str) -> ReconcileResult:
        """
        Reconcile one policy.

        Raises:
            ConflictError: If the status update kept conflicting
            StoreError: On other store failures
        """
        try:
            policy = self.store.get_policy(policy_name)
        except NotFoundError:
            self._reconcile_delete(policy_name)
            return ReconcileResult()

        if not self.index.owns(policy.shard_key):
            # Status belongs to the replica owning the shard
            self._release_policy(policy_name)
            return ReconcileResult()

        match = self.index.update_policy(policy)
        matches = match.matches

        result = ReconcileResult()
        for cluster in matches:
            info = self.process_policy(policy, cluster)
            if info is not None:
                result.cluster_infos.append(info)

        failure_message = str(match.error) if match.error else None

        def mutate(current: HealthPolicy) -> HealthPolicyStatus:
            status = copy.deepcopy(current.status)
            status.matching_clusters = matches.items()
            status.failure_message = failure_message
            for cluster in matches:
                status = ensure_entry(status, cluster)
            for entry in list(status.cluster_conditions):
                if not matches.has(entry.cluster_ref):
                    status = remove_cluster_entry(status, entry.cluster_ref)
            return status

        updated = update_status_with_retry(self.store, policy_name, mutate, self.conflict_retries)

        detached = match.removed.union(ObjectSet(
            entry.cluster_ref for entry in policy.status.cluster_conditions
            if not matches.has(entry.cluster_ref)
        ))
        for entry_cluster in detached:
            if is_cluster_entry_removed(updated.status, entry_cluster):
                self._forget_cluster(policy_name, entry_cluster)
            else:
                logger.warning(f"Policy {policy_name}: entry for {entry_cluster} still present")
                result.requeue_after = self.provisioning_requeue

        result.requeue_after = self._requeue_after(policy_name, result)
        return result

    def _requeue_after(self, policy_name: str, result: ReconcileResult) -> Optional[float]:
        requeue = result.requeue_after
        for info in result.cluster_infos:
            if info.status == ClusterStatus.PROVISIONING:
                delay = self.provisioning_requeue
            elif info.status == ClusterStatus.FAILED:
                key = (policy_name, info.cluster_ref)
                with self._lock:
                    failures = self._failures.get(key, 1)
                delay = min(self.failure_requeue * (2 ** (failures - 1)), self.max_failure_requeue)
            else:
                continue
            requeue = delay if requeue is None else min(requeue, delay)
        return requeue

    def _forget_cluster(self, policy_name: str, cluster: ObjectRef) -> None:
        self.dispatcher.cleanup(cluster, policy_name, FEATURE_CLUSTER_HEALTH_CHECK)
        with self._lock:
            self._failures.pop((policy_name, cluster), None)

    def _release_policy(self, policy_name: str) -> ObjectSet:
        """Drop a policy from the index and forget its jobs."""
        clusters = self.index.remove_policy(policy_ref(policy_name))
        for cluster in clusters:
            self._forget_cluster(policy_name, cluster)
        return clusters

    def _reconcile_delete(self, policy_name: str) -> None:
        clusters = self._release_policy(policy_name)
        logger.info(f"Policy {policy_name} deleted, detached from {len(clusters)} clusters")

    def process_policy(self, policy: HealthPolicy, cluster_ref: ObjectRef) -> Optional[ClusterInfo]:
        """
        Collect the last job outcome for (cluster, policy) and queue a new
        evaluation when none is pending.

        Returns:
            ClusterInfo, or None when the cluster is skipped (paused, not
            ready or not found)
        """
        try:
            cluster = self.store.get_cluster(cluster_ref)
        except NotFoundError:
            return None
        if cluster.paused:
            logger.debug(f"Policy {policy.name}: {cluster_ref} is paused, skipping")
            return None
        if not cluster.ready:
            logger.debug(f"Policy {policy.name}: {cluster_ref} is not ready, skipping")
            return None

        feature = FEATURE_CLUSTER_HEALTH_CHECK
        key = (policy.name, cluster_ref)

        if self.dispatcher.is_in_progress(cluster_ref, policy.name, feature):
            return ClusterInfo(cluster_ref, ClusterStatus.PROVISIONING)

        job_result, done = self.dispatcher.collect_result(cluster_ref, policy.name, feature)
        if done:
            if job_result.ok:
                with self._lock:
                    self._failures.pop(key, None)
                return ClusterInfo(cluster_ref, ClusterStatus.PROVISIONED)
            with self._lock:
                self._failures[key] = self._failures.get(key, 0) + 1
            return ClusterInfo(cluster_ref, ClusterStatus.FAILED, str(job_result.error))

        self.dispatcher.ensure_job(cluster_ref, policy.name, feature)
        return ClusterInfo(cluster_ref, ClusterStatus.PROVISIONING)

    def process_policy_for_cluster(
        self,
        cluster: ObjectRef,
        policy_name: str,
        context: Optional[JobContext] = None,
    ) -> EvaluationResult:
        """
        Job body: evaluate, merge and notify for one (cluster, policy).

        Conditions are merged even when some checks failed; the first check
        error is then raised so the job is reported as failed and retried.
        """
        try:
            policy = self.store.get_policy(policy_name)
        except NotFoundError:
            logger.debug(f"Policy {policy_name} gone, skipping evaluation of {cluster}")
            return EvaluationResult()

        if not self.index.matches_for_policy(policy.ref).has(cluster):
            logger.debug(f"Policy {policy_name} no longer matches {cluster}")
            return EvaluationResult()

        result = self.evaluator.evaluate(cluster, policy, context)
        updated = update_conditions_for_cluster(
            self.store, policy_name, cluster, result.conditions, result.passing,
            self.conflict_retries,
        )

        entry = updated.status.find_entry(cluster)
        if entry is not None and entry.passing and any(
            s.status != NotificationStatus.DELIVERED for s in entry.notification_summaries
        ):
            attempted = self.notifier.deliver_pending(updated, entry)
            if attempted:
                update_notification_summaries_for_cluster(
                    self.store, policy_name, cluster, attempted, self.conflict_retries,
                )

        if result.error is not None:
            raise ReportError(
                f"{len(result.errors)} liveness check(s) not evaluated for {cluster}: {result.error}"
            )
        return result
