"""
Aggregator - merges per-cluster results into a policy status

Pure status transformations (merge, remove, entry state) plus store helpers
that apply them with optimistic-concurrency retry. Entries keep their
insertion position; a cluster's condition list is replaced wholesale.

Notification delivery state machine, per cluster entry:

    not passing -> passing : every notification becomes Pending
    passing -> passing     : summaries kept (Delivered stays, Failed retried)
    * -> not passing       : summaries cleared, a later pass re-enters Pending
"""

import copy
import logging
from typing import Callable, List, Optional

from .errors import ConflictError, NotFoundError
from .models import (
    ClusterCondition, Condition, EntryState, HealthPolicy, HealthPolicyStatus,
    Notification, NotificationStatus, NotificationSummary, ObjectRef,
)
from .store import Store

logger = logging.getLogger(__name__)

DEFAULT_CONFLICT_RETRIES = 5


def _carry_transition_times(previous: List[Condition], conditions: List[Condition]) -> List[Condition]:
    old = {c.type: c for c in previous}
    merged = []
    for condition in conditions:
        condition = copy.deepcopy(condition)
        prior = old.get(condition.type)
        if prior is not None and prior.status == condition.status:
            condition.last_transition_time = prior.last_transition_time
        merged.append(condition)
    return merged


def advance_notifications(
    entry: ClusterCondition,
    notifications: List[Notification],
    was_passing: bool,
    passing: bool,
) -> None:
    """Apply the delivery state machine to entry in place."""
    if not passing:
        entry.notification_summaries = []
        return

    if not was_passing:
        entry.notification_summaries = [
            NotificationSummary(name=n.name, status=NotificationStatus.PENDING)
            for n in notifications
        ]
        return

    # Still passing: keep known summaries, add notifications configured since
    existing = {s.name: s for s in entry.notification_summaries}
    entry.notification_summaries = [
        existing.get(n.name) or NotificationSummary(name=n.name, status=NotificationStatus.PENDING)
        for n in notifications
    ]


def merge(
    policy: HealthPolicy,
    cluster: ObjectRef,
    conditions: List[Condition],
    passing: bool,
) -> HealthPolicyStatus:
    """
    Merge an evaluation result for one cluster into the policy status.

    Args:
        policy: Policy whose status is merged into (not modified)
        cluster: Cluster the result belongs to
        conditions: New condition list, replaces the previous one
        passing: Aggregate result of the evaluation

    Returns:
        New status; entries of other clusters are untouched
    """
    status = copy.deepcopy(policy.status)
    entry = status.find_entry(cluster)
    if entry is None:
        entry = ClusterCondition(cluster_ref=cluster)
        status.cluster_conditions.append(entry)

    was_passing = entry.evaluated and entry.passing
    entry.conditions = _carry_transition_times(entry.conditions, conditions)
    entry.passing = passing
    entry.evaluated = True
    advance_notifications(entry, policy.notifications, was_passing, passing)
    return status


def ensure_entry(status: HealthPolicyStatus, cluster: ObjectRef) -> HealthPolicyStatus:
    """Add a NotYetEvaluated entry for cluster if none exists."""
    status = copy.deepcopy(status)
    if status.find_entry(cluster) is None:
        status.cluster_conditions.append(ClusterCondition(cluster_ref=cluster))
    return status


def remove_cluster_entry(status: HealthPolicyStatus, cluster: ObjectRef) -> HealthPolicyStatus:
    """Return a status without the entry for cluster."""
    status = copy.deepcopy(status)
    status.cluster_conditions = [c for c in status.cluster_conditions if c.cluster_ref != cluster]
    return status


def is_cluster_entry_removed(status: HealthPolicyStatus, cluster: ObjectRef) -> bool:
    return status.find_entry(cluster) is None


def entry_state(status: HealthPolicyStatus, cluster: ObjectRef) -> EntryState:
    entry = status.find_entry(cluster)
    if entry is None:
        return EntryState.REMOVED
    return entry.state


def update_status_with_retry(
    store: Store,
    policy_name: str,
    mutate: Callable[[HealthPolicy], Optional[HealthPolicyStatus]],
    retries: int = DEFAULT_CONFLICT_RETRIES,
) -> HealthPolicy:
    """
    Re-read the policy, apply mutate and write the status back.

    mutate returns the new status, or None when nothing needs writing. An
    unchanged status is not written.
    On ConflictError the policy is re-read and mutate re-applied, up to
    retries times; the last ConflictError then propagates.

    Raises:
        NotFoundError: If the policy no longer exists
        ConflictError: If every attempt conflicted
    """
    attempt = 0
    while True:
        policy = store.get_policy(policy_name)
        new_status = mutate(policy)
        if new_status is None or new_status.to_dict() == policy.status.to_dict():
            return policy
        policy.status = new_status
        try:
            return store.update_policy_status(policy)
        except ConflictError:
            attempt += 1
            if attempt > retries:
                logger.error(f"Policy {policy_name}: giving up status update after {attempt} conflicts")
                raise
            logger.debug(f"Policy {policy_name}: status conflict, retrying ({attempt}/{retries})")


def update_conditions_for_cluster(
    store: Store,
    policy_name: str,
    cluster: ObjectRef,
    conditions: List[Condition],
    passing: bool,
    retries: int = DEFAULT_CONFLICT_RETRIES,
) -> HealthPolicy:
    """Merge conditions for cluster and persist the policy status."""
    return update_status_with_retry(
        store, policy_name,
        lambda policy: merge(policy, cluster, conditions, passing),
        retries,
    )


def update_notification_summaries_for_cluster(
    store: Store,
    policy_name: str,
    cluster: ObjectRef,
    summaries: List[NotificationSummary],
    retries: int = DEFAULT_CONFLICT_RETRIES,
) -> HealthPolicy:
    """
    Record delivery outcomes for cluster.

    Outcomes are written only into an entry that still exists and is still
    passing, and only over summaries still Pending or Failed. An entry removed
    or reset meanwhile keeps its new state, and a Delivered summary is never
    downgraded.
    """
    def mutate(policy: HealthPolicy) -> Optional[HealthPolicyStatus]:
        status = copy.deepcopy(policy.status)
        entry = status.find_entry(cluster)
        if entry is None or not (entry.evaluated and entry.passing):
            return None
        outcome = {s.name: s for s in summaries}
        for i, summary in enumerate(entry.notification_summaries):
            if summary.status == NotificationStatus.DELIVERED:
                continue
            if summary.name in outcome:
                entry.notification_summaries[i] = copy.deepcopy(outcome[summary.name])
        return status

    return update_status_with_retry(store, policy_name, mutate, retries)


def remove_condition_entry(
    store: Store,
    policy_name: str,
    cluster: ObjectRef,
    retries: int = DEFAULT_CONFLICT_RETRIES,
) -> Optional[HealthPolicy]:
    """
    Remove the entry for cluster from the stored policy status.

    Returns:
        Updated policy, or None if the policy no longer exists
    """
    def mutate(policy: HealthPolicy) -> Optional[HealthPolicyStatus]:
        if is_cluster_entry_removed(policy.status, cluster):
            return None
        return remove_cluster_entry(policy.status, cluster)

    try:
        return update_status_with_retry(store, policy_name, mutate, retries)
    except NotFoundError:
        return None
