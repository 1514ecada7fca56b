"""
Tests for the policy <-> cluster selector index
"""

import threading

import pytest

from healthcheck_manager.index import SelectorIndex
from healthcheck_manager.models import (
    HealthPolicy, LivenessCheck, LivenessType, cluster_ref, health_definition_ref, policy_ref,
)


def make_policy(name="p1", selector="env=prod", shard_key=None, health_checks=()):
    checks = [LivenessCheck(name="addons", type=LivenessType.ADDONS)]
    for hc in health_checks:
        checks.append(LivenessCheck(
            name=hc, type=LivenessType.HEALTH_CHECK, source_ref=health_definition_ref(hc),
        ))
    return HealthPolicy(name=name, selector=selector, liveness_checks=checks, shard_key=shard_key)


class TestSelectorIndex:
    """Tests for SelectorIndex."""

    @pytest.fixture
    def index(self):
        index = SelectorIndex()
        index.update_cluster_labels(cluster_ref("ns", "c1"), {"env": "prod"})
        index.update_cluster_labels(cluster_ref("ns", "c2"), {"env": "dev"})
        return index

    def test_policy_matches_clusters(self, index):
        result = index.update_policy(make_policy())

        assert result.matches == {cluster_ref("ns", "c1")}
        assert result.added == {cluster_ref("ns", "c1")}
        assert result.removed.len() == 0
        assert result.error is None
        assert index.policies_for_cluster(cluster_ref("ns", "c1")) == {policy_ref("p1")}
        index.verify()

    def test_cluster_relabel_moves_match(self, index):
        index.update_policy(make_policy())

        affected = index.update_cluster_labels(cluster_ref("ns", "c2"), {"env": "prod"})
        assert affected == {policy_ref("p1")}
        assert index.matches_for_policy(policy_ref("p1")).len() == 2

        affected = index.update_cluster_labels(cluster_ref("ns", "c1"), {"env": "staging"})
        # Previous matches are reported so the policy prunes the entry
        assert affected == {policy_ref("p1")}
        assert index.matches_for_policy(policy_ref("p1")) == {cluster_ref("ns", "c2")}
        index.verify()

    def test_selector_change_reports_removed(self, index):
        index.update_policy(make_policy())
        result = index.update_policy(make_policy(selector="env=dev"))

        assert result.matches == {cluster_ref("ns", "c2")}
        assert result.added == {cluster_ref("ns", "c2")}
        assert result.removed == {cluster_ref("ns", "c1")}
        assert index.policies_for_cluster(cluster_ref("ns", "c1")).len() == 0
        index.verify()

    def test_empty_selector_matches_nothing(self, index):
        result = index.update_policy(make_policy(selector=""))
        assert result.matches.len() == 0

    def test_malformed_selector_matches_nothing(self, index):
        index.update_policy(make_policy())
        result = index.update_policy(make_policy(selector="env in (prod"))

        assert result.error is not None
        assert result.matches.len() == 0
        assert result.removed == {cluster_ref("ns", "c1")}
        # New clusters are not matched against the malformed selector either
        assert index.update_cluster_labels(cluster_ref("ns", "c3"), {"env": "prod"}).len() == 0

    def test_shard_key(self):
        index = SelectorIndex(shard_key="shard-a")
        index.update_cluster_labels(cluster_ref("ns", "c1"), {"env": "prod"})

        assert index.update_policy(make_policy("mine", shard_key="shard-a")).matches.len() == 1
        assert index.update_policy(make_policy("unsharded")).matches.len() == 1
        assert index.update_policy(make_policy("theirs", shard_key="shard-b")).matches.len() == 0

    def test_remove_policy(self, index):
        index.update_policy(make_policy())
        removed = index.remove_policy(policy_ref("p1"))

        assert removed == {cluster_ref("ns", "c1")}
        assert index.policies_for_cluster(cluster_ref("ns", "c1")).len() == 0
        assert policy_ref("p1") not in index.known_policies()
        index.verify()

    def test_remove_cluster(self, index):
        index.update_policy(make_policy())
        policies = index.remove_cluster(cluster_ref("ns", "c1"))

        assert policies == {policy_ref("p1")}
        assert index.matches_for_policy(policy_ref("p1")).len() == 0
        assert not index.has_cluster(cluster_ref("ns", "c1"))
        index.verify()

    def test_health_definition_reverse_lookup(self, index):
        index.update_policy(make_policy("p1", health_checks=["pods"]))
        index.update_policy(make_policy("p2", health_checks=["pods", "deployments"]))

        assert index.policies_for_health_definition(health_definition_ref("pods")) == {
            policy_ref("p1"), policy_ref("p2"),
        }

        index.update_policy(make_policy("p2", health_checks=["deployments"]))
        assert index.policies_for_health_definition(health_definition_ref("pods")) == {policy_ref("p1")}

        index.remove_policy(policy_ref("p1"))
        assert index.policies_for_health_definition(health_definition_ref("pods")).len() == 0
        index.verify()

    def test_selector_changed(self, index):
        policy = make_policy()
        assert index.selector_changed(policy)

        index.update_policy(policy)
        assert not index.selector_changed(policy)
        assert index.selector_changed(make_policy(selector="env=dev"))
        assert index.selector_changed(make_policy(health_checks=["pods"]))

    def test_readers_get_copies(self, index):
        index.update_policy(make_policy())
        matches = index.matches_for_policy(policy_ref("p1"))
        matches.insert(cluster_ref("ns", "c9"))

        assert index.matches_for_policy(policy_ref("p1")).len() == 1

    def test_concurrent_updates_stay_consistent(self):
        index = SelectorIndex()
        for i in range(5):
            index.update_policy(make_policy(f"p{i}", selector=f"group={i % 2}"))

        def relabel(start):
            for j in range(50):
                index.update_cluster_labels(cluster_ref("ns", f"c{start}-{j}"), {"group": str(j % 2)})

        threads = [threading.Thread(target=relabel, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        index.verify()
        assert index.matches_for_policy(policy_ref("p0")).len() == 100
