"""
Tests for ObjectSet
"""

from healthcheck_manager.models import ClusterType, cluster_ref, policy_ref
from healthcheck_manager.objectset import ObjectSet


class TestObjectSet:
    """Tests for the reference set primitive."""

    def test_insert_and_has(self):
        refs = ObjectSet()
        c1 = cluster_ref("ns", "c1")

        refs.insert(c1)
        refs.insert(cluster_ref("ns", "c1"))

        assert refs.has(c1)
        assert c1 in refs
        assert refs.len() == 1

    def test_erase_missing_is_noop(self):
        refs = ObjectSet([cluster_ref("ns", "c1")])
        refs.erase(cluster_ref("ns", "other"))
        assert len(refs) == 1

    def test_membership_includes_kind(self):
        refs = ObjectSet([cluster_ref("ns", "c1", ClusterType.CAPI)])
        assert not refs.has(cluster_ref("ns", "c1", ClusterType.SVELTOS))

    def test_items_sorted(self):
        refs = ObjectSet([cluster_ref("ns", "b"), cluster_ref("ns", "a"), policy_ref("p")])
        names = [r.name for r in refs.items()]
        # ClusterHealthCheck sorts after Cluster by kind
        assert names == ["a", "b", "p"]

    def test_copy_is_independent(self):
        refs = ObjectSet([cluster_ref("ns", "c1")])
        clone = refs.copy()
        clone.insert(cluster_ref("ns", "c2"))

        assert refs.len() == 1
        assert clone.len() == 2

    def test_difference_and_union(self):
        a = ObjectSet([cluster_ref("ns", "c1"), cluster_ref("ns", "c2")])
        b = ObjectSet([cluster_ref("ns", "c2"), cluster_ref("ns", "c3")])

        assert a.difference(b) == {cluster_ref("ns", "c1")}
        assert a.union(b).len() == 3

    def test_equality(self):
        assert ObjectSet([policy_ref("p")]) == ObjectSet([policy_ref("p")])
        assert ObjectSet() == set()
        assert ObjectSet([policy_ref("p")]) != ObjectSet()
