"""
Tests for liveness evaluation
"""

import threading
from unittest.mock import Mock

import pytest

from healthcheck_manager.deployer import JobContext, JobKey
from healthcheck_manager.errors import ReportError
from healthcheck_manager.evaluator import Evaluator, get_condition_type
from healthcheck_manager.models import (
    ClusterType, ConditionStatus, HealthPolicy, LivenessCheck, LivenessType, ObjectRef,
    cluster_ref, health_definition_ref,
)
from healthcheck_manager.reports import (
    AddonStatus, FeatureStatus, HealthCheckReport, HealthStatus, InMemoryReportSource,
    ResourceStatus,
)


CLUSTER = cluster_ref("ns", "c1")


def addons_check(name="addons"):
    return LivenessCheck(name=name, type=LivenessType.ADDONS)


def health_check(name="pods"):
    return LivenessCheck(
        name=name, type=LivenessType.HEALTH_CHECK, source_ref=health_definition_ref(name),
    )


def deployment(name, status, message=""):
    return ResourceStatus(
        resource=ObjectRef("default", name, "Deployment", "apps/v1"),
        health_status=status,
        message=message,
    )


class TestConditionType:
    """Tests for condition type derivation."""

    def test_condition_type_is_stable(self):
        assert get_condition_type(addons_check("a")) == "Addons-a"
        assert get_condition_type(health_check("pods")) == "HealthCheck-pods"

    def test_same_name_different_type(self):
        assert get_condition_type(addons_check("x")) != get_condition_type(health_check("x"))


class TestEvaluator:
    """Tests for Evaluator."""

    @pytest.fixture
    def reports(self):
        return InMemoryReportSource()

    @pytest.fixture
    def evaluator(self, reports):
        return Evaluator(reports)

    def test_no_checks_is_passing(self, evaluator):
        result = evaluator.evaluate(CLUSTER, HealthPolicy(name="p1"))

        assert result.conditions == []
        assert result.passing
        assert result.error is None

    def test_addons_provisioned(self, evaluator, reports):
        reports.put_addon_status(CLUSTER, [
            AddonStatus("Helm", FeatureStatus.PROVISIONED),
            AddonStatus("Resources", FeatureStatus.PROVISIONED),
        ])
        result = evaluator.evaluate(CLUSTER, HealthPolicy(name="p1", liveness_checks=[addons_check()]))

        assert result.passing
        assert result.conditions[0].type == "Addons-addons"
        assert result.conditions[0].status == ConditionStatus.TRUE

    def test_addons_not_provisioned(self, evaluator, reports):
        reports.put_addon_status(CLUSTER, [
            AddonStatus("Helm", FeatureStatus.FAILED, "chart not found"),
        ])
        result = evaluator.evaluate(CLUSTER, HealthPolicy(name="p1", liveness_checks=[addons_check()]))

        assert not result.passing
        assert result.conditions[0].status == ConditionStatus.FALSE
        assert "chart not found" in result.conditions[0].message
        assert result.error is None

    def test_health_check_report(self, evaluator, reports):
        reports.put_health_check_report(HealthCheckReport(
            health_check_name="pods",
            cluster_ref=CLUSTER,
            resource_statuses=[
                deployment("web", HealthStatus.HEALTHY),
                deployment("api", HealthStatus.DEGRADED, "0/3 replicas"),
            ],
        ))
        result = evaluator.evaluate(CLUSTER, HealthPolicy(name="p1", liveness_checks=[health_check()]))

        assert not result.passing
        assert result.conditions[0].status == ConditionStatus.FALSE
        assert "default/api" in result.conditions[0].message

    def test_missing_report_is_unknown(self, evaluator):
        result = evaluator.evaluate(CLUSTER, HealthPolicy(name="p1", liveness_checks=[health_check()]))

        assert not result.passing
        assert result.conditions[0].status == ConditionStatus.UNKNOWN
        assert result.error is None

    def test_failing_check_does_not_abort(self):
        reports = Mock()
        reports.get_addon_status.return_value = []
        reports.get_health_check_report.side_effect = ReportError("connection refused")
        evaluator = Evaluator(reports)

        policy = HealthPolicy(
            name="p1", liveness_checks=[health_check(), addons_check()],
        )
        result = evaluator.evaluate(CLUSTER, policy)

        assert [c.status for c in result.conditions] == [ConditionStatus.UNKNOWN, ConditionStatus.TRUE]
        assert not result.passing
        assert isinstance(result.error, ReportError)
        assert len(result.errors) == 1

    def test_health_check_without_source(self, evaluator):
        check = LivenessCheck(name="broken", type=LivenessType.HEALTH_CHECK)
        result = evaluator.evaluate(CLUSTER, HealthPolicy(name="p1", liveness_checks=[check]))

        assert result.conditions[0].status == ConditionStatus.UNKNOWN
        assert result.error is not None

    def test_condition_order_follows_checks(self, evaluator, reports):
        policy = HealthPolicy(
            name="p1", liveness_checks=[addons_check("b"), addons_check("a")],
        )
        result = evaluator.evaluate(CLUSTER, policy)
        assert [c.type for c in result.conditions] == ["Addons-b", "Addons-a"]

    def test_cancelled_context(self, evaluator):
        key = JobKey("ns", "c1", "p1", "ClusterHealthCheck", ClusterType.CAPI)
        cancel = threading.Event()
        cancel.set()
        context = JobContext(key, timeout=30.0, cancel_event=cancel)

        result = evaluator.evaluate(
            CLUSTER, HealthPolicy(name="p1", liveness_checks=[addons_check()]), context,
        )
        assert result.conditions[0].status == ConditionStatus.UNKNOWN
        assert result.error is not None

    def test_timeout_forwarded(self):
        reports = Mock()
        reports.get_addon_status.return_value = []
        Evaluator(reports, default_timeout=12.0).evaluate(
            CLUSTER, HealthPolicy(name="p1", liveness_checks=[addons_check()]),
        )
        reports.get_addon_status.assert_called_once_with(CLUSTER, "p1", timeout=12.0)
