"""
Evaluator - per-cluster liveness evaluation

Runs every liveness check of a policy against one cluster and produces one
condition per check, in check order. A failing check never aborts the
evaluation: its condition becomes Unknown and the error is recorded.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .deployer import JobContext
from .errors import ReportError
from .models import (
    Condition, ConditionStatus, HealthPolicy, LivenessCheck, LivenessType, ObjectRef,
)
from .reports import FeatureStatus, ReportSource

logger = logging.getLogger(__name__)


def get_condition_type(check: LivenessCheck) -> str:
    """
    Condition type for a liveness check.

    Stable across runs; collision-free since check names are unique within a
    policy and the type prefix comes from a fixed set.
    """
    return f"{check.type.value}-{check.name}"


@dataclass
class EvaluationResult:
    """
    Outcome of evaluating a policy against a cluster.

    Attributes:
        conditions: One condition per liveness check, in check order
        passing: True iff every condition is True (vacuously True if none)
        errors: Errors of the checks that could not be evaluated
        duration_ms: Evaluation duration in milliseconds
    """
    conditions: List[Condition] = field(default_factory=list)
    passing: bool = True
    errors: List[Exception] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def error(self) -> Optional[Exception]:
        """First recorded error, None if every check was evaluated."""
        return self.errors[0] if self.errors else None


class Evaluator:
    """
    Evaluates liveness checks of a policy for a cluster.

    Example:
        evaluator = Evaluator(report_source)
        result = evaluator.evaluate(cluster_ref, policy)
        if result.error:
            print(f"Partial evaluation: {result.error}")
    """

    def __init__(self, report_source: ReportSource, default_timeout: float = 30.0):
        self.report_source = report_source
        self.default_timeout = default_timeout

    def _timeout(self, context: Optional[JobContext]) -> float:
        if context is None:
            return self.default_timeout
        return context.remaining()

    def evaluate(
        self,
        cluster: ObjectRef,
        policy: HealthPolicy,
        context: Optional[JobContext] = None,
    ) -> EvaluationResult:
        """
        Evaluate all liveness checks of policy against cluster.

        Args:
            cluster: Managed cluster
            policy: Policy whose liveness checks are run
            context: Job context providing deadline and cancellation

        Returns:
            EvaluationResult with exactly one condition per liveness check
        """
        start_time = time.time()
        result = EvaluationResult()

        for check in policy.liveness_checks:
            condition_type = get_condition_type(check)
            try:
                if context is not None and context.cancelled():
                    raise ReportError("evaluation cancelled or timed out")
                if check.type == LivenessType.ADDONS:
                    status, message = self._evaluate_addons(cluster, policy, context)
                elif check.type == LivenessType.HEALTH_CHECK:
                    status, message = self._evaluate_health_check(cluster, check, context)
                else:
                    raise ReportError(f"unsupported liveness check type {check.type}")
            except Exception as e:
                logger.warning(
                    f"Policy {policy.name}: liveness check {check.name} for {cluster} failed: {e}"
                )
                result.errors.append(e)
                status, message = ConditionStatus.UNKNOWN, str(e)

            result.conditions.append(Condition(type=condition_type, status=status, message=message))

        result.passing = all(c.status == ConditionStatus.TRUE for c in result.conditions)
        result.duration_ms = (time.time() - start_time) * 1000
        return result

    def _evaluate_addons(
        self,
        cluster: ObjectRef,
        policy: HealthPolicy,
        context: Optional[JobContext],
    ) -> Tuple[ConditionStatus, str]:
        """All add-on features provisioned means True."""
        statuses = self.report_source.get_addon_status(
            cluster, policy.name, timeout=self._timeout(context),
        )
        not_ready = [s for s in statuses if s.status != FeatureStatus.PROVISIONED]
        if not_ready:
            first = not_ready[0]
            message = f"feature {first.feature_id} is {first.status.value}"
            if first.failure_message:
                message += f": {first.failure_message}"
            return ConditionStatus.FALSE, message
        return ConditionStatus.TRUE, ""

    def _evaluate_health_check(
        self,
        cluster: ObjectRef,
        check: LivenessCheck,
        context: Optional[JobContext],
    ) -> Tuple[ConditionStatus, str]:
        """True iff every resource in the latest report is healthy."""
        if check.source_ref is None:
            raise ReportError(f"liveness check {check.name} has no source reference")

        report = self.report_source.get_health_check_report(
            check.source_ref, cluster, timeout=self._timeout(context),
        )
        if report is None:
            return ConditionStatus.UNKNOWN, f"no report yet for HealthCheck {check.source_ref.name}"

        failing = report.failing()
        if failing:
            first = failing[0]
            message = (
                f"{first.resource.kind} {first.resource.namespace}/{first.resource.name} "
                f"is {first.health_status.value}"
            )
            if first.message:
                message += f": {first.message}"
            return ConditionStatus.FALSE, message
        return ConditionStatus.TRUE, ""
