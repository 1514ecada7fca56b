"""
Dispatcher - one deduplicated evaluation job per (cluster, policy, feature)

Translates engine identifiers into deployer keys and binds the registered
feature handler as the job's work function. Never holds a lock across a
deployer call.
"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from .deployer import JobContext, JobKey, JobResult, ThreadPoolDeployer
from .models import ObjectRef

logger = logging.getLogger(__name__)

FeatureHandler = Callable[[ObjectRef, str, JobContext], Any]


class Dispatcher:
    """
    Submits feature jobs to the deployer.

    Example:
        dispatcher = Dispatcher(deployer)
        dispatcher.register_feature("ClusterHealthCheck", handler)
        dispatcher.ensure_job(cluster_ref, "my-policy", "ClusterHealthCheck")
    """

    def __init__(self, deployer: ThreadPoolDeployer):
        self.deployer = deployer
        self._handlers: Dict[str, FeatureHandler] = {}

    def register_feature(self, feature_id: str, handler: FeatureHandler) -> None:
        self._handlers[feature_id] = handler
        logger.info(f"Registered feature {feature_id}")

    @staticmethod
    def job_key(cluster: ObjectRef, policy_name: str, feature_id: str) -> JobKey:
        return JobKey(
            cluster_namespace=cluster.namespace,
            cluster_name=cluster.name,
            policy_name=policy_name,
            feature_id=feature_id,
            cluster_type=cluster.cluster_type,
        )

    def ensure_job(self, cluster: ObjectRef, policy_name: str, feature_id: str) -> bool:
        """
        Make sure a job exists for the key.

        Returns:
            True if a job was queued now, False if one was already in flight

        Raises:
            KeyError: If no handler is registered for feature_id
        """
        handler = self._handlers[feature_id]
        key = self.job_key(cluster, policy_name, feature_id)

        def work(context: JobContext) -> Any:
            return handler(cluster, policy_name, context)

        queued = self.deployer.ensure_job(key, work)
        if queued:
            logger.debug(f"Dispatched {key}")
        return queued

    def is_in_progress(self, cluster: ObjectRef, policy_name: str, feature_id: str) -> bool:
        return self.deployer.is_in_progress(self.job_key(cluster, policy_name, feature_id))

    def collect_result(
        self,
        cluster: ObjectRef,
        policy_name: str,
        feature_id: str,
    ) -> Tuple[Optional[JobResult], bool]:
        """
        Consume the result of the most recently completed job for the key.

        Returns:
            (result, True) once a job completed, (None, False) otherwise
        """
        key = self.job_key(cluster, policy_name, feature_id)
        result, done = self.deployer.get_result(key)
        if done:
            self.deployer.clean_result(key)
        return result, done

    def cleanup(self, cluster: ObjectRef, policy_name: str, feature_id: str) -> None:
        """Forget any stored result for the key."""
        self.deployer.clean_result(self.job_key(cluster, policy_name, feature_id))
