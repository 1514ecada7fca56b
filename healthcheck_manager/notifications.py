"""
Notification Module - delivery of "cluster is healthy" notifications

Provides the notification sinks:
- KubernetesEvent: a core/v1 Event in the managed cluster's namespace
- Slack: a message posted to an incoming webhook

and the NotificationDispatcher that drives Pending/Failed summaries of a
cluster entry to Delivered or Failed. A Failed notification is retried on the
next reconcile cycle, never immediately.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from .errors import DeliveryError
from .models import (
    ClusterCondition, HealthPolicy, Notification, NotificationStatus,
    NotificationSummary, NotificationType, ObjectRef,
)

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """Delivers one notification for one cluster."""

    @abstractmethod
    def deliver(self, notification: Notification, cluster: ObjectRef, payload: Dict[str, Any]) -> None:
        """Raises DeliveryError on failure."""


class KubernetesEventSink(NotificationSink):
    """Creates a Kubernetes Event attached to the cluster object."""

    def __init__(self, api_client: Optional[client.ApiClient] = None, component: str = "healthcheck-manager"):
        self.core_v1 = client.CoreV1Api(api_client)
        self.component = component

    def deliver(self, notification, cluster, payload):
        now = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                generate_name=f"{cluster.name}-",
                namespace=cluster.namespace,
            ),
            involved_object=client.V1ObjectReference(
                api_version=cluster.api_version,
                kind=cluster.kind,
                name=cluster.name,
                namespace=cluster.namespace,
            ),
            reason="ClusterHealthCheck",
            message=f"{payload.get('policy')}/{notification.name}: cluster is healthy",
            type="Normal",
            first_timestamp=now,
            last_timestamp=now,
            count=1,
            source=client.V1EventSource(component=self.component),
        )
        try:
            self.core_v1.create_namespaced_event(cluster.namespace, event)
        except ApiException as e:
            raise DeliveryError(f"Failed to create event for {cluster}: {e.reason}")


class SlackSink(NotificationSink):
    """
    Slack notification sink using webhooks.

    Set SLACK_WEBHOOK_URL environment variable to enable.
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 10.0):
        self.webhook_url = webhook_url or os.environ.get("SLACK_WEBHOOK_URL")
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def _build_payload(self, notification: Notification, cluster: ObjectRef, payload: Dict[str, Any]) -> Dict[str, Any]:
        fields = []
        for condition in payload.get("conditions", [])[:5]:
            fields.append({
                "title": condition.get("type"),
                "value": str(condition.get("status")),
                "short": True,
            })
        return {
            "attachments": [
                {
                    "color": "#36a64f",
                    "title": f"Cluster {cluster.namespace}/{cluster.name} is healthy",
                    "text": f"ClusterHealthCheck {payload.get('policy')} ({notification.name})",
                    "footer": "healthcheck-manager",
                    "ts": int(datetime.now(timezone.utc).timestamp()),
                    "fields": fields,
                }
            ]
        }

    def deliver(self, notification, cluster, payload):
        if not self.enabled:
            raise DeliveryError("Slack webhook not configured")

        import urllib.request

        req = urllib.request.Request(
            self.webhook_url,
            data=json.dumps(self._build_payload(notification, cluster, payload)).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                if response.status >= 300:
                    raise DeliveryError(f"Slack returned status {response.status}")
        except DeliveryError:
            raise
        except Exception as e:
            raise DeliveryError(f"Failed to send Slack notification: {e}")


class LogSink(NotificationSink):
    """Writes notifications to the log; used when running from manifests."""

    def deliver(self, notification, cluster, payload):
        logger.info(
            f"[{notification.type.value}] {payload.get('policy')}/{notification.name}: "
            f"cluster {cluster.namespace}/{cluster.name} is healthy"
        )


def build_payload(policy: HealthPolicy, entry: ClusterCondition) -> Dict[str, Any]:
    return {
        "policy": policy.name,
        "cluster": entry.cluster_ref.to_dict(),
        "conditions": [c.to_dict() for c in entry.conditions],
    }


class NotificationDispatcher:
    """
    Sends pending notifications of a cluster entry through the configured
    sinks and records the outcome in its notification summaries.

    Example:
        dispatcher = NotificationDispatcher({
            NotificationType.KUBERNETES_EVENT: KubernetesEventSink(),
        })
        dispatcher.deliver_pending(policy, entry)
    """

    def __init__(self, sinks: Optional[Dict[NotificationType, NotificationSink]] = None):
        self.sinks: Dict[NotificationType, NotificationSink] = dict(sinks or {})

    def register(self, notification_type: NotificationType, sink: NotificationSink) -> None:
        self.sinks[notification_type] = sink

    def get_status(self) -> Dict[str, Any]:
        return {"channels": sorted(t.value for t in self.sinks)}

    def deliver_pending(self, policy: HealthPolicy, entry: ClusterCondition) -> List[NotificationSummary]:
        """
        Attempt delivery of every Pending or Failed summary once.

        Returns:
            The summaries attempted in this call
        """
        notifications = {n.name: n for n in policy.notifications}
        payload = build_payload(policy, entry)
        attempted = []

        for summary in entry.notification_summaries:
            if summary.status == NotificationStatus.DELIVERED:
                continue
            notification = notifications.get(summary.name)
            if notification is None:
                continue
            attempted.append(summary)

            sink = self.sinks.get(notification.type)
            if sink is None:
                summary.status = NotificationStatus.FAILED
                summary.failure_message = f"no sink for notification type {notification.type.value}"
                logger.warning(f"Policy {policy.name}: {summary.failure_message}")
                continue

            try:
                sink.deliver(notification, entry.cluster_ref, payload)
            except DeliveryError as e:
                summary.status = NotificationStatus.FAILED
                summary.failure_message = str(e)
                logger.warning(
                    f"Policy {policy.name}: notification {notification.name} for "
                    f"{entry.cluster_ref} failed: {e}"
                )
                continue

            summary.status = NotificationStatus.DELIVERED
            summary.failure_message = None
            logger.info(
                f"Policy {policy.name}: notification {notification.name} delivered for {entry.cluster_ref}"
            )

        return attempted
