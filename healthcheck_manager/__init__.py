"""healthcheck-manager Package"""

__version__ = "0.1.0"

from .errors import HealthCheckManagerError
from .models import (
    Cluster, ClusterCondition, Condition, HealthDefinition, HealthPolicy,
    HealthPolicyStatus, ObjectRef,
)
from .objectset import ObjectSet

__all__ = [
    "__version__",
    "Cluster",
    "ClusterCondition",
    "Condition",
    "HealthCheckManagerError",
    "HealthDefinition",
    "HealthPolicy",
    "HealthPolicyStatus",
    "ObjectRef",
    "ObjectSet",
]
