"""
Exception hierarchy for the health check manager.
"""


class HealthCheckManagerError(Exception):
    """Base class for all engine errors."""


class StoreError(HealthCheckManagerError):
    """Store operation failed."""


class ConflictError(StoreError):
    """Optimistic-concurrency conflict on a status update."""


class NotFoundError(StoreError):
    """Requested object does not exist in the store."""


class SelectorError(HealthCheckManagerError):
    """Malformed label selector expression."""


class ReportError(HealthCheckManagerError):
    """Remote report could not be fetched."""


class DeliveryError(HealthCheckManagerError):
    """Notification could not be delivered."""


class CapabilityError(HealthCheckManagerError):
    """Capability (CRD) lookup failed."""


class IndexDesyncError(HealthCheckManagerError):
    """Selector index maps are no longer exact inverses of each other."""
