"""Enums for metric sources, operators, severity, and alert status."""
from enum import Enum


class MetricSource(str, Enum):
    EMBEDDING = "embedding_metrics"
    PERFORMANCE = "performance_metrics"
    SYSTEM_HEALTH = "system_health"
    NOTIFICATION = "notification_metrics"


class ThresholdOperator(str, Enum):
    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    EQ = "="
    NEQ = "!="


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    SUPPRESSED = "suppressed"


# Statuses that block a new alert for the same rule
OPEN_STATUSES = (AlertStatus.ACTIVE.value, AlertStatus.ACKNOWLEDGED.value)


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"
