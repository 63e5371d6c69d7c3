"""Data models."""
from models.enums import MetricSource, ThresholdOperator, Severity, AlertStatus, HealthState, OPEN_STATUSES
from models.alerts import (
    AlertRule, Alert, AlertHistoryEntry, TriggerResult, EngineStatistics, CollectorStatistics, MetricSnapshot,
)
