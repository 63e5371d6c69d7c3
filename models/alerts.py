"""Dataclasses for alert rules, alerts, history entries, and engine statistics."""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional

from utils.formatters import to_iso

INTEGER_RULE_FIELDS = (
    "evaluation_window_minutes", "cooldown_minutes",
    "consecutive_failures_required", "max_alerts_per_hour",
)


@dataclass
class AlertRule:
    id: str = ""
    name: str = ""
    enabled: bool = True
    metric_source: str = "embedding_metrics"
    metric_name: str = ""
    threshold_value: float = 0.0
    threshold_operator: str = ">"
    threshold_unit: Optional[str] = None
    evaluation_window_minutes: int = 5
    cooldown_minutes: int = 15
    consecutive_failures_required: int = 1
    max_alerts_per_hour: int = 10
    severity: str = "medium"
    team_id: str = ""
    description: str = ""

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, d):
        """Build a rule from a DB row or YAML mapping, ignoring unknown keys.

        Raises TypeError or ValueError when a numeric field does not convert.
        """
        known = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        if "enabled" in known:
            known["enabled"] = bool(known["enabled"])
        if "threshold_value" in known:
            known["threshold_value"] = float(known["threshold_value"])
        for name in INTEGER_RULE_FIELDS:
            if name in known:
                known[name] = int(known[name])
        return cls(**known)


@dataclass
class Alert:
    id: Optional[int] = None
    alert_rule_id: str = ""
    title: str = ""
    description: str = ""
    severity: str = "medium"
    metric_name: str = ""
    metric_value: float = 0.0
    threshold_value: float = 0.0
    threshold_operator: str = ">"
    context: dict = field(default_factory=dict)
    team_id: str = ""
    status: str = "active"
    created_at: Optional[datetime] = None

    @property
    def rule_name(self):
        return self.context.get("rule_name") or "Unknown Rule"

    def to_dict(self):
        d = asdict(self)
        d["created_at"] = to_iso(self.created_at)
        return d


@dataclass
class AlertHistoryEntry:
    id: Optional[int] = None
    alert_id: int = 0
    event_type: str = "created"
    event_description: str = ""
    new_status: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class TriggerResult:
    rule_id: str
    rule_name: str
    triggered: bool
    threshold_value: float
    severity: str
    metric_value: Optional[float] = None
    reason: Optional[str] = None

    @classmethod
    def for_rule(cls, rule, triggered=False, metric_value=None, reason=None):
        return cls(
            rule_id=rule.id,
            rule_name=rule.name,
            triggered=triggered,
            threshold_value=rule.threshold_value,
            severity=rule.severity,
            metric_value=metric_value,
            reason=reason,
        )

    def to_dict(self):
        return asdict(self)


@dataclass
class EngineStatistics:
    rules_evaluated: int = 0
    alerts_triggered: int = 0
    evaluation_errors: int = 0
    last_evaluation_time: Optional[datetime] = None
    average_evaluation_time: float = 0.0  # ms
    uptime: float = 0.0  # seconds

    def to_dict(self):
        d = asdict(self)
        d["last_evaluation_time"] = to_iso(self.last_evaluation_time)
        return d


@dataclass
class CollectorStatistics:
    total_snapshots: int = 0
    last_collection_time: Optional[datetime] = None
    collection_errors: int = 0
    average_collection_time: float = 0.0  # ms
    active_collectors: list = field(default_factory=list)

    def to_dict(self):
        d = asdict(self)
        d["last_collection_time"] = to_iso(self.last_collection_time)
        return d


@dataclass
class MetricSnapshot:
    timestamp: datetime
    source: str
    metrics: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
