"""Resolve the current value of a rule's metric over its evaluation window."""
import logging
from datetime import timedelta

from models.enums import MetricSource
from utils.formatters import utcnow

logger = logging.getLogger("alertengine.alerts.resolver")


def _pct(part, total, empty):
    """Percentage of `part` in `total`, or `empty` when there is nothing to measure."""
    if total == 0:
        return empty
    return (part / total) * 100


class MetricResolver:
    """Maps (metric_source, metric_name) pairs to the reads that produce their value."""

    def __init__(self, db, health_service=None, clock=None):
        self.db = db
        self.health_service = health_service
        self.clock = clock or utcnow
        self._table = {
            (MetricSource.EMBEDDING, "success_rate"): self._embedding_success_rate,
            (MetricSource.EMBEDDING, "avg_duration"): self._embedding_avg_duration,
            (MetricSource.EMBEDDING, "error_rate"): self._embedding_error_rate,
            (MetricSource.SYSTEM_HEALTH, "health_score"): self._health_score,
            (MetricSource.SYSTEM_HEALTH, "api_response_time"): self._health_perf("api_response_time"),
            (MetricSource.SYSTEM_HEALTH, "error_rate"): self._health_perf("error_rate"),
            (MetricSource.SYSTEM_HEALTH, "cache_hit_rate"): self._health_perf("cache_hit_rate"),
            (MetricSource.NOTIFICATION, "notification_success_rate"): self._notification_success_rate,
            (MetricSource.NOTIFICATION, "notification_failure_rate"): self._notification_failure_rate,
        }

    def supported_metrics(self):
        """Known (source, name) pairs. Any name is accepted for performance_metrics."""
        pairs = {(source.value, name) for source, name in self._table}
        return sorted(pairs)

    def supports(self, metric_source, metric_name):
        if metric_source == MetricSource.PERFORMANCE.value:
            return bool(metric_name)
        return (metric_source, metric_name) in {(s.value, n) for s, n in self._table}

    def resolve(self, rule):
        """Return the metric value for `rule` or None when it cannot be determined."""
        since = self.clock() - timedelta(minutes=rule.evaluation_window_minutes)
        try:
            source = MetricSource(rule.metric_source)
        except ValueError:
            logger.warning(f"Unknown metric source: {rule.metric_source}")
            return None

        try:
            if source == MetricSource.PERFORMANCE:
                return self.db.get_latest_performance_metric(rule.metric_name, since)

            func = self._table.get((source, rule.metric_name))
            if func is None:
                logger.warning(f"Unknown {source.value} metric: {rule.metric_name}")
                return None
            return func(rule, since)
        except Exception as e:
            logger.error(f"Error getting metric value for rule {rule.id}: {e}", exc_info=True)
            return None

    # --- embedding_metrics ---

    def _embedding_success_rate(self, rule, since):
        rows = self.db.get_embedding_metrics(since, team_id=rule.team_id)
        ok = sum(1 for r in rows if r["status"] == "success")
        return _pct(ok, len(rows), empty=100.0)

    def _embedding_avg_duration(self, rule, since):
        rows = self.db.get_embedding_metrics(since, team_id=rule.team_id)
        durations = [r["total_duration_ms"] for r in rows if r["total_duration_ms"] is not None]
        if not durations:
            return None
        return sum(durations) / len(durations)

    def _embedding_error_rate(self, rule, since):
        rows = self.db.get_embedding_metrics(since, team_id=rule.team_id)
        failed = sum(1 for r in rows if r["status"] in ("failed", "timeout"))
        return _pct(failed, len(rows), empty=0.0)

    # --- system_health ---

    def _health_score(self, rule, since):
        if self.health_service is None:
            return None
        return self.health_service.perform_health_check()["health_score"]

    def _health_perf(self, key):
        def read(rule, since):
            if self.health_service is None:
                return None
            return self.health_service.get_performance_metrics().get(key)
        return read

    # --- notification_metrics ---

    def _notification_success_rate(self, rule, since):
        rows = self.db.get_notification_deliveries(since, team_id=rule.team_id)
        delivered = sum(1 for r in rows if r["delivery_status"] == "delivered")
        return _pct(delivered, len(rows), empty=100.0)

    def _notification_failure_rate(self, rule, since):
        rows = self.db.get_notification_deliveries(since, team_id=rule.team_id)
        failed = sum(1 for r in rows if r["delivery_status"] == "failed")
        return _pct(failed, len(rows), empty=0.0)
