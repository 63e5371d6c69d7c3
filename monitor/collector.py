"""Periodic metrics collector: snapshots system metrics and persists them for alert rules."""
import time
import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from models.alerts import MetricSnapshot, CollectorStatistics
from models.enums import OPEN_STATUSES, Severity
from monitor.health import STATUS_SCORES, UNKNOWN_STATUS_SCORE
from monitor.scheduler import IntervalScheduler
from utils.formatters import utcnow, to_iso, from_iso

logger = logging.getLogger("alertengine.collector")

DEFAULT_COLLECTOR_CONFIG = {
    "collection_interval": 30,
    "enable_persistence": True,
    "enable_memory_cache": True,
    "max_snapshots": 1000,
    "tick_seconds": 1.0,
}

COLLECTION_SAMPLES = 50


def get_metric_unit(metric_name):
    """Unit stored alongside a persisted metric, derived from its name."""
    if "rate" in metric_name or "percentage" in metric_name:
        return "%"
    if "time" in metric_name or "duration" in metric_name:
        return "ms"
    if "count" in metric_name or "total" in metric_name:
        return "count"
    if "score" in metric_name:
        return "score"
    return "value"


class MetricsCollector:
    def __init__(self, db, health_service=None, config=None, clock=None):
        self.db = db
        self.health_service = health_service
        self.clock = clock or utcnow
        self.config = {**DEFAULT_COLLECTOR_CONFIG, **(config or {})}

        self._groups = {
            "embedding_metrics": (self._collect_embedding_metrics, "api_query"),
            "system_health": (self._collect_system_health_metrics, "health_service"),
            "notification_metrics": (self._collect_notification_metrics, "service_stats"),
            "database_metrics": (self._collect_database_metrics, "direct_query"),
        }
        self._scheduler = None
        self._snapshots = deque(maxlen=self.config["max_snapshots"])
        self._lock = threading.Lock()
        self._collection_times = deque(maxlen=COLLECTION_SAMPLES)
        self._stats = CollectorStatistics(active_collectors=list(self._groups))

    @property
    def is_running(self):
        return self._scheduler is not None

    def start(self):
        if self.is_running:
            logger.warning("Metrics collector is already running")
            return
        logger.info(f"Starting metrics collector (every {self.config['collection_interval']}s)")
        self.collect_all_metrics()
        scheduler = IntervalScheduler("metrics-collector", tick_seconds=self.config["tick_seconds"])
        scheduler.every(self.config["collection_interval"], self.collect_all_metrics, "collection")
        scheduler.start()
        self._scheduler = scheduler

    def stop(self):
        if not self.is_running:
            logger.warning("Metrics collector is not running")
            return
        self._scheduler.stop()
        self._scheduler = None
        logger.info("Metrics collector stopped")

    def collect_all_metrics(self):
        """Collect every metric group in parallel. Returns the snapshots taken."""
        started = time.monotonic()
        timestamp = self.clock()
        since = timestamp - timedelta(hours=1)
        snapshots = []
        errors = 0

        with ThreadPoolExecutor(max_workers=len(self._groups), thread_name_prefix="collect") as pool:
            futures = {
                source: (pool.submit(func, since), method)
                for source, (func, method) in self._groups.items()
            }
            for source, (future, method) in futures.items():
                try:
                    metrics = future.result()
                except Exception as e:
                    errors += 1
                    logger.error(f"Failed to collect {source}: {e}")
                    continue
                snapshots.append(MetricSnapshot(
                    timestamp=timestamp,
                    source=source,
                    metrics=metrics,
                    metadata={"collection_method": method},
                ))

        if self.config["enable_memory_cache"]:
            with self._lock:
                self._snapshots.extend(snapshots)

        if self.config["enable_persistence"]:
            self._persist(snapshots)

        elapsed_ms = (time.monotonic() - started) * 1000
        with self._lock:
            self._stats.total_snapshots += len(snapshots)
            self._stats.collection_errors += errors
            self._stats.last_collection_time = timestamp
            self._collection_times.append(elapsed_ms)
            self._stats.average_collection_time = sum(self._collection_times) / len(self._collection_times)

        logger.info(f"Collected {len(snapshots)} metric snapshots in {elapsed_ms:.0f}ms")
        return snapshots

    def _persist(self, snapshots):
        rows = [
            {
                "metric_name": name,
                "metric_type": snap.source,
                "metric_value": value,
                "metric_unit": get_metric_unit(name),
                "context": {
                    "source": snap.source,
                    "collection_timestamp": to_iso(snap.timestamp),
                    **snap.metadata,
                },
                "created_at": snap.timestamp,
            }
            for snap in snapshots
            for name, value in snap.metrics.items()
        ]
        if not rows:
            return
        try:
            self.db.save_performance_metrics(rows)
            logger.debug(f"Persisted {len(rows)} metrics")
        except Exception as e:
            logger.error(f"Error persisting metrics: {e}")

    # --- Metric groups ---

    def _collect_embedding_metrics(self, since):
        rows = self.db.get_embedding_metrics(since)
        if not rows:
            return {
                "success_rate": 100.0,
                "error_rate": 0.0,
                "avg_duration": 0.0,
                "total_api_calls": 0,
                "total_tokens_used": 0,
                "throughput": 0.0,
            }
        total = len(rows)
        ok = sum(1 for r in rows if r["status"] == "success")
        failed = sum(1 for r in rows if r["status"] in ("failed", "timeout"))
        durations = [r["total_duration_ms"] for r in rows if r["total_duration_ms"] is not None]
        return {
            "success_rate": ok / total * 100,
            "error_rate": failed / total * 100,
            "avg_duration": sum(durations) / len(durations) if durations else 0.0,
            "total_api_calls": sum(r["api_calls_made"] or 0 for r in rows),
            "total_tokens_used": sum(r["api_tokens_used"] or 0 for r in rows),
            # per minute over the hour window
            "throughput": total / 60,
        }

    def _collect_system_health_metrics(self, since):
        if self.health_service is None:
            raise RuntimeError("No health service configured")
        health = self.health_service.perform_health_check()
        perf = self.health_service.get_performance_metrics()
        metrics = {
            "health_score": health["health_score"],
            "api_response_time": perf["api_response_time"],
            "cache_hit_rate": perf["cache_hit_rate"],
            "error_rate": perf["error_rate"],
        }
        scores = []
        for component in health.get("components", []):
            score = STATUS_SCORES.get(component["status"], UNKNOWN_STATUS_SCORE)
            metrics[f"component_{component['name']}_health"] = score
            scores.append(score)
        if scores:
            metrics["avg_component_health"] = sum(scores) / len(scores)
        return metrics

    def _collect_notification_metrics(self, since):
        rows = self.db.get_notification_deliveries(since)
        if not rows:
            return {
                "notification_success_rate": 100.0,
                "notification_failure_rate": 0.0,
                "avg_delivery_time": 0.0,
                "total_notifications": 0,
            }
        total = len(rows)
        delivered = [r for r in rows if r["delivery_status"] == "delivered"]
        failed = sum(1 for r in rows if r["delivery_status"] == "failed")
        delivery_times = [
            (from_iso(r["delivered_at"]) - from_iso(r["sent_at"])).total_seconds() * 1000
            for r in delivered
            if r["sent_at"] and r["delivered_at"]
        ]
        return {
            "notification_success_rate": len(delivered) / total * 100,
            "notification_failure_rate": failed / total * 100,
            "avg_delivery_time": sum(delivery_times) / len(delivery_times) if delivery_times else 0.0,
            "total_notifications": total,
        }

    def _collect_database_metrics(self, since):
        metrics = {}
        started = time.monotonic()
        try:
            self.db.ping()
            metrics["database_available"] = 1
        except Exception as e:
            logger.warning(f"Database ping failed: {e}")
            metrics["database_available"] = 0
        metrics["database_response_time"] = (time.monotonic() - started) * 1000

        if metrics["database_available"]:
            open_alerts = self.db.query_alerts(status=OPEN_STATUSES)
            metrics["active_alerts_total"] = len(open_alerts)
            for severity in (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW):
                metrics[f"active_alerts_{severity.value}"] = sum(
                    1 for a in open_alerts if a.severity == severity.value)
            rules = self.db.get_alert_rules()
            metrics["total_alert_rules"] = len(rules)
            metrics["enabled_alert_rules"] = sum(1 for r in rules if r.enabled)
        return metrics

    # --- Queries ---

    def get_recent_metrics(self, source, metric_name, window_minutes=60):
        """Values of one metric from in-memory snapshots in the window, sorted ascending."""
        since = self.clock() - timedelta(minutes=window_minutes)
        with self._lock:
            values = [
                s.metrics[metric_name]
                for s in self._snapshots
                if s.source == source and s.timestamp >= since and metric_name in s.metrics
            ]
        return sorted(values)

    def force_collection(self):
        logger.info("Forcing metrics collection")
        return self.collect_all_metrics()

    def get_statistics(self):
        with self._lock:
            return CollectorStatistics(
                total_snapshots=self._stats.total_snapshots,
                last_collection_time=self._stats.last_collection_time,
                collection_errors=self._stats.collection_errors,
                average_collection_time=self._stats.average_collection_time,
                active_collectors=list(self._stats.active_collectors),
            )

    def get_status(self):
        with self._lock:
            in_memory = len(self._snapshots)
        return {"is_running": self.is_running, "snapshots_in_memory": in_memory}
