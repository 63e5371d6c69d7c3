"""Engine manager: lifecycle and health of the metrics collector and alert trigger engine."""
import time
import logging
from collections import Counter
from datetime import timedelta

from models.enums import HealthState
from monitor.scheduler import IntervalScheduler
from utils.formatters import utcnow, to_iso

logger = logging.getLogger("alertengine.manager")

DEFAULT_MANAGER_CONFIG = {
    "auto_start": True,
    "metrics_collection_interval": 30,
    "alert_evaluation_interval": 60,
    "health_check_interval": 300,
    "enable_metrics_collection": True,
    "enable_alert_evaluation": True,
    "enable_health_monitoring": True,
    "tick_seconds": 1.0,
}

COLLECTION_STALE_AFTER = timedelta(minutes=10)
EVALUATION_STALE_AFTER = timedelta(minutes=15)
DEGRADED_ERROR_COUNT = 10


class EngineManager:
    def __init__(self, db, engine, collector, config=None, clock=None, restart_delay=2.0):
        self.db = db
        self.engine = engine
        self.collector = collector
        self.clock = clock or utcnow
        self.restart_delay = restart_delay
        self.config = {**DEFAULT_MANAGER_CONFIG, **(config or {})}

        self._running = False
        self._start_time = None
        self._started_monotonic = None
        self._scheduler = None
        self._last_health_check = None

    @property
    def is_running(self):
        return self._running

    def start(self):
        """Start the enabled components. Anything already started is stopped again on failure."""
        if self._running:
            logger.warning("Engine manager is already running")
            return

        logger.info("Starting alert engine manager")
        self._running = True
        self._start_time = self.clock()
        self._started_monotonic = time.monotonic()
        try:
            if self.config["enable_metrics_collection"]:
                self.collector.config["collection_interval"] = self.config["metrics_collection_interval"]
                self.collector.start()

            if self.config["enable_alert_evaluation"]:
                self.engine.config["evaluation_interval"] = self.config["alert_evaluation_interval"]
                self.engine.start()

            if self.config["enable_health_monitoring"]:
                scheduler = IntervalScheduler("engine-manager", tick_seconds=self.config["tick_seconds"])
                scheduler.every(self.config["health_check_interval"], self.perform_health_check, "health_check")
                scheduler.start()
                self._scheduler = scheduler
                self.perform_health_check()
        except Exception as e:
            logger.error(f"Failed to start alert engine manager: {e}", exc_info=True)
            self.stop()
            raise

        logger.info("Alert engine manager started")

    def stop(self):
        if not self._running:
            logger.warning("Engine manager is not running")
            return

        logger.info("Stopping alert engine manager")
        if self._scheduler is not None:
            self._scheduler.stop()
            self._scheduler = None

        for name, component in (("alert engine", self.engine), ("metrics collector", self.collector)):
            if not component.is_running:
                continue
            try:
                component.stop()
            except Exception as e:
                logger.error(f"Error stopping {name}: {e}")

        self._running = False
        self._start_time = None
        self._started_monotonic = None
        logger.info("Alert engine manager stopped")

    def restart(self):
        logger.info("Restarting alert engine manager")
        self.stop()
        time.sleep(self.restart_delay)
        self.start()

    def perform_health_check(self):
        """Ping the store and flag stale components. The result is kept for get_status()."""
        now = self.clock()
        issues = []

        started = time.monotonic()
        try:
            self.db.ping()
            database = {"status": "healthy"}
        except Exception as e:
            database = {"status": "critical", "error": str(e)}
            issues.append(f"Database unreachable: {e}")
        database["response_time"] = (time.monotonic() - started) * 1000

        collector_stats = self.collector.get_statistics()
        engine_stats = self.engine.get_statistics()

        last_collection = collector_stats.last_collection_time
        if self.collector.is_running and last_collection and now - last_collection > COLLECTION_STALE_AFTER:
            issues.append("Metrics collection appears stale")

        last_evaluation = engine_stats.last_evaluation_time
        if self.engine.is_running and last_evaluation and now - last_evaluation > EVALUATION_STALE_AFTER:
            issues.append("Alert evaluation appears stale")

        for issue in issues:
            logger.warning(issue)

        self._last_health_check = {
            "timestamp": now,
            "database": database,
            "components": {
                "metrics_collector": self.collector.get_status(),
                "alert_engine": {"is_running": self.engine.is_running},
            },
            "issues": issues,
        }
        logger.debug(f"Health check complete: {len(issues)} issues")
        return self._last_health_check

    def _overall_health(self, collector_stats, engine_stats):
        collector_down = self.config["enable_metrics_collection"] and not self.collector.is_running
        engine_down = self.config["enable_alert_evaluation"] and not self.engine.is_running
        if not self._running or collector_down or engine_down:
            return HealthState.CRITICAL.value
        if (collector_stats.collection_errors > DEGRADED_ERROR_COUNT
                or engine_stats.evaluation_errors > DEGRADED_ERROR_COUNT):
            return HealthState.DEGRADED.value
        return HealthState.HEALTHY.value

    def get_status(self):
        collector_stats = self.collector.get_statistics()
        engine_stats = self.engine.get_statistics()
        last_check = self._last_health_check
        return {
            "is_running": self._running,
            "start_time": to_iso(self._start_time),
            "uptime": self.get_uptime(),
            "components": {
                "metrics_collector": {
                    "is_running": self.collector.is_running,
                    "last_collection": to_iso(collector_stats.last_collection_time),
                    "total_snapshots": collector_stats.total_snapshots,
                    "errors": collector_stats.collection_errors,
                },
                "alert_engine": {
                    "is_running": self.engine.is_running,
                    "last_evaluation": to_iso(engine_stats.last_evaluation_time),
                    "rules_evaluated": engine_stats.rules_evaluated,
                    "alerts_triggered": engine_stats.alerts_triggered,
                    "errors": engine_stats.evaluation_errors,
                },
            },
            "last_health_check": to_iso(last_check["timestamp"]) if last_check else None,
            "overall_health": self._overall_health(collector_stats, engine_stats),
        }

    def is_healthy(self):
        return self._running and self.get_status()["overall_health"] == HealthState.HEALTHY.value

    def get_uptime(self):
        if self._started_monotonic is None:
            return 0.0
        return time.monotonic() - self._started_monotonic

    def force_evaluation(self):
        """Collect fresh metrics, then evaluate every rule against them."""
        logger.info("Forcing immediate alert evaluation")
        snapshots = self.collector.force_collection()
        results = self.engine.force_evaluation()
        triggered = sum(1 for r in results if r.triggered)
        logger.info(f"Force evaluation completed. Triggered: {triggered}/{len(results)}")
        return {"snapshots": snapshots, "results": results}

    def get_recent_activity(self, hours=24):
        since = self.clock() - timedelta(hours=hours)
        try:
            alerts = self.db.query_alerts(date_from=since)
        except Exception as e:
            logger.error(f"Error getting recent activity: {e}")
            alerts = []

        by_rule = Counter(a.alert_rule_id for a in alerts)
        # newest alert first, so the latest name a rule triggered under wins
        names = {}
        for a in alerts:
            names.setdefault(a.alert_rule_id, a.context.get("rule_name"))
        return {
            "total_alerts": len(alerts),
            "alerts_by_severity": dict(Counter(a.severity for a in alerts)),
            "alerts_by_status": dict(Counter(a.status for a in alerts)),
            "top_triggered_rules": [
                {"rule_id": rule_id, "rule_name": names[rule_id] or rule_id, "count": count}
                for rule_id, count in by_rule.most_common(10)
            ],
        }

    def update_config(self, **changes):
        """Merge config changes. Interval changes take effect on the next start()."""
        unknown = set(changes) - set(self.config)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        self.config.update(changes)
        logger.info(f"Engine manager config updated: {changes}")

    def get_config(self):
        return dict(self.config)
