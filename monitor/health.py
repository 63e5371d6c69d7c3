"""System health checks computed from the local store."""
import time
import logging
from datetime import timedelta

from models.enums import HealthState
from utils.cache import TTLCache
from utils.formatters import utcnow, to_iso

logger = logging.getLogger("alertengine.health")

# Per-component status -> score contribution
STATUS_SCORES = {"healthy": 100, "warning": 60, "critical": 20}
UNKNOWN_STATUS_SCORE = 40

SLOW_PING_MS = 500
CRITICAL_PING_MS = 2000


class SystemHealthService:
    def __init__(self, db, cache=None, clock=None, cache_ttl=30):
        self.db = db
        self.cache = cache or TTLCache()
        self.clock = clock or utcnow
        self.cache_ttl = cache_ttl

    def perform_health_check(self):
        """Check each component and fold the results into a 0-100 health score."""
        if self.cache_ttl <= 0:
            return self._run_checks()
        return self.cache.get_or_set("health_check", self._run_checks, self.cache_ttl)

    def _run_checks(self):
        components = [
            self._check_database(),
            self._check_recent_activity(),
            self._check_error_rate(),
        ]
        score = sum(STATUS_SCORES.get(c["status"], UNKNOWN_STATUS_SCORE) for c in components) / len(components)

        statuses = {c["status"] for c in components}
        if "critical" in statuses:
            overall = HealthState.CRITICAL.value
        elif statuses - {"healthy"}:
            overall = HealthState.DEGRADED.value
        else:
            overall = HealthState.HEALTHY.value

        return {
            "overall_status": overall,
            "health_score": score,
            "components": components,
            "timestamp": to_iso(self.clock()),
        }

    def get_performance_metrics(self):
        try:
            latency = self._ping_ms()
            return {
                "api_response_time": latency,
                "error_rate": self._error_rate(),
                "cache_hit_rate": self.cache.hit_rate(),
            }
        except Exception as e:
            logger.error(f"Error getting performance metrics: {e}")
            return {"api_response_time": -1, "error_rate": 100, "cache_hit_rate": 0}

    def _ping_ms(self):
        start = time.monotonic()
        self.db.ping()
        return (time.monotonic() - start) * 1000

    def _error_rate(self):
        rows = self.db.get_embedding_metrics(self.clock() - timedelta(hours=1))
        if not rows:
            return 0.0
        failed = sum(1 for r in rows if r["status"] in ("failed", "timeout"))
        return (failed / len(rows)) * 100

    def _check_database(self):
        try:
            latency = self._ping_ms()
        except Exception as e:
            return {"name": "database", "status": "critical", "message": f"Database unreachable: {e}"}
        if latency >= CRITICAL_PING_MS:
            status = "critical"
        elif latency >= SLOW_PING_MS:
            status = "warning"
        else:
            status = "healthy"
        return {
            "name": "database",
            "status": status,
            "message": f"Ping {latency:.1f}ms",
            "response_time": latency,
        }

    def _check_recent_activity(self):
        try:
            latest = self.db.get_latest_embedding_metric_time()
        except Exception as e:
            return {"name": "embedding_activity", "status": "critical", "message": str(e)}
        if latest is None:
            return {"name": "embedding_activity", "status": "warning", "message": "No embedding activity recorded"}

        age = self.clock() - latest
        if age < timedelta(hours=1):
            status = "healthy"
        elif age < timedelta(hours=24):
            status = "warning"
        else:
            status = "critical"
        return {
            "name": "embedding_activity",
            "status": status,
            "message": f"Last activity {int(age.total_seconds() // 60)}m ago",
        }

    def _check_error_rate(self):
        try:
            rate = self._error_rate()
        except Exception as e:
            return {"name": "embedding_errors", "status": "critical", "message": str(e)}
        if rate < 5:
            status = "healthy"
        elif rate < 20:
            status = "warning"
        else:
            status = "critical"
        return {"name": "embedding_errors", "status": status, "message": f"Error rate {rate:.1f}%"}
