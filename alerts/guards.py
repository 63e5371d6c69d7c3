"""Cooldown and consecutive-failure checks for alert rules, plus the rate-limit window."""
import logging
from datetime import timedelta

from utils.formatters import utcnow

logger = logging.getLogger("alertengine.alerts.guards")


class RuleGuard:
    def __init__(self, db, clock=None):
        self.db = db
        self.clock = clock or utcnow

    def in_cooldown(self, rule):
        if rule.cooldown_minutes <= 0:
            return False
        try:
            last_time = self.db.get_last_alert_time(rule.id)
        except Exception as e:
            # Dedup still prevents duplicate open alerts if this read fails
            logger.error(f"Cooldown check failed for rule {rule.id}: {e}")
            return False
        if last_time is None:
            return False
        return last_time >= self.clock() - timedelta(minutes=rule.cooldown_minutes)

    def record_failure(self, rule):
        """Count one more consecutive breach for the rule and return the running total."""
        return self.db.increment_failure_count(rule.id, at=self.clock())

    def clear_failures(self, rule):
        self.db.clear_failure_count(rule.id)

    def rate_limit_since(self):
        """Start of the window counted against a rule's max_alerts_per_hour."""
        return self.clock() - timedelta(hours=1)
