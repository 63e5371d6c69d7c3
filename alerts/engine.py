"""Alert trigger engine: periodic rule evaluation with guards and bounded concurrency."""
import time
import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout

from alerts.conditions import evaluate_condition
from alerts.guards import RuleGuard
from models.alerts import TriggerResult, EngineStatistics
from models.enums import AlertStatus
from monitor.scheduler import IntervalScheduler
from utils.formatters import utcnow, to_iso, format_metric

logger = logging.getLogger("alertengine.alerts.engine")

DEFAULT_ENGINE_CONFIG = {
    "evaluation_interval": 60,
    "health_check_interval": 300,
    "max_concurrent_evaluations": 10,
    "evaluation_timeout": 30,
    "tick_seconds": 1.0,
}

EVALUATION_SAMPLES = 100


class RuleEvaluation:
    """Handshake between a batch waiting on one rule and the worker evaluating it.

    The worker calls commit() before its first write and the batch calls
    cancel() when the deadline passes. Only the first caller succeeds, so a
    timed-out evaluation never writes, and one that started writing is
    waited for.
    """

    RUNNING = "running"
    CANCELLED = "cancelled"
    COMMITTING = "committing"

    def __init__(self):
        self._lock = threading.Lock()
        self._state = self.RUNNING

    def _move(self, state):
        with self._lock:
            if self._state != self.RUNNING:
                return False
            self._state = state
            return True

    def cancel(self):
        return self._move(self.CANCELLED)

    def commit(self):
        return self._move(self.COMMITTING)


class AlertTriggerEngine:
    def __init__(self, db, resolver, guard=None, config=None, clock=None):
        self.db = db
        self.resolver = resolver
        self.clock = clock or utcnow
        self.guard = guard or RuleGuard(db, self.clock)
        self.config = {**DEFAULT_ENGINE_CONFIG, **(config or {})}

        self._scheduler = None
        self._started_at = None
        self._cycle_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._eval_times = deque(maxlen=EVALUATION_SAMPLES)
        self._stats = EngineStatistics()

    @property
    def is_running(self):
        return self._scheduler is not None

    # --- Lifecycle ---

    def start(self):
        """Run one evaluation cycle, then keep evaluating on the configured intervals."""
        if self.is_running:
            logger.warning("Alert trigger engine is already running")
            return
        logger.info("Starting alert trigger engine")
        self._started_at = time.monotonic()
        self.evaluate_all_rules()

        scheduler = IntervalScheduler("alert-engine", tick_seconds=self.config["tick_seconds"])
        scheduler.every(self.config["evaluation_interval"], self._scheduled_evaluation, "evaluation")
        scheduler.every(self.config["health_check_interval"], self.perform_health_check, "health_check")
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            f"Alert trigger engine started (evaluation every {self.config['evaluation_interval']}s, "
            f"health check every {self.config['health_check_interval']}s)"
        )

    def stop(self):
        if not self.is_running:
            logger.warning("Alert trigger engine is not running")
            return
        self._scheduler.stop()
        self._scheduler = None
        self._started_at = None
        logger.info("Alert trigger engine stopped")

    def _scheduled_evaluation(self):
        self.evaluate_all_rules(wait=False)

    # --- Evaluation ---

    def evaluate_all_rules(self, wait=True):
        """Evaluate every enabled rule once and return the per-rule results.

        With wait=False the call returns an empty list immediately if another
        cycle is still running.
        """
        if not self._cycle_lock.acquire(blocking=wait):
            logger.info("Previous evaluation cycle still running, skipping this tick")
            return []
        try:
            return self._run_cycle()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self):
        started = time.monotonic()
        try:
            rules = [r for r in self.db.get_alert_rules() if r.enabled]
        except Exception as e:
            logger.error(f"Error fetching alert rules: {e}", exc_info=True)
            with self._stats_lock:
                self._stats.evaluation_errors += 1
            return []

        logger.debug(f"Evaluating {len(rules)} enabled alert rules")
        batch_size = max(1, int(self.config["max_concurrent_evaluations"]))
        results = []
        errors = 0
        for i in range(0, len(rules), batch_size):
            batch_results, batch_errors = self._evaluate_batch(rules[i:i + batch_size])
            results.extend(batch_results)
            errors += batch_errors

        elapsed_ms = (time.monotonic() - started) * 1000
        triggered = sum(1 for r in results if r.triggered)
        with self._stats_lock:
            self._stats.rules_evaluated += len(rules)
            self._stats.alerts_triggered += triggered
            self._stats.evaluation_errors += errors
            self._stats.last_evaluation_time = self.clock()
            self._eval_times.append(elapsed_ms)
            self._stats.average_evaluation_time = sum(self._eval_times) / len(self._eval_times)

        logger.info(
            f"Evaluated {len(rules)} rules in {elapsed_ms:.0f}ms: "
            f"{triggered} triggered, {errors} errors"
        )
        return results

    def _evaluate_batch(self, batch):
        timeout = self.config["evaluation_timeout"]
        results = []
        errors = 0
        executor = ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="rule-eval")
        try:
            futures = []
            for rule in batch:
                evaluation = RuleEvaluation()
                futures.append((rule, evaluation, executor.submit(self.evaluate_rule, rule, evaluation)))
            deadline = time.monotonic() + timeout
            for rule, evaluation, future in futures:
                try:
                    try:
                        result = future.result(timeout=max(0, deadline - time.monotonic()))
                    except FuturesTimeout:
                        if evaluation.cancel():
                            raise
                        # Already writing its outcome
                        result = future.result()
                    results.append(result)
                except FuturesTimeout:
                    errors += 1
                    logger.error(f"Evaluation of rule {rule.name} timed out after {timeout}s")
                    results.append(TriggerResult.for_rule(
                        rule, reason=f"Evaluation timed out after {timeout}s"))
                except Exception as e:
                    errors += 1
                    logger.error(f"Failed to evaluate rule {rule.name}: {e}", exc_info=True)
                    results.append(TriggerResult.for_rule(rule, reason=f"Evaluation error: {e}"))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return results, errors

    def evaluate_rule(self, rule, evaluation=None):
        """Evaluate one rule and trigger an alert if all guards allow it.

        When `evaluation` is given and has been cancelled, nothing is written.
        Storage errors while triggering propagate to the caller.
        """
        value = self.resolver.resolve(rule)
        if value is None:
            return TriggerResult.for_rule(rule, reason="Metric value not available")

        if self.guard.in_cooldown(rule):
            return TriggerResult.for_rule(rule, metric_value=value, reason="Rule in cooldown period")

        breached = evaluate_condition(value, rule.threshold_value, rule.threshold_operator)
        if evaluation is not None and not evaluation.commit():
            logger.info(f"Evaluation of rule {rule.name} was cancelled, discarding outcome")
            return TriggerResult.for_rule(rule, metric_value=value, reason="Evaluation cancelled")

        if not breached:
            self.guard.clear_failures(rule)
            return TriggerResult.for_rule(rule, metric_value=value)

        required = max(1, rule.consecutive_failures_required)
        if required > 1:
            count = self.guard.record_failure(rule)
            if count < required:
                return TriggerResult.for_rule(
                    rule, metric_value=value, reason=f"Consecutive failures: {count}/{required}")

        alert, skip_reason = self.trigger_alert(rule, value)
        self.guard.clear_failures(rule)
        return TriggerResult.for_rule(
            rule, triggered=alert is not None, metric_value=value, reason=skip_reason)

    def trigger_alert(self, rule, value):
        """Create an alert and its history entry. Returns (alert, skip_reason).

        The open-alert and rate-limit checks run in the same store transaction
        as the insert.
        """
        now = self.clock()
        title = self.alert_title(rule)
        fields = {
            "alert_rule_id": rule.id,
            "title": title,
            "description": self.alert_description(rule, value),
            "severity": rule.severity,
            "metric_name": rule.metric_name,
            "metric_value": value,
            "threshold_value": rule.threshold_value,
            "threshold_operator": rule.threshold_operator,
            "context": {
                "rule_name": rule.name,
                "evaluation_window_minutes": rule.evaluation_window_minutes,
                "metric_source": rule.metric_source,
                "triggered_at": to_iso(now),
            },
            "team_id": rule.team_id,
            "created_at": now,
        }
        history = {
            "event_type": "created",
            "event_description": "Alert created by trigger engine",
            "new_status": AlertStatus.ACTIVE.value,
            "metadata": {
                "metric_value": value,
                "threshold_value": rule.threshold_value,
                "evaluation_time": to_iso(now),
            },
            "created_at": now,
        }
        alert, skipped = self.db.create_alert(
            fields, history,
            since=self.guard.rate_limit_since(),
            max_per_hour=rule.max_alerts_per_hour,
        )
        if skipped == "open_alert":
            logger.info(f"Alert already exists for rule {rule.name}, skipping")
            return None, "Active alert already exists"
        if skipped == "rate_limited":
            logger.warning(f"Rate limit exceeded for rule {rule.name}, skipping")
            return None, "Rate limit exceeded"
        logger.warning(f"ALERT [{rule.severity.upper()}] {title} (ID: {alert.id})")
        return alert, None

    @staticmethod
    def alert_title(rule):
        return f"{rule.name} - Threshold {rule.threshold_operator} {rule.threshold_value:g}"

    @staticmethod
    def alert_description(rule, value):
        unit = rule.threshold_unit
        return (
            f"Metric {rule.metric_name} is {format_metric(value, unit)}, which "
            f"{rule.threshold_operator} threshold of {format_metric(rule.threshold_value, unit)}"
        )

    # --- Health and statistics ---

    def perform_health_check(self):
        """Verify the rule store answers and log the current statistics."""
        stats = self.get_statistics()
        try:
            self.db.ping()
        except Exception as e:
            logger.error(f"Alert engine health check failed: {e}")
            return {"healthy": False, "error": str(e), "statistics": stats.to_dict()}
        logger.info(
            f"Alert engine health: {stats.rules_evaluated} rules evaluated, "
            f"{stats.alerts_triggered} alerts triggered, {stats.evaluation_errors} errors, "
            f"avg {stats.average_evaluation_time:.0f}ms"
        )
        return {"healthy": True, "statistics": stats.to_dict()}

    def get_statistics(self):
        with self._stats_lock:
            stats = EngineStatistics(
                rules_evaluated=self._stats.rules_evaluated,
                alerts_triggered=self._stats.alerts_triggered,
                evaluation_errors=self._stats.evaluation_errors,
                last_evaluation_time=self._stats.last_evaluation_time,
                average_evaluation_time=self._stats.average_evaluation_time,
            )
        if self._started_at is not None:
            stats.uptime = time.monotonic() - self._started_at
        return stats

    def get_status(self):
        return {
            "is_running": self.is_running,
            "config": dict(self.config),
            "statistics": self.get_statistics().to_dict(),
        }

    # --- Manual controls ---

    def force_evaluation(self):
        """Evaluate all rules now, waiting for any in-flight cycle to finish first."""
        logger.info("Forcing evaluation of all alert rules")
        return self.evaluate_all_rules(wait=True)

    def force_rule_evaluation(self, rule_id):
        try:
            rule = self.db.get_alert_rule(rule_id)
            if rule is None:
                logger.warning(f"Alert rule not found: {rule_id}")
                return None
            if not rule.enabled:
                return TriggerResult.for_rule(rule, reason="Rule is disabled")
            return self.evaluate_rule(rule)
        except Exception as e:
            logger.error(f"Error forcing evaluation of rule {rule_id}: {e}", exc_info=True)
            return None

    def test_rule(self, rule):
        """Dry run: resolve and compare without guards or persistence."""
        value = self.resolver.resolve(rule)
        if value is None:
            return {
                "rule_id": rule.id,
                "metric_value": None,
                "would_trigger": False,
                "reason": "Metric value not available",
                "simulated_alert": None,
            }

        would_trigger = evaluate_condition(value, rule.threshold_value, rule.threshold_operator)
        simulated = None
        if would_trigger:
            simulated = {
                "title": self.alert_title(rule),
                "description": self.alert_description(rule, value),
                "severity": rule.severity,
                "metric_value": value,
                "threshold_value": rule.threshold_value,
            }
        return {
            "rule_id": rule.id,
            "metric_value": value,
            "would_trigger": would_trigger,
            "reason": None if would_trigger else "Threshold not breached",
            "simulated_alert": simulated,
        }
