"""Tests for the alert trigger engine."""
import threading
import pytest
from datetime import timedelta

from alerts.engine import AlertTriggerEngine, RuleEvaluation
from alerts.resolver import MetricResolver


@pytest.fixture
def engine(temp_db, stub_resolver, clock):
    return AlertTriggerEngine(temp_db, stub_resolver, clock=clock)


def _alerts(db, rule):
    return db.query_alerts(alert_rule_id=rule.id)


def test_disabled_rules_never_resolved(engine, stub_resolver, saved_rule):
    saved_rule(id="on")
    saved_rule(id="off", enabled=False)
    stub_resolver.value = 1.0

    results = engine.evaluate_all_rules()

    assert stub_resolver.calls == ["on"]
    assert [r.rule_id for r in results] == ["on"]


def test_missing_metric_never_triggers(engine, temp_db, saved_rule):
    rule = saved_rule()
    results = engine.evaluate_all_rules()

    assert results[0].triggered is False
    assert results[0].reason == "Metric value not available"
    assert _alerts(temp_db, rule) == []


def test_breach_creates_alert_and_history(engine, temp_db, stub_resolver, clock, saved_rule):
    rule = saved_rule(threshold_value=5, threshold_operator=">")
    stub_resolver.value = 12.5

    result = engine.evaluate_rule(rule)

    assert result.triggered is True
    assert result.metric_value == 12.5
    assert result.reason is None

    alerts = _alerts(temp_db, rule)
    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.title == "High error rate - Threshold > 5"
    assert alert.status == "active"
    assert alert.severity == "high"
    assert alert.team_id == "team-a"
    assert alert.metric_value == 12.5
    assert alert.created_at == clock()
    assert alert.context["rule_name"] == "High error rate"
    assert alert.context["metric_source"] == "embedding_metrics"
    assert alert.context["evaluation_window_minutes"] == 5
    assert "triggered_at" in alert.context

    history = temp_db.get_alert_history(alert.id)
    assert len(history) == 1
    assert history[0].event_type == "created"
    assert history[0].new_status == "active"
    assert history[0].metadata["metric_value"] == 12.5
    assert history[0].metadata["threshold_value"] == 5


def test_no_breach_no_alert(engine, temp_db, stub_resolver, saved_rule):
    rule = saved_rule(threshold_value=5)
    stub_resolver.value = 2.0
    result = engine.evaluate_rule(rule)
    assert result.triggered is False
    assert result.metric_value == 2.0
    assert _alerts(temp_db, rule) == []


def test_reevaluation_does_not_duplicate(engine, temp_db, stub_resolver, saved_rule):
    rule = saved_rule(cooldown_minutes=0)
    stub_resolver.value = 50.0

    first = engine.evaluate_rule(rule)
    second = engine.evaluate_rule(rule)

    assert first.triggered is True
    assert second.triggered is False
    assert second.reason == "Active alert already exists"
    assert len(_alerts(temp_db, rule)) == 1


def test_acknowledged_alert_still_blocks(engine, temp_db, stub_resolver, saved_rule):
    rule = saved_rule()
    stub_resolver.value = 50.0
    engine.evaluate_rule(rule)
    temp_db.update_alert_status(_alerts(temp_db, rule)[0].id, "acknowledged")

    assert engine.evaluate_rule(rule).reason == "Active alert already exists"


def test_cooldown(engine, temp_db, stub_resolver, clock, saved_rule):
    rule = saved_rule(cooldown_minutes=15)
    stub_resolver.value = 50.0
    engine.evaluate_rule(rule)
    temp_db.update_alert_status(_alerts(temp_db, rule)[0].id, "resolved")

    clock.advance(minutes=10)
    result = engine.evaluate_rule(rule)
    assert result.triggered is False
    assert result.reason == "Rule in cooldown period"

    clock.advance(minutes=6)
    assert engine.evaluate_rule(rule).triggered is True
    assert len(_alerts(temp_db, rule)) == 2


def test_consecutive_failures(engine, temp_db, stub_resolver, saved_rule):
    rule = saved_rule(consecutive_failures_required=3)
    stub_resolver.value = 50.0

    assert engine.evaluate_rule(rule).reason == "Consecutive failures: 1/3"
    assert engine.evaluate_rule(rule).reason == "Consecutive failures: 2/3"
    third = engine.evaluate_rule(rule)
    assert third.triggered is True
    assert temp_db.get_failure_count(rule.id) == 0


def test_consecutive_failures_reset_by_clean_cycle(engine, temp_db, stub_resolver, saved_rule):
    rule = saved_rule(consecutive_failures_required=3)
    stub_resolver.value = 50.0
    engine.evaluate_rule(rule)
    engine.evaluate_rule(rule)

    stub_resolver.value = 1.0
    engine.evaluate_rule(rule)
    assert temp_db.get_failure_count(rule.id) == 0

    stub_resolver.value = 50.0
    assert engine.evaluate_rule(rule).reason == "Consecutive failures: 1/3"
    assert _alerts(temp_db, rule) == []


def test_interrupted_breaches_do_not_trigger(engine, temp_db, stub_resolver, saved_rule):
    rule = saved_rule(consecutive_failures_required=3)

    for value in (50.0, 1.0, 50.0):
        stub_resolver.value = value
        assert engine.evaluate_rule(rule).triggered is False

    assert temp_db.get_failure_count(rule.id) == 1
    assert _alerts(temp_db, rule) == []


def test_consecutive_failures_persist_across_engines(temp_db, stub_resolver, clock, saved_rule):
    rule = saved_rule(consecutive_failures_required=2)
    stub_resolver.value = 50.0

    AlertTriggerEngine(temp_db, stub_resolver, clock=clock).evaluate_rule(rule)
    result = AlertTriggerEngine(temp_db, stub_resolver, clock=clock).evaluate_rule(rule)
    assert result.triggered is True


def test_hourly_rate_limit(engine, temp_db, stub_resolver, clock, saved_rule):
    rule = saved_rule(max_alerts_per_hour=2)
    stub_resolver.value = 50.0

    for _ in range(2):
        assert engine.evaluate_rule(rule).triggered is True
        temp_db.update_alert_status(_alerts(temp_db, rule)[0].id, "resolved")
        clock.advance(minutes=1)

    limited = engine.evaluate_rule(rule)
    assert limited.triggered is False
    assert limited.reason == "Rate limit exceeded"

    clock.advance(minutes=60)
    assert engine.evaluate_rule(rule).triggered is True


def test_success_rate_scenarios(temp_db, clock, saved_rule):
    engine = AlertTriggerEngine(temp_db, MetricResolver(temp_db, clock=clock), clock=clock)
    rule = saved_rule(metric_name="success_rate", threshold_operator="<", threshold_value=95,
                      evaluation_window_minutes=10)

    empty = engine.evaluate_rule(rule)
    assert empty.metric_value == 100.0
    assert empty.triggered is False

    at = clock() - timedelta(minutes=3)
    for status in ["success"] * 8 + ["failed"] * 2:
        temp_db.record_embedding_metric("team-a", status, total_duration_ms=120, created_at=at)

    breached = engine.evaluate_rule(rule)
    assert breached.metric_value == pytest.approx(80.0)
    assert breached.triggered is True

    alerts = _alerts(temp_db, rule)
    assert len(alerts) == 1
    assert alerts[0].metric_value == pytest.approx(80.0)
    assert alerts[0].threshold_value == 95


def test_rule_exception_isolated(engine, temp_db, stub_resolver, saved_rule):
    saved_rule(id="broken", name="Broken")
    good = saved_rule(id="good", name="Good")
    stub_resolver.value = 50.0
    stub_resolver.per_rule["broken"] = RuntimeError("boom")

    results = {r.rule_id: r for r in engine.evaluate_all_rules()}

    assert results["broken"].triggered is False
    assert results["broken"].reason == "Evaluation error: boom"
    assert results["good"].triggered is True
    assert len(_alerts(temp_db, good)) == 1
    assert engine.get_statistics().evaluation_errors == 1


def test_persistence_failure_counted(engine, temp_db, stub_resolver, saved_rule, monkeypatch):
    saved_rule()
    stub_resolver.value = 50.0

    def fail(fields, history, since, max_per_hour):
        raise RuntimeError("disk full")
    monkeypatch.setattr(temp_db, "create_alert", fail)

    results = engine.evaluate_all_rules()
    assert results[0].triggered is False
    assert "disk full" in results[0].reason
    assert engine.get_statistics().evaluation_errors == 1


def test_rule_timeout(temp_db, clock, saved_rule):
    release = threading.Event()

    class SlowResolver:
        def resolve(self, rule):
            release.wait(5)
            return None

    saved_rule()
    engine = AlertTriggerEngine(temp_db, SlowResolver(), config={"evaluation_timeout": 0.1}, clock=clock)
    try:
        results = engine.evaluate_all_rules()
    finally:
        release.set()

    assert results[0].triggered is False
    assert "timed out" in results[0].reason
    assert engine.get_statistics().evaluation_errors == 1


def test_timed_out_breach_is_never_written(temp_db, clock, saved_rule):
    release = threading.Event()
    finished = threading.Event()

    class SlowResolver:
        def resolve(self, rule):
            release.wait(5)
            return 50.0

    class TrackingEngine(AlertTriggerEngine):
        def evaluate_rule(self, rule, evaluation=None):
            try:
                return super().evaluate_rule(rule, evaluation)
            finally:
                finished.set()

    rule = saved_rule(consecutive_failures_required=2)
    temp_db.increment_failure_count(rule.id, at=clock())
    engine = TrackingEngine(temp_db, SlowResolver(), config={"evaluation_timeout": 0.1}, clock=clock)

    results = engine.evaluate_all_rules()
    release.set()
    assert finished.wait(5)

    assert results[0].triggered is False
    assert "timed out" in results[0].reason
    assert _alerts(temp_db, rule) == []
    assert temp_db.get_failure_count(rule.id) == 1
    assert engine.get_statistics().alerts_triggered == 0


def test_cancelled_evaluation_returns_without_writing(engine, temp_db, stub_resolver, saved_rule):
    rule = saved_rule()
    stub_resolver.value = 50.0
    evaluation = RuleEvaluation()
    assert evaluation.cancel() is True

    result = engine.evaluate_rule(rule, evaluation)

    assert result.triggered is False
    assert result.reason == "Evaluation cancelled"
    assert _alerts(temp_db, rule) == []


def test_rule_evaluation_first_transition_wins():
    committed = RuleEvaluation()
    assert committed.commit() is True
    assert committed.cancel() is False

    cancelled = RuleEvaluation()
    assert cancelled.cancel() is True
    assert cancelled.commit() is False


def test_concurrent_evaluations_create_one_alert(temp_db, clock, saved_rule):
    both_resolved = threading.Barrier(2, timeout=5)

    class SyncResolver:
        def resolve(self, rule):
            both_resolved.wait()
            return 50.0

    rule = saved_rule()
    engine = AlertTriggerEngine(temp_db, SyncResolver(), clock=clock)
    results = []
    workers = [threading.Thread(target=lambda: results.append(engine.evaluate_rule(rule)))
               for _ in range(2)]
    for w in workers:
        w.start()
    for w in workers:
        w.join(5)

    assert sorted(r.triggered for r in results) == [False, True]
    skipped = next(r for r in results if not r.triggered)
    assert skipped.reason == "Active alert already exists"
    assert len(_alerts(temp_db, rule)) == 1


def test_forced_and_cycle_evaluation_race(temp_db, clock, saved_rule):
    both_resolved = threading.Barrier(2, timeout=5)

    class SyncResolver:
        def resolve(self, rule):
            both_resolved.wait()
            return 50.0

    rule = saved_rule()
    engine = AlertTriggerEngine(temp_db, SyncResolver(), clock=clock)
    forced = []
    worker = threading.Thread(target=lambda: forced.append(engine.force_rule_evaluation(rule.id)))
    worker.start()
    cycle = engine.evaluate_all_rules()
    worker.join(5)

    assert [forced[0].triggered, cycle[0].triggered].count(True) == 1
    assert len(_alerts(temp_db, rule)) == 1


def test_history_failure_leaves_no_alert(engine, temp_db, stub_resolver, saved_rule, monkeypatch):
    rule = saved_rule()
    stub_resolver.value = 50.0

    def fail(fields):
        raise RuntimeError("history write failed")
    monkeypatch.setattr(temp_db, "_insert_history_row", fail)

    first = engine.evaluate_all_rules()[0]
    assert first.triggered is False
    assert first.reason == "Evaluation error: history write failed"
    assert _alerts(temp_db, rule) == []

    monkeypatch.undo()
    second = engine.evaluate_all_rules()[0]
    assert second.triggered is True
    alerts = _alerts(temp_db, rule)
    assert len(alerts) == 1
    assert [h.event_type for h in temp_db.get_alert_history(alerts[0].id)] == ["created"]


def test_rules_processed_in_batches(temp_db, stub_resolver, clock, saved_rule):
    for i in range(5):
        saved_rule(id=f"rule-{i}", name=f"Rule {i}")
    stub_resolver.value = 1.0
    engine = AlertTriggerEngine(temp_db, stub_resolver, config={"max_concurrent_evaluations": 2}, clock=clock)

    results = engine.evaluate_all_rules()

    assert sorted(r.rule_id for r in results) == [f"rule-{i}" for i in range(5)]
    assert engine.get_statistics().rules_evaluated == 5


def test_overlapping_tick_is_skipped(temp_db, clock, saved_rule):
    entered = threading.Event()
    release = threading.Event()

    class BlockingResolver:
        def resolve(self, rule):
            entered.set()
            release.wait(5)
            return None

    saved_rule()
    engine = AlertTriggerEngine(temp_db, BlockingResolver(), clock=clock)
    worker = threading.Thread(target=engine.evaluate_all_rules)
    worker.start()
    try:
        assert entered.wait(5)
        assert engine.evaluate_all_rules(wait=False) == []
    finally:
        release.set()
        worker.join(5)

    assert engine.get_statistics().rules_evaluated == 1


def test_rule_store_failure_ends_cycle(engine, temp_db, monkeypatch):
    def fail(team_id=None):
        raise RuntimeError("no such table")
    monkeypatch.setattr(temp_db, "get_alert_rules", fail)

    assert engine.evaluate_all_rules() == []
    assert engine.get_statistics().evaluation_errors == 1


def test_statistics(engine, stub_resolver, clock, saved_rule):
    stats = engine.get_statistics()
    assert stats.last_evaluation_time is None
    assert stats.rules_evaluated == 0

    saved_rule()
    stub_resolver.value = 50.0
    engine.evaluate_all_rules()

    stats = engine.get_statistics()
    assert stats.rules_evaluated == 1
    assert stats.alerts_triggered == 1
    assert stats.last_evaluation_time == clock()
    assert stats.average_evaluation_time >= 0
    assert stats.to_dict()["last_evaluation_time"].startswith("2026-01-15T12:00:00")


def test_force_rule_evaluation(engine, stub_resolver, saved_rule):
    saved_rule(id="known")
    saved_rule(id="disabled", enabled=False)
    stub_resolver.value = 50.0

    assert engine.force_rule_evaluation("missing") is None
    assert engine.force_rule_evaluation("known").triggered is True
    assert engine.force_rule_evaluation("disabled").reason == "Rule is disabled"
    assert "disabled" not in stub_resolver.calls


def test_force_evaluation_returns_results(engine, stub_resolver, saved_rule):
    saved_rule()
    stub_resolver.value = 50.0
    results = engine.force_evaluation()
    assert len(results) == 1
    assert results[0].triggered is True


def test_test_rule_is_dry_run(engine, temp_db, stub_resolver, make_rule):
    rule = make_rule(consecutive_failures_required=3)
    stub_resolver.value = 50.0

    outcome = engine.test_rule(rule)

    assert outcome["would_trigger"] is True
    assert outcome["simulated_alert"]["title"] == "High error rate - Threshold > 5"
    assert temp_db.query_alerts() == []
    assert temp_db.get_failure_count(rule.id) == 0


def test_test_rule_without_breach(engine, stub_resolver, make_rule):
    stub_resolver.value = 1.0
    outcome = engine.test_rule(make_rule())
    assert outcome["would_trigger"] is False
    assert outcome["simulated_alert"] is None


def test_start_evaluates_immediately_and_stop(temp_db, stub_resolver, clock, saved_rule):
    saved_rule()
    stub_resolver.value = 1.0
    engine = AlertTriggerEngine(temp_db, stub_resolver, config={"tick_seconds": 0.05}, clock=clock)

    engine.start()
    try:
        assert engine.is_running
        assert engine.get_statistics().rules_evaluated == 1
        assert engine.get_status()["is_running"] is True
    finally:
        engine.stop()

    assert engine.is_running is False
    assert engine.get_statistics().uptime == 0.0


def test_health_check(engine, temp_db, monkeypatch):
    assert engine.perform_health_check()["healthy"] is True

    def fail():
        raise RuntimeError("database is locked")
    monkeypatch.setattr(temp_db, "ping", fail)
    assert engine.perform_health_check()["healthy"] is False
