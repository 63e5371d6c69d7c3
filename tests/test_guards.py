"""Tests for cooldown, failure counters, and the rate-limit window."""
from datetime import timedelta
from unittest.mock import MagicMock

from alerts.guards import RuleGuard


def _alert(db, rule, clock, status=None):
    fields = {
        "alert_rule_id": rule.id, "title": "t", "severity": rule.severity,
        "team_id": rule.team_id, "created_at": clock(),
    }
    if status:
        fields["status"] = status
    return db.insert_alert(fields)


def test_no_cooldown_without_alerts(temp_db, clock, make_rule):
    guard = RuleGuard(temp_db, clock)
    assert guard.in_cooldown(make_rule(cooldown_minutes=15)) is False


def test_cooldown_window(temp_db, clock, make_rule):
    guard = RuleGuard(temp_db, clock)
    rule = make_rule(cooldown_minutes=15)
    _alert(temp_db, rule, clock)

    clock.advance(minutes=14)
    assert guard.in_cooldown(rule) is True
    clock.advance(minutes=2)
    assert guard.in_cooldown(rule) is False


def test_cooldown_zero_never_applies(temp_db, clock, make_rule):
    guard = RuleGuard(temp_db, clock)
    rule = make_rule(cooldown_minutes=0)
    _alert(temp_db, rule, clock)
    assert guard.in_cooldown(rule) is False


def test_cooldown_store_error_is_not_cooldown(clock, make_rule):
    db = MagicMock()
    db.get_last_alert_time.side_effect = RuntimeError("disk I/O error")
    guard = RuleGuard(db, clock)
    assert guard.in_cooldown(make_rule(cooldown_minutes=15)) is False


def test_failure_counter(temp_db, clock, make_rule):
    guard = RuleGuard(temp_db, clock)
    rule = make_rule()
    assert guard.record_failure(rule) == 1
    assert guard.record_failure(rule) == 2
    guard.clear_failures(rule)
    assert temp_db.get_failure_count(rule.id) == 0
    assert guard.record_failure(rule) == 1


def test_failure_counters_are_per_rule(temp_db, clock, make_rule):
    guard = RuleGuard(temp_db, clock)
    a = make_rule(id="a")
    b = make_rule(id="b")
    guard.record_failure(a)
    guard.record_failure(a)
    assert guard.record_failure(b) == 1


def test_rate_limit_window_is_one_hour(temp_db, clock):
    guard = RuleGuard(temp_db, clock)
    assert guard.rate_limit_since() == clock() - timedelta(hours=1)
