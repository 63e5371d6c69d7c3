"""Tests for the metrics collector."""
import pytest
from datetime import timedelta

from monitor.collector import MetricsCollector, get_metric_unit
from monitor.health import SystemHealthService


@pytest.fixture
def collector(temp_db, clock):
    health = SystemHealthService(temp_db, clock=clock, cache_ttl=0)
    return MetricsCollector(temp_db, health, clock=clock)


@pytest.mark.parametrize("name,unit", [
    ("success_rate", "%"),
    ("notification_failure_rate", "%"),
    ("avg_duration", "ms"),
    ("database_response_time", "ms"),
    ("total_notifications", "count"),
    ("health_score", "score"),
    ("database_available", "value"),
])
def test_metric_units(name, unit):
    assert get_metric_unit(name) == unit


def test_collects_all_groups(collector):
    snapshots = collector.collect_all_metrics()
    sources = {s.source for s in snapshots}
    assert sources == {"embedding_metrics", "system_health", "notification_metrics", "database_metrics"}

    stats = collector.get_statistics()
    assert stats.total_snapshots == 4
    assert stats.collection_errors == 0
    assert len(stats.active_collectors) == 4


def test_empty_windows_use_neutral_values(collector):
    snapshots = {s.source: s for s in collector.collect_all_metrics()}
    assert snapshots["embedding_metrics"].metrics["success_rate"] == 100.0
    assert snapshots["embedding_metrics"].metrics["error_rate"] == 0.0
    assert snapshots["notification_metrics"].metrics["notification_success_rate"] == 100.0
    assert snapshots["notification_metrics"].metrics["total_notifications"] == 0


def test_embedding_group(collector, temp_db, clock):
    at = clock() - timedelta(minutes=10)
    temp_db.record_embedding_metric("team-a", "success", 100, api_calls_made=2, api_tokens_used=500, created_at=at)
    temp_db.record_embedding_metric("team-b", "failed", 300, api_calls_made=1, api_tokens_used=0, created_at=at)

    snapshots = {s.source: s for s in collector.collect_all_metrics()}
    metrics = snapshots["embedding_metrics"].metrics
    assert metrics["success_rate"] == 50.0
    assert metrics["avg_duration"] == 200.0
    assert metrics["total_api_calls"] == 3
    assert metrics["total_tokens_used"] == 500


def test_database_group_counts_open_alerts(collector, temp_db, clock, make_rule):
    temp_db.save_alert_rule(make_rule(id="a"))
    temp_db.save_alert_rule(make_rule(id="b", enabled=False))
    temp_db.insert_alert({"alert_rule_id": "a", "title": "t", "severity": "critical", "created_at": clock()})
    temp_db.insert_alert({"alert_rule_id": "a", "title": "t", "severity": "low",
                          "status": "resolved", "created_at": clock()})

    snapshots = {s.source: s for s in collector.collect_all_metrics()}
    metrics = snapshots["database_metrics"].metrics
    assert metrics["database_available"] == 1
    assert metrics["active_alerts_total"] == 1
    assert metrics["active_alerts_critical"] == 1
    assert metrics["active_alerts_low"] == 0
    assert metrics["total_alert_rules"] == 2
    assert metrics["enabled_alert_rules"] == 1


def test_metrics_are_persisted(collector, temp_db, clock):
    temp_db.record_notification("failed", created_at=clock())
    collector.collect_all_metrics()

    since = clock() - timedelta(minutes=1)
    assert temp_db.get_latest_performance_metric("notification_failure_rate", since) == 100.0
    row = temp_db.conn.execute(
        "SELECT metric_type, metric_unit FROM performance_metrics WHERE metric_name = 'health_score'"
    ).fetchone()
    assert row["metric_type"] == "system_health"
    assert row["metric_unit"] == "score"


def test_persistence_can_be_disabled(temp_db, clock):
    collector = MetricsCollector(temp_db, config={"enable_persistence": False}, clock=clock)
    collector.collect_all_metrics()
    count = temp_db.conn.execute("SELECT COUNT(*) AS c FROM performance_metrics").fetchone()["c"]
    assert count == 0


def test_failing_group_does_not_stop_others(temp_db, clock):
    collector = MetricsCollector(temp_db, health_service=None, clock=clock)
    snapshots = collector.collect_all_metrics()
    assert "system_health" not in {s.source for s in snapshots}
    assert len(snapshots) == 3
    assert collector.get_statistics().collection_errors == 1


def test_recent_metrics_sorted_and_windowed(collector, temp_db, clock):
    collector.collect_all_metrics()
    clock.advance(minutes=30)
    temp_db.record_notification("failed", created_at=clock())
    collector.collect_all_metrics()

    assert collector.get_recent_metrics("notification_metrics", "notification_failure_rate") == [0.0, 100.0]
    assert collector.get_recent_metrics("notification_metrics", "notification_failure_rate", 10) == [100.0]
    assert collector.get_recent_metrics("notification_metrics", "missing") == []


def test_snapshot_buffer_is_bounded(temp_db, clock):
    collector = MetricsCollector(temp_db, config={"max_snapshots": 5, "enable_persistence": False}, clock=clock)
    collector.collect_all_metrics()
    collector.collect_all_metrics()
    assert collector.get_status()["snapshots_in_memory"] == 5


def test_force_collection_and_status(collector):
    assert collector.get_status() == {"is_running": False, "snapshots_in_memory": 0}
    collector.force_collection()
    assert collector.get_statistics().last_collection_time is not None


def test_start_collects_immediately(temp_db, clock):
    collector = MetricsCollector(temp_db, config={"tick_seconds": 0.05}, clock=clock)
    collector.start()
    try:
        assert collector.is_running
        assert collector.get_statistics().total_snapshots == 3
    finally:
        collector.stop()
    assert not collector.is_running
