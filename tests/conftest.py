"""Shared test fixtures."""
import os
import sys
import pytest
import tempfile
from datetime import datetime, timedelta, timezone

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.database import Database
from models.alerts import AlertRule


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class StubResolver:
    """Resolver returning a settable value, or a per-rule value/exception."""

    def __init__(self, value=None):
        self.value = value
        self.per_rule = {}
        self.calls = []

    def resolve(self, rule):
        self.calls.append(rule.id)
        if rule.id in self.per_rule:
            result = self.per_rule[rule.id]
            if isinstance(result, Exception):
                raise result
            return result
        return self.value


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    db = Database(db_path)
    db.connect()
    yield db
    db.close()
    os.unlink(db_path)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_rule():
    """Factory for alert rules with sensible defaults."""
    def _make(**overrides):
        fields = {
            "id": "rule-error-rate",
            "name": "High error rate",
            "enabled": True,
            "metric_source": "embedding_metrics",
            "metric_name": "error_rate",
            "threshold_value": 5.0,
            "threshold_operator": ">",
            "threshold_unit": "%",
            "evaluation_window_minutes": 5,
            "cooldown_minutes": 0,
            "consecutive_failures_required": 1,
            "max_alerts_per_hour": 10,
            "severity": "high",
            "team_id": "team-a",
        }
        fields.update(overrides)
        return AlertRule(**fields)
    return _make


@pytest.fixture
def saved_rule(temp_db, make_rule):
    """Factory that builds a rule and stores it."""
    def _save(**overrides):
        rule = make_rule(**overrides)
        temp_db.save_alert_rule(rule)
        return rule
    return _save


@pytest.fixture
def stub_resolver():
    return StubResolver()
