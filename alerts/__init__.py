"""Alert rule evaluation."""
from alerts.conditions import evaluate_condition
from alerts.resolver import MetricResolver
from alerts.guards import RuleGuard
from alerts.engine import AlertTriggerEngine
from alerts.rules_manager import RulesManager, RuleValidationError, validate_rule
