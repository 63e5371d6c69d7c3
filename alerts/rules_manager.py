"""Alert rules loading, validation, and sync into the rule store."""
import logging
import yaml
from pathlib import Path

from alerts.resolver import MetricResolver
from models.alerts import AlertRule
from models.enums import MetricSource, ThresholdOperator, Severity

logger = logging.getLogger("alertengine.alerts.rules")

DEFAULT_RULES_PATH = Path(__file__).resolve().parent.parent / "config" / "alert_rules.yaml"

VALID_OPERATORS = {op.value for op in ThresholdOperator}
VALID_SEVERITIES = {s.value for s in Severity}
VALID_SOURCES = {s.value for s in MetricSource}


class RuleValidationError(ValueError):
    def __init__(self, rule_id, errors):
        self.rule_id = rule_id
        self.errors = errors
        super().__init__(f"Invalid alert rule {rule_id}: {'; '.join(errors)}")


def validate_rule(rule: AlertRule, resolver=None):
    """Check a rule before it is stored. Returns (errors, warnings)."""
    resolver = resolver or MetricResolver(None)
    errors = []
    warnings = []

    if not rule.id:
        errors.append("Rule id is required")
    if not rule.name:
        errors.append("Rule name is required")
    elif len(rule.name) > 255:
        errors.append("Rule name must be 255 characters or less")
    if not rule.team_id:
        errors.append("Team id is required")
    if not rule.metric_name:
        errors.append("Metric name is required")

    if rule.metric_source not in VALID_SOURCES:
        errors.append(f"Unknown metric source: {rule.metric_source}")
    elif rule.metric_name and not resolver.supports(rule.metric_source, rule.metric_name):
        errors.append(f"Unsupported metric {rule.metric_name} for source {rule.metric_source}")

    if rule.threshold_operator not in VALID_OPERATORS:
        errors.append(f"Unknown threshold operator: {rule.threshold_operator}")
    if rule.severity not in VALID_SEVERITIES:
        errors.append(f"Unknown severity: {rule.severity}")

    if rule.evaluation_window_minutes < 1:
        errors.append("Evaluation window must be at least 1 minute")
    elif rule.evaluation_window_minutes > 1440:
        warnings.append("Evaluation window longer than 24 hours may cause performance issues")

    if rule.consecutive_failures_required < 1:
        errors.append("Consecutive failures required must be at least 1")
    elif rule.consecutive_failures_required > 10:
        warnings.append("High consecutive failure requirements may delay alert detection")

    if rule.max_alerts_per_hour < 1:
        errors.append("Max alerts per hour must be at least 1")
    elif rule.max_alerts_per_hour > 100:
        warnings.append("High alert rate limits may cause notification spam")

    if rule.cooldown_minutes < 0:
        errors.append("Cooldown period cannot be negative")

    if rule.threshold_unit == "%" and not 0 <= rule.threshold_value <= 100:
        errors.append("Percentage values must be between 0 and 100")
    elif rule.threshold_value < 0:
        warnings.append("Negative threshold values may not be meaningful for most metrics")

    if rule.severity == Severity.CRITICAL.value:
        if rule.cooldown_minutes > 30:
            warnings.append("Critical alerts should have short cooldown periods (<=30 minutes)")
        if rule.consecutive_failures_required > 2:
            warnings.append("Critical alerts should trigger quickly (<=2 consecutive failures)")
    elif rule.severity == Severity.HIGH.value and rule.consecutive_failures_required > 3:
        warnings.append("High severity alerts should trigger relatively quickly (<=3 consecutive failures)")

    return errors, warnings


class RulesManager:
    def __init__(self, rules_path=None, resolver=None):
        self.rules_path = Path(rules_path) if rules_path else DEFAULT_RULES_PATH
        self.resolver = resolver or MetricResolver(None)
        self.rules = []
        self.load()

    def load(self):
        if not self.rules_path.exists():
            logger.warning(f"Alert rules file not found: {self.rules_path}")
            return
        with open(self.rules_path) as f:
            data = yaml.safe_load(f) or {}
        self.rules = self._parse_rules(data.get("rules", []))
        logger.info(f"Loaded {len(self.rules)} rules from {self.rules_path}")

    def _parse_rules(self, raw_rules):
        rules = []
        seen = set()
        for r in raw_rules:
            try:
                rule = AlertRule.from_dict(r)
            except (TypeError, ValueError) as e:
                logger.warning(f"Malformed rule {r.get('id')}: {e}")
                continue
            if rule.id in seen:
                logger.warning(f"Duplicate rule id {rule.id}, skipping")
                continue
            errors, warnings = validate_rule(rule, self.resolver)
            for w in warnings:
                logger.info(f"Rule {rule.id}: {w}")
            if errors:
                logger.warning(f"Invalid rule {rule.id}: {'; '.join(errors)}")
                continue
            seen.add(rule.id)
            rules.append(rule)
        return rules

    def add_rule(self, rule: AlertRule):
        """Validate and add a rule, replacing any loaded rule with the same id."""
        errors, warnings = validate_rule(rule, self.resolver)
        if errors:
            raise RuleValidationError(rule.id, errors)
        for w in warnings:
            logger.info(f"Rule {rule.id}: {w}")
        self.rules = [r for r in self.rules if r.id != rule.id] + [rule]
        return rule

    def get_enabled_rules(self):
        return [r for r in self.rules if r.enabled]

    def get_rule(self, rule_id):
        for r in self.rules:
            if r.id == rule_id:
                return r
        return None

    def get_all_rules(self):
        return self.rules

    def sync(self, db):
        """Upsert every loaded rule into the rule store. Returns the number written."""
        for rule in self.rules:
            db.save_alert_rule(rule)
        logger.info(f"Synced {len(self.rules)} rules into the store")
        return len(self.rules)
