"""Threshold comparison for alert rules."""
import logging

logger = logging.getLogger("alertengine.alerts.conditions")

# Tolerance used by "=" and "!=" on floating point metrics
EQUALITY_EPSILON = 0.001

OPERATOR_MAP = {
    ">": lambda v, t: v > t,
    "<": lambda v, t: v < t,
    ">=": lambda v, t: v >= t,
    "<=": lambda v, t: v <= t,
    "=": lambda v, t: abs(v - t) < EQUALITY_EPSILON,
    "!=": lambda v, t: abs(v - t) >= EQUALITY_EPSILON,
}


def evaluate_condition(value: float, threshold: float, operator: str) -> bool:
    """True when `value <operator> threshold` holds. Unknown operators never match."""
    func = OPERATOR_MAP.get(operator)
    if func is None:
        logger.warning(f"Unknown threshold operator: {operator!r}")
        return False
    return func(value, threshold)
