"""Utility modules for the alert engine."""
from utils.logger import setup_logging
from utils.formatters import utcnow, to_iso, from_iso, format_pct, format_metric, format_timestamp
from utils.cache import TTLCache
