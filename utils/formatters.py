"""Time and display helpers shared by the engine, store, and CLI."""
from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def to_iso(dt):
    """Serialize a datetime as a fixed-width UTC ISO string.

    Fixed width keeps lexical ordering in SQLite equal to time ordering.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value):
    if value is None:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_pct(value, decimals=1):
    """Format a 0-100 percentage."""
    if value is None:
        return "N/A"
    return f"{float(value):.{decimals}f}%"


def format_metric(value, unit=None):
    """Format a metric value with an optional unit: 80.0 + '%' -> '80.00%'."""
    if value is None:
        return "N/A"
    text = f"{float(value):,.2f}"
    if not unit:
        return text
    return f"{text}{unit}" if unit == "%" else f"{text} {unit}"


def format_timestamp(ts):
    """Format a datetime to human-readable string."""
    if ts is None:
        return "N/A"
    if isinstance(ts, str):
        ts = from_iso(ts)
    return ts.strftime("%Y-%m-%d %H:%M UTC")
