"""Metric collection, health checks, and background timers."""
