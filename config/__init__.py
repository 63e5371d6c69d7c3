"""Configuration management."""
import os
import yaml
from pathlib import Path

_config = None
_DEFAULT_CONFIG = Path(__file__).parent / "default_config.yaml"

MIN_EVALUATION_INTERVAL = 10
MIN_COLLECTION_INTERVAL = 5
MIN_HEALTH_CHECK_INTERVAL = 30


def load_config(path=None):
    """Load config from YAML, merging defaults with optional overrides."""
    global _config

    with open(_DEFAULT_CONFIG) as f:
        config = yaml.safe_load(f)

    if path and Path(path).exists():
        with open(path) as f:
            overrides = yaml.safe_load(f) or {}
        config = _deep_merge(config, overrides)

    # Environment variable overrides
    env_map = {
        "ALERT_ENGINE_DB_PATH": ("database", "path"),
        "ALERT_ENGINE_LOG_LEVEL": ("logging", "level"),
        "ALERT_ENGINE_EVALUATION_INTERVAL": ("manager", "alert_evaluation_interval"),
        "ALERT_ENGINE_COLLECTION_INTERVAL": ("manager", "metrics_collection_interval"),
        "ALERT_ENGINE_RULES_PATH": ("rules", "path"),
    }
    for env_key, config_path in env_map.items():
        val = os.environ.get(env_key)
        if val:
            d = config
            for k in config_path[:-1]:
                d = d.setdefault(k, {})
            try:
                d[config_path[-1]] = int(val)
            except ValueError:
                d[config_path[-1]] = val

    _validate_config(config)
    _config = config
    return config


def get_config():
    """Return cached config, loading defaults if needed."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def _deep_merge(base, override):
    """Recursively merge override into base dict."""
    result = base.copy()
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _validate_config(config):
    """Basic config validation."""
    required_sections = ["database", "logging", "rules", "engine", "collector", "manager"]
    for section in required_sections:
        if section not in config:
            raise ValueError(f"Missing required config section: {section}")

    manager = config["manager"]
    if manager["alert_evaluation_interval"] < MIN_EVALUATION_INTERVAL:
        raise ValueError(f"alert_evaluation_interval must be >= {MIN_EVALUATION_INTERVAL} seconds")
    if manager["metrics_collection_interval"] < MIN_COLLECTION_INTERVAL:
        raise ValueError(f"metrics_collection_interval must be >= {MIN_COLLECTION_INTERVAL} seconds")
    if manager["health_check_interval"] < MIN_HEALTH_CHECK_INTERVAL:
        raise ValueError(f"health_check_interval must be >= {MIN_HEALTH_CHECK_INTERVAL} seconds")

    engine = config["engine"]
    if engine["max_concurrent_evaluations"] < 1:
        raise ValueError("max_concurrent_evaluations must be >= 1")
    if engine["evaluation_timeout"] <= 0:
        raise ValueError("evaluation_timeout must be > 0")
