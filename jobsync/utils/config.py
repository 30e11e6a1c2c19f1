"""
Configuration loader for JobSync.

Behavior:
- Looks for a config path given explicitly, then in env var `JOBSYNC_CONFIG`,
  then `~/.jobsync/config.json`.
- User values are deep-merged over `_DEFAULT_CONFIG` and validated against
  `jobsync/json_schema/config.schema.json`.
- If nothing valid is found, the defaults are used.
"""

import copy
import json
import os
from functools import lru_cache
from typing import Any, Dict, Iterator, Optional

import jsonschema

from .logger import logger

_DATA_DIR = os.path.join(os.path.expanduser("~"), ".jobsync")

_DEFAULT_CONFIG: Dict[str, Any] = {
    "data_dir": _DATA_DIR,
    "database": os.path.join(_DATA_DIR, "jobsync.db"),
    "log_level": "INFO",
    "provider": "ollama",
    "providers": {
        "ollama": {
            "base_url": "http://localhost:11434",
            "model": "llama3",
            "timeout": 30,
        },
        "openai": {
            "base_url": "https://api.openai.com/v1",
            "model": "gpt-4o-mini",
            "timeout": 30,
        },
    },
    "confidence": {
        "bands": [
            {"name": "very_low", "lower": 0.0, "upper": 0.3},
            {"name": "low", "lower": 0.3, "upper": 0.5},
            {"name": "medium", "lower": 0.5, "upper": 0.7},
            {"name": "high", "lower": 0.7, "upper": 0.9},
            {"name": "very_high", "lower": 0.9, "upper": 1.0},
        ],
        "needs_review": 0.7,
        "auto_approve": 0.9,
    },
    "review": {
        "retention_days": {"very_uncertain": 30, "uncertain": 14, "certain": 7},
        "expiring_soon_hours": 48,
        "snippet_length": 2000,
    },
    "circuit_breaker": {
        "max_failures": 3,
        "cooldown_seconds": 30.0,
        "max_cooldown_seconds": 300.0,
    },
    "prompt": {
        "context_size": 2048,
        "max_template_fraction": 0.6,
        "warning_fraction": 0.45,
        "reserved_output_tokens": 128,
        "chars_per_token": 4,
        "prompt_file": os.path.join(_DATA_DIR, "prompt.txt"),
    },
    "deep_classifier": {
        "deep_confidence": 0.95,
        "partial_confidence": 0.75,
        "temperature": 0.0,
        "cache_ttl_seconds": 86400,
        "cache_max_entries": 1000,
    },
    "sync": {
        "batch_size": 25,
        "max_workers": 4,
        "default_days": 90,
        "max_emails": 500,
        "page_size": 50,
        "fetch_retries": 3,
        "retry_base_delay": 0.5,
        "match_window_days": 90,
    },
    "imap": {
        "host": "imap.gmail.com",
        "port": 993,
        "folder": "INBOX",
        "timeout": 30,
    },
    "fast_classifier": {
        "model_file": os.path.join(_DATA_DIR, "fast_model.joblib"),
        "min_samples": 10,
        "retrain_every": 25,
    },
    "feedback": {
        "data_file": os.path.join(_DATA_DIR, "feedback.json"),
        "max_entries": 10000,
    },
}

_SCHEMA_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), "json_schema", "config.schema.json")

_config_cache: Dict[str, Any] = {}


def default_config() -> Dict[str, Any]:
    """Return a fresh copy of the built-in defaults."""
    return copy.deepcopy(_DEFAULT_CONFIG)


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge `override` into a copy of `base`. Lists are replaced, not merged."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_config(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


@lru_cache(maxsize=1)
def _schema() -> Dict[str, Any]:
    with open(_SCHEMA_PATH, encoding="utf-8") as f:
        return json.load(f)


def validate_config(cfg: Dict[str, Any]) -> None:
    """
    Raises:
        ValueError: `cfg` is not a mapping
        jsonschema.ValidationError: `cfg` breaks config.schema.json
    """
    if not isinstance(cfg, dict):
        raise ValueError("Configuration must be a JSON object")
    jsonschema.validate(instance=cfg, schema=_schema())


def _candidate_paths(path: Optional[str]) -> Iterator[str]:
    """Explicit path, then $JOBSYNC_CONFIG, then ~/.jobsync/config.json."""
    for candidate in (path, os.environ.get("JOBSYNC_CONFIG"), os.path.join(_DATA_DIR, "config.json")):
        if candidate:
            yield os.path.abspath(os.path.expanduser(candidate))


def _read_user_config(path: str) -> Optional[Dict[str, Any]]:
    """Merged and validated config from `path`, or None if it is unusable."""
    try:
        with open(path, encoding="utf-8") as f:
            user_cfg = json.load(f)
        cfg = merge_config(_DEFAULT_CONFIG, user_cfg)
        validate_config(cfg)
    except json.JSONDecodeError as e:
        logger.error(f"Config file {path} is not valid JSON: {e}")
        return None
    except (OSError, ValueError, AttributeError, jsonschema.ValidationError) as e:
        # AttributeError: top level is a list or scalar, merge_config needs a mapping
        logger.warning(f"Ignoring config file {path}: {e}")
        return None
    return cfg


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    First usable file among the candidate paths, merged over the defaults.

    The result is cached for calls without an explicit `path`. When no
    candidate is usable the defaults are returned, so this never fails.
    """
    global _config_cache
    if _config_cache and path is None:
        return _config_cache

    for candidate in _candidate_paths(path):
        if not os.path.exists(candidate):
            continue
        cfg = _read_user_config(candidate)
        if cfg is not None:
            logger.info(f"Configuration loaded from {candidate}")
            _config_cache = cfg
            return cfg

    logger.warning(f"No usable config file; running on defaults (see {_DATA_DIR}/config.json)")
    _config_cache = default_config()
    return _config_cache


def reset_config_cache() -> None:
    """Forget the cached configuration (mainly for testing)."""
    global _config_cache
    _config_cache = {}


if __name__ == "__main__":
    print(json.dumps(load_config(), indent=2))
