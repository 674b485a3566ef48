"""App settings stored in config.json (API credentials, reading, summaries)."""

import copy
import json
from pathlib import Path
from typing import Any

from reader_companion.models import ApiConfig

_EMPTY_API: dict[str, Any] = {"provider": "openai", "endpoint": "", "api_key": "", "model": ""}

_CONFIG_DEFAULTS: dict[str, Any] = {
    "chat_api": dict(_EMPTY_API),
    "summary_api": dict(_EMPTY_API),
    "summary_api_enabled": False,
    "reading": {"excerpt_chars": 800},
    "chat": {
        "memory_bubble_count": 100,
        "reply_bubble_min": 3,
        "reply_bubble_max": 8,
        "manual_preempts_proactive": False,
    },
    "auto_chat_summary": {"enabled": False, "threshold": 500},
    "auto_book_summary": {"enabled": False, "threshold": 5000},
    "underline": {"enabled": False, "probability": 0},
}

# Groups whose stored values are merged key by key rather than replaced.
_NESTED = ("chat_api", "summary_api", "reading", "chat", "auto_chat_summary",
           "auto_book_summary", "underline")


def config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def _merge(config: dict[str, Any], fields: dict[str, Any]) -> None:
    for key, value in fields.items():
        if key not in _CONFIG_DEFAULTS:
            continue
        if key in _NESTED:
            if isinstance(value, dict):
                config[key].update({k: v for k, v in value.items() if k in _CONFIG_DEFAULTS[key]})
        else:
            config[key] = value


def get_config(data_dir: Path) -> dict[str, Any]:
    """Read config, returning defaults merged with stored values."""
    config = copy.deepcopy(_CONFIG_DEFAULTS)
    path = config_path(data_dir)
    if path.is_file():
        _merge(config, json.loads(path.read_text()))
    return config


def update_config(data_dir: Path, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into config and persist. Returns full config."""
    config = get_config(data_dir)
    _merge(config, fields)
    config_path(data_dir).write_text(json.dumps(config, indent=2))
    return config


def chat_api(config: dict[str, Any]) -> ApiConfig:
    return ApiConfig.model_validate(config["chat_api"])


def summary_api(config: dict[str, Any]) -> ApiConfig:
    return ApiConfig.model_validate(config["summary_api"])
