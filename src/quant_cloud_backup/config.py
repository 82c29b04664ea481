from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping
import os

import yaml

DEFAULT_BASE_URL = "https://dashboard.quantcdn.io/api/v3"

INPUT_NAMES = (
    "api_key",
    "app_name",
    "organization",
    "environment_name",
    "operation",
    "backup_name",
    "backup_id",
    "older_than_days",
    "sort_order",
    "filter_status",
    "type",
    "wait",
    "wait_interval",
    "max_retries",
    "base_url",
)


class ConfigurationError(ValueError):
    """Raised when action inputs cannot be loaded."""


@dataclass(frozen=True)
class AppConfig:
    base_url: str = os.getenv("QCB_BASE_URL", DEFAULT_BASE_URL)
    http_timeout_seconds: float = float(os.getenv("QCB_HTTP_TIMEOUT_SECONDS", "30"))
    log_level: str = os.getenv("QCB_LOG_LEVEL", "INFO")
    log_format: str = os.getenv("QCB_LOG_FORMAT", "console")


def load_action_inputs(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    source = os.environ if environ is None else environ
    inputs: dict[str, str] = {}
    for name in INPUT_NAMES:
        # The runner exposes inputs as INPUT_<NAME>, spaces replaced by underscores.
        value = source.get(f"INPUT_{name.upper()}")
        if value is not None and value.strip():
            inputs[name] = value.strip()
    return inputs


def load_inputs_file(path: Path) -> dict[str, Any]:
    expanded = path.expanduser()
    if not expanded.is_file():
        raise ConfigurationError(f"Inputs file does not exist: {expanded}")

    try:
        parsed = yaml.safe_load(expanded.read_text(encoding="utf-8"))
    except yaml.YAMLError as error:
        raise ConfigurationError(f"Inputs file '{expanded}' must be valid YAML: {error.__class__.__name__}.") from error
    except OSError as error:
        raise ConfigurationError(f"Unable to read inputs file {expanded}: {error}") from error

    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ConfigurationError(f"Inputs file '{expanded}' must be a YAML mapping.")

    unknown = sorted(str(key) for key in parsed if key not in INPUT_NAMES)
    if unknown:
        raise ConfigurationError(f"Inputs file '{expanded}' has unknown input(s): {', '.join(unknown)}.")
    return {str(key): value for key, value in parsed.items() if value is not None}


def merge_inputs(*layers: Mapping[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for layer in layers:
        for name, value in layer.items():
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            merged[name] = value
    return merged
