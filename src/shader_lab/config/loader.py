from __future__ import annotations

import os
from dataclasses import fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from shader_lab.core.types import LabConfig

ENV_PREFIX = "SHADER_LAB_"

# Environment variable suffix -> LabConfig field
ENV_KEYS = {
    "SPECIALIZED_MODEL": "specialized_model_name",
    "DEFAULT_MODEL": "default_model_name",
    "USE_SPECIALIZED_MODEL": "use_specialized_model",
    "MAX_AUTO_ITERATIONS": "max_auto_iterations",
    "MAX_SCREENSHOTS": "max_screenshots",
    "SCREENSHOT_JITTER": "screenshot_jitter",
    "PER_IMAGE_BYTE_CAP": "per_image_byte_cap",
    "AGGREGATE_BYTE_CAP": "aggregate_byte_cap",
    "RENDERER": "renderer",
    "OUTPUT_DIR": "output_dir",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _coerce(name: str, value: Any, default: Any) -> Any:
    if value is None:
        return None
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"Invalid boolean for {name!r}: {value!r}")
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, Path) or name in ("reference_dir", "output_dir"):
        return Path(value)
    if isinstance(default, tuple):
        if isinstance(value, str):
            return tuple(v.strip() for v in value.split(",") if v.strip())
        return tuple(value)
    return str(value)


def _apply(values: dict[str, Any], updates: Mapping[str, Any], source: str) -> None:
    defaults = {f.name: getattr(LabConfig(), f.name) for f in fields(LabConfig)}
    for key, value in updates.items():
        if key not in defaults:
            raise ValueError(
                f"Unknown config key {key!r} in {source}. Available: {sorted(defaults)}"
            )
        values[key] = _coerce(key, value, defaults[key])


def build_lab_config(
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    **overrides: Any,
) -> LabConfig:
    """Layer defaults < YAML file < SHADER_LAB_* environment < explicit overrides.

    Overrides set to None are treated as unset.
    """
    values: dict[str, Any] = {}

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file {str(path)!r} not found")
        data = yaml.safe_load(path.read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {str(path)!r} must contain a mapping")
        _apply(values, data, str(path))

    env = os.environ if env is None else env
    from_env = {
        field_name: env[ENV_PREFIX + suffix]
        for suffix, field_name in ENV_KEYS.items()
        if ENV_PREFIX + suffix in env
    }
    _apply(values, from_env, "environment")

    _apply(values, {k: v for k, v in overrides.items() if v is not None}, "overrides")

    return LabConfig(**values)
