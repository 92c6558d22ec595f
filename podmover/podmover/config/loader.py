"""Settings loader for podmover.

Settings are merged from, in increasing priority:
- built-in defaults (``MoverSettings``)
- an optional YAML config file (``kind: PodMoverConfig``)
- ``PODMOVER_*`` environment variables
- explicit overrides (CLI options)

Example config file::

    apiVersion: podmover.io/v1
    kind: PodMoverConfig
    spec:
      namespace: default
      schedulerName: turbo-none-exist-scheduler
      k8sVersion: "1.6"
      leaseTtl: 60
"""

import os
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from podmover.config.settings import MoverSettings, snake_to_camel
from podmover.config.validator import validate_config_file, validate_settings
from podmover.errors import ConfigurationError


ENV_PREFIX = "PODMOVER_"


def load_settings(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> MoverSettings:
    """Build validated settings.

    Args:
        path: Optional YAML config file.
        overrides: camelCase settings that win over everything else;
            ``None`` values are ignored.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        The merged MoverSettings.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ConfigurationError: If the file or the merged settings are invalid.
    """
    layers = [MoverSettings().to_dict()]

    if path:
        layers.append(load_config_file(path))

    layers.append(_settings_from_env(os.environ if environ is None else environ))

    if overrides:
        layers.append({k: v for k, v in overrides.items() if v is not None})

    merged = merge_configs(*layers)
    validate_settings(merged)
    return MoverSettings.from_dict(merged)


def load_config_file(path: str) -> Dict[str, Any]:
    """Load the ``spec`` section of a PodMoverConfig YAML file."""
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        document = yaml.safe_load(file_path.read_text())
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}")

    if not isinstance(document, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    validate_config_file(document)
    return document["spec"]


def _settings_from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Read ``PODMOVER_<FIELD>`` variables, coerced to the field types."""
    defaults = MoverSettings()
    result: Dict[str, Any] = {}

    for f in fields(MoverSettings):
        raw = environ.get(ENV_PREFIX + f.name.upper())
        if raw is None:
            continue

        default = getattr(defaults, f.name)
        try:
            if isinstance(default, bool):
                value: Any = raw.strip().lower() in ("1", "true", "yes")
            elif isinstance(default, int):
                value = int(raw)
            elif isinstance(default, float):
                value = float(raw)
            elif isinstance(default, list):
                value = [item.strip() for item in raw.split(",") if item.strip()]
            else:
                value = raw
        except ValueError:
            raise ConfigurationError(
                f"Invalid value for {ENV_PREFIX + f.name.upper()}: {raw!r}"
            )
        result[snake_to_camel(f.name)] = value

    return result


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge multiple configuration dictionaries.

    Later configs override earlier ones for conflicting keys.
    """
    result: Dict[str, Any] = {}
    for config in configs:
        result = _deep_merge(result, config)
    return result


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
