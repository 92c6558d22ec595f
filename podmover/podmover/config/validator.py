"""Schema validation for podmover settings and config files."""

from typing import Any, Dict, List

import jsonschema

from podmover.errors import ConfigurationError


# Scheduler names that must never be used as the "non-existent" scheduler
RESERVED_SCHEDULER_NAMES = {"default-scheduler"}

_POSITIVE_NUMBER = {"type": "number", "exclusiveMinimum": 0}
_NON_NEGATIVE_NUMBER = {"type": "number", "minimum": 0}

# JSON Schema for the merged settings (camelCase keys)
SETTINGS_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "namespace": {"type": "string", "minLength": 1},
        "nodeName": {"type": "string"},
        "pods": {
            "type": "array",
            "items": {"type": "string", "minLength": 1},
        },
        "schedulerName": {"type": "string", "minLength": 1},
        "k8sVersion": {
            "type": "string",
            "pattern": "^v?\\d+(\\.\\d+)*$",
        },
        "leaseTtl": _POSITIVE_NUMBER,
        "reapInterval": _POSITIVE_NUMBER,
        "lockTimeout": _POSITIVE_NUMBER,
        "lockRetrySleep": _NON_NEGATIVE_NUMBER,
        "retryLess": {"type": "integer", "minimum": 1},
        "retryMore": {"type": "integer", "minimum": 1},
        "updateTimeout": _NON_NEGATIVE_NUMBER,
        "updateSleep": _NON_NEGATIVE_NUMBER,
        "checkSleep": _NON_NEGATIVE_NUMBER,
        "healthCheckDelay": _NON_NEGATIVE_NUMBER,
        "masterUrl": {"type": "string"},
        "kubeconfig": {"type": "string"},
        "logLevel": {
            "type": "string",
            "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        },
    },
    "additionalProperties": False,
}

# JSON Schema for a config file wrapping the settings
CONFIG_FILE_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["apiVersion", "kind", "spec"],
    "properties": {
        "apiVersion": {
            "type": "string",
            "pattern": "^podmover\\.io/v\\d+.*$"
        },
        "kind": {
            "type": "string",
            "enum": ["PodMoverConfig"]
        },
        "metadata": {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "description": {"type": "string"}
            }
        },
        "spec": {"type": "object"}
    }
}


def validate_config_file(document: Dict[str, Any]) -> bool:
    """Validate the envelope of a config file.

    Raises:
        ConfigurationError: If validation fails.
    """
    try:
        jsonschema.validate(instance=document, schema=CONFIG_FILE_SCHEMA)
    except jsonschema.ValidationError as e:
        raise ConfigurationError(f"Config file validation failed: {e.message}", [str(e)])
    return True


def validate_settings(settings: Dict[str, Any]) -> bool:
    """Validate merged settings against the schema.

    Args:
        settings: camelCase settings dictionary.

    Returns:
        True if validation passes.

    Raises:
        ConfigurationError: If validation fails.
    """
    try:
        jsonschema.validate(instance=settings, schema=SETTINGS_SCHEMA)
    except jsonschema.ValidationError as e:
        raise ConfigurationError(f"Settings validation failed: {e.message}", [str(e)])

    errors = _semantic_validation(settings)
    if errors:
        raise ConfigurationError("Semantic validation failed", errors)

    return True


def _semantic_validation(settings: Dict[str, Any]) -> List[str]:
    """Checks that relate several settings to each other."""
    errors = []

    scheduler = settings.get("schedulerName")
    if scheduler in RESERVED_SCHEDULER_NAMES:
        errors.append(
            f"schedulerName '{scheduler}' is a real scheduler; "
            "a non-existent scheduler name is required"
        )

    ttl = settings.get("leaseTtl")
    interval = settings.get("reapInterval")
    if ttl is not None and interval is not None and ttl <= interval:
        errors.append(
            f"leaseTtl ({ttl}) must be greater than reapInterval ({interval})"
        )

    retry_less = settings.get("retryLess")
    retry_more = settings.get("retryMore")
    if retry_less is not None and retry_more is not None and retry_more < retry_less:
        errors.append(
            f"retryMore ({retry_more}) must not be smaller than retryLess ({retry_less})"
        )

    return errors
