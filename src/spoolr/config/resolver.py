"""Layered configuration resolution.

Settings come from four layers applied in order: model defaults, the YAML
file, ``SPOOLR__SECTION__KEY`` environment variables and dotted CLI overrides.
Each layer is validated as soon as it is merged so an error names the layer
that introduced it.
"""

from __future__ import annotations

from collections.abc import Mapping
from copy import deepcopy
from typing import Any

import yaml
from pydantic import ValidationError

from .exceptions import ConfigError
from .models import SpoolrConfig

ENV_PREFIX = "SPOOLR__"


def resolve_with_precedence(
    *,
    defaults: SpoolrConfig,
    file_overrides: Mapping[str, Any] | None = None,
    env_overrides: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> SpoolrConfig:
    """Apply override layers on top of ``defaults``.

    Keys in any layer may be nested mappings or dotted paths such as
    ``spool.completed_suffix``.

    Args:
        defaults: Baseline configuration.
        file_overrides: Values read from the configuration file.
        env_overrides: Values parsed from environment variables.
        cli_overrides: Values supplied on the command line.

    Returns:
        SpoolrConfig: The validated, merged configuration.

    Raises:
        ConfigError: If a layer is malformed or produces invalid values.
    """
    merged = defaults.model_dump(mode="python")
    config = defaults

    layers = (("file", file_overrides), ("environment", env_overrides), ("cli", cli_overrides))
    for source, layer in layers:
        if not layer:
            continue
        merged = merge_overrides(merged, expand_dotted(layer, source=source))
        try:
            config = SpoolrConfig.model_validate(merged)
        except ValidationError as exc:
            raise ConfigError(
                f"Invalid configuration values from {source} overrides: {exc}", source=source
            ) from exc
    return config


def env_overrides_from(env: Mapping[str, str], *, prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """Collect ``SPOOLR__SECTION__KEY`` variables into a nested mapping.

    Values are parsed as YAML scalars so ``true``, ``10`` and ``null`` arrive
    typed; anything YAML rejects is kept as the raw string.

    Args:
        env: Environment mapping to scan.
        prefix: Variable prefix marking spoolr settings.

    Returns:
        dict[str, Any]: Nested overrides keyed by lower-cased section and field.
    """
    overrides: dict[str, Any] = {}
    for key, raw in env.items():
        if not key.startswith(prefix):
            continue
        segments = [part.lower() for part in key[len(prefix) :].split("__") if part]
        if not segments:
            continue
        try:
            value = yaml.safe_load(raw)
        except yaml.YAMLError:
            value = raw
        _set_path(overrides, segments, value, source="environment")
    return overrides


def flatten_for_env(config: SpoolrConfig, *, prefix: str = ENV_PREFIX) -> dict[str, str]:
    """Render ``config`` as the environment variables that would reproduce it."""
    flat: dict[str, str] = {}
    stack: list[tuple[list[str], Any]] = [([], config.model_dump(mode="json"))]
    while stack:
        path, value = stack.pop()
        if isinstance(value, dict):
            stack.extend((path + [str(key)], child) for key, child in value.items())
            continue
        if value is None:
            rendered = "null"
        elif isinstance(value, list):
            rendered = yaml.safe_dump(value, default_flow_style=True).strip()
        else:
            rendered = str(value)
        flat[prefix + "__".join(part.upper() for part in path)] = rendered
    return flat


def expand_dotted(overrides: Mapping[str, Any], *, source: str = "cli") -> dict[str, Any]:
    """Turn dotted keys into nested mappings.

    Raises:
        ConfigError: If ``overrides`` is not a mapping or two keys conflict.
    """
    if not isinstance(overrides, Mapping):
        raise ConfigError(f"{source.capitalize()} overrides must be a mapping.", source=source)

    result: dict[str, Any] = {}
    for key, value in overrides.items():
        if not isinstance(key, str):
            raise ConfigError(f"{source.capitalize()} override keys must be strings.", source=source)
        if isinstance(value, Mapping):
            value = expand_dotted(value, source=source)
        _set_path(result, key.split("."), value, source=source)
    return result


def merge_overrides(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``base`` deep-merged with ``overrides``; neither input is mutated."""
    merged = {key: deepcopy(value) for key, value in base.items()}
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_overrides(current, value)
        else:
            merged[key] = deepcopy(value)
    return merged


def _set_path(target: dict[str, Any], path: list[str], value: Any, *, source: str) -> None:
    node = target
    for segment in path[:-1]:
        child = node.setdefault(segment, {})
        if not isinstance(child, dict):
            raise ConfigError(
                f"{source.capitalize()} override for {'.'.join(path)} conflicts with "
                f"the scalar value at {segment!r}.",
                source=source,
            )
        node = child
    leaf = path[-1]
    existing = node.get(leaf)
    if isinstance(value, dict) and isinstance(existing, dict):
        node[leaf] = merge_overrides(existing, value)
    else:
        node[leaf] = value


__all__ = [
    "ENV_PREFIX",
    "resolve_with_precedence",
    "env_overrides_from",
    "flatten_for_env",
    "expand_dotted",
    "merge_overrides",
]
