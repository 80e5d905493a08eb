"""Configuration management for spoolr.

``ConfigManager`` owns the YAML file at ``~/.spoolr/config.yaml``. Loading
layers the file, ``SPOOLR__`` environment variables and CLI overrides over the
model defaults through :func:`resolve_with_precedence`.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

import yaml

from .exceptions import ConfigError
from .models import (
    DeserializerKind,
    DeserializerSettings,
    LoggingSettings,
    SpoolrConfig,
    SpoolSettings,
    WatchSettings,
)
from .resolver import ENV_PREFIX, env_overrides_from, flatten_for_env, resolve_with_precedence

DEFAULT_CONFIG_PATH = Path("~/.spoolr/config.yaml")

_HEADER = (
    "# spoolr configuration file\n"
    "# Edit by hand or with `spoolr config set KEY --value VALUE`.\n"
    "# Environment variables named SPOOLR__SECTION__KEY override these values.\n"
)


class ConfigManager:
    """Read, write and resolve the spoolr configuration file."""

    def __init__(
        self,
        config_path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            config_path: Configuration file location; defaults to ``~/.spoolr/config.yaml``.
            env: Environment used for ``SPOOLR__`` overrides; defaults to ``os.environ``.
        """
        self._config_path = (config_path or DEFAULT_CONFIG_PATH).expanduser()
        self._env = env if env is not None else os.environ

    @property
    def config_path(self) -> Path:
        """Return the resolved configuration path."""
        return self._config_path

    def load(
        self,
        *,
        cli_overrides: Mapping[str, Any] | None = None,
        include_env: bool = True,
        ensure_file: bool = True,
        env_overrides: Mapping[str, str] | None = None,
    ) -> SpoolrConfig:
        """Resolve the effective configuration.

        Args:
            cli_overrides: Dotted-key overrides from the command line.
            include_env: Whether ``SPOOLR__`` variables are applied.
            ensure_file: Create the file with defaults when it is missing.
            env_overrides: Environment to read instead of the manager's own.

        Returns:
            SpoolrConfig: Validated configuration.

        Raises:
            ConfigError: If the file cannot be parsed or a value is invalid.
        """
        if ensure_file:
            self.ensure_exists()

        env_layer = None
        if include_env:
            env = env_overrides if env_overrides is not None else self._env
            env_layer = env_overrides_from(env)

        return resolve_with_precedence(
            defaults=SpoolrConfig(),
            file_overrides=self.load_file_overrides(),
            env_overrides=env_layer,
            cli_overrides=cli_overrides,
        )

    def save(self, config: SpoolrConfig | Mapping[str, Any]) -> None:
        """Write ``config`` to disk, replacing the current file."""
        if isinstance(config, SpoolrConfig):
            data = config.model_dump(mode="json")
        else:
            data = dict(config)
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        body = yaml.safe_dump(data, sort_keys=False)
        self._config_path.write_text(f"{_HEADER}# Last updated: {stamp}\n{body}", encoding="utf-8")

    def ensure_exists(self) -> Path:
        """Create the configuration file with defaults if it does not exist."""
        if not self._config_path.exists():
            self.save(SpoolrConfig())
        return self._config_path

    def read_text(self) -> str:
        """Return the raw file contents, or an empty string when absent."""
        if not self._config_path.exists():
            return ""
        return self._config_path.read_text(encoding="utf-8")

    def load_file_overrides(self) -> dict[str, Any]:
        """Return the mapping stored in the configuration file.

        Raises:
            ConfigError: If the file is not valid YAML or not a mapping.
        """
        text = self.read_text()
        try:
            raw = yaml.safe_load(text) if text else None
        except yaml.YAMLError as exc:
            raise ConfigError(f"Failed to parse {self._config_path}: {exc}", source="file") from exc

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ConfigError(
                f"{self._config_path} must contain a mapping at the top level.", source="file"
            )
        return raw


__all__ = [
    "ConfigManager",
    "DEFAULT_CONFIG_PATH",
    "ENV_PREFIX",
    "SpoolrConfig",
    "SpoolSettings",
    "DeserializerSettings",
    "DeserializerKind",
    "LoggingSettings",
    "WatchSettings",
    "resolve_with_precedence",
    "env_overrides_from",
    "flatten_for_env",
    "ConfigError",
]
