"""
Layered configuration for the awqaf CLI and services.

Three layers are merged, later ones winning:

    built-in defaults  <  config file (YAML or JSON)  <  AWQAF_* environment

Nested keys in the environment are separated by a double underscore, so
``AWQAF_ENGINE__LEDGER__AMOUNT_TOLERANCE=0.1`` sets
``engine.ledger.amount_tolerance``. Values from the environment stay strings
until ``Config.validated()`` coerces them through the pydantic schema.

Usage:
    config = Config(config_file="awqaf.yaml")
    config.get("paths.store_dir")
    settings = config.validated().engine
"""

import json
import os
from collections.abc import Mapping
from typing import Any

import yaml
from pydantic import ValidationError

from .config_schema import AwqafConfig
from .exceptions import ConfigurationError

ENV_PREFIX = "AWQAF_"
DEFAULT_DATA_DIR = os.path.join("~", ".awqaf-data")


def default_settings(data_dir: str) -> dict[str, Any]:
    """Path layout under *data_dir*. Engine defaults live in the schema."""
    root = os.path.expanduser(data_dir)
    return {
        "paths": {
            "data_dir": root,
            "store_dir": os.path.join(root, "endowments"),
            "log_dir": os.path.join(root, "logs"),
        },
        "engine": {},
        "logging": {"level": "WARNING"},
    }


def read_config_file(path: str) -> dict[str, Any]:
    """Parse a YAML or JSON config file. Missing files and other extensions yield ``{}``."""
    if not os.path.exists(path):
        return {}
    ext = os.path.splitext(path)[1].lower()
    if ext not in (".yaml", ".yml", ".json"):
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f) if ext == ".json" else yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot parse config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def env_overrides(prefix: str, environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Nested dict built from ``PREFIX_A__B=value`` variables."""
    environ = os.environ if environ is None else environ
    result: dict[str, Any] = {}
    for name, value in environ.items():
        if not prefix or not name.startswith(prefix):
            continue
        *parents, leaf = name[len(prefix) :].lower().split("__")
        node = result
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value
    return result


def deep_merge(target: dict[str, Any], source: Mapping[str, Any]) -> dict[str, Any]:
    """Merge *source* into *target* in place; nested mappings merge, everything else replaces."""
    for key, value in source.items():
        if isinstance(value, Mapping) and isinstance(target.get(key), dict):
            deep_merge(target[key], value)
        else:
            target[key] = value
    return target


class Config:
    """Merged configuration with dot-path access and schema validation."""

    def __init__(
        self,
        config_file: str | None = None,
        env_prefix: str = ENV_PREFIX,
        data_dir: str | None = None,
        defaults: dict[str, Any] | None = None,
    ):
        """
        Args:
            config_file: YAML or JSON file; ignored if it does not exist.
            env_prefix: Prefix of overriding environment variables. Empty disables them.
            data_dir: Root of the path layout. Defaults to ~/.awqaf-data.
            defaults: Extra defaults merged under the file and environment.
        """
        self.config_file = config_file
        self.env_prefix = env_prefix or ""
        self.data: dict[str, Any] = default_settings(data_dir or DEFAULT_DATA_DIR)
        deep_merge(self.data, defaults or {})
        if config_file:
            deep_merge(self.data, read_config_file(config_file))
        deep_merge(self.data, env_overrides(self.env_prefix))

    def get(self, key_path: str, default: Any = None) -> Any:
        """Value at a dot path such as ``"engine.ledger.amount_tolerance"``, or *default*."""
        node: Any = self.data
        for part in key_path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key_path: str, value: Any) -> None:
        *parents, leaf = key_path.split(".")
        node = self.data
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value

    def ensure_directories(self) -> None:
        """Create every directory named under ``paths``."""
        for value in self.get("paths", {}).values():
            if isinstance(value, str):
                os.makedirs(os.path.expanduser(value), exist_ok=True)

    def validated(self) -> AwqafConfig:
        """Typed view of the merged data.

        Raises:
            ConfigurationError: a section fails validation.
        """
        try:
            return AwqafConfig.model_validate(self.data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e
