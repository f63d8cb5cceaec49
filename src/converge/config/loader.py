# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/config/loader.py

import logging
import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from converge.errors import ConfigError
from .models import ConvergeConfig

log = logging.getLogger("converge")

DEFAULT_CONFIG = Path("cloud-config") / "cluster.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _find_secrets_file(config_path: Path) -> Path | None:
    """
    Locate secrets.yaml using this priority:

    1. CONVERGE_SECRETS_FILE environment variable (explicit override)
    2. cloud-config/secrets.yaml relative to workspace root
    3. secrets.yaml in the same directory as the cluster config
    """
    env = os.environ.get("CONVERGE_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("CONVERGE_SECRETS_FILE=%s does not exist, skipping", env)
        return None

    workspace = os.environ.get("WORKSPACE_ROOT")
    if workspace:
        p = Path(workspace) / "cloud-config" / "secrets.yaml"
        if p.is_file():
            return p

    p = config_path.parent / "secrets.yaml"
    if p.is_file():
        return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    data = yaml.safe_load(expanded) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top-level document must be a mapping")
    return data


def load_config(path: str | Path) -> ConvergeConfig:
    """
    Load and validate a cluster inventory + desired-state document.

    Secrets (Tailscale auth key, SSH passwords) can live in a separate
    ``secrets.yaml`` that mirrors the structure of the main file and is
    deep-merged before validation, or be referenced as ``${ENV_VAR}``
    placeholders which are expanded at load time.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"config file not found: {path}")

    data = _load_yaml(path)

    secrets_path = _find_secrets_file(path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        _deep_merge(data, _load_yaml(secrets_path))
    else:
        log.debug("No secrets.yaml found, proceeding without secrets merge")

    try:
        return ConvergeConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"{path}: {e}") from e
