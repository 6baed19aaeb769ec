# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/config/loader.py

import logging
import os
import yaml
from pathlib import Path

from pydantic import ValidationError

from ..errors import ConfigError
from .models import ClusterDefinition

log = logging.getLogger("kubeboot")


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

    1. KUBEBOOT_SECRETS_FILE environment variable (explicit override)
    2. secrets.yaml in the same directory as the cluster definition
    """
    env = os.environ.get("KUBEBOOT_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("KUBEBOOT_SECRETS_FILE=%s does not exist, skipping", env)
        return None

    p = config_path.parent / "secrets.yaml"
    if p.is_file() and p != config_path:
        return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    return yaml.safe_load(expanded) or {}


def load_cluster_definition(path: str | Path) -> ClusterDefinition:
    """
    Load and validate a cluster definition YAML.

    Secrets (for example ``setup.ssh_password``) may live in a separate
    ``secrets.yaml`` that mirrors the definition's structure; it is
    deep-merged before validation. ``${ENV_VAR}`` placeholders in either
    file are expanded at load time.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"cluster definition not found: {path}")

    try:
        data = _load_yaml(path)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e

    secrets_path = _find_secrets_file(path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        _deep_merge(data, _load_yaml(secrets_path))
    else:
        log.debug("No secrets.yaml found, proceeding without secrets merge")

    try:
        return ClusterDefinition.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid cluster definition {path}:\n{e}") from e
