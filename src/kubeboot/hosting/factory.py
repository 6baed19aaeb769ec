# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/hosting/factory.py
from __future__ import annotations

from typing import Dict, Type

from ..config.models import ClusterDefinition
from ..errors import HostingError
from .base import HostingManager

# A simple global registry keyed by hosting environment.
_MANAGERS: Dict[str, Type[HostingManager]] = {}


def register_hosting_manager(environment: str):
    """Decorator to register a hosting manager class for an environment."""
    def _wrap(cls: Type[HostingManager]):
        cls.environment = environment
        _MANAGERS[environment] = cls
        return cls
    return _wrap


def has_hosting_manager(environment: str) -> bool:
    return environment in _MANAGERS


def get_hosting_manager(cluster: ClusterDefinition) -> HostingManager:
    """Instantiate and validate the manager for ``cluster.hosting.environment``."""
    # importing registers the built-in managers
    from . import bare_metal  # noqa: F401

    environment = cluster.hosting.environment
    cls = _MANAGERS.get(environment)
    if cls is None:
        known = ", ".join(sorted(_MANAGERS)) or "none"
        raise HostingError(f"no hosting manager for environment '{environment}' (known: {known})")

    manager = cls(cluster)
    manager.validate(cluster)
    return manager
