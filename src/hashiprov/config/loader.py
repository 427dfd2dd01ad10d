# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/hashiprov/config/loader.py

import logging
import os
from pathlib import Path

import yaml

from .models import ProvisionConfig

log = logging.getLogger("hashiprov")

OVERRIDES_ENV = "HASHIPROV_OVERRIDES_FILE"
OVERRIDES_NAME = "hashiprov.local.yaml"


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


def _find_overrides_file(config_path: Path) -> Path | None:
    """
    Locate a host-local overrides file:

    1. HASHIPROV_OVERRIDES_FILE environment variable (explicit override)
    2. hashiprov.local.yaml in the same directory as the config
    """
    env = os.environ.get(OVERRIDES_ENV)
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("%s=%s does not exist, skipping", OVERRIDES_ENV, env)
        return None

    p = config_path.parent / OVERRIDES_NAME
    if p.is_file():
        return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    data = yaml.safe_load(expanded) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML value must be a mapping")
    return data


def load_config(path: str | Path | None = None) -> ProvisionConfig:
    """
    Load and validate a provisioning config.

    With no path the built-in defaults are used, which reproduce a single-node
    Consul server plus Vault with file storage.

    Values may reference ``${ENV_VAR}`` placeholders; they are expanded before
    parsing. A ``hashiprov.local.yaml`` next to the config (or the file named
    by ``HASHIPROV_OVERRIDES_FILE``) is deep-merged on top before validation,
    which keeps passwords and host addresses out of the shared config.
    """
    if path is None:
        return ProvisionConfig()

    path = Path(path)
    data = _load_yaml(path)

    overrides_path = _find_overrides_file(path)
    if overrides_path:
        log.debug("Merging overrides from %s", overrides_path)
        _deep_merge(data, _load_yaml(overrides_path))
    else:
        log.debug("No overrides file found")

    return ProvisionConfig.model_validate(data)
