# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/config/loader.py

import logging
import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from k3forge.errors import ConfigError
from .models import ClusterSpec

log = logging.getLogger("k3forge")


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

    1. K3FORGE_SECRETS_FILE environment variable (explicit override)
    2. secrets.yaml in the same directory as the cluster config
    """
    env = os.environ.get("K3FORGE_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("K3FORGE_SECRETS_FILE=%s does not exist, skipping", env)
        return None

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
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def _problems(exc: ValidationError) -> list[str]:
    out: list[str] = []
    for err in exc.errors():
        msg = str(err.get("msg", ""))
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        # model-level checks report several problems joined by "; "
        for part in msg.split("; "):
            out.append(f"{loc}: {part}" if loc else part)
    return out


def parse_config(data: dict, *, source: str = "<config>") -> ClusterSpec:
    try:
        spec = ClusterSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"{source}: configuration is invalid", _problems(e)) from e

    for warning in spec.warnings():
        log.warning("config: %s", warning)
    return spec


def load_config(path: str | Path) -> ClusterSpec:
    """
    Load and validate a k3forge cluster YAML file.

    Secrets are injected via two methods (both can be used together):

    **Method 1: secrets.yaml file**
        A ``secrets.yaml`` whose structure mirrors the cluster config is
        deep-merged into the config dict before validation.  Discovery order:
          1. ``K3FORGE_SECRETS_FILE`` env var → explicit path
          2. ``secrets.yaml`` next to the cluster config file

    **Method 2: environment variables**
        Use ``${ENV_VAR}`` placeholders directly inside the config (or
        secrets.yaml).  ``os.path.expandvars`` resolves them at load time.
        ``hetzner_token`` falls back to ``$HCLOUD_TOKEN`` when unset.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"configuration file not found: {path}")
    try:
        data = _load_yaml(path)
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: failed to parse YAML: {e}") from e

    secrets_path = _find_secrets_file(path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        secrets = _load_yaml(secrets_path)
        _deep_merge(data, secrets)
    else:
        log.debug("No secrets.yaml found, proceeding without secrets merge")

    return parse_config(data, source=str(path))


def check_cloud_access(spec: ClusterSpec, *, need_ssh: bool = True) -> None:
    """Preflight for commands that talk to the cloud and, with need_ssh, to the nodes."""
    problems = []
    if not spec.hetzner_token:
        problems.append("hetzner_token is required (set it in the config or via HCLOUD_TOKEN)")
    ssh = spec.networking.ssh
    if need_ssh and not ssh.expanded_public_key_path.is_file():
        problems.append(f"SSH public key not found: {ssh.expanded_public_key_path}")
    if need_ssh and not ssh.use_agent and not ssh.expanded_private_key_path.is_file():
        problems.append(f"SSH private key not found: {ssh.expanded_private_key_path}")
    if problems:
        raise ConfigError("configuration is not usable", problems)
