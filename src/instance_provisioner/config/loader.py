"""YAML configuration file loader."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import ValidationError
from ruamel.yaml import YAML

from instance_provisioner.config.schema import ProvisioningSettings

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised for configuration loading / validation errors."""


# Field name -> environment variable.
_SECRET_ENV_MAP: dict[str, str] = {
    "secret": "PROVISIONING_SECRET",
    "console_api_key": "PROVISIONING_CONSOLE_API_KEY",
}


def server_password_env(server_id: str) -> str:
    """Environment variable holding a database server's password."""
    return "PROVISIONING_DB_PASSWORD_" + re.sub(r"[^A-Z0-9]", "_", server_id.upper())


def _lookup(env_key: str, dotenv_vals: dict[str, str | None]) -> str | None:
    val = os.environ.get(env_key)
    if val is None:
        val = dotenv_vals.get(env_key)
    return val


def _resolve_secrets(raw: dict[str, Any], config_dir: Path) -> dict[str, Any]:
    """Fill secrets missing from YAML from env vars, then a ``.env`` file.

    Priority (highest wins): YAML value > env var > ``.env`` file.
    """
    env_file = config_dir / ".env"
    dotenv_vals = dotenv_values(env_file, encoding="utf-8-sig") if env_file.is_file() else {}

    resolved = dict(raw)
    for field, env_key in _SECRET_ENV_MAP.items():
        if resolved.get(field) is None:
            val = _lookup(env_key, dotenv_vals)
            if val is not None:
                resolved[field] = val

    servers = []
    for server in resolved.get("servers") or []:
        if isinstance(server, dict) and server.get("password") is None and "server_id" in server:
            val = _lookup(server_password_env(str(server["server_id"])), dotenv_vals)
            if val is not None:
                server = {**server, "password": val}
        servers.append(server)
    if servers:
        resolved["servers"] = servers

    return resolved


def load_config(path: Path | str) -> ProvisioningSettings:
    """Load a YAML configuration file and return validated settings.

    Raises:
        ConfigError: On YAML parse errors or validation failures.
    """
    path = Path(path)

    try:
        raw = YAML(typ="safe").load(path)
    except Exception as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")

    try:
        settings = ProvisioningSettings(**_resolve_secrets(raw, path.parent))
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc

    if settings.work_path is not None and not settings.work_path.is_absolute():
        settings.work_path = path.parent / settings.work_path

    logger.info("Loaded config from %s (%d database servers)", path, len(settings.servers))
    return settings
