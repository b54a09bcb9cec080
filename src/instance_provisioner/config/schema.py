"""Configuration model for the provisioning core."""

from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Annotated, Any

from pydantic import BeforeValidator, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from instance_provisioner.core.provider import DatabaseServer  # noqa: TC001  Pydantic needs this at runtime


def _none_to_list(v: Any) -> Any:
    return v if v is not None else []


def _check_fragment(fragment: str) -> str:
    path = PurePosixPath(fragment)
    if not fragment.strip() or path.is_absolute() or ".." in path.parts:
        raise ValueError(f"path fragment must be relative and inside the storage tree: {fragment!r}")
    return fragment


_Fragments = Annotated[list[str], BeforeValidator(_none_to_list)]


class ProvisioningSettings(BaseSettings):
    """Provisioning settings.

    Fields can be set via YAML (constructor kwargs) or environment variables
    with the ``PROVISIONING_`` prefix. Constructor kwargs take precedence.

    ``secret`` (the installation secret mixed into generated credentials) and
    ``console_api_key`` are normally supplied through the environment or a
    ``.env`` file rather than YAML.
    """

    model_config = SettingsConfigDict(env_prefix="PROVISIONING_", extra="forbid")

    secret: str = ""
    console_api_key: str | None = None

    # Storage layout
    private_path_name: str = ".private"
    package_path_name: str = "packages"
    public_paths: _Fragments = []
    private_paths: _Fragments = []
    owner_private_paths: _Fragments = []
    work_path: Path | None = None
    legacy_storage_import: bool = False

    # Instance defaults
    dns_zone: str = ""
    dns_domain: str = ""
    base_image: str | None = None
    cache_timeout: float = 5.0

    # External tools
    dump_command: str = "mysqldump"
    client_command: str = "mysql"

    servers: Annotated[list[DatabaseServer], BeforeValidator(_none_to_list)] = []

    @field_validator("public_paths", "private_paths", "owner_private_paths")
    @classmethod
    def _relative_fragments(cls, v: list[str]) -> list[str]:
        return [_check_fragment(f) for f in v]

    @field_validator("private_path_name", "package_path_name")
    @classmethod
    def _single_segment(cls, v: str) -> str:
        if not v or "/" in v or v in (".", ".."):
            raise ValueError(f"must be a single directory name: {v!r}")
        return v

    @field_validator("servers")
    @classmethod
    def _unique_servers(cls, v: list[DatabaseServer]) -> list[DatabaseServer]:
        seen: set[str] = set()
        for server in v:
            if server.server_id in seen:
                raise ValueError(f"duplicate database server id: {server.server_id}")
            seen.add(server.server_id)
        return v

    def server_map(self) -> dict[str, DatabaseServer]:
        return {s.server_id: s for s in self.servers}
