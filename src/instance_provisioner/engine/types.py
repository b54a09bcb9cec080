"""Provisioning request/response envelopes and result payloads."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from instance_provisioner.core.filesystem import Filesystem
from instance_provisioner.core.instance import Instance


class Credentials(BaseModel):
    """Schema/user/password triple generated once per provisioning attempt."""

    model_config = ConfigDict(frozen=True)

    database: str
    username: str
    password: SecretStr


class DatabaseConfig(BaseModel):
    """Server settings merged with the generated credentials."""

    server_id: str
    host: str
    port: int | None = None
    driver: str
    database: str
    username: str
    password: SecretStr


class StorageLayout(BaseModel):
    """Paths computed while provisioning storage, relative to the storage mount."""

    root: str
    private: str
    owner_private: str
    package: str
    paths: list[str] = Field(default_factory=list)


class ProvisionRequest(BaseModel):
    """Single-use, caller-owned input envelope.

    Attributes:
        instance: Target instance (mutated in place)
        packages: Upload package files; rewritten to stored names by storage
        forced: Set when a failed provision is being rolled back
        clean: Wipe storage before an import
        keep_database: Leave the schema alone on deprovision
        keep_work: Keep the export work directory
        original_instance_id: Source instance when importing another instance's snapshot
        storage: Storage mount holding the instance root
        snapshot: Mount receiving exported snapshot files
        target: Snapshot archive to import from
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    instance: Instance
    packages: list[str] = Field(default_factory=list)
    forced: bool = False
    clean: bool = False
    keep_database: bool = False
    keep_work: bool = False
    original_instance_id: str | None = None
    storage: Filesystem | None = None
    snapshot: Filesystem | None = None
    target: Path | None = None

    def require_storage(self) -> Filesystem:
        if self.storage is None:
            raise ValueError("Request has no storage mount")
        return self.storage


class ProvisionResponse(BaseModel):
    """Outcome envelope returned by the orchestrator."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    request: ProvisionRequest
    result: Any = None
    payload: dict[str, Any] = Field(default_factory=dict)
    output: list[str] = Field(default_factory=list)
