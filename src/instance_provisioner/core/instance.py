"""Instance record and lifecycle enums."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, Field


class ProvisionState(str, Enum):
    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    PROVISIONING_ERROR = "provisioning-error"
    DEPROVISIONING = "deprovisioning"
    DEPROVISIONED = "deprovisioned"
    DEPROVISIONING_ERROR = "deprovisioning-error"

    @property
    def is_error(self) -> bool:
        return self in (ProvisionState.PROVISIONING_ERROR, ProvisionState.DEPROVISIONING_ERROR)


class GuestLocation(IntEnum):
    """Deployment zone class that selects the concrete provisioners."""

    DFE_CLUSTER = 2


class InstanceState(IntEnum):
    """Readiness of the tenant application after provisioning."""

    INIT_REQUIRED = 0
    ADMIN_REQUIRED = 1
    READY = 2


class OperationalState(IntEnum):
    NOT_ACTIVATED = 0
    ACTIVATED = 1


class Instance(BaseModel):
    """A tenant deployment unit.

    The record is owned by an external registry. Provisioners mutate it in
    memory; only the orchestrator asks the registry to persist it.

    Attributes:
        id: Registry primary key
        instance_id: Unique text identifier, also the storage root directory
        name: Display name, source of the database schema name
        state: Current provisioning state
        guest_location: Zone class selecting the provisioners
        db_server_id: Assigned database server (key into the server map)
        web_host: Host the tenant application connects from
        storage_zone: Storage zone label
        storage_path: Instance root path relative to the storage mount
    """

    id: int
    instance_id: str
    name: str
    state: ProvisionState | None = None
    guest_location: GuestLocation = GuestLocation.DFE_CLUSTER

    # Database descriptor
    db_server_id: str | None = None
    db_host: str | None = None
    db_port: int | None = None
    db_name: str | None = None
    db_user: str | None = None
    db_password: str | None = None

    # Storage descriptor
    web_host: str | None = None
    public_host: str | None = None
    base_image: str | None = None
    storage_zone: str | None = None
    storage_path: str | None = None

    packages: list[str] = Field(default_factory=list)

    ready_state: InstanceState = InstanceState.INIT_REQUIRED
    platform_state: OperationalState = OperationalState.NOT_ACTIVATED
    provisioned: bool = False
    deprovisioned: bool = False

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    start_date: datetime | None = None
    end_date: datetime | None = None
    terminate_date: datetime | None = None

    def metadata(self) -> dict[str, Any]:
        """Summary payload sent with instance-level notifications."""
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "name": self.name,
            "state": self.state.value if self.state is not None else None,
            "db": {
                "server_id": self.db_server_id,
                "host": self.db_host,
                "port": self.db_port,
                "name": self.db_name,
            },
            "storage": {"zone": self.storage_zone, "path": self.storage_path},
            "packages": list(self.packages),
        }
