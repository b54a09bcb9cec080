"""Provisioner registry keyed by guest location."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from instance_provisioner.engine.errors import UnknownLocationError

if TYPE_CHECKING:
    from instance_provisioner.core.instance import GuestLocation
    from instance_provisioner.engine.database import DatabaseProvisioner
    from instance_provisioner.engine.storage import StorageProvisioner


@dataclass(frozen=True)
class ProvisionerSet:
    location: GuestLocation
    storage: StorageProvisioner
    database: DatabaseProvisioner


class ProvisionerRegistry:
    """Registry mapping guest location -> (storage, database) provisioners."""

    def __init__(self) -> None:
        self._registrations: dict[int, ProvisionerSet] = {}

    def register(
        self,
        location: GuestLocation,
        *,
        storage: StorageProvisioner,
        database: DatabaseProvisioner,
    ) -> None:
        if location in self._registrations:
            raise ValueError(f"Location already registered: {location!r}")

        self._registrations[location] = ProvisionerSet(
            location=location,
            storage=storage,
            database=database,
        )

    def get(self, location: GuestLocation | int) -> ProvisionerSet:
        try:
            return self._registrations[location]
        except KeyError as e:
            raise UnknownLocationError(int(location)) from e

    def locations(self) -> list[GuestLocation]:
        return [r.location for r in self._registrations.values()]
