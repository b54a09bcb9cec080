"""Default provisioner registry factory."""

from __future__ import annotations

from typing import TYPE_CHECKING

from instance_provisioner.core.instance import GuestLocation
from instance_provisioner.core.provider import ConnectionProvider
from instance_provisioner.engine.credentials import CredentialGenerator
from instance_provisioner.engine.database import DatabaseProvisioner
from instance_provisioner.engine.registry import ProvisionerRegistry
from instance_provisioner.engine.storage import StorageProvisioner

if TYPE_CHECKING:
    from instance_provisioner.config.schema import ProvisioningSettings
    from instance_provisioner.core.ports import InstanceRegistry, NotificationSink
    from instance_provisioner.core.provider import EngineFactory
    from instance_provisioner.engine.process import ProcessRunner


def default_registry(
    settings: ProvisioningSettings,
    *,
    registry: InstanceRegistry,
    notifier: NotificationSink | None = None,
    engine_factory: EngineFactory | None = None,
    runner: ProcessRunner | None = None,
) -> ProvisionerRegistry:
    """Create a fresh registry with the built-in provisioners for each location."""
    provisioners = ProvisionerRegistry()

    common = {"notifier": notifier, "work_root": settings.work_path}

    storage = StorageProvisioner(
        private_path_name=settings.private_path_name,
        package_path_name=settings.package_path_name,
        public_paths=settings.public_paths,
        private_paths=settings.private_paths,
        owner_private_paths=settings.owner_private_paths,
        legacy_import=settings.legacy_storage_import,
        **common,
    )
    database = DatabaseProvisioner(
        ConnectionProvider(settings.server_map(), engine_factory=engine_factory),
        CredentialGenerator(registry, secret=settings.secret),
        runner=runner,
        dump_command=settings.dump_command,
        client_command=settings.client_command,
        **common,
    )
    provisioners.register(GuestLocation.DFE_CLUSTER, storage=storage, database=database)

    return provisioners
