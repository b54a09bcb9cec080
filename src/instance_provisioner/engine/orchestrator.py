"""Instance provisioning orchestrator: storage, then database, with rollback."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from instance_provisioner.core.instance import InstanceState, OperationalState, ProvisionState
from instance_provisioner.core.ports import LoggingNotificationSink
from instance_provisioner.engine.errors import ProvisioningError, SchemaExistsError
from instance_provisioner.engine.types import ProvisionResponse

if TYPE_CHECKING:
    from instance_provisioner.core.instance import Instance
    from instance_provisioner.core.ports import CacheInvalidator, InstanceRegistry, NotificationSink
    from instance_provisioner.engine.registry import ProvisionerRegistry, ProvisionerSet
    from instance_provisioner.engine.types import DatabaseConfig, ProvisionRequest, StorageLayout

logger = logging.getLogger(__name__)


def sanitize_instance_name(name: str) -> str:
    return name.strip().lower()


class InstanceProvisioner:
    """Sequences storage and database provisioning for an instance.

    Storage goes first on provision and last on teardown. Any failure while
    provisioning marks the instance ``PROVISIONING_ERROR`` and force-removes
    both resources; failures while deprovisioning mark it
    ``DEPROVISIONING_ERROR`` and are reported, not raised. This is the only
    component that persists the instance record.
    """

    def __init__(
        self,
        *,
        registry: InstanceRegistry,
        provisioners: ProvisionerRegistry,
        notifier: NotificationSink | None = None,
        cache: CacheInvalidator | None = None,
        console_api_key: str | None = None,
        dns_zone: str = "",
        dns_domain: str = "",
        base_image: str | None = None,
    ) -> None:
        self._registry = registry
        self._provisioners = provisioners
        self._notifier = notifier or LoggingNotificationSink()
        self._cache = cache
        self._console_api_key = console_api_key
        self._dns_zone = dns_zone
        self._dns_domain = dns_domain
        self._base_image = base_image

    def fully_qualified_domain_name(self, name: str) -> str:
        parts = (name, self._dns_zone, self._dns_domain)
        return ".".join(p.strip(". ") for p in parts if p.strip(". "))

    def _update_state(self, instance: Instance, state: ProvisionState) -> None:
        instance.state = state
        try:
            self._registry.save(instance)
        except Exception:
            logger.exception("Unable to persist state %s for %s", state.value, instance.instance_id)

    # Provision

    def provision(self, request: ProvisionRequest) -> ProvisionResponse:
        instance = request.instance
        self._update_state(instance, ProvisionState.PROVISIONING)

        provisioners: ProvisionerSet | None = None
        result: dict[str, Any] | None = None
        success = False
        database_applied = False
        try:
            provisioners = self._provisioners.get(instance.guest_location)
            layout = self._provision_storage(provisioners, request)
            self._provision_database(provisioners, request)
            database_applied = True
            result = self._provision_instance(request, layout)
            success = True
        except Exception as exc:
            logger.error('Provisioning instance "%s" failed: %s', instance.instance_id, exc)
            self._update_state(instance, ProvisionState.PROVISIONING_ERROR)

            request.forced = True
            if provisioners is not None:
                if isinstance(exc, SchemaExistsError):
                    logger.warning(
                        'Schema for "%s" existed before this attempt; keeping it', instance.instance_id
                    )
                self._rollback(provisioners, request, database=database_applied)

        return ProvisionResponse(
            success=success,
            request=request,
            result=result,
            payload={"instance": instance.model_dump(mode="json") if success else False},
        )

    def _provision_storage(self, provisioners: ProvisionerSet, request: ProvisionRequest) -> StorageLayout:
        logger.debug('Storage provisioning for "%s" begin', request.instance.instance_id)
        layout = provisioners.storage.provision(request)
        if layout is None:
            raise ProvisioningError("Error during storage provisioning.")
        return layout

    def _provision_database(self, provisioners: ProvisionerSet, request: ProvisionRequest) -> None:
        db_config = provisioners.database.provision(request)
        if db_config is None:
            raise ProvisioningError("Error during database provisioning.")
        # Record the schema right away so a rollback drops what was created.
        self._apply_database(request.instance, db_config)

    def _provision_instance(self, request: ProvisionRequest, layout: StorageLayout) -> dict[str, Any]:
        instance = request.instance
        name = sanitize_instance_name(instance.name)
        logger.debug('Instance "%s" provisioning begin', name)

        self._registry.create_app_key(instance, server_secret=self._console_api_key)

        now = datetime.now(UTC)
        instance.name = name
        instance.storage_path = layout.root
        instance.packages = list(request.packages)
        instance.public_host = self.fully_qualified_domain_name(name)
        instance.base_image = self._base_image
        instance.ready_state = InstanceState.ADMIN_REQUIRED
        instance.platform_state = OperationalState.NOT_ACTIVATED
        instance.state = ProvisionState.PROVISIONED
        instance.start_date = now
        instance.end_date = None
        instance.terminate_date = None
        instance.provisioned = True
        instance.deprovisioned = False

        try:
            self._registry.save(instance)
        except Exception as exc:
            raise ProvisioningError(f"Error updating instance data: {exc}") from exc

        metadata = instance.metadata()
        self._notifier.fire("instance.provisioned", metadata)
        logger.info('Instance "%s" provisioned', name)
        return metadata

    @staticmethod
    def _apply_database(instance: Instance, db_config: DatabaseConfig) -> None:
        instance.db_server_id = db_config.server_id
        instance.db_host = db_config.host
        instance.db_port = db_config.port
        instance.db_name = db_config.database
        instance.db_user = db_config.username
        instance.db_password = db_config.password.get_secret_value()

    def _rollback(
        self,
        provisioners: ProvisionerSet,
        request: ProvisionRequest,
        *,
        database: bool,
    ) -> None:
        """Undo a failed provision. The database is only dropped when this attempt created it."""
        instance = request.instance
        try:
            if not provisioners.storage.deprovision(request):
                logger.warning('Storage rollback for "%s" reported failure', instance.instance_id)
        except Exception:
            logger.exception('Storage rollback for "%s" failed', instance.instance_id)

        if not database:
            logger.debug('No database was provisioned for "%s"; skipping database rollback', instance.instance_id)
            return

        try:
            if not provisioners.database.deprovision(request):
                logger.error(
                    'Unable to remove database of "%s" after failed provision', instance.instance_id
                )
        except Exception:
            logger.exception('Database rollback for "%s" failed', instance.instance_id)

    # Deprovision

    def deprovision(
        self,
        request: ProvisionRequest,
        *,
        keep_database: bool | None = None,
    ) -> ProvisionResponse:
        instance = request.instance
        keep = request.keep_database if keep_database is None else keep_database
        original = instance.model_dump(mode="json")

        self._update_state(instance, ProvisionState.DEPROVISIONING)

        result = False
        success = False
        try:
            provisioners = self._provisioners.get(instance.guest_location)
            result = self._deprovision_instance(provisioners, request, keep_database=keep)
            success = True
        except Exception as exc:
            logger.error('Deprovisioning instance "%s" failed: %s', instance.instance_id, exc)
            self._update_state(instance, ProvisionState.DEPROVISIONING_ERROR)

        deleted = self._purge_deactivations(instance)

        return ProvisionResponse(
            success=success,
            request=request,
            result=result,
            payload={"instance": original if success else False, "deactivations": deleted},
        )

    def _deprovision_instance(
        self,
        provisioners: ProvisionerSet,
        request: ProvisionRequest,
        *,
        keep_database: bool,
    ) -> bool:
        instance = request.instance
        logger.debug('Instance "%s" deprovisioning begin', instance.instance_id)

        self._invalidate_cache(instance)

        if keep_database:
            logger.info('"keep-database" specified; keeping existing schema of "%s"', instance.instance_id)
        elif not provisioners.database.deprovision(request):
            raise ProvisioningError("Failed to deprovision database. Check logs for error.")

        if not provisioners.storage.deprovision(request):
            raise ProvisioningError("Failed to deprovision storage. Check logs for error.")

        instance.state = ProvisionState.DEPROVISIONED
        instance.provisioned = False
        instance.deprovisioned = True
        instance.end_date = datetime.now(UTC)
        if not self._registry.delete(instance):
            raise ProvisioningError("Instance row deletion failed.")

        self._notifier.fire("instance.deprovisioned", instance.metadata())
        logger.info('Instance "%s" deprovisioned', instance.instance_id)
        return True

    def _invalidate_cache(self, instance: Instance) -> None:
        if self._cache is None:
            return
        try:
            self._cache.invalidate(instance)
        except Exception as exc:
            logger.warning('Cache invalidation for "%s" failed: %s', instance.instance_id, exc)

    def _purge_deactivations(self, instance: Instance) -> bool:
        try:
            return self._registry.purge_deactivations(instance) != 0
        except Exception:
            logger.debug("Purging deactivations for %s failed", instance.instance_id, exc_info=True)
            return False

    # Snapshots

    def export_snapshot(self, request: ProvisionRequest) -> ProvisionResponse:
        """Export storage then database; result maps resource -> snapshot file name."""
        instance = request.instance
        result: dict[str, Any] = {}
        try:
            provisioners = self._provisioners.get(instance.guest_location)
            result["storage"] = provisioners.storage.export_snapshot(request)
            result["database"] = provisioners.database.export_snapshot(request)
        except Exception as exc:
            logger.error('Export of instance "%s" failed: %s', instance.instance_id, exc)
            return ProvisionResponse(success=False, request=request, result=result)

        success = all(v is not None for v in result.values())
        return ProvisionResponse(success=success, request=request, result=result)

    def import_snapshot(self, request: ProvisionRequest) -> ProvisionResponse:
        """Import storage then database from ``request.target``."""
        instance = request.instance
        result: dict[str, Any] = {}
        output: list[str] = []
        try:
            provisioners = self._provisioners.get(instance.guest_location)
            result["storage"] = provisioners.storage.import_snapshot(request)
            result["database"] = provisioners.database.import_snapshot(request)
        except Exception as exc:
            logger.error('Import into instance "%s" failed: %s', instance.instance_id, exc)
            return ProvisionResponse(success=False, request=request, result=result)

        if result["database"]:
            output.extend(result["database"])
        success = all(v is not None for v in result.values())
        return ProvisionResponse(success=success, request=request, result=result, output=output)
