"""Configuration loading and orchestrator wiring."""

from __future__ import annotations

from typing import TYPE_CHECKING

from instance_provisioner import configure_logging
from instance_provisioner.config.loader import ConfigError, load_config
from instance_provisioner.config.registry import default_registry
from instance_provisioner.config.schema import ProvisioningSettings
from instance_provisioner.core.ports import HttpCacheInvalidator
from instance_provisioner.engine.orchestrator import InstanceProvisioner

if TYPE_CHECKING:
    from pathlib import Path

    from instance_provisioner.core.ports import CacheInvalidator, InstanceRegistry, NotificationSink
    from instance_provisioner.core.provider import EngineFactory
    from instance_provisioner.engine.process import ProcessRunner

__all__ = [
    "ConfigError",
    "ProvisioningSettings",
    "build_provisioner",
    "default_registry",
    "load",
    "load_config",
]


def load(path: Path | str) -> ProvisioningSettings:
    """Load a YAML configuration file."""
    return load_config(path)


def build_provisioner(
    settings: ProvisioningSettings,
    *,
    registry: InstanceRegistry,
    notifier: NotificationSink | None = None,
    cache: CacheInvalidator | None = None,
    engine_factory: EngineFactory | None = None,
    runner: ProcessRunner | None = None,
) -> InstanceProvisioner:
    """Build an ``InstanceProvisioner`` wired from *settings*.

    The instance registry and notification sink are supplied by the host
    application; a cache invalidator over HTTP is used unless one is given.
    Logging to stderr is switched on when ``PROVISIONING_LOG`` names a level.
    """
    try:
        configure_logging()
    except ValueError as exc:
        raise ConfigError(f"PROVISIONING_LOG: {exc}") from exc
    if not settings.servers:
        raise ConfigError("At least one database server must be configured")

    provisioners = default_registry(
        settings,
        registry=registry,
        notifier=notifier,
        engine_factory=engine_factory,
        runner=runner,
    )
    return InstanceProvisioner(
        registry=registry,
        provisioners=provisioners,
        notifier=notifier,
        cache=cache or HttpCacheInvalidator(timeout=settings.cache_timeout),
        console_api_key=settings.console_api_key,
        dns_zone=settings.dns_zone,
        dns_domain=settings.dns_domain,
        base_image=settings.base_image,
    )
