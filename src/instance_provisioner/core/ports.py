"""Collaborator contracts consumed by the provisioners."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import requests

if TYPE_CHECKING:
    from instance_provisioner.core.instance import Instance

logger = logging.getLogger(__name__)


@runtime_checkable
class InstanceRegistry(Protocol):
    """Persistence of instance records and their bookkeeping rows."""

    def save(self, instance: Instance) -> None: ...

    def delete(self, instance: Instance) -> bool: ...

    def count_db_user(self, db_user: str) -> int: ...

    def create_app_key(self, instance: Instance, *, server_secret: str | None) -> None: ...

    def purge_deactivations(self, instance: Instance) -> int: ...


@runtime_checkable
class NotificationSink(Protocol):
    """Fire-and-forget lifecycle notifications."""

    def fire(self, name: str, payload: Mapping[str, Any]) -> None: ...


@runtime_checkable
class CacheInvalidator(Protocol):
    def invalidate(self, instance: Instance) -> None: ...


class LoggingNotificationSink:
    """Sink that only records notifications in the log."""

    def fire(self, name: str, payload: Mapping[str, Any]) -> None:
        logger.info("Notification %s: %s", name, dict(payload))


class HttpCacheInvalidator:
    """Asks the tenant's own service to drop its cache.

    Failures are logged and swallowed; teardown never waits on the tenant.
    """

    resource_uri = "/api/v2/system/cache"

    def __init__(self, *, scheme: str = "https", timeout: float = 5.0) -> None:
        self._scheme = scheme
        self._timeout = timeout

    def url_for(self, instance: Instance) -> str | None:
        if not instance.public_host:
            return None
        return f"{self._scheme}://{instance.public_host}{self.resource_uri}"

    def invalidate(self, instance: Instance) -> None:
        url = self.url_for(instance)
        if url is None:
            logger.debug("No public host for %s; skipping cache invalidation", instance.instance_id)
            return
        try:
            requests.delete(url, timeout=self._timeout)
        except requests.RequestException as exc:
            logger.warning("Cache invalidation for %s failed: %s", instance.instance_id, exc)
