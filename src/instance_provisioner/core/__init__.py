"""Core records, storage and collaborator contracts."""

from instance_provisioner.core.filesystem import Filesystem, LocalFilesystem
from instance_provisioner.core.instance import (
    GuestLocation,
    Instance,
    InstanceState,
    OperationalState,
    ProvisionState,
)
from instance_provisioner.core.ports import (
    CacheInvalidator,
    HttpCacheInvalidator,
    InstanceRegistry,
    LoggingNotificationSink,
    NotificationSink,
)
from instance_provisioner.core.provider import ConnectionProvider, DatabaseServer

__all__ = [
    "CacheInvalidator",
    "ConnectionProvider",
    "DatabaseServer",
    "Filesystem",
    "GuestLocation",
    "HttpCacheInvalidator",
    "Instance",
    "InstanceRegistry",
    "InstanceState",
    "LocalFilesystem",
    "LoggingNotificationSink",
    "NotificationSink",
    "OperationalState",
    "ProvisionState",
]
