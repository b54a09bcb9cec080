"""Resource provisioners and the instance orchestrator."""

from instance_provisioner.engine.credentials import CredentialGenerator
from instance_provisioner.engine.database import DatabaseProvisioner, rewrite_dump
from instance_provisioner.engine.errors import (
    CredentialsExhaustedError,
    ProvisioningError,
    SchemaExistsError,
    ServerNotAssignedError,
    SnapshotError,
    UnknownLocationError,
)
from instance_provisioner.engine.handlers import ResourceProvisioner
from instance_provisioner.engine.orchestrator import InstanceProvisioner
from instance_provisioner.engine.process import ProcessResult, ProcessRunner
from instance_provisioner.engine.registry import ProvisionerRegistry, ProvisionerSet
from instance_provisioner.engine.storage import StorageProvisioner
from instance_provisioner.engine.types import (
    Credentials,
    DatabaseConfig,
    ProvisionRequest,
    ProvisionResponse,
    StorageLayout,
)

__all__ = [
    "CredentialGenerator",
    "Credentials",
    "CredentialsExhaustedError",
    "DatabaseConfig",
    "DatabaseProvisioner",
    "InstanceProvisioner",
    "ProcessResult",
    "ProcessRunner",
    "ProvisionRequest",
    "ProvisionResponse",
    "ProvisionerRegistry",
    "ProvisionerSet",
    "ProvisioningError",
    "ResourceProvisioner",
    "SchemaExistsError",
    "ServerNotAssignedError",
    "SnapshotError",
    "StorageLayout",
    "StorageProvisioner",
    "UnknownLocationError",
    "rewrite_dump",
]
