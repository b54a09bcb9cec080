"""Provisioning error types."""

from __future__ import annotations


class ProvisioningError(Exception):
    """Base exception for provisioning failures.

    Unexpected low-level errors inside a resource step are re-raised as this
    type (original chained via ``__cause__``) so callers branch on one type.
    """


class ServerNotAssignedError(ProvisioningError):
    """Raised when an instance has no usable database server."""


class SchemaExistsError(ProvisioningError):
    """Raised when the derived schema name already exists in the catalog.

    Not transient: rollback must not drop a schema this attempt did not create.
    """

    def __init__(self, schema: str) -> None:
        super().__init__(f'The schema "{schema}" already exists.')
        self.schema = schema


class CredentialsExhaustedError(ProvisioningError):
    """Raised when no unused database user name was found within the allowed attempts."""

    def __init__(self, attempts: int) -> None:
        super().__init__(
            f"Unable to locate a unique database user name after {attempts} attempts."
        )
        self.attempts = attempts


class SnapshotError(ProvisioningError):
    """Raised when a snapshot archive is missing, malformed or unreadable."""


class UnknownLocationError(ProvisioningError):
    """Raised when no provisioners are registered for a guest location."""

    def __init__(self, location: int) -> None:
        super().__init__(f"No provisioners registered for location: {location}")
        self.location = location
