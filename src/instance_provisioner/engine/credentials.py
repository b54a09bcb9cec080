"""Unique schema/user/password generation for new instances."""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from pydantic import SecretStr
from sqlalchemy import text

from instance_provisioner.engine.errors import CredentialsExhaustedError, SchemaExistsError
from instance_provisioner.engine.types import Credentials

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection

    from instance_provisioner.core.instance import Instance
    from instance_provisioner.core.ports import InstanceRegistry

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 10
RETRY_DELAY = 0.5
USER_NAME_LENGTH = 16

_SEPARATORS = re.compile(r"[-.\s]+")
_SCHEMA_QUERY = text(
    "SELECT SCHEMA_NAME FROM information_schema.SCHEMATA WHERE SCHEMA_NAME = :schema_name"
)


def _sha1(payload: str) -> str:
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def schema_name(instance_name: str) -> str:
    """Derive the schema name: lower-cased, separators normalized to ``_``."""
    return _SEPARATORS.sub("_", instance_name.strip().lower())


class CredentialGenerator:
    """Generates a unique database name/user/password for an instance.

    User-name collisions are treated as transient contention (the name is
    time-seeded) and retried. A schema-name collision is a real conflict and
    raises ``SchemaExistsError`` without retrying. The check is optimistic:
    nothing is locked between the check and schema creation.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        *,
        secret: str = "",
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay: float = RETRY_DELAY,
    ) -> None:
        self._registry = registry
        self._secret = secret
        self._clock = clock
        self._sleep = sleep
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    def _schema_exists(self, conn: Connection, name: str) -> bool:
        return conn.execute(_SCHEMA_QUERY, {"schema_name": name}).first() is not None

    def generate(self, instance: Instance, conn: Connection) -> Credentials:
        database = schema_name(instance.name)
        seed = f"{database}{self._secret}{instance.name}"

        user: str | None = None
        for attempt in range(1, self._max_attempts + 1):
            candidate = ("u" + _sha1(f"{self._clock()}{seed}"))[:USER_NAME_LENGTH]
            if self._registry.count_db_user(candidate) == 0:
                user = candidate
                break
            logger.debug("Database user %s taken (attempt %d)", candidate, attempt)
            if attempt < self._max_attempts:
                self._sleep(self._retry_delay)

        if user is None:
            raise CredentialsExhaustedError(self._max_attempts)

        if self._schema_exists(conn, database):
            raise SchemaExistsError(database)

        password = _sha1(f"{self._clock()}{seed}{user}{self._clock()}")
        logger.debug("Credentials generated for %s: schema=%s user=%s", instance.instance_id, database, user)
        return Credentials(database=database, username=user, password=SecretStr(password))
