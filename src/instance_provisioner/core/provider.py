"""Database server configuration and connection resolution."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, SecretStr
from sqlalchemy import URL, create_engine

from instance_provisioner.engine.errors import ServerNotAssignedError

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from instance_provisioner.core.instance import Instance

logger = logging.getLogger(__name__)

EngineFactory = Callable[["DatabaseServer"], "Engine"]


class DatabaseServer(BaseModel):
    """Connection settings for one physical database server.

    The account must be able to create schemas, grant privileges and drop
    users.
    """

    model_config = ConfigDict(extra="forbid")

    server_id: str
    host: str
    port: int | None = 3306
    username: str
    password: SecretStr = SecretStr("")
    driver: str = "mysql+pymysql"
    options: dict[str, Any] = {}

    def url(self) -> URL:
        return URL.create(
            self.driver,
            username=self.username,
            password=self.password.get_secret_value() or None,
            host=self.host,
            port=self.port,
            query=self.options,
        )

    def public_config(self) -> dict[str, Any]:
        """Server settings safe to merge into a provisioning result."""
        return {
            "server_id": self.server_id,
            "host": self.host,
            "port": self.port,
            "driver": self.driver,
        }


def _default_engine_factory(server: DatabaseServer) -> Engine:
    return create_engine(server.url(), pool_pre_ping=True)


class ConnectionProvider:
    """Resolves an instance's assigned server to a fresh SQLAlchemy engine.

    Nothing is cached between calls; pooling is the engine factory's concern.

    Examples:
        # Production, from configuration
        provider = ConnectionProvider(settings.servers)

        # Tests, with a stub engine
        provider = ConnectionProvider.from_engine(servers, MagicMock())
    """

    def __init__(
        self,
        servers: Mapping[str, DatabaseServer],
        *,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        self._servers = dict(servers)
        self._engine_factory = engine_factory or _default_engine_factory

    @classmethod
    def from_engine(cls, servers: Mapping[str, DatabaseServer], engine: Engine) -> ConnectionProvider:
        """Create a provider that hands out an injected engine for every server."""
        return cls(servers, engine_factory=lambda _server: engine)

    def server(self, server_id: str) -> DatabaseServer:
        try:
            return self._servers[server_id]
        except KeyError as e:
            raise ServerNotAssignedError(f'Database server "{server_id}" not found.') from e

    def resolve(self, instance: Instance) -> tuple[Engine, DatabaseServer]:
        """Return ``(engine, server)`` for the instance's assigned database server."""
        if not instance.db_server_id:
            raise ServerNotAssignedError(
                "Please assign the instance to a database server before provisioning "
                "database resources."
            )
        server = self.server(instance.db_server_id)
        logger.debug("Resolved database server %s for %s", server.server_id, instance.instance_id)
        return self._engine_factory(server), server
