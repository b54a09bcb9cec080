"""Database provisioner: per-instance schema, principals and SQL snapshots."""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from instance_provisioner.engine.archive import DATABASE_SUFFIX, extract_member, find_member, snapshot_tag
from instance_provisioner.engine.errors import ProvisioningError, ServerNotAssignedError, SnapshotError
from instance_provisioner.engine.handlers import ResourceProvisioner
from instance_provisioner.engine.process import ProcessRunner, redact
from instance_provisioner.engine.types import DatabaseConfig

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from sqlalchemy.engine import Connection, Engine

    from instance_provisioner.core.instance import Instance
    from instance_provisioner.core.provider import ConnectionProvider, DatabaseServer
    from instance_provisioner.engine.credentials import CredentialGenerator
    from instance_provisioner.engine.types import Credentials, ProvisionRequest

logger = logging.getLogger(__name__)

# MySQL: "Can't drop database; database doesn't exist"
_ER_DB_DROP_EXISTS = 1008


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def _quote_string(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def principals(username: str, web_host: str) -> list[str]:
    """Accounts granted on an instance schema: the tenant host and localhost."""
    return [
        f"{_quote_string(username)}@{_quote_string(web_host)}",
        f"{_quote_string(username)}@{_quote_string('localhost')}",
    ]


def _is_missing_database(exc: SQLAlchemyError) -> bool:
    orig = getattr(exc, "orig", None)
    args = getattr(orig, "args", ())
    if args and args[0] == _ER_DB_DROP_EXISTS:
        return True
    message = str(exc).lower()
    return f"error: {_ER_DB_DROP_EXISTS}" in message or "database doesn't exist" in message


@contextlib.contextmanager
def foreign_key_checks_disabled(conn: Connection) -> Iterator[Connection]:
    """Relax foreign key checks for the block; restored on every exit path."""
    conn.execute(text("SET FOREIGN_KEY_CHECKS = 0"))
    try:
        yield conn
    finally:
        conn.execute(text("SET FOREIGN_KEY_CHECKS = 1"))


def rewrite_dump(source: Path, target: Path, schema: str) -> Path:
    """Retarget a SQL dump taken from another instance at *schema*.

    ``CREATE DATABASE`` lines are dropped (the schema already exists) and the
    first ``USE`` line is pointed at *schema*. Every other line is copied
    byte-for-byte and in order.
    """
    replaced = False
    with source.open("rb") as fin, target.open("wb") as fout:
        for line in fin:
            head = line[:16].lower()
            if head.startswith(b"create database"):
                continue
            if not replaced and head.startswith(b"use "):
                ending = line[len(line.rstrip(b"\r\n")) :]
                line = f"USE {quote_identifier(schema)};".encode() + ending
                replaced = True
            fout.write(line)
    return target


class DatabaseProvisioner(ResourceProvisioner[DatabaseConfig]):
    """Creates and drops instance schemas on the instance's assigned server.

    Driver errors never leak: expected failures come back as ``False``/``None``
    and unexpected ones are re-raised as ``ProvisioningError``.
    ``SchemaExistsError`` and ``ServerNotAssignedError`` propagate untouched so
    the orchestrator can pick a non-destructive rollback.
    """

    resource = "database"

    def __init__(
        self,
        connections: ConnectionProvider,
        credentials: CredentialGenerator,
        *,
        runner: ProcessRunner | None = None,
        dump_command: str = "mysqldump",
        client_command: str = "mysql",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._connections = connections
        self._credentials = credentials
        self._runner = runner or ProcessRunner()
        self._dump_command = dump_command
        self._client_command = client_command

    def provision(self, request: ProvisionRequest) -> DatabaseConfig | None:
        instance = request.instance
        logger.info('Database provisioning for instance "%s" begin', instance.instance_id)

        if not instance.db_server_id:
            raise ServerNotAssignedError(
                "Please assign the instance to a database server before provisioning "
                "database resources."
            )
        if not instance.web_host:
            raise ProvisioningError(f'Instance "{instance.instance_id}" has no web server host.')

        engine, server = self._connections.resolve(instance)

        try:
            with engine.connect() as conn:
                creds = self._credentials.generate(instance, conn)
            logger.debug('Instance database "%s" assigned', creds.database)

            if not self.create_database(engine, creds.database):
                if not self.drop_database(engine, creds.database):
                    logger.warning('Unable to clean up "%s" after provisioning failure', creds.database)
                return None

            if not self.grant_privileges(engine, creds, instance.web_host):
                self.revoke_privileges(engine, creds.database, creds.username, instance.web_host)
                self.drop_database(engine, creds.database)
                logger.error('Database provisioning for instance "%s" FAILURE', instance.instance_id)
                return None
        except ProvisioningError:
            raise
        except Exception as e:
            raise ProvisioningError(str(e)) from e

        self.fire("provisioned", request, database=creds.database)
        logger.info('Database provisioning for instance "%s" complete', instance.instance_id)

        return DatabaseConfig(
            **server.public_config(),
            database=creds.database,
            username=creds.username,
            password=creds.password,
        )

    def deprovision(self, request: ProvisionRequest) -> bool:
        instance = request.instance
        logger.info('Database deprovisioning for instance "%s" begin', instance.instance_id)

        engine, _server = self._connections.resolve(instance)

        try:
            if not self.drop_database(engine, instance.db_name):
                raise ProvisioningError(f'Unable to delete database "{instance.db_name}".')
        except Exception as exc:
            logger.error('Database "%s" deprovisioning FAILURE: %s', instance.db_name, exc)
            return False

        if instance.db_name and instance.db_user and instance.web_host:
            self.revoke_privileges(engine, instance.db_name, instance.db_user, instance.web_host)

        self.fire("deprovisioned", request, database=instance.db_name)
        logger.info('Database deprovisioning for instance "%s" complete', instance.instance_id)
        return True

    # Snapshots

    def export_snapshot(self, request: ProvisionRequest) -> str | None:
        instance = request.instance
        logger.info('Database export for instance "%s" begin', instance.instance_id)

        command = self._runner.which(self._dump_command)
        if command is None:
            logger.error('Dump tool "%s" not found', self._dump_command)
            return None

        tag = snapshot_tag(instance.instance_id)
        work = self.work_path(tag)
        target = f"{tag}{DATABASE_SUFFIX}"

        args = [
            command,
            "--compress",
            f"--host={instance.db_host or ''}",
            f"--user={instance.db_user or ''}",
            f"--password={instance.db_password or ''}",
        ]
        if instance.db_port:
            args.append(f"--port={instance.db_port}")
        args.extend(["--databases", instance.db_name or ""])

        result = self._runner.run(args, stdout=work / target)
        if not result.ok:
            logger.error(
                'Error dumping database of instance "%s" (exit %d): %s',
                instance.instance_id,
                result.returncode,
                result.output,
            )
            self.delete_work_path(work)
            return None

        self.write_snapshot(request.snapshot, work / target, target)
        self.delete_work_path(work)

        self.fire("exported", request, file=target)
        logger.info('Database export for instance "%s" complete', instance.instance_id)
        return target

    def import_snapshot(self, request: ProvisionRequest) -> list[str] | None:
        instance = request.instance
        logger.info('Database import for instance "%s" begin', instance.instance_id)

        if request.target is None:
            raise SnapshotError("No snapshot given to import from.")
        if not instance.db_name:
            raise ProvisioningError(f'Instance "{instance.instance_id}" has no database to import into.')

        member = find_member(request.target, DATABASE_SUFFIX)
        scratch = self.scratch_path(member)
        try:
            source = extract_member(request.target, member, scratch)
            engine, server = self._connections.resolve(instance)

            if not self.drop_database(engine, instance.db_name):
                logger.error('Unable to drop "%s" before import; not loading snapshot', instance.db_name)
                output = None
            elif self.create_database(engine, instance.db_name):
                output = self.load_dump(instance, source, server, request)
            else:
                output = None
        finally:
            self.remove_scratch(scratch)

        if output is None:
            return None

        self.fire("imported", request, file=member)
        logger.info('Database import for instance "%s" complete', instance.instance_id)
        return output

    def load_dump(
        self,
        instance: Instance,
        source: Path,
        server: DatabaseServer,
        request: ProvisionRequest | None = None,
    ) -> list[str] | None:
        """Feed *source* through the client tool against the instance schema."""
        command = self._runner.which(self._client_command)
        if command is None:
            logger.error('Client tool "%s" not found', self._client_command)
            return None

        if request is not None and request.original_instance_id is not None:
            try:
                source = rewrite_dump(source, source.with_name(source.name + ".rewritten"), instance.db_name or "")
            except OSError as exc:
                logger.error("SQL dump not valid: %s", exc)
                return None
            logger.debug('SQL dump "%s" rewritten from instance "%s"', source, request.original_instance_id)

        args = [
            command,
            f"--host={server.host}",
            f"--user={server.username}",
            f"--password={server.password.get_secret_value()}",
        ]
        if server.port:
            args.append(f"--port={server.port}")
        args.append(instance.db_name or "")

        result = self._runner.run(args, stdin=source)
        if not result.ok:
            logger.error(
                'Error importing database of instance "%s" (exit %d): command=%s output=%s',
                instance.instance_id,
                result.returncode,
                " ".join(redact(result.command)),
                result.output,
            )
            return None
        return result.output

    # Schema and privileges

    def create_database(self, engine: Engine, database: str) -> bool:
        try:
            with engine.begin() as conn:
                conn.execute(text(f"CREATE DATABASE IF NOT EXISTS {quote_identifier(database)}"))
        except SQLAlchemyError as exc:
            logger.error("Create database %s failure: %s", database, exc)
            return False
        return True

    def drop_database(self, engine: Engine, database: str | None) -> bool:
        """Drop *database*. An already-absent schema counts as success."""
        if not database:
            return True

        logger.debug('Dropping database "%s"', database)
        try:
            with engine.begin() as conn, foreign_key_checks_disabled(conn):
                conn.execute(text(f"DROP DATABASE {quote_identifier(database)}"))
        except SQLAlchemyError as exc:
            if _is_missing_database(exc):
                logger.info('Drop database "%s" not performed: database does not exist', database)
                return True
            logger.error('Drop database "%s" failure: %s', database, exc)
            return False

        logger.debug('Database "%s" dropped', database)
        return True

    def grant_privileges(self, engine: Engine, creds: Credentials, web_host: str) -> bool:
        schema = quote_identifier(creds.database)
        try:
            with engine.begin() as conn:
                for principal in principals(creds.username, web_host):
                    conn.execute(
                        text(f"GRANT ALL PRIVILEGES ON {schema}.* TO {principal} IDENTIFIED BY :password"),
                        {"password": creds.password.get_secret_value()},
                    )
        except SQLAlchemyError as exc:
            logger.error("Issue grants on %s failure: %s", creds.database, exc)
            return False
        return True

    def revoke_privileges(self, engine: Engine, database: str, username: str, web_host: str) -> bool:
        """Revoke and drop each principal, continuing past per-principal failures."""
        schema = quote_identifier(database)
        try:
            with engine.begin() as conn:
                for principal in principals(username, web_host):
                    try:
                        conn.execute(text(f"REVOKE ALL PRIVILEGES ON {schema}.* FROM {principal}"))
                    except SQLAlchemyError as exc:
                        logger.error("Error revoking privileges from %s: %s", principal, exc)
                        continue
                    try:
                        conn.execute(text(f"DROP USER {principal}"))
                    except SQLAlchemyError as exc:
                        logger.error("Error dropping user %s: %s", principal, exc)
                        continue
                    logger.debug("Principal %s revoked and dropped", principal)
        except SQLAlchemyError as exc:
            logger.error("Revoke grants on %s failure: %s", database, exc)
            return False
        return True
