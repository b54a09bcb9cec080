"""Shared fixtures for unit tests."""

from __future__ import annotations

import contextlib
import logging
import re
from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from instance_provisioner.core.filesystem import LocalFilesystem
from instance_provisioner.core.instance import Instance
from instance_provisioner.core.provider import ConnectionProvider, DatabaseServer
from instance_provisioner.engine.process import ProcessResult

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Sequence
    from pathlib import Path

    from instance_provisioner.core.instance import ProvisionState

_CREATE = re.compile(r"CREATE DATABASE IF NOT EXISTS `(?P<name>[^`]+)`")
_DROP = re.compile(r"DROP DATABASE `(?P<name>[^`]+)`")


class _DriverError(Exception):
    """Stands in for a DBAPI error; ``args[0]`` is the server error code."""


class FakeDatabase:
    """In-memory stand-in for a MySQL server reached through SQLAlchemy.

    Tracks schemas, records every statement and can be told to fail on
    statements containing a given substring.
    """

    def __init__(self) -> None:
        self.schemas: set[str] = set()
        self.statements: list[str] = []
        self.transactions: list[str] = []
        self.failures: dict[str, Exception] = {}

    def fail_on(self, fragment: str, message: str = "boom") -> None:
        self.failures[fragment] = OperationalError(fragment, None, _DriverError(1045, message))

    def execute(self, stmt: Any, params: dict[str, Any] | None = None) -> MagicMock:
        sql = str(stmt)
        self.statements.append(sql)
        for fragment, exc in self.failures.items():
            if fragment in sql:
                raise exc

        result = MagicMock()
        result.first.return_value = None

        if m := _CREATE.search(sql):
            self.schemas.add(m["name"])
        elif m := _DROP.search(sql):
            name = m["name"]
            if name not in self.schemas:
                raise OperationalError(
                    sql,
                    None,
                    _DriverError(1008, f"Can't drop database '{name}'; database doesn't exist"),
                )
            self.schemas.discard(name)
        elif "information_schema.SCHEMATA" in sql:
            name = (params or {}).get("schema_name")
            if name in self.schemas:
                result.first.return_value = (name,)
        return result

    def statements_matching(self, prefix: str) -> list[str]:
        return [s for s in self.statements if s.startswith(prefix)]


class FakeEngine:
    """Minimal ``Engine``: ``begin()``/``connect()`` yield the fake database."""

    def __init__(self, db: FakeDatabase) -> None:
        self.db = db

    @contextlib.contextmanager
    def begin(self) -> Iterator[FakeDatabase]:
        self.db.transactions.append("begin")
        try:
            yield self.db
        except Exception:
            self.db.transactions.append("rollback")
            raise
        self.db.transactions.append("commit")

    @contextlib.contextmanager
    def connect(self) -> Iterator[FakeDatabase]:
        yield self.db


class InMemoryRegistry:
    """Instance registry double that records every persisted state."""

    def __init__(self) -> None:
        self.rows: dict[int, Instance] = {}
        self.states: list[ProvisionState | None] = []
        self.db_users: set[str] = set()
        self.all_users_taken = False
        self.app_keys: list[tuple[int, str | None]] = []
        self.deactivations: dict[int, int] = {}
        self.fail_delete = False

    def save(self, instance: Instance) -> None:
        self.rows[instance.id] = instance.model_copy(deep=True)
        self.states.append(instance.state)

    def delete(self, instance: Instance) -> bool:
        if self.fail_delete:
            return False
        return self.rows.pop(instance.id, None) is not None

    def count_db_user(self, db_user: str) -> int:
        return 1 if self.all_users_taken or db_user in self.db_users else 0

    def create_app_key(self, instance: Instance, *, server_secret: str | None) -> None:
        self.app_keys.append((instance.id, server_secret))

    def purge_deactivations(self, instance: Instance) -> int:
        return self.deactivations.pop(instance.id, 0)


class FakeRunner:
    """Process runner double: records commands and fakes the tools' behaviour."""

    def __init__(self, *, returncode: int = 0, dump: bytes = b"", tools: bool = True) -> None:
        self.returncode = returncode
        self.dump = dump
        self.tools = tools
        self.calls: list[list[str]] = []
        self.stdin_payloads: list[bytes] = []

    def which(self, name: str) -> str | None:
        return f"/usr/bin/{name}" if self.tools else None

    def run(
        self,
        command: Sequence[str],
        *,
        stdin: Path | None = None,
        stdout: Path | None = None,
    ) -> ProcessResult:
        self.calls.append(list(command))
        if stdin is not None:
            self.stdin_payloads.append(stdin.read_bytes())
        if stdout is not None:
            stdout.write_bytes(self.dump)
        output = [] if self.returncode == 0 else ["ERROR 1045 (28000): Access denied"]
        return ProcessResult(command=list(command), returncode=self.returncode, output=output)


_ENV_VARS = (
    "PROVISIONING_SECRET",
    "PROVISIONING_CONSOLE_API_KEY",
    "PROVISIONING_LOG",
    "PROVISIONING_LEGACY_STORAGE_IMPORT",
    "PROVISIONING_DB_PASSWORD_DB_EAST_1",
)


@pytest.fixture(autouse=True)
def _clean_provisioning_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove PROVISIONING_* env vars so unit tests don't leak host config."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def reset_package_logger() -> Iterator[logging.Logger]:
    """Undo ``configure_logging`` on the package logger after the test."""
    pkg = logging.getLogger("instance_provisioner")
    yield pkg
    for handler in list(pkg.handlers):
        pkg.removeHandler(handler)
    pkg.setLevel(logging.NOTSET)


@pytest.fixture
def server() -> DatabaseServer:
    return DatabaseServer(
        server_id="db-east-1",
        host="db1.internal",
        port=3306,
        username="root",
        password="rootpw",
    )


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def fake_engine(fake_db: FakeDatabase) -> FakeEngine:
    return FakeEngine(fake_db)


@pytest.fixture
def connections(server: DatabaseServer, fake_engine: FakeEngine) -> ConnectionProvider:
    return ConnectionProvider.from_engine({server.server_id: server}, fake_engine)


@pytest.fixture
def instance_registry() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock()


@pytest.fixture
def make_instance() -> Callable[..., Instance]:
    def _make(name: str = "acme-prod", **overrides: Any) -> Instance:
        fields: dict[str, Any] = {
            "id": 7,
            "instance_id": name,
            "name": name,
            "db_server_id": "db-east-1",
            "web_host": "web1.internal",
            "storage_zone": "local",
        }
        fields.update(overrides)
        return Instance(**fields)

    return _make


@pytest.fixture
def storage_mount(tmp_path: Path) -> LocalFilesystem:
    root = tmp_path / "storage" / "local" / "ab" / "owner-hash"
    root.mkdir(parents=True)
    return LocalFilesystem(root)


@pytest.fixture
def snapshot_mount(tmp_path: Path) -> LocalFilesystem:
    root = tmp_path / "snapshots"
    root.mkdir()
    return LocalFilesystem(root)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()
