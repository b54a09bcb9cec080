"""Provisioner capability interface shared by the resource managers."""

from __future__ import annotations

import contextlib
import hashlib
import logging
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from instance_provisioner.core.ports import LoggingNotificationSink

if TYPE_CHECKING:
    from instance_provisioner.core.filesystem import Filesystem
    from instance_provisioner.core.ports import NotificationSink
    from instance_provisioner.engine.types import ProvisionRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResourceProvisioner(Generic[T]):
    """Base class for resource provisioners.

    Subclasses implement the four capabilities. ``provision`` returns the
    resource's result payload or ``None``; the other operations report
    expected failures as ``False``/``None`` and raise ``ProvisioningError``
    only for conditions the orchestrator must react to.
    """

    resource: ClassVar[str]

    def __init__(
        self,
        *,
        notifier: NotificationSink | None = None,
        work_root: Path | None = None,
    ) -> None:
        self._notifier = notifier or LoggingNotificationSink()
        self._work_root = Path(work_root) if work_root else Path(tempfile.gettempdir()) / "provisioning"

    def provision(self, request: ProvisionRequest) -> T | None:
        raise NotImplementedError

    def deprovision(self, request: ProvisionRequest) -> bool:
        raise NotImplementedError

    def export_snapshot(self, request: ProvisionRequest) -> str | None:
        """Write a snapshot of the resource; return its file name in the snapshot mount."""
        raise NotImplementedError

    def import_snapshot(self, request: ProvisionRequest) -> Any:
        raise NotImplementedError

    def fire(self, event: str, request: ProvisionRequest, **extra: Any) -> None:
        """Emit ``<resource>.<event>`` for the request's instance."""
        payload = {"instance_id": request.instance.instance_id, **extra}
        self._notifier.fire(f"{self.resource}.{event}", payload)

    # Work/scratch paths

    @property
    def work_root(self) -> Path:
        return self._work_root

    def _private_dir(self, area: str, prefix: str) -> Path:
        parent = self._work_root / area
        parent.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=prefix, dir=parent))

    def work_path(self, tag: str) -> Path:
        """Fresh export directory for one call; concurrent exports of a tag never share it."""
        return self._private_dir("work", f"{tag}.")

    def delete_work_path(self, path: Path) -> None:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("Work path %s removed", path)

    def scratch_path(self, member: str) -> Path:
        """Fresh extraction directory for one import of *member*."""
        digest = hashlib.sha1(member.encode("utf-8")).hexdigest()[:12]
        return self._private_dir("import", f"{digest}.")

    @staticmethod
    def write_snapshot(snapshot: Filesystem | None, source: Path, name: str) -> None:
        """Copy a work file into the snapshot mount."""
        if snapshot is None:
            raise ValueError("Request has no snapshot mount")
        with source.open("rb") as fh:
            snapshot.write_stream(name, fh)

    @staticmethod
    def remove_scratch(path: Path | None) -> None:
        if path is None:
            return
        with contextlib.suppress(FileNotFoundError):
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
