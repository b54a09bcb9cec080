"""Storage provisioner: partitioned instance directory tree and zip snapshots.

Layout, relative to the storage mount handed in with the request (the mount
already points at the owner's directory inside the zone/partition tree)::

    <mount>/
        .private/               owner-private root
        <instance-id>/          instance root
            .private/           instance-private root
                packages/       uploaded packages
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import zipfile
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

from instance_provisioner.core.filesystem import Entry
from instance_provisioner.engine.archive import STORAGE_SUFFIX, archive_tree, extract_member, find_member, snapshot_tag
from instance_provisioner.engine.errors import SnapshotError
from instance_provisioner.engine.handlers import ResourceProvisioner
from instance_provisioner.engine.types import StorageLayout

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from instance_provisioner.core.filesystem import Filesystem
    from instance_provisioner.engine.types import ProvisionRequest

logger = logging.getLogger(__name__)

PACKAGE_SUFFIX = "-upload-package.zip"


def segment(*parts: str) -> str:
    """Join relative path fragments with ``/``, ignoring empty ones."""
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


def _safe_member(name: str) -> str:
    rel = name.rstrip("/")
    path = PurePosixPath(rel)
    if path.is_absolute() or ".." in path.parts:
        raise SnapshotError(f'Refusing to restore unsafe entry "{name}".')
    return rel


class StorageProvisioner(ResourceProvisioner[StorageLayout]):
    """Builds and removes an instance's storage tree.

    Extra directories come only from configuration (``public_paths`` under the
    instance root, ``private_paths`` under the instance-private path,
    ``owner_private_paths`` under the owner-private path).

    ``legacy_import`` accepts old snapshots whose storage archive wraps the
    tree in a second zip. It is off by default: a current export of a tree
    holding a single zip file has the same shape.
    """

    resource = "storage"

    def __init__(
        self,
        *,
        private_path_name: str = ".private",
        package_path_name: str = "packages",
        public_paths: Sequence[str] = (),
        private_paths: Sequence[str] = (),
        owner_private_paths: Sequence[str] = (),
        legacy_import: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._legacy_import = legacy_import
        self._private_path_name = private_path_name
        self._package_path_name = package_path_name
        self._public_paths = list(public_paths)
        self._private_paths = list(private_paths)
        self._owner_private_paths = list(owner_private_paths)

    def layout(self, request: ProvisionRequest) -> StorageLayout:
        root = request.instance.instance_id.strip()
        private = segment(root, self._private_path_name)
        owner_private = self._private_path_name
        paths = [
            *(segment(root, p) for p in self._public_paths),
            *(segment(private, p) for p in self._private_paths),
            *(segment(owner_private, p) for p in self._owner_private_paths),
        ]
        return StorageLayout(
            root=root,
            private=private,
            owner_private=owner_private,
            package=segment(private, self._package_path_name),
            paths=paths,
        )

    def provision(self, request: ProvisionRequest) -> StorageLayout | None:
        instance = request.instance
        fs = request.require_storage()
        layout = self.layout(request)
        logger.debug("Instance root: %s", layout.root)

        try:
            for path in (layout.private, layout.owner_private, layout.package, *layout.paths):
                if not fs.has(path):
                    fs.create_dir(path)
            logger.debug(
                "Structure built: private=%s owner-private=%s package=%s paths=%s",
                layout.private,
                layout.owner_private,
                layout.package,
                layout.paths,
            )

            if request.packages:
                request.packages = self._copy_packages(fs, layout.package, request.packages)
                instance.packages = list(request.packages)
            else:
                logger.debug("No packages to install")
        except (OSError, ValueError) as exc:
            logger.error("Error creating directory structure for %s: %s", instance.instance_id, exc)
            return None

        self.fire("provisioned", request, root=layout.root)
        logger.info('Storage provisioning for instance "%s" complete', instance.instance_id)
        return layout

    def _copy_packages(self, fs: Filesystem, package_path: str, packages: list[str]) -> list[str]:
        """Copy packages under hashed names. Failed copies keep their source entry."""
        stored: list[str] = []
        for package in packages:
            name = hashlib.md5(package.encode("utf-8")).hexdigest() + PACKAGE_SUFFIX
            destination = fs.path_prefix / package_path / name
            try:
                shutil.copyfile(package, destination)
            except OSError as exc:
                logger.error(
                    "Error copying package file %s to %s: %s", package, package_path, exc
                )
                stored.append(package)
                continue
            logger.debug('Copied package "%s" to package path', package)
            stored.append(name)
        return stored

    def deprovision(self, request: ProvisionRequest) -> bool:
        """Delete the instance root.

        A missing root is a failure, unlike a missing schema: it usually
        means the path was resolved wrongly.
        """
        instance = request.instance
        fs = request.require_storage()
        root = instance.instance_id.strip()
        logger.info('Storage deprovisioning for instance "%s" begin', instance.instance_id)

        if not root or not fs.has(root):
            logger.warning('Unable to stat storage path "%s"; not deleting', root)
            return False

        try:
            deleted = fs.delete_dir(root)
        except OSError as exc:
            logger.error('Error deleting storage area "%s": %s', root, exc)
            return False
        if not deleted:
            logger.error('Error deleting storage area "%s"', root)
            return False

        self.fire("deprovisioned", request, root=root)
        logger.info('Storage deprovisioning for instance "%s" complete', instance.instance_id)
        return True

    # Snapshots

    def export_snapshot(self, request: ProvisionRequest) -> str | None:
        instance = request.instance
        fs = request.require_storage()
        logger.info('Storage export for instance "%s" begin', instance.instance_id)

        tag = snapshot_tag(instance.instance_id)
        work = self.work_path(tag)
        target = f"{tag}{STORAGE_SUFFIX}"

        name: str | None = None
        mount = fs.mount(instance.instance_id.strip())
        if archive_tree(mount.path_prefix, work / target):
            self.write_snapshot(request.snapshot, work / target, target)
            name = target

        if not request.keep_work:
            self.delete_work_path(work)

        if name is None:
            logger.error('Storage export for instance "%s" failed', instance.instance_id)
            return None

        self.fire("exported", request, file=name)
        logger.info('Storage export for instance "%s" complete', instance.instance_id)
        return name

    def import_snapshot(self, request: ProvisionRequest) -> list[Entry] | None:
        instance = request.instance
        fs = request.require_storage()
        logger.info('Storage import for instance "%s" begin', instance.instance_id)

        if request.target is None:
            raise SnapshotError("No snapshot given to import from.")

        root = instance.instance_id.strip()
        fs.create_dir(root)
        destination = fs.mount(root)

        member = find_member(request.target, STORAGE_SUFFIX)
        scratch = self.scratch_path(member)
        try:
            nested = extract_member(request.target, member, scratch)
            with zipfile.ZipFile(nested) as zf:
                for name in zf.namelist():
                    _safe_member(name)
            # Existing content goes only once the snapshot is known to be readable.
            if request.clean:
                destination.delete_dir("")
            restored = self._restore(nested, destination)
        except (OSError, zipfile.BadZipFile) as exc:
            logger.error('Storage import for instance "%s" failed: %s', instance.instance_id, exc)
            return None
        finally:
            self.remove_scratch(scratch)

        self.fire("imported", request, file=member, entries=len(restored))
        logger.info('Storage import for instance "%s" complete', instance.instance_id)
        return restored

    def _restore(self, nested: Path, destination: Filesystem) -> list[Entry]:
        """Stream the nested archive's entries, in listing order, into *destination*."""
        restored: list[Entry] = []
        with zipfile.ZipFile(nested) as zf:
            infos = zf.infolist()
            legacy = self._legacy_container(zf, infos)
            if legacy is not None:
                return self._restore_legacy(zf, legacy, destination)

            for info in infos:
                rel = _safe_member(info.filename)
                if not rel:
                    continue
                if info.is_dir():
                    destination.create_dir(rel)
                    restored.append(Entry(path=rel, type="dir"))
                    continue
                with zf.open(info) as src:
                    destination.write_stream(rel, src)
                restored.append(Entry(path=rel, type="file"))
        return restored

    def _legacy_container(self, zf: zipfile.ZipFile, infos: list[zipfile.ZipInfo]) -> zipfile.ZipInfo | None:
        """The wrapping zip of a legacy snapshot, when legacy imports are enabled.

        Only an archive with exactly one ``*.zip`` file entry and no directory
        entries qualifies.
        """
        if not self._legacy_import or len(infos) != 1:
            return None
        info = infos[0]
        if info.is_dir() or not info.filename.lower().endswith(".zip"):
            return None
        with zf.open(info) as fh:
            return info if zipfile.is_zipfile(fh) else None

    def _restore_legacy(
        self, zf: zipfile.ZipFile, info: zipfile.ZipInfo, destination: Filesystem
    ) -> list[Entry]:
        logger.warning("Restoring legacy nested storage snapshot %s", info.filename)
        with zf.open(info) as fh, zipfile.ZipFile(fh) as inner:
            inner.extractall(destination.path_prefix)
            return [
                Entry(path=i.filename.rstrip("/"), type="dir" if i.is_dir() else "file")
                for i in inner.infolist()
            ]
