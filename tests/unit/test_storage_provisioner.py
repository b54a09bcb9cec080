"""Tests for the storage provisioner."""

from __future__ import annotations

import hashlib
import io
import zipfile

import pytest

from instance_provisioner.engine.errors import SnapshotError
from instance_provisioner.engine.storage import PACKAGE_SUFFIX, StorageProvisioner, segment
from instance_provisioner.engine.types import ProvisionRequest


@pytest.fixture
def provisioner(notifier, tmp_path):
    return StorageProvisioner(
        public_paths=["public"],
        private_paths=["config"],
        owner_private_paths=["shared"],
        notifier=notifier,
        work_root=tmp_path / "work-root",
    )


def _zip_bytes(entries):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buf.getvalue()


def _snapshot(path, member, payload):
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr(member, payload)
    return path


class TestSegment:
    def test_skips_empty_parts(self):
        assert segment("acme", "", "/.private/", "packages") == "acme/.private/packages"


class TestProvision:
    def test_builds_layout(self, provisioner, storage_mount, notifier, make_instance):
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount)

        layout = provisioner.provision(request)

        assert layout is not None
        assert layout.root == "acme-prod"
        assert layout.private == "acme-prod/.private"
        assert layout.owner_private == ".private"
        assert layout.package == "acme-prod/.private/packages"
        assert layout.paths == ["acme-prod/public", "acme-prod/.private/config", ".private/shared"]
        for path in (layout.package, *layout.paths):
            assert (storage_mount.path_prefix / path).is_dir()
        notifier.fire.assert_called_once_with(
            "storage.provisioned", {"instance_id": "acme-prod", "root": "acme-prod"}
        )

    def test_is_idempotent_for_existing_dirs(self, provisioner, storage_mount, make_instance):
        (storage_mount.path_prefix / ".private" / "keep.txt").parent.mkdir(parents=True)
        (storage_mount.path_prefix / ".private" / "keep.txt").write_text("x")
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount)

        assert provisioner.provision(request) is not None
        assert (storage_mount.path_prefix / ".private" / "keep.txt").read_text() == "x"

    def test_copies_packages_under_hashed_names(self, provisioner, storage_mount, tmp_path, make_instance):
        package = tmp_path / "app.zip"
        package.write_bytes(b"PK")
        missing = str(tmp_path / "missing.zip")
        instance = make_instance()
        request = ProvisionRequest(instance=instance, storage=storage_mount, packages=[str(package), missing])

        layout = provisioner.provision(request)

        stored = hashlib.md5(str(package).encode("utf-8")).hexdigest() + PACKAGE_SUFFIX
        assert layout is not None
        assert request.packages == [stored, missing]
        assert instance.packages == [stored, missing]
        assert (storage_mount.path_prefix / layout.package / stored).read_bytes() == b"PK"

    def test_requires_storage_mount(self, provisioner, make_instance):
        with pytest.raises(ValueError, match="storage mount"):
            provisioner.provision(ProvisionRequest(instance=make_instance()))


class TestDeprovision:
    def test_removes_instance_root(self, provisioner, storage_mount, notifier, make_instance):
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount)
        provisioner.provision(request)
        notifier.reset_mock()

        assert provisioner.deprovision(request) is True

        assert not (storage_mount.path_prefix / "acme-prod").exists()
        assert (storage_mount.path_prefix / ".private").is_dir()
        notifier.fire.assert_called_once_with(
            "storage.deprovisioned", {"instance_id": "acme-prod", "root": "acme-prod"}
        )

    def test_missing_root_is_failure(self, provisioner, storage_mount, notifier, make_instance):
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount)

        assert provisioner.deprovision(request) is False
        notifier.fire.assert_not_called()

    def test_blank_instance_id_never_wipes_mount(self, provisioner, storage_mount, make_instance):
        (storage_mount.path_prefix / "other").mkdir()
        request = ProvisionRequest(instance=make_instance(instance_id="  "), storage=storage_mount)

        assert provisioner.deprovision(request) is False
        assert (storage_mount.path_prefix / "other").is_dir()


class TestExportSnapshot:
    def test_archives_relative_tree(self, provisioner, storage_mount, snapshot_mount, notifier, make_instance):
        root = storage_mount.path_prefix / "acme-prod"
        (root / "public").mkdir(parents=True)
        (root / "public" / "index.html").write_text("<html/>")
        (root / "empty").mkdir()
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount, snapshot=snapshot_mount)

        name = provisioner.export_snapshot(request)

        assert name is not None
        assert name.endswith(".acme-prod.storage.zip")
        with zipfile.ZipFile(snapshot_mount.path_prefix / name) as zf:
            assert set(zf.namelist()) == {"empty/", "public/", "public/index.html"}
            assert zf.read("public/index.html") == b"<html/>"
        notifier.fire.assert_called_once_with("storage.exported", {"instance_id": "acme-prod", "file": name})

    def test_keep_work_leaves_archive(self, provisioner, storage_mount, snapshot_mount, tmp_path, make_instance):
        (storage_mount.path_prefix / "acme-prod").mkdir()
        request = ProvisionRequest(
            instance=make_instance(),
            storage=storage_mount,
            snapshot=snapshot_mount,
            keep_work=True,
        )

        name = provisioner.export_snapshot(request)

        assert list((tmp_path / "work-root" / "work").glob(f"*/{name}"))


class TestImportSnapshot:
    def test_restores_exported_tree(self, provisioner, storage_mount, snapshot_mount, tmp_path, make_instance):
        source = storage_mount.path_prefix / "acme-prod"
        (source / "public" / "css").mkdir(parents=True)
        (source / "public" / "css" / "site.css").write_text("body{}")
        (source / "empty").mkdir()
        name = provisioner.export_snapshot(
            ProvisionRequest(instance=make_instance(), storage=storage_mount, snapshot=snapshot_mount)
        )
        target = _snapshot(tmp_path / "snap.zip", name, (snapshot_mount.path_prefix / name).read_bytes())

        restored = provisioner.import_snapshot(
            ProvisionRequest(instance=make_instance("acme-copy"), storage=storage_mount, target=target)
        )

        copy = storage_mount.path_prefix / "acme-copy"
        assert (copy / "public" / "css" / "site.css").read_text() == "body{}"
        assert (copy / "empty").is_dir()
        assert {"path": "public/css/site.css", "type": "file"} in restored
        assert {"path": "empty", "type": "dir"} in restored
        assert not any((tmp_path / "work-root" / "import").iterdir())

    @pytest.mark.parametrize(("clean", "survives"), [(True, False), (False, True)])
    def test_clean_wipes_existing_content(self, provisioner, storage_mount, tmp_path, make_instance, clean, survives):
        root = storage_mount.path_prefix / "acme-prod"
        root.mkdir()
        (root / "stray.txt").write_text("old")
        target = _snapshot(
            tmp_path / "snap.zip",
            "20240101000000.acme-prod.storage.zip",
            _zip_bytes({"public/a.txt": b"a"}),
        )
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount, target=target, clean=clean)

        assert provisioner.import_snapshot(request) is not None

        assert (root / "public" / "a.txt").read_bytes() == b"a"
        assert (root / "stray.txt").exists() is survives
        assert root.is_dir()

    def test_restores_legacy_nested_container(self, notifier, storage_mount, tmp_path, make_instance):
        provisioner = StorageProvisioner(notifier=notifier, work_root=tmp_path / "work-root", legacy_import=True)
        inner = _zip_bytes({"public/a.txt": b"legacy"})
        target = _snapshot(
            tmp_path / "snap.zip",
            "20150101000000.acme-prod.storage.zip",
            _zip_bytes({"tree.zip": inner}),
        )
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount, target=target)

        restored = provisioner.import_snapshot(request)

        assert restored == [{"path": "public/a.txt", "type": "file"}]
        assert (storage_mount.path_prefix / "acme-prod" / "public" / "a.txt").read_bytes() == b"legacy"

    def test_rejects_unsafe_entry(self, provisioner, storage_mount, tmp_path, make_instance):
        target = _snapshot(
            tmp_path / "snap.zip",
            "20240101000000.acme-prod.storage.zip",
            _zip_bytes({"../evil.txt": b"x"}),
        )
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount, target=target)

        with pytest.raises(SnapshotError, match="unsafe"):
            provisioner.import_snapshot(request)

        assert not (storage_mount.path_prefix / "evil.txt").exists()

    def test_missing_member(self, provisioner, storage_mount, tmp_path, make_instance):
        target = _snapshot(tmp_path / "snap.zip", "x.database.sql", b"")
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount, target=target)

        with pytest.raises(SnapshotError, match="storage.zip"):
            provisioner.import_snapshot(request)

    def test_ambiguous_member(self, provisioner, storage_mount, tmp_path, make_instance):
        target = tmp_path / "snap.zip"
        with zipfile.ZipFile(target, "w") as zf:
            zf.writestr("a.storage.zip", b"")
            zf.writestr("b.storage.zip", b"")
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount, target=target)

        with pytest.raises(SnapshotError, match="more than one"):
            provisioner.import_snapshot(request)

    def test_corrupt_nested_archive_returns_none(self, provisioner, storage_mount, tmp_path, notifier, make_instance):
        target = _snapshot(tmp_path / "snap.zip", "x.storage.zip", b"not a zip")
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount, target=target)

        assert provisioner.import_snapshot(request) is None
        notifier.fire.assert_not_called()

    def test_single_zip_file_survives_round_trip(
        self, provisioner, storage_mount, snapshot_mount, tmp_path, make_instance
    ):
        source = storage_mount.path_prefix / "acme-prod"
        source.mkdir()
        backup = _zip_bytes({"inner.txt": b"kept zipped"})
        (source / "backup.zip").write_bytes(backup)
        name = provisioner.export_snapshot(
            ProvisionRequest(instance=make_instance(), storage=storage_mount, snapshot=snapshot_mount)
        )
        target = _snapshot(tmp_path / "snap.zip", name, (snapshot_mount.path_prefix / name).read_bytes())

        restored = provisioner.import_snapshot(
            ProvisionRequest(instance=make_instance("acme-copy"), storage=storage_mount, target=target)
        )

        copy = storage_mount.path_prefix / "acme-copy"
        assert restored == [{"path": "backup.zip", "type": "file"}]
        assert (copy / "backup.zip").read_bytes() == backup
        assert not (copy / "inner.txt").exists()

    def test_legacy_import_ignores_non_zip_member_names(self, notifier, storage_mount, tmp_path, make_instance):
        provisioner = StorageProvisioner(notifier=notifier, work_root=tmp_path / "work-root", legacy_import=True)
        payload = _zip_bytes({"inner.txt": b"x"})
        target = _snapshot(
            tmp_path / "snap.zip",
            "20150101000000.acme-prod.storage.zip",
            _zip_bytes({"report.bin": payload}),
        )
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount, target=target)

        assert provisioner.import_snapshot(request) == [{"path": "report.bin", "type": "file"}]
        assert (storage_mount.path_prefix / "acme-prod" / "report.bin").read_bytes() == payload


class TestImportSnapshotClean:
    """A clean import never removes existing content for a snapshot it cannot restore."""

    @pytest.fixture
    def live(self, storage_mount):
        live = storage_mount.path_prefix / "acme-prod" / "public" / "live.txt"
        live.parent.mkdir(parents=True)
        live.write_text("serving")
        return live

    def test_missing_member_keeps_content(self, provisioner, storage_mount, tmp_path, make_instance, live):
        target = _snapshot(tmp_path / "snap.zip", "x.database.sql", b"")
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount, target=target, clean=True)

        with pytest.raises(SnapshotError):
            provisioner.import_snapshot(request)

        assert live.read_text() == "serving"

    def test_corrupt_nested_archive_keeps_content(self, provisioner, storage_mount, tmp_path, make_instance, live):
        target = _snapshot(tmp_path / "snap.zip", "x.storage.zip", b"not a zip")
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount, target=target, clean=True)

        assert provisioner.import_snapshot(request) is None

        assert live.read_text() == "serving"
        assert not any((tmp_path / "work-root" / "import").iterdir())

    def test_unsafe_entry_keeps_content(self, provisioner, storage_mount, tmp_path, make_instance, live):
        target = _snapshot(
            tmp_path / "snap.zip",
            "20240101000000.acme-prod.storage.zip",
            _zip_bytes({"public/new.txt": b"n", "../evil.txt": b"x"}),
        )
        request = ProvisionRequest(instance=make_instance(), storage=storage_mount, target=target, clean=True)

        with pytest.raises(SnapshotError, match="unsafe"):
            provisioner.import_snapshot(request)

        assert live.read_text() == "serving"
        assert not (live.parent / "new.txt").exists()


class TestWorkPaths:
    def test_scratch_paths_are_private_per_call(self, provisioner, tmp_path):
        first = provisioner.scratch_path("x.storage.zip")
        second = provisioner.scratch_path("x.storage.zip")

        assert first != second
        assert first.is_dir()
        assert second.is_dir()
        assert first.parent == second.parent == tmp_path / "work-root" / "import"

    def test_work_paths_are_private_per_call(self, provisioner, tmp_path):
        first = provisioner.work_path("20240101000000.acme-prod")
        second = provisioner.work_path("20240101000000.acme-prod")

        assert first != second
        assert first.name.startswith("20240101000000.acme-prod.")

        provisioner.delete_work_path(first)

        assert not first.exists()
        assert second.is_dir()
