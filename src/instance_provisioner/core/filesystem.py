"""Storage abstraction used by the storage provisioner."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import IO, TYPE_CHECKING, Literal, Protocol, TypedDict, runtime_checkable

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from collections.abc import Iterator

_CHUNK_SIZE = 1024 * 1024


class Entry(TypedDict):
    path: str
    type: Literal["dir", "file"]


@runtime_checkable
class Filesystem(Protocol):
    """Minimal storage contract. All paths are relative to the mount."""

    @property
    def path_prefix(self) -> Path: ...

    def has(self, path: str) -> bool: ...

    def create_dir(self, path: str) -> bool: ...

    def delete_dir(self, path: str) -> bool: ...

    def write_stream(self, path: str, stream: IO[bytes]) -> bool: ...

    def read_stream(self, path: str) -> IO[bytes]: ...

    def list_contents(self, path: str = "", *, recursive: bool = False) -> list[Entry]: ...

    def mount(self, path: str) -> Filesystem: ...


class LocalFilesystem:
    """``Filesystem`` backed by a local directory."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)

    def __repr__(self) -> str:
        return f"LocalFilesystem({str(self._root)!r})"

    @property
    def path_prefix(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        rel = path.strip().lstrip("/")
        if rel in ("", "."):
            return self._root
        resolved = self._root / rel
        if ".." in Path(rel).parts:
            raise ValueError(f"Path escapes mount: {path}")
        return resolved

    def has(self, path: str) -> bool:
        return self._resolve(path).exists()

    def create_dir(self, path: str) -> bool:
        self._resolve(path).mkdir(parents=True, exist_ok=True)
        return True

    def delete_dir(self, path: str) -> bool:
        target = self._resolve(path)
        if not target.is_dir():
            return False
        if target == self._root:
            # Wipe contents but keep the mount itself.
            for child in list(target.iterdir()):
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            return True
        shutil.rmtree(target)
        return True

    def write_stream(self, path: str, stream: IO[bytes]) -> bool:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as fh:
            shutil.copyfileobj(stream, fh, _CHUNK_SIZE)
        return True

    def read_stream(self, path: str) -> IO[bytes]:
        return self._resolve(path).open("rb")

    def _walk(self, base: Path, recursive: bool) -> Iterator[Path]:
        for child in sorted(base.iterdir()):
            yield child
            if recursive and child.is_dir() and not child.is_symlink():
                yield from self._walk(child, recursive)

    def list_contents(self, path: str = "", *, recursive: bool = False) -> list[Entry]:
        base = self._resolve(path)
        if not base.is_dir():
            return []
        return [
            Entry(
                path=p.relative_to(self._root).as_posix(),
                type="dir" if p.is_dir() else "file",
            )
            for p in self._walk(base, recursive)
        ]

    def mount(self, path: str) -> LocalFilesystem:
        return LocalFilesystem(self._resolve(path))
