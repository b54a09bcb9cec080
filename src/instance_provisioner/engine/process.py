"""External process invocation for the database dump/restore tools."""

from __future__ import annotations

import contextlib
import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

logger = logging.getLogger(__name__)

_SECRET_PREFIXES = ("--password=",)


def redact(command: Sequence[str]) -> list[str]:
    """Command line with password arguments masked, for logs."""
    return [
        f"{arg.split('=', 1)[0]}=***" if arg.startswith(_SECRET_PREFIXES) else arg
        for arg in command
    ]


@dataclass(frozen=True)
class ProcessResult:
    command: list[str]
    returncode: int
    output: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessRunner:
    """Runs a command to completion. Success is a zero exit status.

    No timeout is enforced: a hung tool hangs the calling request.
    """

    def which(self, name: str) -> str | None:
        return shutil.which(name)

    def run(
        self,
        command: Sequence[str],
        *,
        stdin: Path | None = None,
        stdout: Path | None = None,
    ) -> ProcessResult:
        """Run *command*, feeding *stdin* from a file and capturing output.

        With *stdout* set the output goes to that file; otherwise it is
        returned as lines (stderr is always returned).
        """
        cmd = list(command)
        logger.debug("Running %s", " ".join(redact(cmd)))
        with contextlib.ExitStack() as stack:
            fin = stack.enter_context(stdin.open("rb")) if stdin is not None else subprocess.DEVNULL
            fout = stack.enter_context(stdout.open("wb")) if stdout is not None else subprocess.PIPE
            completed = subprocess.run(
                cmd,
                stdin=fin,
                stdout=fout,
                stderr=subprocess.PIPE,
                check=False,
            )
        lines: list[str] = []
        for stream in (completed.stdout, completed.stderr):
            if stream:
                lines.extend(stream.decode("utf-8", "replace").splitlines())
        return ProcessResult(command=cmd, returncode=completed.returncode, output=lines)
