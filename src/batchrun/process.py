# process.py
# The one place that shells out to run step commands.
from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class CommandResult:
    cmd: str
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def run_command(cmd: str, cwd: str | Path) -> CommandResult:
    """
    Run `cmd` through the shell inside `cwd` and wait for it to exit.

    stdout and stderr are captured together, in the order the program wrote
    them, so the step output record reads like a terminal session.
    A command that cannot be started at all (bad cwd, no shell) is reported
    as exit code 127 with the error text as output rather than raised.
    """
    try:
        proc = subprocess.run(
            cmd,
            shell=True,
            cwd=str(cwd),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
        )
    except OSError as e:
        return CommandResult(cmd=cmd, exit_code=127, output=f"{e}\n")

    # bytes in, so a lone \r (progress output) is kept as written
    output = (proc.stdout or b"").decode("utf-8", "replace")
    return CommandResult(cmd=cmd, exit_code=proc.returncode, output=output)


def normalize_line_endings(path: str | Path) -> None:
    """Rewrite CRLF line endings as LF in place (no-op on Windows hosts)."""
    if os.name == "nt":
        return
    p = Path(path)
    if not p.exists():
        return
    data = p.read_bytes()
    cleaned = data.replace(b"\r\n", b"\n")
    if cleaned != data:
        p.write_bytes(cleaned)
