# runlog.py
from __future__ import annotations

import logging
from pathlib import Path

from .errors import StorageIOFailure

LOG_FORMAT = "%(asctime)s: %(message)s"
DATE_FORMAT = "%a %b %d %H:%M:%S %Y"
BANNER_RULE = "#" + "-" * 59


class _RunLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        if record.levelno >= logging.WARNING:
            # keep the timestamp first so the log stays sortable
            prefix, _, message = line.partition(": ")
            line = f"{prefix}: {record.levelname}: {message}"
        return line


class RunLog:
    """
    Append-only event log of one job run (`jobruns/jobrun-<id>/log.txt`).

    Backed by a `batchrun.run.<id>` logger with a FileHandler in append mode.
    Records propagate to the `batchrun` logger so `--debug` echoes them to
    the terminal.
    """

    def __init__(self, path: str | Path, run_id: int):
        self.path = Path(path)
        self.run_id = run_id
        self.logger = logging.getLogger(f"batchrun.run.{run_id}")
        self.logger.setLevel(logging.INFO)
        self._handler: logging.FileHandler | None = None

    def open(self, *, truncate: bool = False) -> "RunLog":
        self.close()
        try:
            if truncate:
                self.path.write_text("", encoding="utf-8")
            # always append mode: banner() writes to the same file directly
            handler = logging.FileHandler(self.path, mode="a", encoding="utf-8")
        except OSError as e:
            raise StorageIOFailure(f"can't open run log ({self.path})", {"reason": str(e)}) from e
        handler.setFormatter(_RunLogFormatter(LOG_FORMAT, DATE_FORMAT))
        self.logger.addHandler(handler)
        self._handler = handler
        return self

    def close(self) -> None:
        if self._handler is not None:
            self.logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None

    def __enter__(self) -> "RunLog":
        if self._handler is None:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def banner(self, run_name: str) -> None:
        """Write the undated header block that opens each invocation's section."""
        lines = [BANNER_RULE, f"# {run_name}", f"# job run #{self.run_id}", BANNER_RULE]
        if self._handler is not None:
            self._handler.flush()
        try:
            with self.path.open("a", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
        except OSError as e:
            raise StorageIOFailure(f"can't write run log ({self.path})", {"reason": str(e)}) from e

    def info(self, msg: str, *args) -> None:
        self.logger.info(msg, *args)

    def warning(self, msg: str, *args) -> None:
        self.logger.warning(msg, *args)
