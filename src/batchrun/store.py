# store.py
from __future__ import annotations

import logging
import shutil
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator

from pydantic import BaseModel, Field, ValidationError

from .errors import StatusCorrupt, StorageIOFailure
from .model import RunState, StepDefinition, StepStatus

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------
# <working_dir>/
#   .batchrun-status.json          RunState
#   .batchrun-config.yaml          copy of the config used to start the run
#   jobruns/
#     jobrun-<id>/                 one directory per run number
#       log.txt                    append-only run log
#       step-<i>.json              current StepRecord of step i
#       step-<i>.txt               output of step i (execute + validate)
#
# Run numbers are zero padded to the width of the rotation count, step
# numbers to the width of the step count, so `ls` sorts them naturally.
# ---------------------------------------------------------------------

STATUS_FILE = ".batchrun-status.json"
CONFIG_COPY_FILE = ".batchrun-config.yaml"
HISTORY_DIR = "jobruns"
LOG_FILE = "log.txt"


@contextmanager
def _storage_io(action: str, path: Path) -> Iterator[None]:
    try:
        yield
    except OSError as e:
        raise StorageIOFailure(f"can't {action} ({path})", {"reason": e.strerror or str(e)}) from e


def _atomic_write_text(path: Path, text: str) -> None:
    # Write to tmp, then rename over the old record
    tmp = path.with_name(path.name + ".tmp")
    try:
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(path)
    finally:
        if tmp.exists():
            tmp.unlink(missing_ok=True)


class RunLayout:
    """Path conventions for one working directory."""

    def __init__(self, working_dir: str | Path, rotation_count: int, total_steps: int):
        self.working_dir = Path(working_dir)
        self.run_digits = len(str(rotation_count))
        self.step_digits = len(str(total_steps))

    @property
    def status_path(self) -> Path:
        return self.working_dir / STATUS_FILE

    @property
    def config_copy_path(self) -> Path:
        return self.working_dir / CONFIG_COPY_FILE

    @property
    def history_dir(self) -> Path:
        return self.working_dir / HISTORY_DIR

    def run_dir(self, run_id: int) -> Path:
        return self.history_dir / f"jobrun-{run_id:0{self.run_digits}d}"

    def log_path(self, run_id: int) -> Path:
        return self.run_dir(run_id) / LOG_FILE

    def step_stem(self, index: int) -> str:
        return f"step-{index:0{self.step_digits}d}"

    def copy_config(self, source: str | Path) -> Path:
        """Keep a verbatim copy of the config used for this invocation."""
        dest = self.config_copy_path
        with _storage_io("copy config file", dest):
            if Path(source).resolve() != dest.resolve():
                shutil.copyfile(source, dest)
        return dest

    def prepare_run_dir(self, run_id: int) -> Path:
        """
        Create the directory for run `run_id`, or recycle it on log rotation
        by deleting whatever a previous run with the same number left there.
        """
        run_dir = self.run_dir(run_id)
        with _storage_io("initialize run directory", run_dir):
            self.history_dir.mkdir(parents=True, exist_ok=True)
            if run_dir.exists():
                logger.debug("log rotation detected for %s", run_dir)
                removed = 0
                for p in run_dir.iterdir():
                    if p.is_dir():
                        shutil.rmtree(p)
                    else:
                        p.unlink()
                    removed += 1
                logger.debug("removed %d old entries from %s", removed, run_dir)
            else:
                run_dir.mkdir()
        return run_dir


# ---------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------

class RunStateStore:
    """Load / save the singleton RunState of a working directory."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> RunState:
        """
        Return the persisted RunState.

        The first time a working directory is used a fresh NEW state
        (run_id 0) is created and saved. A record that fails validation is
        never guessed at: StatusCorrupt is raised instead.
        """
        if not self.path.exists():
            state = RunState()
            self.save(state)
            logger.debug("status file %s created", self.path)
            return state

        with _storage_io("read status file", self.path):
            raw = self.path.read_text(encoding="utf-8")
        try:
            return RunState.model_validate_json(raw)
        except ValidationError as e:
            raise StatusCorrupt(
                f"{self.path} failed validation",
                {"errors": _format_errors(e)},
            ) from e

    def save(self, state: RunState) -> None:
        with _storage_io("update status file", self.path):
            _atomic_write_text(self.path, state.model_dump_json(indent=2) + "\n")


# ---------------------------------------------------------------------
# Step ledger
# ---------------------------------------------------------------------

class StepRecord(BaseModel):
    """Current status of one step in one run."""

    index: int = Field(ge=1)
    name: str
    status: StepStatus
    updated_at: datetime = Field(default_factory=datetime.now)


class StepLedger:
    """
    Per-step status records plus output records for one run directory.

    Each status change replaces the step's record atomically, so at most one
    record per step exists and "status of step i" is a single file read.
    """

    def __init__(self, layout: RunLayout, run_id: int, steps: Iterable[StepDefinition]):
        self.layout = layout
        self.run_id = run_id
        self.run_dir = layout.run_dir(run_id)
        self.steps = {s.index: s for s in steps}

    def record_path(self, index: int) -> Path:
        return self.run_dir / f"{self.layout.step_stem(index)}.json"

    def output_path(self, index: int) -> Path:
        return self.run_dir / f"{self.layout.step_stem(index)}.txt"

    # ---- status records ----

    def initialize(self) -> None:
        """Mark every step QUEUED with an empty output record."""
        for index in sorted(self.steps):
            self.set_status(index, StepStatus.QUEUED)
            self.truncate_output(index)

    def set_status(self, index: int, status: StepStatus) -> None:
        record = StepRecord(index=index, name=self.steps[index].name, status=status)
        path = self.record_path(index)
        with _storage_io("update step status file", path):
            _atomic_write_text(path, record.model_dump_json(indent=2) + "\n")

    def read(self, index: int) -> StepRecord:
        path = self.record_path(index)
        if not path.exists():
            raise StatusCorrupt(
                f"step status file for step #{index} is missing",
                {"path": str(path)},
            )
        with _storage_io("read step status file", path):
            raw = path.read_text(encoding="utf-8")
        try:
            record = StepRecord.model_validate_json(raw)
        except ValidationError as e:
            raise StatusCorrupt(f"{path} failed validation", {"errors": _format_errors(e)}) from e
        if record.index != index:
            raise StatusCorrupt(
                f"{path} belongs to step #{record.index}, expected step #{index}",
            )
        return record

    def read_all(self) -> Dict[int, StepStatus]:
        """Read every step's status fresh from disk."""
        return {index: self.read(index).status for index in sorted(self.steps)}

    # ---- output records ----

    def truncate_output(self, index: int) -> None:
        path = self.output_path(index)
        with _storage_io("create step output file", path):
            path.write_text("", encoding="utf-8")

    def append_output(self, index: int, text: str) -> None:
        path = self.output_path(index)
        with _storage_io("append to step output file", path):
            with path.open("a", encoding="utf-8", newline="") as f:
                f.write(text)


def _format_errors(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
    )
