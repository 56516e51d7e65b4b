# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import time
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


class StepStatus(str, Enum):
    """Ledger status of a single step."""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    VALIDATING = "VALIDATING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"


class RunStatus(str, Enum):
    """Status of the last / current job run in a working directory."""
    NEW = "NEW"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class StepDefinition:
    """A single external program (step) inside a job run."""
    index: int
    name: str
    execute_cmd: str
    validate_cmd: str = ""
    prereq_steps: frozenset[int] = field(default_factory=frozenset)
    obey_batch_window: bool = False
    max_tries: int = 1
    stop_run_on_failure: bool = False
    email_log_file: bool = False

    @property
    def has_validation(self) -> bool:
        return bool(self.validate_cmd.strip())


@dataclass(frozen=True)
class RunSettings:
    """
    Run-wide parameters: identity, storage, noticing and timing.

    `batch_window_start == batch_window_end` means the window is always open.
    """
    name: str
    working_dir: Path
    log_rotation_count: int = 10
    email_subscribers: tuple[str, ...] = ()
    batch_window_start: time = time(0, 0)
    batch_window_end: time = time(0, 0)
    seconds_between_tries: int = 0
    config_path: Optional[Path] = None


class RunState(BaseModel):
    """
    Durable resume point of the last / current job run.

    Exactly one of these exists per working directory. The engine mutates it
    once per scheduling decision and saves it immediately afterwards.
    """

    run_id: int = Field(default=0, ge=0)
    run_status: RunStatus = RunStatus.NEW
    current_step: int = Field(default=0, ge=0)
    current_step_name: str = ""
    attempt_number: int = Field(default=0, ge=0)


@dataclass(frozen=True)
class RunOutcome:
    """What a finished job run reports back to its caller."""
    run_id: int
    status: RunStatus
    succeeded: int
    total_steps: int
    summary: str

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.SUCCEEDED
