# config.py
from __future__ import annotations

import os
import re
from datetime import time
from pathlib import Path
from typing import List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigInvalid
from .model import RunSettings, StepDefinition
from .window import parse_hhmm

MAX_JOB_RUN = 999999
CONFIG_ENV_VAR = "BATCHRUN_CONFIG"

_EMAIL = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def _non_empty(value: str, what: str) -> str:
    if not re.search(r"\w", value or ""):
        raise ValueError(f"{what} must be a non-empty string")
    return value


class StepConfig(BaseModel):
    """One entry of `steps:` in the config file."""

    model_config = ConfigDict(extra="forbid")

    name: str
    execute_cmd: str
    validate_cmd: str = ""
    prereq_steps: List[int] = Field(default_factory=list)
    obey_batch_window: bool = False
    max_tries: int = Field(default=1, ge=1)
    stop_run_on_failure: bool = False
    email_log_file: bool = False

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        return _non_empty(v, "name").strip()

    @field_validator("execute_cmd")
    @classmethod
    def check_execute_cmd(cls, v: str) -> str:
        return _non_empty(v, "execute_cmd")

    @field_validator("validate_cmd", mode="before")
    @classmethod
    def check_validate_cmd(cls, v):
        if v is None:
            return ""
        if isinstance(v, str) and v != "" and not re.search(r"\w", v):
            raise ValueError("validate_cmd must be a command line string or '' if not used")
        return v

    @field_validator("obey_batch_window", "stop_run_on_failure", "email_log_file", mode="before")
    @classmethod
    def check_yes_no(cls, v):
        if isinstance(v, str):
            flag = v.strip().upper()
            if flag in ("YES", "TRUE"):
                return True
            if flag in ("NO", "FALSE"):
                return False
            raise ValueError("must be set to YES or NO")
        return v

    @field_validator("prereq_steps", mode="before")
    @classmethod
    def check_prereq_steps(cls, v):
        # accept "1, 3", 2 or [1, 3]
        if v is None or v == "":
            return []
        if isinstance(v, int) and not isinstance(v, bool):
            return [v]
        if isinstance(v, str):
            if not re.fullmatch(r"\s*\d+(\s*,\s*\d+)*\s*", v):
                raise ValueError("must be a comma separated list of step numbers or '' for none")
            return [int(p) for p in v.split(",")]
        return v


class RunConfigFile(BaseModel):
    """Schema of a job run config file."""

    model_config = ConfigDict(extra="forbid")

    job_run_name: str
    working_dir: Path
    log_rotation_count: int = Field(default=10, ge=1, le=MAX_JOB_RUN)
    email_subscribers: List[str] = Field(default_factory=list)
    batch_window_start: time = time(0, 0)
    batch_window_end: time = time(0, 0)
    seconds_between_tries: int = Field(default=0, ge=0)
    steps: List[StepConfig] = Field(min_length=1)

    @field_validator("job_run_name")
    @classmethod
    def check_job_run_name(cls, v: str) -> str:
        return _non_empty(v, "job_run_name").strip()

    @field_validator("working_dir")
    @classmethod
    def check_working_dir(cls, v: Path) -> Path:
        v = v.expanduser()
        if not v.is_dir():
            raise ValueError(f"{v} must be an existing directory")
        return v.resolve()

    @field_validator("email_subscribers", mode="before")
    @classmethod
    def check_email_subscribers(cls, v):
        if v is None or v == "":
            return []
        if isinstance(v, str):
            v = v.split(",")
        addresses = [str(a).strip() for a in v]
        bad = [a for a in addresses if not _EMAIL.match(a)]
        if bad:
            raise ValueError(f"invalid email address(es): {', '.join(bad) or repr('')}")
        return addresses

    @field_validator("batch_window_start", "batch_window_end", mode="before")
    @classmethod
    def check_hhmm(cls, v):
        if isinstance(v, time):
            return v
        if isinstance(v, int) and not isinstance(v, bool):
            # YAML 1.1 reads an unquoted 23:00 as sexagesimal minutes
            hours, minutes = divmod(v, 60)
            v = f"{hours:02d}:{minutes:02d}"
        return parse_hhmm(str(v))

    @model_validator(mode="after")
    def check_prereqs_point_backwards(self) -> "RunConfigFile":
        for i, step in enumerate(self.steps, start=1):
            for p in step.prereq_steps:
                if p <= 0 or p >= i:
                    raise ValueError(
                        f"step #{i} prereq_steps can only contain previous step numbers (got {p})"
                    )
        return self

    def to_definitions(self, config_path: Optional[Path] = None) -> Tuple[RunSettings, List[StepDefinition]]:
        settings = RunSettings(
            name=self.job_run_name,
            working_dir=self.working_dir,
            log_rotation_count=self.log_rotation_count,
            email_subscribers=tuple(self.email_subscribers),
            batch_window_start=self.batch_window_start,
            batch_window_end=self.batch_window_end,
            seconds_between_tries=self.seconds_between_tries,
            config_path=config_path,
        )
        steps = [
            StepDefinition(
                index=i,
                name=s.name,
                execute_cmd=s.execute_cmd,
                validate_cmd=s.validate_cmd,
                prereq_steps=frozenset(s.prereq_steps),
                obey_batch_window=s.obey_batch_window,
                max_tries=s.max_tries,
                stop_run_on_failure=s.stop_run_on_failure,
                email_log_file=s.email_log_file,
            )
            for i, s in enumerate(self.steps, start=1)
        ]
        return settings, steps


def resolve_config_path(path: Optional[str | Path] = None) -> Path:
    """Explicit path wins, then $BATCHRUN_CONFIG."""
    raw = path or os.getenv(CONFIG_ENV_VAR)
    if not raw:
        raise ConfigInvalid(f"no config file given (use --file or set {CONFIG_ENV_VAR})")
    return Path(raw).expanduser()


def load_config(path: Optional[str | Path] = None) -> Tuple[RunSettings, List[StepDefinition]]:
    """
    Load and validate a job run config file.

    Returns (settings, steps) or raises ConfigInvalid naming every problem.
    The file is parsed as data (YAML); nothing in it is executed.
    """
    cfg_path = resolve_config_path(path)
    if not cfg_path.is_file():
        raise ConfigInvalid(f"config file ({cfg_path}) not found or not a regular file")

    try:
        with open(cfg_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigInvalid(f"config file ({cfg_path}) is not readable", {"reason": str(e)}) from e
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        raise ConfigInvalid(f"config file ({cfg_path}) is not valid YAML", {"reason": str(e)}) from e

    if not isinstance(data, dict):
        raise ConfigInvalid(f"config file ({cfg_path}) must contain a mapping of settings")

    try:
        parsed = RunConfigFile.model_validate(data)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        ]
        raise ConfigInvalid(
            f"bad config file ({cfg_path})",
            {f"problem[{i}]": p for i, p in enumerate(problems, start=1)},
        ) from e

    return parsed.to_definitions(cfg_path.resolve())
