# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class BatchRunError(Exception):
    """
    Structured fatal error with enough context for:
      - clean CLI output
      - a distinct process exit code per failure kind
    """
    message: str
    details: dict = field(default_factory=dict)

    kind = "error"
    exit_code = 1

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigInvalid(BatchRunError):
    """Config file is missing, unreadable or malformed. No run state was touched."""
    kind = "bad config file"
    exit_code = 2


class StatusCorrupt(BatchRunError):
    """Durable run state or a step record fails its own validation."""
    kind = "bad status file"
    exit_code = 3


class PreconditionViolation(BatchRunError):
    """The requested operation is not allowed in the current run state."""
    kind = "not allowed"
    exit_code = 4


class StorageIOFailure(BatchRunError):
    """Durable state could not be read or written."""
    kind = "storage failure"
    exit_code = 5


class NotificationFailure(BatchRunError):
    """
    The notifier could not deliver the run result.

    The engine catches it and logs a warning, so it never decides a run's
    outcome. The exit code only applies if it escapes some other caller.
    """
    kind = "notification failure"
    exit_code = 6
