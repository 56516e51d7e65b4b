from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List, Sequence, Tuple

import pytest
import yaml

from batchrun.engine import Engine
from batchrun.model import RunSettings, StepDefinition
from batchrun.ui.console import set_console


class RecordingNotifier:
    """Notifier stand-in that remembers every call."""

    def __init__(self, result: bool = True, error: Exception | None = None):
        self.calls: List[Tuple[str, Path, List[Path]]] = []
        self.result = result
        self.error = error

    def notify(self, subject: str, log_path: Path, attachments: Sequence[Path]) -> bool:
        self.calls.append((subject, Path(log_path), list(attachments)))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture(autouse=True)
def _fresh_console():
    set_console(None)
    yield
    set_console(None)


@pytest.fixture
def workdir(tmp_path) -> Path:
    d = tmp_path / "work"
    d.mkdir()
    return d


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_engine(workdir, notifier, sleeps):
    """Build an Engine over `workdir` from dicts of StepDefinition fields."""

    def _make(
        steps: Sequence[dict],
        *,
        rotation: int = 10,
        seconds_between_tries: int = 0,
        window: Tuple[str, str] = ("00:00", "00:00"),
        now: datetime = datetime(2024, 1, 15, 12, 0),
        runner=None,
    ) -> Engine:
        start, end = (datetime.strptime(w, "%H:%M").time() for w in window)
        settings = RunSettings(
            name="nightly",
            working_dir=workdir,
            log_rotation_count=rotation,
            batch_window_start=start,
            batch_window_end=end,
            seconds_between_tries=seconds_between_tries,
        )
        definitions = [StepDefinition(index=i, **s) for i, s in enumerate(steps, start=1)]
        kwargs = {}
        if runner is not None:
            kwargs["runner"] = runner
        return Engine(
            settings,
            definitions,
            notifier=notifier,
            clock=lambda: now,
            sleep=sleeps.append,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_config(tmp_path, workdir):
    """Write a YAML config file; `overrides` replace top level keys."""

    def _make(steps: Sequence[dict] | None = None, **overrides) -> Path:
        data = {
            "job_run_name": "nightly",
            "working_dir": str(workdir),
            "log_rotation_count": 10,
            "steps": list(steps) if steps is not None else [{"name": "hello", "execute_cmd": "echo hello"}],
        }
        data.update(overrides)
        path = tmp_path / "batchrun.yaml"
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path

    return _make
