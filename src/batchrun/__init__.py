from .config import load_config
from .engine import Engine, prerequisites_met
from .model import RunOutcome, RunSettings, RunState, RunStatus, StepDefinition, StepStatus
from .window import inside_window

__all__ = [
    "load_config",
    "Engine",
    "prerequisites_met",
    "inside_window",
    "RunOutcome",
    "RunSettings",
    "RunState",
    "RunStatus",
    "StepDefinition",
    "StepStatus",
]
