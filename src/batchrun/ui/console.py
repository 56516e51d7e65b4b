"""Console output formatting utilities for batchrun."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from batchrun.engine import RunReport
    from batchrun.model import RunOutcome

RULE = "#" + "-" * 59


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_run_started(self, run_name: str, action: str, step_count: int) -> None:
        """Print run start information."""
        print(f"\nRUN {action.upper()}")
        print(f"Job run: {run_name}")
        print(f"Steps: {step_count}")
        print()

    def print_outcome(self, outcome: "RunOutcome") -> None:
        """Print the one-line result of a finished job run."""
        print(f"RESULT: {outcome.summary}.")

    def print_status(self, report: "RunReport") -> None:
        """Print run header plus one line per step."""
        print()
        print(RULE)
        print("# batchrun status")
        print(f"# job name    : {report.run_name}")
        print(f"# job run #   : {report.state.run_id}")
        print(f"# job status  : {report.state.run_status.value}")
        print(f"# as found in : {report.run_dir}")
        print(RULE)
        width = len(str(len(report.steps)))
        for step in report.steps:
            print(f"step #{step.index:0{width}d}  {step.status.value:<10}  {step.name}")

    def print_file(self, title: str, path: Path) -> None:
        """Print a framed copy of a step output file."""
        print()
        print(RULE)
        print(f"# {title}")
        print(RULE)
        self.print_text_file(path)

    def print_text_file(self, path: Path) -> None:
        """Print a log / output file verbatim."""
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                print(line, end="")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
