# engine.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .errors import NotificationFailure, PreconditionViolation, StatusCorrupt, StorageIOFailure
from .model import RunOutcome, RunSettings, RunState, RunStatus, StepDefinition, StepStatus
from .notify import Notifier, notifier_for
from .process import CommandResult, normalize_line_endings, run_command
from .runlog import RunLog
from .store import RunLayout, RunStateStore, StepLedger
from .window import inside_window

logger = logging.getLogger(__name__)

CommandRunner = Callable[[str, Path], CommandResult]


def prerequisites_met(step: StepDefinition, statuses: Dict[int, StepStatus]) -> bool:
    """True iff every prerequisite of `step` has SUCCEEDED in `statuses`."""
    return all(statuses.get(p) is StepStatus.SUCCEEDED for p in step.prereq_steps)


@dataclass(frozen=True)
class StepReport:
    index: int
    name: str
    status: StepStatus
    output_path: Path


@dataclass(frozen=True)
class RunReport:
    """Read-only snapshot of the last / current run, for display."""
    run_name: str
    state: RunState
    run_dir: Path
    log_path: Path
    steps: List[StepReport]


class Engine:
    """
    Runs the steps of one working directory, one at a time, resumably.

    Every scheduling decision re-reads the step ledger from disk and every
    change to the run state is saved before the next decision, so a killed
    and restarted engine sees exactly what a continuing one would have seen.
    """

    def __init__(
        self,
        settings: RunSettings,
        steps: Sequence[StepDefinition],
        *,
        notifier: Optional[Notifier] = None,
        runner: CommandRunner = run_command,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not steps:
            raise ValueError("a job run needs at least one step")
        self.settings = settings
        self.steps = sorted(steps, key=lambda s: s.index)
        if [s.index for s in self.steps] != list(range(1, len(self.steps) + 1)):
            raise ValueError("step indices must be 1..N without gaps")
        self.total_steps = len(self.steps)
        self.layout = RunLayout(settings.working_dir, settings.log_rotation_count, self.total_steps)
        self.state_store = RunStateStore(self.layout.status_path)
        self.notifier = notifier if notifier is not None else notifier_for(settings.email_subscribers)
        self.runner = runner
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def load_state(self) -> RunState:
        return self.state_store.load()

    def start_new_run(self, *, override: bool = False) -> RunOutcome:
        """Allocate the next run number, queue every step and run them."""
        state = self.state_store.load()
        if state.run_id:
            logger.debug("previous job run #%d status is %s", state.run_id, state.run_status.value)
            if state.run_status is RunStatus.RUNNING:
                self._require_override(
                    override, f"previous job run #{state.run_id} is still running or stalled", "new job run not started"
                )
            elif state.run_status is RunStatus.FAILED:
                self._require_override(
                    override, f"previous job run #{state.run_id} did not complete successfully", "new job run not started"
                )

        run_id = state.run_id + 1
        if run_id > self.settings.log_rotation_count:
            logger.debug(
                "exceeded max job run count (%d), rolling over to job run #1", self.settings.log_rotation_count
            )
            run_id = 1
        state.run_id = run_id

        run_dir = self.layout.prepare_run_dir(run_id)
        ledger = self._ledger(run_id)
        with RunLog(self.layout.log_path(run_id), run_id).open(truncate=True) as run_log:
            run_log.banner(self.settings.name)
            run_log.info("job run directory (%s) initialized", run_dir)
            ledger.initialize()
            run_log.info("job run step status files created")

            self._reset(state, current_step=1)
            run_log.info("job run status file (%s) initialized for new job run", self.layout.status_path.name)
            return self._execute(state, ledger, run_log)

    def restart_run(self, *, override: bool = False) -> RunOutcome:
        """Resume the last run from step 1, skipping steps that already SUCCEEDED."""
        state = self.state_store.load()
        self._check_resumable(state, override, "restart")

        ledger = self._open_existing_ledger(state.run_id)
        with RunLog(self.layout.log_path(state.run_id), state.run_id).open() as run_log:
            run_log.banner(self.settings.name)
            run_log.info("job run restarted")
            self._reset(state, current_step=1)
            run_log.info("job run status file (%s) initialized for job restart", self.layout.status_path.name)
            return self._execute(state, ledger, run_log)

    def reexecute_step(self, step_number: int, *, override: bool = False) -> RunOutcome:
        """Re-run one step of the last run, then carry on forward if it succeeds."""
        if not 1 <= step_number <= self.total_steps:
            raise PreconditionViolation(
                f"invalid step number for this job run (must be 1 to {self.total_steps})",
                {"step": step_number},
            )
        state = self.state_store.load()
        self._check_resumable(state, override, "re-execute step of")

        ledger = self._open_existing_ledger(state.run_id)
        with RunLog(self.layout.log_path(state.run_id), state.run_id).open() as run_log:
            run_log.banner(self.settings.name)
            run_log.info("manually re-executing step #%d of job run", step_number)
            self._reset(state, current_step=step_number)
            run_log.info("job run status file (%s) initialized", self.layout.status_path.name)
            return self._execute(state, ledger, run_log, pinned_step=step_number)

    def report(self) -> RunReport:
        """Snapshot of the last / current run (no state is modified)."""
        if not self.state_store.exists():
            raise PreconditionViolation("this job run has not been executed, so there is nothing to display")
        state = self.state_store.load()
        if state.run_id == 0 or state.run_status is RunStatus.NEW:
            raise PreconditionViolation("this job run has not been executed, so there is nothing to display")
        ledger = self._open_existing_ledger(state.run_id)
        steps = [
            StepReport(
                index=s.index,
                name=s.name,
                status=ledger.read(s.index).status,
                output_path=ledger.output_path(s.index),
            )
            for s in self.steps
        ]
        return RunReport(
            run_name=self.settings.name,
            state=state,
            run_dir=ledger.run_dir,
            log_path=self.layout.log_path(state.run_id),
            steps=steps,
        )

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def _execute(
        self,
        state: RunState,
        ledger: StepLedger,
        run_log: RunLog,
        *,
        pinned_step: Optional[int] = None,
    ) -> RunOutcome:
        while state.run_status is RunStatus.RUNNING:
            step = self.steps[state.current_step - 1]
            index = step.index
            state.current_step_name = step.name

            statuses = ledger.read_all()
            status = statuses[index]
            run_log.info("processing step #%d [%s]", index, step.name)

            if status is StepStatus.SUCCEEDED:
                run_log.info("step #%d SKIPPED since step was completed successfully previously", index)
                self.state_store.save(state)
            elif not prerequisites_met(step, statuses):
                run_log.info("step #%d BLOCKED since prerequisite steps are incomplete", index)
                ledger.set_status(index, StepStatus.BLOCKED)
                status = StepStatus.BLOCKED
                self.state_store.save(state)
            elif step.obey_batch_window and not self.inside_batch_window():
                run_log.info("step #%d BLOCKED since it can not be executed outside the batch window", index)
                ledger.set_status(index, StepStatus.BLOCKED)
                status = StepStatus.BLOCKED
                self.state_store.save(state)
            else:
                status = self._attempt(state, step, ledger, run_log)

            statuses[index] = status
            succeeded = sum(1 for s in statuses.values() if s is StepStatus.SUCCEEDED)
            is_last = index == self.total_steps
            on_pinned = pinned_step == index

            if status is StepStatus.FAILED and state.attempt_number < step.max_tries:
                continue  # same step again

            if status in (StepStatus.FAILED, StepStatus.BLOCKED) and step.stop_run_on_failure:
                return self._finish(
                    state,
                    RunStatus.FAILED,
                    f"job run FAILED (job run stopped mid-run since step #{index} {status.value})",
                    statuses,
                    ledger,
                    run_log,
                )
            elif succeeded == self.total_steps and (is_last or on_pinned):
                return self._finish(
                    state,
                    RunStatus.SUCCEEDED,
                    f"job run SUCCEEDED (all {self.total_steps} steps completed successfully)",
                    statuses,
                    ledger,
                    run_log,
                )
            elif is_last or (on_pinned and status is not StepStatus.SUCCEEDED):
                return self._finish(
                    state,
                    RunStatus.FAILED,
                    f"job run FAILED ({succeeded} of {self.total_steps} steps completed successfully)",
                    statuses,
                    ledger,
                    run_log,
                )
            else:
                state.current_step += 1
                state.attempt_number = 0
                self.state_store.save(state)

        raise RuntimeError(f"job run #{state.run_id} stopped running without a final status")

    def _attempt(self, state: RunState, step: StepDefinition, ledger: StepLedger, run_log: RunLog) -> StepStatus:
        index = step.index
        state.attempt_number += 1
        self.state_store.save(state)
        ledger.set_status(index, StepStatus.RUNNING)

        if state.attempt_number == 1:
            run_log.info("executing step #%d", index)
            ledger.truncate_output(index)
        else:
            delay = self.settings.seconds_between_tries
            if delay > 0:
                run_log.info("waiting (%d) seconds before re-try", delay)
                self.sleep(delay)
            run_log.info("re-trying step #%d (try %d of %d)", index, state.attempt_number, step.max_tries)

        ok = self._run_into_output(ledger, index, step.execute_cmd)
        if ok and step.has_validation:
            run_log.info("validating step #%d", index)
            ledger.set_status(index, StepStatus.VALIDATING)
            ok = self._run_into_output(ledger, index, step.validate_cmd)

        output_path = ledger.output_path(index)
        try:
            normalize_line_endings(output_path)
        except OSError as e:
            raise StorageIOFailure(f"can't clean step output file ({output_path})", {"reason": str(e)}) from e

        if ok:
            run_log.info("step #%d SUCCEEDED", index)
            ledger.set_status(index, StepStatus.SUCCEEDED)
            return StepStatus.SUCCEEDED

        run_log.info("step #%d FAILED (see step output file for detail)", index)
        ledger.set_status(index, StepStatus.FAILED)
        return StepStatus.FAILED

    def _run_into_output(self, ledger: StepLedger, index: int, cmd: str) -> bool:
        cwd = self.settings.working_dir
        ledger.append_output(index, f"{cwd}>{cmd}\n")
        result = self.runner(cmd, cwd)
        ledger.append_output(index, result.output)
        logger.debug("step #%d command exited with %d: %s", index, result.exit_code, cmd)
        return result.ok

    def _finish(
        self,
        state: RunState,
        status: RunStatus,
        summary: str,
        statuses: Dict[int, StepStatus],
        ledger: StepLedger,
        run_log: RunLog,
    ) -> RunOutcome:
        state.run_status = status
        self.state_store.save(state)
        run_log.info(summary)

        subject = f"{self.settings.name} (job run #{state.run_id}) {status.value}"
        attachments = self.attachments(statuses, ledger)
        try:
            sent = self.notifier.notify(subject, run_log.path, attachments)
        except NotificationFailure as e:
            logger.warning("email send request failed: %s", e)
            sent = False
        except Exception:
            logger.warning("notifier raised unexpectedly", exc_info=True)
            sent = False
        if not sent:
            run_log.warning("job run result email request failed")

        succeeded = sum(1 for s in statuses.values() if s is StepStatus.SUCCEEDED)
        return RunOutcome(
            run_id=state.run_id,
            status=status,
            succeeded=succeeded,
            total_steps=self.total_steps,
            summary=summary,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def inside_batch_window(self) -> bool:
        now = self.clock().time()
        return inside_window(now, self.settings.batch_window_start, self.settings.batch_window_end)

    def attachments(self, statuses: Dict[int, StepStatus], ledger: StepLedger) -> List[Path]:
        """Output files to send: every FAILED step, plus SUCCEEDED steps that asked for it."""
        files: List[Path] = []
        for step in self.steps:
            status = statuses.get(step.index)
            if status is StepStatus.FAILED or (status is StepStatus.SUCCEEDED and step.email_log_file):
                files.append(ledger.output_path(step.index))
        return files

    def _ledger(self, run_id: int) -> StepLedger:
        return StepLedger(self.layout, run_id, self.steps)

    def _open_existing_ledger(self, run_id: int) -> StepLedger:
        ledger = self._ledger(run_id)
        if not ledger.run_dir.is_dir():
            raise StatusCorrupt(
                f"directory for job run #{run_id} is missing",
                {"path": str(ledger.run_dir)},
            )
        ledger.read_all()
        return ledger

    def _reset(self, state: RunState, *, current_step: int) -> None:
        state.run_status = RunStatus.RUNNING
        state.current_step = current_step
        state.current_step_name = ""
        state.attempt_number = 0
        self.state_store.save(state)

    @staticmethod
    def _require_override(override: bool, warning: str, refused: str) -> None:
        logger.warning(warning)
        if not override:
            raise PreconditionViolation(
                f"{warning}; {refused}",
                {"hint": "use the override option to run anyway"},
            )
        logger.debug("override warning and continue")

    def _check_resumable(self, state: RunState, override: bool, action: str) -> None:
        if not state.run_id:
            raise PreconditionViolation(f"no job run to {action.split()[0]}")
        logger.debug("previous job run #%d status is %s", state.run_id, state.run_status.value)
        if state.run_status is RunStatus.SUCCEEDED:
            raise PreconditionViolation(f"can not {action} a successfully completed job run")
        if state.run_status is RunStatus.RUNNING:
            self._require_override(
                override,
                f"previous job run #{state.run_id} is still running or stalled",
                f"{action.split()[0]} refused",
            )
