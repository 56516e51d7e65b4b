"""Tests for the step execution engine."""

from datetime import datetime

import pytest

from batchrun.engine import Engine, prerequisites_met
from batchrun.errors import NotificationFailure, PreconditionViolation, StatusCorrupt
from batchrun.model import RunSettings, RunState, RunStatus, StepDefinition, StepStatus
from batchrun.process import run_command


def recording_runner(calls):
    def _run(cmd, cwd):
        calls.append(cmd)
        return run_command(cmd, cwd)

    return _run


def statuses_of(engine, run_id):
    return engine._ledger(run_id).read_all()


# ---------------------------------------------------------------------
# prerequisites
# ---------------------------------------------------------------------

def test_empty_prerequisites_are_always_met():
    step = StepDefinition(index=3, name="x", execute_cmd="true")
    assert prerequisites_met(step, {})
    assert prerequisites_met(step, {1: StepStatus.FAILED, 2: StepStatus.BLOCKED})


def test_prerequisites_need_every_listed_step_succeeded():
    step = StepDefinition(index=3, name="x", execute_cmd="true", prereq_steps=frozenset({1, 2}))
    assert prerequisites_met(step, {1: StepStatus.SUCCEEDED, 2: StepStatus.SUCCEEDED})
    assert not prerequisites_met(step, {1: StepStatus.SUCCEEDED, 2: StepStatus.QUEUED})
    assert not prerequisites_met(step, {1: StepStatus.SUCCEEDED})


# ---------------------------------------------------------------------
# new run
# ---------------------------------------------------------------------

def test_new_run_all_steps_succeed(make_engine, notifier, workdir):
    engine = make_engine(
        [
            {"name": "extract", "execute_cmd": "echo extracting"},
            {"name": "load", "execute_cmd": "echo loading", "validate_cmd": "echo checking"},
        ]
    )

    outcome = engine.start_new_run()

    assert outcome.ok
    assert outcome.run_id == 1
    assert outcome.succeeded == 2
    assert outcome.summary == "job run SUCCEEDED (all 2 steps completed successfully)"

    state = engine.load_state()
    assert state.run_status is RunStatus.SUCCEEDED
    assert state.run_id == 1
    assert statuses_of(engine, 1) == {1: StepStatus.SUCCEEDED, 2: StepStatus.SUCCEEDED}

    output = engine._ledger(1).output_path(2).read_text()
    assert f"{workdir}>echo loading\n" in output
    assert "loading\n" in output
    assert f"{workdir}>echo checking\n" in output

    log = engine.layout.log_path(1).read_text()
    assert "# nightly" in log
    assert "# job run #1" in log
    assert "step #2 SUCCEEDED" in log

    assert len(notifier.calls) == 1
    subject, log_path, attachments = notifier.calls[0]
    assert subject == "nightly (job run #1) SUCCEEDED"
    assert log_path == engine.layout.log_path(1)
    assert attachments == []


def test_step_output_crlf_becomes_lf_and_lone_cr_is_kept(make_engine):
    engine = make_engine([{"name": "progress", "execute_cmd": "printf '10%%\\r20%%\\r\\nnext\\r\\n'"}])
    engine.start_new_run()
    output = engine._ledger(1).output_path(1).read_bytes()
    assert b"\r\n" not in output
    assert output.endswith(b"10%\r20%\nnext\n")


def test_validation_failure_fails_the_step(make_engine):
    calls = []
    engine = make_engine(
        [{"name": "load", "execute_cmd": "echo loaded", "validate_cmd": "exit 3"}],
        runner=recording_runner(calls),
    )
    outcome = engine.start_new_run()
    assert outcome.status is RunStatus.FAILED
    assert outcome.summary == "job run FAILED (0 of 1 steps completed successfully)"
    assert calls == ["echo loaded", "exit 3"]
    assert statuses_of(engine, 1) == {1: StepStatus.FAILED}


def test_validation_skipped_when_execute_fails(make_engine):
    calls = []
    engine = make_engine(
        [{"name": "load", "execute_cmd": "false", "validate_cmd": "true"}],
        runner=recording_runner(calls),
    )
    engine.start_new_run()
    assert calls == ["false"]


def test_failing_step_is_tried_max_tries_times(make_engine, sleeps):
    calls = []
    engine = make_engine(
        [{"name": "flaky", "execute_cmd": "echo attempt; exit 1", "max_tries": 3}],
        seconds_between_tries=7,
        runner=recording_runner(calls),
    )

    outcome = engine.start_new_run()

    assert outcome.status is RunStatus.FAILED
    assert len(calls) == 3
    assert sleeps == [7, 7]
    assert statuses_of(engine, 1) == {1: StepStatus.FAILED}
    # retries append to the output record of the first attempt
    assert engine._ledger(1).output_path(1).read_text().count("attempt\n") == 3
    assert engine.load_state().attempt_number == 3


def test_retry_can_succeed(make_engine, sleeps):
    engine = make_engine(
        [{"name": "flaky", "execute_cmd": "test -f marker || { touch marker; exit 1; }", "max_tries": 2}]
    )
    outcome = engine.start_new_run()
    assert outcome.ok
    assert sleeps == []


def test_stop_run_on_failure_leaves_later_steps_queued(make_engine, notifier):
    engine = make_engine(
        [
            {"name": "A", "execute_cmd": "false", "stop_run_on_failure": True},
            {"name": "B", "execute_cmd": "true"},
        ]
    )

    outcome = engine.start_new_run()

    assert outcome.status is RunStatus.FAILED
    assert outcome.summary == "job run FAILED (job run stopped mid-run since step #1 FAILED)"
    assert statuses_of(engine, 1) == {1: StepStatus.FAILED, 2: StepStatus.QUEUED}
    assert engine.load_state().current_step == 1
    assert notifier.calls[0][0] == "nightly (job run #1) FAILED"


def test_failed_prerequisite_blocks_dependent_step(make_engine):
    engine = make_engine(
        [
            {"name": "one", "execute_cmd": "false"},
            {"name": "two", "execute_cmd": "true", "prereq_steps": frozenset({1})},
            {"name": "three", "execute_cmd": "true"},
        ]
    )

    outcome = engine.start_new_run()

    assert outcome.status is RunStatus.FAILED
    assert outcome.summary == "job run FAILED (1 of 3 steps completed successfully)"
    assert statuses_of(engine, 1) == {
        1: StepStatus.FAILED,
        2: StepStatus.BLOCKED,
        3: StepStatus.SUCCEEDED,
    }


def test_blocked_step_with_stop_on_failure_stops_run(make_engine):
    engine = make_engine(
        [
            {"name": "one", "execute_cmd": "false"},
            {"name": "two", "execute_cmd": "true", "prereq_steps": frozenset({1}), "stop_run_on_failure": True},
            {"name": "three", "execute_cmd": "true"},
        ]
    )
    outcome = engine.start_new_run()
    assert outcome.summary == "job run FAILED (job run stopped mid-run since step #2 BLOCKED)"
    assert statuses_of(engine, 1)[3] is StepStatus.QUEUED


def test_step_outside_batch_window_is_blocked(make_engine):
    calls = []
    engine = make_engine(
        [
            {"name": "window bound", "execute_cmd": "echo bound", "obey_batch_window": True},
            {"name": "free", "execute_cmd": "echo free"},
        ],
        window=("22:00", "02:00"),
        now=datetime(2024, 1, 15, 12, 0),
        runner=recording_runner(calls),
    )

    outcome = engine.start_new_run()

    assert calls == ["echo free"]
    assert statuses_of(engine, 1) == {1: StepStatus.BLOCKED, 2: StepStatus.SUCCEEDED}
    # a BLOCKED step counts against the run even when nothing after it failed
    assert outcome.status is RunStatus.FAILED
    assert outcome.summary == "job run FAILED (1 of 2 steps completed successfully)"


def test_step_inside_batch_window_runs(make_engine):
    engine = make_engine(
        [{"name": "window bound", "execute_cmd": "true", "obey_batch_window": True}],
        window=("22:00", "02:00"),
        now=datetime(2024, 1, 15, 23, 30),
    )
    assert engine.start_new_run().ok


def test_new_run_rotates_run_numbers(make_engine):
    engine = make_engine([{"name": "one", "execute_cmd": "true"}], rotation=2)
    assert engine.start_new_run().run_id == 1
    stray = engine.layout.run_dir(1) / "stray.txt"
    stray.write_text("from an older run")
    assert engine.start_new_run().run_id == 2

    outcome = engine.start_new_run()

    assert outcome.run_id == 1
    assert not stray.exists()
    assert sorted(p.name for p in engine.layout.run_dir(1).iterdir()) == ["log.txt", "step-1.json", "step-1.txt"]


def test_new_run_after_failed_run_needs_override(make_engine):
    engine = make_engine([{"name": "one", "execute_cmd": "false"}])
    engine.start_new_run()

    with pytest.raises(PreconditionViolation, match="did not complete successfully"):
        engine.start_new_run()
    assert engine.load_state().run_id == 1

    assert engine.start_new_run(override=True).run_id == 2


def test_new_run_while_running_needs_override(make_engine):
    engine = make_engine([{"name": "one", "execute_cmd": "true"}])
    engine.state_store.save(RunState(run_id=3, run_status=RunStatus.RUNNING, current_step=1))

    with pytest.raises(PreconditionViolation, match="still running"):
        engine.start_new_run()

    assert engine.start_new_run(override=True).run_id == 4


# ---------------------------------------------------------------------
# restart
# ---------------------------------------------------------------------

def test_restart_skips_succeeded_steps(make_engine, workdir):
    calls = []
    engine = make_engine(
        [
            {"name": "one", "execute_cmd": "echo one"},
            {"name": "two", "execute_cmd": "test -f go"},
        ],
        runner=recording_runner(calls),
    )
    assert not engine.start_new_run().ok
    calls.clear()
    (workdir / "go").write_text("")

    outcome = engine.restart_run()

    assert outcome.ok
    assert outcome.run_id == 1
    assert calls == ["test -f go"]
    log = engine.layout.log_path(1).read_text()
    assert "job run restarted" in log
    assert "step #1 SKIPPED" in log


def test_restart_with_everything_succeeded_runs_nothing(make_engine):
    calls = []
    engine = make_engine(
        [{"name": "one", "execute_cmd": "true"}, {"name": "two", "execute_cmd": "true"}],
        runner=recording_runner(calls),
    )
    engine.start_new_run()
    # e.g. the process was killed right before the final status was saved
    engine.state_store.save(RunState(run_id=1, run_status=RunStatus.FAILED, current_step=2))
    calls.clear()

    outcome = engine.restart_run()

    assert outcome.ok
    assert calls == []


@pytest.mark.parametrize("interrupted", [StepStatus.RUNNING, StepStatus.VALIDATING])
def test_restart_resumes_step_interrupted_mid_run(make_engine, interrupted):
    calls = []
    engine = make_engine(
        [
            {"name": "a", "execute_cmd": "echo a"},
            {"name": "b", "execute_cmd": "echo b", "validate_cmd": "true"},
        ],
        runner=recording_runner(calls),
    )
    engine.start_new_run()
    # simulate the process dying while step 2 was in flight
    ledger = engine._ledger(1)
    ledger.set_status(2, interrupted)
    ledger.output_path(2).write_text("half written output from the killed attempt\n")
    engine.state_store.save(
        RunState(run_id=1, run_status=RunStatus.RUNNING, current_step=2, current_step_name="b", attempt_number=1)
    )
    calls.clear()

    with pytest.raises(PreconditionViolation, match="still running"):
        engine.restart_run()

    outcome = engine.restart_run(override=True)

    assert outcome.ok
    assert calls == ["echo b", "true"]
    output = ledger.output_path(2).read_text()
    assert "half written" not in output
    assert output.startswith(f"{engine.settings.working_dir}>echo b\n")
    assert statuses_of(engine, 1) == {1: StepStatus.SUCCEEDED, 2: StepStatus.SUCCEEDED}
    state = engine.load_state()
    assert state.run_status is RunStatus.SUCCEEDED
    assert state.attempt_number == 1


def test_restart_preconditions(make_engine):
    engine = make_engine([{"name": "one", "execute_cmd": "true"}])
    with pytest.raises(PreconditionViolation, match="no job run"):
        engine.restart_run()

    engine.start_new_run()
    with pytest.raises(PreconditionViolation, match="successfully completed"):
        engine.restart_run()
    with pytest.raises(PreconditionViolation, match="successfully completed"):
        engine.restart_run(override=True)

    engine.state_store.save(RunState(run_id=1, run_status=RunStatus.RUNNING, current_step=1, attempt_number=1))
    with pytest.raises(PreconditionViolation, match="still running"):
        engine.restart_run()
    assert engine.restart_run(override=True).ok


def test_restart_with_corrupt_step_record(make_engine):
    engine = make_engine([{"name": "one", "execute_cmd": "false"}])
    engine.start_new_run()
    engine._ledger(1).record_path(1).write_text("{broken")
    with pytest.raises(StatusCorrupt):
        engine.restart_run()


def test_restart_with_missing_run_directory(make_engine):
    engine = make_engine([{"name": "one", "execute_cmd": "false"}])
    engine.state_store.save(RunState(run_id=5, run_status=RunStatus.FAILED, current_step=1))
    with pytest.raises(StatusCorrupt, match="missing"):
        engine.restart_run()


def test_corrupt_status_file(make_engine):
    engine = make_engine([{"name": "one", "execute_cmd": "true"}])
    engine.layout.status_path.write_text('{"run_id": "x"}')
    with pytest.raises(StatusCorrupt):
        engine.start_new_run()


# ---------------------------------------------------------------------
# re-execute one step
# ---------------------------------------------------------------------

REEXEC_STEPS = [
    {"name": "one", "execute_cmd": "echo one"},
    {"name": "two", "execute_cmd": "test -f go", "max_tries": 2},
    {"name": "three", "execute_cmd": "echo three", "prereq_steps": frozenset({2})},
]


def test_reexecute_step_continues_forward_on_success(make_engine, workdir):
    calls = []
    engine = make_engine(REEXEC_STEPS, runner=recording_runner(calls))
    engine.start_new_run()
    assert statuses_of(engine, 1) == {1: StepStatus.SUCCEEDED, 2: StepStatus.FAILED, 3: StepStatus.BLOCKED}
    calls.clear()
    (workdir / "go").write_text("")

    outcome = engine.reexecute_step(2)

    assert outcome.ok
    assert calls == ["test -f go", "echo three"]
    assert statuses_of(engine, 1) == {1: StepStatus.SUCCEEDED, 2: StepStatus.SUCCEEDED, 3: StepStatus.SUCCEEDED}
    assert "manually re-executing step #2" in engine.layout.log_path(1).read_text()


def test_reexecute_step_stops_when_step_fails_again(make_engine):
    calls = []
    engine = make_engine(REEXEC_STEPS, runner=recording_runner(calls))
    engine.start_new_run()
    calls.clear()

    outcome = engine.reexecute_step(2)

    assert outcome.status is RunStatus.FAILED
    # attempt counter starts over, so both tries are used again
    assert calls == ["test -f go", "test -f go"]
    assert statuses_of(engine, 1)[3] is StepStatus.BLOCKED
    assert outcome.summary == "job run FAILED (1 of 3 steps completed successfully)"


def test_reexecute_last_missing_step_completes_run(make_engine, workdir):
    calls = []
    engine = make_engine(
        [{"name": "one", "execute_cmd": "test -f go"}, {"name": "two", "execute_cmd": "echo two"}],
        runner=recording_runner(calls),
    )
    engine.start_new_run()
    calls.clear()
    (workdir / "go").write_text("")

    outcome = engine.reexecute_step(1)

    assert outcome.ok
    assert calls == ["test -f go"]


@pytest.mark.parametrize("step", [0, 4, -1])
def test_reexecute_step_out_of_range(make_engine, step):
    engine = make_engine(REEXEC_STEPS)
    engine.start_new_run()
    with pytest.raises(PreconditionViolation, match="must be 1 to 3"):
        engine.reexecute_step(step)


# ---------------------------------------------------------------------
# notification and reporting
# ---------------------------------------------------------------------

def test_failed_and_requested_outputs_are_attached(make_engine, notifier):
    engine = make_engine(
        [
            {"name": "quiet", "execute_cmd": "true"},
            {"name": "loud", "execute_cmd": "true", "email_log_file": True},
            {"name": "broken", "execute_cmd": "false"},
        ]
    )
    engine.start_new_run()
    ledger = engine._ledger(1)
    assert notifier.calls[0][2] == [ledger.output_path(2), ledger.output_path(3)]


@pytest.mark.parametrize("raises", [True, False])
def test_notification_failure_does_not_change_outcome(make_engine, notifier, raises):
    if raises:
        notifier.error = NotificationFailure("mailer exploded")
    else:
        notifier.result = False
    engine = make_engine([{"name": "one", "execute_cmd": "true"}])

    outcome = engine.start_new_run()

    assert outcome.ok
    assert engine.load_state().run_status is RunStatus.SUCCEEDED
    assert "WARNING: job run result email request failed" in engine.layout.log_path(1).read_text()


def test_report_requires_an_executed_run(make_engine):
    engine = make_engine([{"name": "one", "execute_cmd": "true"}])
    with pytest.raises(PreconditionViolation, match="has not been executed"):
        engine.report()


def test_report_snapshot(make_engine):
    engine = make_engine([{"name": "one", "execute_cmd": "true"}, {"name": "two", "execute_cmd": "false"}])
    engine.start_new_run()

    report = engine.report()

    assert report.run_name == "nightly"
    assert report.state.run_status is RunStatus.FAILED
    assert [(s.index, s.name, s.status) for s in report.steps] == [
        (1, "one", StepStatus.SUCCEEDED),
        (2, "two", StepStatus.FAILED),
    ]
    assert report.log_path == engine.layout.log_path(1)


def test_engine_rejects_gapped_step_indices(workdir):
    settings = RunSettings(name="x", working_dir=workdir)
    with pytest.raises(ValueError):
        Engine(settings, [StepDefinition(index=2, name="x", execute_cmd="true")])
