"""Tests for the plan executor state machine."""

from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest

from conftest import (
    BASELINE,
    FakeGenerator,
    FakeRunner,
    make_executor,
    shell_step,
    status_history,
    terminal_events,
    transform_step,
    verification_step,
)
from morphlex.schemas import (
    CommandResult,
    Info,
    LogLine,
    OverallFailed,
    OverallSucceeded,
    StepStatus,
    StepStatusChanged,
)
from morphlex.llm.openai_compat import OpenAICompatAdapter
from morphlex.notifier import EventRecorder
from morphlex.agent.executor import PlanExecutor
from morphlex.agent.generator import LLMGenerator


OK = CommandResult(exit_code=0)


def apply_script(target: Path):
    """Handler simulating jscodeshift: appends the script text to the target."""
    seen_before_transform: list[str] = []

    def handler(runner, command, args, cwd):
        if command == "jscodeshift":
            script_path, target_path = args[1], args[2]
            seen_before_transform.append(Path(target_path).read_text(encoding="utf-8"))
            script = Path(script_path).read_text(encoding="utf-8")
            Path(target_path).write_text(BASELINE + script + "\n", encoding="utf-8")
            runner.log("stdout", "1 ok\n")
            return OK
        return None

    return handler, seen_before_transform


ALLOWED_SEQUENCES = (
    [StepStatus.RUNNING, StepStatus.SUCCESS],
    [StepStatus.RUNNING, StepStatus.FAILED],
    [StepStatus.FAILED],
)


@pytest.mark.asyncio
async def test_all_steps_succeed(workspace: Path, target: Path):
    steps = [shell_step("branch", "git", "checkout", "-b", "x"), shell_step()]
    executor, runner, recorder = make_executor(workspace, FakeGenerator(), lambda *a: OK)

    report = await executor.execute_plan(steps, str(target))

    assert report.succeeded is True
    assert report.statuses == [StepStatus.SUCCESS, StepStatus.SUCCESS]
    assert [s.status for s in steps] == [StepStatus.SUCCESS, StepStatus.SUCCESS]
    assert terminal_events(recorder) == [OverallSucceeded(message="All steps completed successfully.")]
    assert recorder.events[-1] == terminal_events(recorder)[0]
    assert runner.calls == [("git", ["checkout", "-b", "x"]), ("git", ["commit", "-m", "refactor"])]


@pytest.mark.asyncio
async def test_empty_plan_succeeds(workspace: Path, target: Path):
    executor, runner, recorder = make_executor(workspace, FakeGenerator(), lambda *a: OK)

    report = await executor.execute_plan([], str(target))

    assert report.succeeded is True
    assert runner.calls == []
    assert len(terminal_events(recorder)) == 1


@pytest.mark.asyncio
async def test_shell_failure_cascades(workspace: Path, target: Path):
    steps = [shell_step("one", "git", "status"), shell_step("two", "npm", "install"), shell_step("three", "git", "log")]

    def handler(runner, command, args, cwd):
        if command == "npm":
            runner.log("stderr", "ERR! missing package\n")
            return CommandResult(exit_code=1, stderr="ERR! missing package\n")
        return OK

    executor, runner, recorder = make_executor(workspace, FakeGenerator(), handler)
    report = await executor.execute_plan(steps, str(target))

    assert report.succeeded is False
    assert report.statuses == [StepStatus.SUCCESS, StepStatus.FAILED, StepStatus.FAILED]
    assert report.error == "Step failed: ERR! missing package\n"
    assert terminal_events(recorder) == [OverallFailed(error="Step failed: ERR! missing package\n")]
    # The third step never ran
    assert [c[0] for c in runner.calls] == ["git", "npm"]

    history = status_history(recorder, len(steps))
    assert history == [
        [StepStatus.RUNNING, StepStatus.SUCCESS],
        [StepStatus.RUNNING, StepStatus.FAILED],
        [StepStatus.FAILED],
    ]


@pytest.mark.asyncio
async def test_spawn_failure_is_a_normal_failure(workspace: Path, target: Path):
    steps = [shell_step("missing tool", "no-such-tool")]
    handler = lambda *a: CommandResult(exit_code=None, stderr="No such file or directory")
    executor, _, recorder = make_executor(workspace, FakeGenerator(), handler)

    report = await executor.execute_plan(steps, str(target))

    assert report.statuses == [StepStatus.FAILED]
    assert "No such file or directory" in report.error


@pytest.mark.asyncio
async def test_self_correction_recovers(workspace: Path, target: Path):
    steps = [transform_step(), verification_step(), shell_step()]
    apply, seen_before_transform = apply_script(target)
    test_runs = []

    def handler(runner, command, args, cwd):
        if command == "npm":
            test_runs.append(target.read_text(encoding="utf-8"))
            if len(test_runs) == 1:
                runner.log("stderr", "assertion error\n")
                return CommandResult(exit_code=1, stderr="assertion error")
            runner.log("stdout", "all tests passed\n")
            return CommandResult(exit_code=0, stdout="all tests passed\n")
        if command == "git":
            return OK
        return apply(runner, command, args, cwd)

    generator = FakeGenerator(transforms=["// v1"], corrections=["// v2"])
    executor, runner, recorder = make_executor(workspace, generator, handler)

    report = await executor.execute_plan(steps, str(target))

    assert report.succeeded is True
    assert report.statuses == [StepStatus.SUCCESS] * 3
    assert len(terminal_events(recorder)) == 1
    assert isinstance(recorder.events[-1], OverallSucceeded)

    # The corrected script replaced the first one and was applied to the baseline
    assert generator.transform_calls == [(BASELINE, "add import")]
    assert generator.correction_calls == [(BASELINE, "// v1", "assertion error")]
    assert seen_before_transform[1] == BASELINE
    assert target.read_text(encoding="utf-8") == BASELINE + "// v2\n"

    # Both the failing and the passing verification runs were logged
    logs = [e.text for e in recorder.events if isinstance(e, LogLine)]
    assert "assertion error\n" in logs
    assert "all tests passed\n" in logs

    # Verification step went Running -> Success without a detour through Failed
    assert status_history(recorder, 3)[1] == [StepStatus.RUNNING, StepStatus.SUCCESS]
    infos = [e.text for e in recorder.events if isinstance(e, Info)]
    assert "Self-correction successful! Tests passed." in infos


@pytest.mark.asyncio
async def test_self_correction_failure_cascades(workspace: Path, target: Path):
    steps = [transform_step(), verification_step(), shell_step()]
    apply, _ = apply_script(target)
    test_runs = []

    def handler(runner, command, args, cwd):
        if command == "npm":
            test_runs.append(1)
            message = "assertion error" if len(test_runs) == 1 else "still broken"
            return CommandResult(exit_code=1, stderr=message)
        if command == "git":
            return OK
        return apply(runner, command, args, cwd)

    generator = FakeGenerator()
    executor, runner, recorder = make_executor(workspace, generator, handler)

    report = await executor.execute_plan(steps, str(target))

    assert report.statuses == [StepStatus.SUCCESS, StepStatus.FAILED, StepStatus.FAILED]
    failures = terminal_events(recorder)
    assert failures == [OverallFailed(error="Self-correction failed. Tests still failing: still broken")]
    # Exactly one correction round
    assert len(generator.correction_calls) == 1
    assert len(test_runs) == 2
    assert all(c[0] != "git" for c in runner.calls)


@pytest.mark.asyncio
async def test_corrected_transform_failure_cascades(workspace: Path, target: Path):
    steps = [transform_step(), verification_step()]
    transforms = []

    def handler(runner, command, args, cwd):
        if command == "jscodeshift":
            transforms.append(1)
            if len(transforms) == 2:
                return CommandResult(exit_code=1, stderr="SyntaxError in transform")
            return OK
        return CommandResult(exit_code=1, stderr="assertion error")

    executor, _, recorder = make_executor(workspace, FakeGenerator(), handler)
    report = await executor.execute_plan(steps, str(target))

    assert report.statuses == [StepStatus.SUCCESS, StepStatus.FAILED]
    assert report.error == "Corrected transform also failed: SyntaxError in transform"
    assert len(terminal_events(recorder)) == 1


@pytest.mark.asyncio
async def test_each_verification_step_gets_its_own_round(workspace: Path, target: Path):
    steps = [transform_step(), verification_step("unit"), verification_step("lint")]
    apply, _ = apply_script(target)
    npm_runs = []

    def handler(runner, command, args, cwd):
        if command == "npm":
            npm_runs.append(1)
            # unit: fail then pass; lint: fail then pass
            return CommandResult(exit_code=1 if len(npm_runs) in (1, 3) else 0, stderr="fail")
        return apply(runner, command, args, cwd)

    generator = FakeGenerator(corrections=["// v2", "// v3"])
    executor, _, recorder = make_executor(workspace, generator, handler)
    report = await executor.execute_plan(steps, str(target))

    assert report.succeeded is True
    assert len(generator.correction_calls) == 2
    assert generator.correction_calls[1][1] == "// v2"


@pytest.mark.asyncio
async def test_verification_without_transform_cascades_without_correction(workspace: Path, target: Path):
    steps = [verification_step(), shell_step()]
    handler = lambda *a: CommandResult(exit_code=1, stderr="1 failing")
    generator = FakeGenerator()
    executor, _, recorder = make_executor(workspace, generator, handler)

    report = await executor.execute_plan(steps, str(target))

    assert report.statuses == [StepStatus.FAILED, StepStatus.FAILED]
    assert report.error == "Verification failed: 1 failing"
    assert generator.correction_calls == []


@pytest.mark.asyncio
async def test_generator_error_cascades_from_current_step(workspace: Path, target: Path):
    steps = [shell_step("branch", "git", "checkout", "-b", "x"), transform_step(), verification_step()]
    generator = FakeGenerator(fail_transform=True)
    executor, runner, recorder = make_executor(workspace, generator, lambda *a: OK)

    report = await executor.execute_plan(steps, str(target))

    assert report.statuses == [StepStatus.SUCCESS, StepStatus.FAILED, StepStatus.FAILED]
    assert report.error == "generator unavailable"
    assert terminal_events(recorder) == [OverallFailed(error="generator unavailable")]
    assert len(runner.calls) == 1


@pytest.mark.asyncio
async def test_correction_generator_error_cascades(workspace: Path, target: Path):
    steps = [transform_step(), verification_step()]
    apply, _ = apply_script(target)

    def handler(runner, command, args, cwd):
        if command == "npm":
            return CommandResult(exit_code=1, stderr="assertion error")
        return apply(runner, command, args, cwd)

    executor, _, recorder = make_executor(workspace, FakeGenerator(fail_correction=True), handler)
    report = await executor.execute_plan(steps, str(target))

    assert report.statuses == [StepStatus.SUCCESS, StepStatus.FAILED]
    assert report.error == "Self-correction failed: generator unavailable"


@pytest.mark.asyncio
async def test_log_lines_fall_between_running_and_terminal_status(workspace: Path, target: Path):
    steps = [shell_step("a", "git", "status"), shell_step("b", "git", "log")]

    def handler(runner, command, args, cwd):
        runner.log("stdout", f"{args[0]} line 1\n")
        runner.log("stderr", f"{args[0]} warning\n")
        runner.log("stdout", f"{args[0]} line 2\n")
        return OK

    executor, _, recorder = make_executor(workspace, FakeGenerator(), handler)
    await executor.execute_plan(steps, str(target))

    kinds = []
    for event in recorder.events:
        if isinstance(event, StepStatusChanged):
            kinds.append((event.index, event.status.value))
        elif isinstance(event, LogLine):
            kinds.append(("log", event.text))

    assert kinds == [
        (0, "Running"),
        ("log", "status line 1\n"),
        ("log", "status warning\n"),
        ("log", "status line 2\n"),
        (0, "Success"),
        (1, "Running"),
        ("log", "log line 1\n"),
        ("log", "log warning\n"),
        ("log", "log line 2\n"),
        (1, "Success"),
    ]


@pytest.mark.asyncio
async def test_status_sequences_are_monotonic(workspace: Path, target: Path):
    steps = [transform_step(), verification_step(), shell_step(), shell_step("push", "git", "push")]
    apply, _ = apply_script(target)

    def handler(runner, command, args, cwd):
        if command == "npm":
            return CommandResult(exit_code=1, stderr="boom")
        return apply(runner, command, args, cwd)

    executor, _, recorder = make_executor(workspace, FakeGenerator(), handler)
    await executor.execute_plan(steps, str(target))

    for history in status_history(recorder, len(steps)):
        assert history in ALLOWED_SEQUENCES


@pytest.mark.asyncio
async def test_missing_workspace_fails_without_touching_statuses(target: Path):
    steps = [shell_step()]
    recorder_events = []
    executor = PlanExecutor(FakeGenerator(), None)
    executor.set_notifier(type("Sink", (), {"notify": lambda self, e: recorder_events.append(e)})())

    report = await executor.execute_plan(steps, str(target))

    assert report.succeeded is False
    assert recorder_events == [OverallFailed(error="No workspace folder open.")]
    assert steps[0].status == StepStatus.PENDING


@pytest.mark.asyncio
async def test_unreadable_target_fails_without_running(workspace: Path):
    steps = [shell_step()]
    executor, runner, recorder = make_executor(workspace, FakeGenerator(), lambda *a: OK)

    report = await executor.execute_plan(steps, str(workspace / "missing.js"))

    assert report.succeeded is False
    assert runner.calls == []
    assert steps[0].status == StepStatus.PENDING
    assert len(recorder.events) == 1
    assert recorder.events[0].error.startswith("Cannot read target")


@pytest.mark.asyncio
async def test_script_directory_is_created(workspace: Path, target: Path):
    steps = [transform_step()]
    executor, runner, _ = make_executor(workspace, FakeGenerator(), lambda *a: OK)

    await executor.execute_plan(steps, str(target))

    script_path = Path(runner.calls[0][1][1])
    assert script_path.parent == workspace / ".morph"
    assert script_path.read_text(encoding="utf-8") == "// transform v1"


@pytest.mark.asyncio
async def test_cancel_is_honoured_at_step_boundary(workspace: Path, target: Path):
    steps = [shell_step("a", "git", "status"), shell_step("b", "git", "log"), shell_step("c", "git", "push")]
    executor = None

    def handler(runner, command, args, cwd):
        executor.cancel()
        return OK

    executor, runner, recorder = make_executor(workspace, FakeGenerator(), handler)
    report = await executor.execute_plan(steps, str(target))

    # The running step finishes; the rest never start
    assert report.statuses == [StepStatus.SUCCESS, StepStatus.FAILED, StepStatus.FAILED]
    assert report.error == "Execution cancelled"
    assert len(runner.calls) == 1


@pytest.mark.asyncio
async def test_concurrent_execution_on_same_target_is_rejected(workspace: Path, target: Path):
    release = asyncio.Event()
    started = asyncio.Event()

    async def handler(runner, command, args, cwd):
        started.set()
        await release.wait()
        return OK

    first, _, first_events = make_executor(workspace, FakeGenerator(), handler)
    second, second_runner, second_events = make_executor(workspace, FakeGenerator(), handler)
    second_steps = [shell_step()]

    task = asyncio.create_task(first.execute_plan([shell_step()], str(target)))
    await started.wait()

    report = await second.execute_plan(second_steps, str(target))
    release.set()
    first_report = await task

    assert report.succeeded is False
    assert "already running" in report.error
    assert second_runner.calls == []
    assert second_steps[0].status == StepStatus.PENDING
    assert first_report.succeeded is True

    # The target is free again once the first run finished
    third, _, _ = make_executor(workspace, FakeGenerator(), lambda *a: OK)
    assert (await third.execute_plan([shell_step()], str(target))).succeeded is True


@pytest.mark.asyncio
async def test_long_plan_does_not_hit_graph_recursion_limit(workspace: Path, target: Path):
    steps = [shell_step(f"step {i}", "git", "status") for i in range(40)]
    executor, _, _ = make_executor(workspace, FakeGenerator(), lambda *a: OK)

    report = await executor.execute_plan(steps, str(target))

    assert report.succeeded is True


@pytest.mark.asyncio
async def test_cancel_before_start_runs_nothing(workspace: Path, target: Path):
    steps = [shell_step("a", "git", "status"), shell_step("b", "git", "log")]
    executor, runner, recorder = make_executor(workspace, FakeGenerator(), lambda *a: OK)

    executor.cancel()
    report = await executor.execute_plan(steps, str(target))

    assert runner.calls == []
    assert report.statuses == [StepStatus.FAILED, StepStatus.FAILED]
    assert terminal_events(recorder) == [OverallFailed(error="Execution cancelled")]

    # The request is consumed; the next execution runs normally
    assert executor.cancel_requested is False
    again = await executor.execute_plan([shell_step("c", "git", "status")], str(target))
    assert again.succeeded is True


@pytest.mark.asyncio
async def test_symlinked_alias_of_busy_target_is_rejected(workspace: Path, target: Path):
    alias = workspace / "alias.js"
    alias.symlink_to(target)
    release = asyncio.Event()
    started = asyncio.Event()

    async def handler(runner, command, args, cwd):
        started.set()
        await release.wait()
        return OK

    first, _, _ = make_executor(workspace, FakeGenerator(), handler)
    second, second_runner, _ = make_executor(workspace, FakeGenerator(), handler)

    task = asyncio.create_task(first.execute_plan([shell_step()], str(target)))
    await started.wait()
    report = await second.execute_plan([shell_step()], str(alias))
    release.set()
    await task

    assert report.succeeded is False
    assert "already running" in report.error
    assert second_runner.calls == []


@pytest.mark.asyncio
async def test_unusable_model_reply_fails_the_transform(workspace: Path, target: Path):
    adapter = OpenAICompatAdapter(
        api_key="secret",
        base_url="https://llm.example.com/v1",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"choices": [{"message": None}]})
        ),
    )
    recorder = EventRecorder()
    runner = FakeRunner(lambda *a: OK)
    executor = PlanExecutor(
        LLMGenerator(adapter, temperature=0.0),
        str(workspace),
        notifier=recorder,
        runner=runner,
        transform_command=["jscodeshift"],
    )

    report = await executor.execute_plan([transform_step(), verification_step()], str(target))
    await adapter.close()

    assert report.statuses == [StepStatus.FAILED, StepStatus.FAILED]
    assert runner.calls == []
    failures = terminal_events(recorder)
    assert len(failures) == 1
    assert isinstance(failures[0], OverallFailed)
    assert "no message content" in failures[0].error
