"""Shared fakes for engine tests."""

from __future__ import annotations

import inspect
from pathlib import Path
from typing import Callable

import pytest

from morphlex.errors import GeneratorError
from morphlex.notifier import EventRecorder
from morphlex.schemas import (
    CommandResult,
    LogLine,
    OverallFailed,
    OverallSucceeded,
    Step,
    StepStatus,
    StepStatusChanged,
    ToolKind,
)
from morphlex.agent.executor import PlanExecutor


BASELINE = "const a = 1;\nexport default a;\n"


class FakeGenerator:
    """Script generator returning canned scripts and recording every call."""

    def __init__(
        self,
        transforms: list[str] | None = None,
        corrections: list[str] | None = None,
        fail_transform: bool = False,
        fail_correction: bool = False,
    ):
        self.transforms = list(transforms or ["// transform v1"])
        self.corrections = list(corrections or ["// transform v2"])
        self.fail_transform = fail_transform
        self.fail_correction = fail_correction
        self.transform_calls: list[tuple[str, str]] = []
        self.correction_calls: list[tuple[str, str, str]] = []
        self.closed = False

    async def generate_transform(self, source_content: str, goal_description: str) -> str:
        self.transform_calls.append((source_content, goal_description))
        if self.fail_transform:
            raise GeneratorError("generator unavailable")
        return self.transforms.pop(0)

    async def generate_corrected_transform(
        self,
        original_content: str,
        failed_script_text: str,
        failure_output: str,
    ) -> str:
        self.correction_calls.append((original_content, failed_script_text, failure_output))
        if self.fail_correction:
            raise GeneratorError("generator unavailable")
        return self.corrections.pop(0)

    async def close(self) -> None:
        self.closed = True


class FakeRunner:
    """Process runner that delegates to a handler instead of spawning.

    The handler receives ``(runner, command, args, cwd)`` and returns a
    ``CommandResult`` (or an awaitable of one); it may call ``runner.log``
    to emit output the way a real process would.
    """

    def __init__(self, handler: Callable):
        self.handler = handler
        self.calls: list[tuple[str, list[str]]] = []
        self._notify: Callable = lambda event: None

    def bind(self, notify: Callable) -> None:
        self._notify = notify

    def log(self, stream: str, text: str) -> None:
        self._notify(LogLine(stream=stream, text=text))

    async def run(self, command: str, args: list[str], cwd: str) -> CommandResult:
        self.calls.append((command, list(args)))
        result = self.handler(self, command, list(args), cwd)
        if inspect.isawaitable(result):
            result = await result
        return result


def transform_step(description: str = "add import") -> Step:
    return Step(
        description=description,
        tool_kind=ToolKind.TRANSFORM,
        parameters=["-t", "<TRANSFORM_SCRIPT>", "<TARGET_FILE>"],
    )


def verification_step(description: str = "run tests") -> Step:
    return Step(description=description, tool_kind=ToolKind.VERIFICATION, parameters=["npm", "test"])


def shell_step(description: str = "git commit", *params: str) -> Step:
    return Step(
        description=description,
        tool_kind=ToolKind.SHELL_COMMAND,
        parameters=list(params or ("git", "commit", "-m", "refactor")),
    )


def make_executor(
    workspace: Path,
    generator: FakeGenerator,
    handler: Callable,
) -> tuple[PlanExecutor, FakeRunner, EventRecorder]:
    recorder = EventRecorder()
    runner = FakeRunner(handler)
    executor = PlanExecutor(
        generator,
        str(workspace),
        notifier=recorder,
        runner=runner,
        transform_command=["jscodeshift"],
    )
    runner.bind(executor.emit)
    return executor, runner, recorder


def status_history(recorder: EventRecorder, count: int) -> list[list[StepStatus]]:
    history: list[list[StepStatus]] = [[] for _ in range(count)]
    for event in recorder.events:
        if isinstance(event, StepStatusChanged):
            history[event.index].append(event.status)
    return history


def terminal_events(recorder: EventRecorder) -> list:
    return [e for e in recorder.events if isinstance(e, (OverallSucceeded, OverallFailed))]


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture
def target(workspace: Path) -> Path:
    path = workspace / "component.js"
    path.write_text(BASELINE, encoding="utf-8")
    return path
