"""Step dispatch: run one plan step against the environment.

The dispatcher resolves placeholder parameters, chooses the execution
strategy from the step's tool kind and returns the raw ``CommandResult``.
It never decides whether a failure cascades or gets corrected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from morphlex.config import get_settings
from morphlex.schemas import (
    CommandResult,
    Step,
    ToolKind,
    TARGET_FILE_PLACEHOLDER,
    TRANSFORM_SCRIPT_PLACEHOLDER,
)
from morphlex.tools.process import ProcessRunner
from morphlex.tools.workspace import write_script
from morphlex.agent.generator import ScriptGenerator


logger = logging.getLogger(__name__)


@dataclass
class ExecutionSession:
    """Transient state for one plan execution.

    Attributes:
        target_path: File being refactored
        working_directory: cwd for every spawned process
        script_directory: Where generated transform scripts are written
        baseline_content: Target bytes captured before the first step
        last_transform_script_path: Most recently materialized transform
        last_transform_script_content: Text of that transform
    """
    target_path: str
    working_directory: str
    script_directory: str
    baseline_content: bytes
    last_transform_script_path: str | None = None
    last_transform_script_content: str | None = None

    @property
    def baseline_text(self) -> str:
        return self.baseline_content.decode("utf-8", errors="replace")


class StepDispatcher:
    """Executes single plan steps."""

    def __init__(
        self,
        generator: ScriptGenerator,
        runner: ProcessRunner,
        transform_command: list[str] | None = None,
    ):
        self.generator = generator
        self.runner = runner
        if transform_command is None:
            transform_command = get_settings().transform_command
        self.transform_command = list(transform_command)
        if not self.transform_command:
            raise ValueError("Transform command must not be empty")

    def resolve_parameters(self, parameters: list[str], session: ExecutionSession) -> list[str]:
        """Substitute reserved placeholder tokens.

        ``<TRANSFORM_SCRIPT>`` is left as-is while no script has been
        materialized yet.
        """
        resolved = []
        for param in parameters:
            if param == TRANSFORM_SCRIPT_PLACEHOLDER and session.last_transform_script_path:
                resolved.append(session.last_transform_script_path)
            elif param == TARGET_FILE_PLACEHOLDER:
                resolved.append(session.target_path)
            else:
                resolved.append(param)
        return resolved

    async def dispatch(self, step: Step, session: ExecutionSession) -> CommandResult:
        """Run ``step`` and return its command result.

        Raises:
            GeneratorError: if a transform script cannot be generated
            WorkspaceUnavailableError: if the script cannot be written
        """
        if step.tool_kind == ToolKind.TRANSFORM:
            return await self._run_transform(step, session)
        elif step.tool_kind == ToolKind.VERIFICATION:
            return await self._run_command(step, session)
        elif step.tool_kind == ToolKind.SHELL_COMMAND:
            return await self._run_command(step, session)
        else:
            raise ValueError(f"Unsupported tool kind: {step.tool_kind}")

    async def rerun_transform(self, step: Step, session: ExecutionSession) -> CommandResult:
        """Re-apply the session's current transform script without regenerating it."""
        params = self.resolve_parameters(step.parameters, session)
        return await self.runner.run(
            self.transform_command[0],
            [*self.transform_command[1:], *params],
            session.working_directory,
        )

    async def _run_transform(self, step: Step, session: ExecutionSession) -> CommandResult:
        logger.info(f"Generating transform script for: {step.description}")
        script = await self.generator.generate_transform(session.baseline_text, step.description)

        script_path = await write_script(session.script_directory, script)
        session.last_transform_script_path = script_path
        session.last_transform_script_content = script

        return await self.rerun_transform(step, session)

    async def _run_command(self, step: Step, session: ExecutionSession) -> CommandResult:
        params = self.resolve_parameters(step.parameters, session)
        if not params:
            return CommandResult(exit_code=None, stderr="Step has no command")

        return await self.runner.run(params[0], params[1:], session.working_directory)
