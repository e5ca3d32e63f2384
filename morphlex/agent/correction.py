"""One-shot self-correction after a failed verification step.

Protocol: regenerate the last transform from the test failure, restore the
target to its baseline, re-apply the corrected transform, re-run the
verification. There is never a second round.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from morphlex.schemas import CommandResult, Event, Info, Step, ToolKind
from morphlex.tools.workspace import overwrite_file
from morphlex.agent.dispatcher import ExecutionSession, StepDispatcher
from morphlex.agent.generator import ScriptGenerator


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CorrectionOutcome:
    succeeded: bool
    error: str | None = None


def find_last_transform(steps: list[Step], before_index: int) -> Step | None:
    """Scan backward from ``before_index`` for the most recent transform step."""
    for step in reversed(steps[:before_index]):
        if step.tool_kind == ToolKind.TRANSFORM:
            return step
    return None


class SelfCorrectionController:
    """Runs the regenerate/restore/retry cycle for one verification failure."""

    def __init__(
        self,
        generator: ScriptGenerator,
        dispatcher: StepDispatcher,
        notify: Callable[[Event], None],
    ):
        self.generator = generator
        self.dispatcher = dispatcher
        self._notify = notify

    async def correct(
        self,
        steps: list[Step],
        failing_index: int,
        failed: CommandResult,
        session: ExecutionSession,
    ) -> CorrectionOutcome:
        """Attempt a single correction of the verification at ``failing_index``.

        Raises:
            GeneratorError: if the corrected script cannot be generated
            WorkspaceUnavailableError: if the script or target cannot be written
        """
        transform_step = find_last_transform(steps, failing_index)
        if transform_step is None or session.last_transform_script_path is None:
            logger.info("No transform to correct; verification failure is final")
            return CorrectionOutcome(False, f"Verification failed: {failed.stderr}")

        self._notify(Info(text="Tests failed. Analyzing errors and attempting self-correction..."))
        corrected = await self.generator.generate_corrected_transform(
            session.baseline_text,
            session.last_transform_script_content or "",
            failed.stderr,
        )

        await overwrite_file(session.last_transform_script_path, corrected.encode("utf-8"))
        session.last_transform_script_content = corrected
        self._notify(Info(text="Generated a corrected script. Retrying..."))

        # Undo the first, incorrect mutation
        await overwrite_file(session.target_path, session.baseline_content)

        rerun = await self.dispatcher.rerun_transform(transform_step, session)
        if not rerun.ok:
            return CorrectionOutcome(False, f"Corrected transform also failed: {rerun.stderr}")

        retest = await self.dispatcher.dispatch(steps[failing_index], session)
        if not retest.ok:
            return CorrectionOutcome(False, f"Self-correction failed. Tests still failing: {retest.stderr}")

        self._notify(Info(text="Self-correction successful! Tests passed."))
        return CorrectionOutcome(True)
