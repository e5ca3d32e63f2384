"""LangGraph state machine that executes a refactoring plan.

Graph structure:
START → run_step → advance → run_step ... → succeed → END
            ↓          ↑
      self_correct ────┘
            ↓
         cascade → END

Each step is marked Running, dispatched, then marked Success or cascades:
the failing step and every later step are marked Failed and a single
OverallFailed event closes the run. A failed Verification step gets one
self-correction round before cascading.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Literal, TypedDict

from langgraph.graph import StateGraph, START, END

from morphlex.config import get_settings
from morphlex.errors import MorphlexError, WorkspaceUnavailableError
from morphlex.notifier import Notifier, NullNotifier
from morphlex.schemas import (
    CommandResult,
    Event,
    ExecutionReport,
    OverallFailed,
    OverallSucceeded,
    Plan,
    Step,
    StepStatus,
    StepStatusChanged,
    ToolKind,
)
from morphlex.tools.process import ProcessRunner
from morphlex.tools.workspace import ensure_directory, read_target
from morphlex.agent.correction import SelfCorrectionController
from morphlex.agent.dispatcher import ExecutionSession, StepDispatcher
from morphlex.agent.generator import ScriptGenerator


logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "All steps completed successfully."
CANCELLED_MESSAGE = "Execution cancelled"

# Targets with an execution in progress, keyed by resolved path
_active_targets: set[str] = set()


# =============================================================================
# State Definition
# =============================================================================

class ExecutionState(TypedDict):
    """Graph state for one plan execution.

    Attributes:
        index: Step currently being executed
        result: Command result of the current step, if it ran
        error: Failure text; set means the run cascades from ``index``
        succeeded: Terminal outcome, None while running
    """
    index: int
    result: CommandResult | None
    error: str | None
    succeeded: bool | None


# =============================================================================
# Plan Run
# =============================================================================

class PlanRun:
    """Nodes and routing for a single ``execute_plan`` call."""

    def __init__(
        self,
        steps: list[Step],
        session: ExecutionSession,
        dispatcher: StepDispatcher,
        corrector: SelfCorrectionController,
        executor: "PlanExecutor",
    ):
        self.steps = steps
        self.session = session
        self.dispatcher = dispatcher
        self.corrector = corrector
        self.executor = executor

    def _set_status(self, index: int, status: StepStatus) -> None:
        self.steps[index].status = status
        self.executor.emit(StepStatusChanged(index=index, status=status))

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def run_step(self, state: ExecutionState) -> dict:
        index = state["index"]
        if self.executor.cancel_requested:
            logger.info(f"Cancellation observed before step {index}")
            return {"result": None, "error": CANCELLED_MESSAGE}

        step = self.steps[index]
        logger.info(f"Running step {index + 1}/{len(self.steps)}: {step.description}")
        self._set_status(index, StepStatus.RUNNING)

        try:
            result = await self.dispatcher.dispatch(step, self.session)
        except MorphlexError as e:
            logger.error(f"Step {index} aborted: {e}")
            return {"result": None, "error": str(e)}

        if result.ok or step.tool_kind == ToolKind.VERIFICATION:
            return {"result": result, "error": None}

        label = "Transform" if step.tool_kind == ToolKind.TRANSFORM else "Step"
        return {"result": result, "error": f"{label} failed: {result.stderr}"}

    async def self_correct(self, state: ExecutionState) -> dict:
        index = state["index"]
        logger.info(f"Verification step {index} failed, attempting self-correction")

        try:
            outcome = await self.corrector.correct(self.steps, index, state["result"], self.session)
        except MorphlexError as e:
            logger.error(f"Self-correction aborted: {e}")
            return {"error": f"Self-correction failed: {e}"}

        if not outcome.succeeded:
            return {"error": outcome.error}
        return {"result": CommandResult(exit_code=0), "error": None}

    async def advance(self, state: ExecutionState) -> dict:
        index = state["index"]
        self._set_status(index, StepStatus.SUCCESS)
        return {"index": index + 1, "result": None}

    async def cascade(self, state: ExecutionState) -> dict:
        index = state["index"]
        error = state["error"] or "Step failed"
        logger.warning(f"Plan failed at step {index}: {error}")

        for j in range(index, len(self.steps)):
            self._set_status(j, StepStatus.FAILED)
        self.executor.emit(OverallFailed(error=error))
        return {"succeeded": False}

    async def succeed(self, state: ExecutionState) -> dict:
        logger.info("All plan steps succeeded")
        self.executor.emit(OverallSucceeded(message=SUCCESS_MESSAGE))
        return {"succeeded": True}

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    def route_start(self, state: ExecutionState) -> Literal["run_step", "succeed"]:
        return "run_step" if self.steps else "succeed"

    def route_after_step(self, state: ExecutionState) -> Literal["advance", "self_correct", "cascade"]:
        if state["error"] is not None:
            return "cascade"
        if state["result"] is not None and state["result"].ok:
            return "advance"
        return "self_correct"

    def route_after_correction(self, state: ExecutionState) -> Literal["advance", "cascade"]:
        return "cascade" if state["error"] is not None else "advance"

    def route_after_advance(self, state: ExecutionState) -> Literal["run_step", "succeed"]:
        return "run_step" if state["index"] < len(self.steps) else "succeed"

    # -------------------------------------------------------------------------
    # Graph
    # -------------------------------------------------------------------------

    def build_graph(self) -> StateGraph:
        graph = StateGraph(ExecutionState)

        graph.add_node("run_step", self.run_step)
        graph.add_node("self_correct", self.self_correct)
        graph.add_node("advance", self.advance)
        graph.add_node("cascade", self.cascade)
        graph.add_node("succeed", self.succeed)

        graph.add_conditional_edges(
            START,
            self.route_start,
            {"run_step": "run_step", "succeed": "succeed"},
        )
        graph.add_conditional_edges(
            "run_step",
            self.route_after_step,
            {"advance": "advance", "self_correct": "self_correct", "cascade": "cascade"},
        )
        graph.add_conditional_edges(
            "self_correct",
            self.route_after_correction,
            {"advance": "advance", "cascade": "cascade"},
        )
        graph.add_conditional_edges(
            "advance",
            self.route_after_advance,
            {"run_step": "run_step", "succeed": "succeed"},
        )
        graph.add_edge("cascade", END)
        graph.add_edge("succeed", END)

        return graph

    async def execute(self) -> ExecutionState:
        app = self.build_graph().compile()
        initial: ExecutionState = {"index": 0, "result": None, "error": None, "succeeded": None}
        # run_step, self_correct and advance per step, plus the terminal node
        limit = 3 * len(self.steps) + 5
        return await app.ainvoke(initial, config={"recursion_limit": limit})


# =============================================================================
# Public API
# =============================================================================

class PlanExecutor:
    """Executes plans step by step and reports progress to a notifier.

    One executor may run several plans in sequence; every ``execute_plan``
    call gets a fresh session. Two executions against the same target at the
    same time are rejected.
    """

    def __init__(
        self,
        generator: ScriptGenerator,
        working_directory: str | None,
        notifier: Notifier | None = None,
        runner: ProcessRunner | None = None,
        transform_command: list[str] | None = None,
    ):
        self.generator = generator
        self.working_directory = working_directory
        self.notifier: Notifier = notifier or NullNotifier()
        self.runner = runner or ProcessRunner(self.emit)
        self.transform_command = transform_command
        self._cancel = asyncio.Event()

    def set_notifier(self, notifier: Notifier) -> None:
        self.notifier = notifier

    def emit(self, event: Event) -> None:
        self.notifier.notify(event)

    def cancel(self) -> None:
        """Request cancellation; honoured before the next step starts."""
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def _fail(self, steps: list[Step], error: str) -> ExecutionReport:
        """Report a failure that happened before any step ran."""
        logger.error(error)
        self.emit(OverallFailed(error=error))
        return ExecutionReport(
            succeeded=False,
            statuses=[step.status for step in steps],
            error=error,
        )

    async def _open_session(self, target_path: str | None) -> ExecutionSession:
        if not self.working_directory or not target_path:
            raise WorkspaceUnavailableError("No workspace folder open.")

        working_directory = os.path.abspath(self.working_directory)
        script_directory = os.path.join(working_directory, get_settings().work_dir_name)

        baseline = await read_target(target_path)
        await ensure_directory(script_directory)

        return ExecutionSession(
            target_path=os.path.abspath(target_path),
            working_directory=working_directory,
            script_directory=script_directory,
            baseline_content=baseline,
        )

    async def execute_plan(self, plan: Plan | list[Step], target_path: str | None) -> ExecutionReport:
        """Execute every step of ``plan`` against ``target_path``.

        A cancellation requested before the call starts applies to it; the
        request is consumed when the call returns.

        Args:
            plan: Plan or ordered list of steps; statuses are updated in place
            target_path: File the transform steps rewrite

        Returns:
            ExecutionReport mirroring the terminal event that was emitted
        """
        steps = plan.steps if isinstance(plan, Plan) else plan
        try:
            return await self._execute(steps, target_path)
        finally:
            self._cancel.clear()

    async def _execute(self, steps: list[Step], target_path: str | None) -> ExecutionReport:
        key = os.path.realpath(target_path) if target_path else None
        if key is not None and key in _active_targets:
            return self._fail(steps, f"An execution is already running for {target_path}")

        try:
            session = await self._open_session(target_path)
        except WorkspaceUnavailableError as e:
            return self._fail(steps, str(e))

        _active_targets.add(key)
        try:
            dispatcher = StepDispatcher(self.generator, self.runner, self.transform_command)
            corrector = SelfCorrectionController(self.generator, dispatcher, self.emit)
            run = PlanRun(steps, session, dispatcher, corrector, self)
            final = await run.execute()
        finally:
            _active_targets.discard(key)

        if final["succeeded"]:
            return ExecutionReport(
                succeeded=True,
                statuses=[step.status for step in steps],
                message=SUCCESS_MESSAGE,
            )
        return ExecutionReport(
            succeeded=False,
            statuses=[step.status for step in steps],
            error=final["error"],
        )
