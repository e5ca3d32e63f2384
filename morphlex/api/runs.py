"""In-memory registry of plan executions started through the API.

Runs are not persisted: a restart forgets every run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from morphlex.notifier import EventRecorder
from morphlex.schemas import RunResponse, RunStatus, Step
from morphlex.agent.executor import CANCELLED_MESSAGE, PlanExecutor


logger = logging.getLogger(__name__)


@dataclass
class RunRecord:
    """One plan execution and everything it reported."""
    run_id: str
    target_path: str
    steps: list[Step]
    executor: PlanExecutor
    recorder: EventRecorder
    status: RunStatus = RunStatus.RUNNING
    message: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime | None = None

    @property
    def finished(self) -> bool:
        return self.status != RunStatus.RUNNING

    def to_response(self) -> RunResponse:
        return RunResponse(
            run_id=self.run_id,
            status=self.status,
            target_path=self.target_path,
            step_statuses=[step.status for step in self.steps],
            message=self.message,
            error=self.error,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class RunRegistry:
    """Tracks runs by id for the lifetime of the process."""

    def __init__(self):
        self._runs: dict[str, RunRecord] = {}

    def create(
        self,
        target_path: str,
        steps: list[Step],
        executor: PlanExecutor,
        recorder: EventRecorder,
    ) -> RunRecord:
        record = RunRecord(
            run_id=str(uuid4()),
            target_path=target_path,
            steps=steps,
            executor=executor,
            recorder=recorder,
        )
        self._runs[record.run_id] = record
        return record

    def get(self, run_id: str) -> RunRecord | None:
        return self._runs.get(run_id)

    async def execute(self, run_id: str) -> None:
        """Execute a registered run to completion and record its outcome."""
        record = self._runs[run_id]
        logger.info(f"Starting execution of run {run_id}")

        try:
            report = await record.executor.execute_plan(record.steps, record.target_path)
        except Exception as e:
            logger.error(f"Error executing run {run_id}: {e}")
            record.status = RunStatus.FAILED
            record.error = f"Unexpected error: {e}"
            record.updated_at = datetime.utcnow()
            return

        if report.succeeded:
            record.status = RunStatus.SUCCEEDED
            record.message = report.message
        elif report.error == CANCELLED_MESSAGE:
            record.status = RunStatus.CANCELLED
            record.error = report.error
        else:
            record.status = RunStatus.FAILED
            record.error = report.error
        record.updated_at = datetime.utcnow()

        logger.info(f"Run {run_id} finished with status {record.status.value}")


_registry: RunRegistry | None = None


def get_registry() -> RunRegistry:
    """Get the global run registry."""
    global _registry
    if _registry is None:
        _registry = RunRegistry()
    return _registry
