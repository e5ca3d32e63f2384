"""FastAPI routes for the Morphlex API.

Endpoints:
- GET    /health               - Health check
- POST   /plans                - Generate a plan for a goal and target file
- POST   /runs                 - Execute a plan in the background
- POST   /runs/generate        - Generate a plan for a goal and execute it
- GET    /runs/{id}            - Get run status and step statuses
- GET    /runs/{id}/events     - Get the run's events in production order
- DELETE /runs/{id}            - Cancel a run before its next step
"""

from __future__ import annotations

import logging
import os

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from morphlex.config import get_settings
from morphlex.errors import GeneratorError, WorkspaceUnavailableError
from morphlex.notifier import EventRecorder
from morphlex.schemas import (
    GoalRunRequest,
    PlanCreateRequest,
    PlanResponse,
    RunCreateRequest,
    RunEventsResponse,
    RunResponse,
    Step,
)
from morphlex.tools.workspace import read_target
from morphlex.agent.executor import PlanExecutor
from morphlex.agent.generator import LLMGenerator, ScriptGenerator, UnavailableGenerator
from morphlex.agent.generator import get_generator as shared_generator
from morphlex.api.runs import RunRegistry, get_registry


logger = logging.getLogger(__name__)
router = APIRouter()

settings = get_settings()


def get_generator() -> LLMGenerator:
    """Dependency providing the shared LLM-backed generator."""
    try:
        return shared_generator()
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e


def get_run_generator() -> ScriptGenerator:
    """Dependency for plan execution; plans without transforms run unconfigured."""
    try:
        return shared_generator()
    except ValueError as e:
        return UnavailableGenerator(str(e))


async def _generate_plan(generator: LLMGenerator, goal: str, target_path: str) -> list[Step]:
    try:
        content = await read_target(target_path)
    except WorkspaceUnavailableError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    try:
        plan = await generator.generate_plan(content.decode("utf-8", errors="replace"), goal)
    except GeneratorError as e:
        logger.error(f"Plan generation failed: {e}")
        raise HTTPException(status_code=502, detail=str(e)) from e

    return plan.steps


def _start_run(
    target_path: str,
    steps: list[Step],
    work_dir: str | None,
    generator: ScriptGenerator,
    registry: RunRegistry,
    background_tasks: BackgroundTasks,
) -> RunResponse:
    work_dir = work_dir or settings.workspace_root or os.getcwd()
    recorder = EventRecorder()
    executor = PlanExecutor(generator, work_dir, notifier=recorder)

    record = registry.create(target_path, steps, executor, recorder)
    background_tasks.add_task(registry.execute, record.run_id)

    logger.info(f"Created run {record.run_id}")
    return record.to_response()


# =============================================================================
# Health Check
# =============================================================================

@router.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.environment,
    }


# =============================================================================
# Plans Endpoints
# =============================================================================

@router.post("/plans", response_model=PlanResponse)
async def create_plan(
    request: PlanCreateRequest,
    generator: LLMGenerator = Depends(get_generator),
) -> PlanResponse:
    """Generate a refactoring plan for ``target_path``."""
    steps = await _generate_plan(generator, request.goal, request.target_path)
    return PlanResponse(target_path=request.target_path, steps=steps)


# =============================================================================
# Runs Endpoints
# =============================================================================

@router.post("/runs", response_model=RunResponse)
async def create_run(
    request: RunCreateRequest,
    background_tasks: BackgroundTasks,
    generator: ScriptGenerator = Depends(get_run_generator),
    registry: RunRegistry = Depends(get_registry),
) -> RunResponse:
    """Start executing a plan.

    The run is processed asynchronously.
    Use GET /runs/{run_id} to poll for status and /events for progress.
    """
    return _start_run(
        request.target_path, request.steps, request.work_dir, generator, registry, background_tasks
    )


@router.post("/runs/generate", response_model=RunResponse)
async def create_run_from_goal(
    request: GoalRunRequest,
    background_tasks: BackgroundTasks,
    generator: LLMGenerator = Depends(get_generator),
    registry: RunRegistry = Depends(get_registry),
) -> RunResponse:
    """Generate a plan for ``goal`` and start executing it right away."""
    steps = await _generate_plan(generator, request.goal, request.target_path)
    return _start_run(
        request.target_path, steps, request.work_dir, generator, registry, background_tasks
    )


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: str,
    registry: RunRegistry = Depends(get_registry),
) -> RunResponse:
    """Get run status by ID."""
    record = registry.get(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return record.to_response()


@router.get("/runs/{run_id}/events", response_model=RunEventsResponse)
async def get_run_events(
    run_id: str,
    registry: RunRegistry = Depends(get_registry),
) -> RunEventsResponse:
    """Get every event the run has emitted so far."""
    record = registry.get(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunEventsResponse(run_id=run_id, events=list(record.recorder.events))


@router.delete("/runs/{run_id}")
async def cancel_run(
    run_id: str,
    registry: RunRegistry = Depends(get_registry),
) -> dict:
    """Request cancellation of a running plan."""
    record = registry.get(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Run not found")

    if record.finished:
        raise HTTPException(status_code=400, detail="Run cannot be cancelled")

    record.executor.cancel()
    return {"status": "cancelling", "run_id": run_id}
