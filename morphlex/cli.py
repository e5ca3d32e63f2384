"""CLI entrypoint (Typer).

- `morphlex plan "<goal>" --target FILE`   generate a plan
- `morphlex run PLAN_JSON --target FILE`   execute a plan, streaming progress
- `morphlex serve`                         start the HTTP API
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Optional

import typer

from morphlex.config import get_settings
from morphlex.errors import GeneratorError, PlanParseError, WorkspaceUnavailableError
from morphlex.llm.openai_compat import OpenAICompatAdapter
from morphlex.notifier import QueueNotifier
from morphlex.schemas import (
    Event,
    ExecutionReport,
    Info,
    LogLine,
    OverallFailed,
    OverallSucceeded,
    Plan,
    StepStatusChanged,
)
from morphlex.tools.workspace import read_target
from morphlex.agent.executor import PlanExecutor
from morphlex.agent.generator import LLMGenerator, UnavailableGenerator


app = typer.Typer(help="Morphlex plan execution CLI.")


def _build_generator(required: bool = True) -> LLMGenerator | UnavailableGenerator:
    try:
        return LLMGenerator(OpenAICompatAdapter())
    except ValueError as e:
        if not required:
            return UnavailableGenerator(str(e))
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=2)


def _print_event(event: Event) -> None:
    """Render one execution event on the terminal."""
    if isinstance(event, StepStatusChanged):
        typer.echo(f"[step {event.index + 1}] {event.status.value}")
    elif isinstance(event, LogLine):
        typer.echo(event.text, nl=False, err=event.stream == "stderr")
    elif isinstance(event, Info):
        typer.echo(f"-- {event.text}")
    elif isinstance(event, OverallSucceeded):
        typer.echo(f"SUCCESS: {event.message}")
    elif isinstance(event, OverallFailed):
        typer.echo(f"FAILED: {event.error}", err=True)


async def _execute(
    executor: PlanExecutor,
    loaded: Plan,
    target: str,
) -> ExecutionReport:
    """Run the plan while a consumer task prints events as they arrive."""
    channel = QueueNotifier()
    executor.set_notifier(channel)

    async def consume() -> None:
        async for event in channel:
            _print_event(event)

    consumer = asyncio.create_task(consume())
    try:
        return await executor.execute_plan(loaded, target)
    finally:
        channel.close()
        await consumer
        await executor.generator.close()


def load_plan(path: Path) -> Plan:
    """Load a plan file holding a step list or ``{"steps": [...]}``."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise PlanParseError(f"Cannot load plan {path}: {e}") from e
    return Plan.from_payload(payload)


@app.command()
def plan(
    goal: str,
    target: Path = typer.Option(..., "--target", help="File to refactor"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the plan JSON here"),
):
    """Generate a refactoring plan for TARGET."""
    generator = _build_generator()

    async def _generate() -> Plan:
        try:
            content = await read_target(str(target))
            return await generator.generate_plan(content.decode("utf-8", errors="replace"), goal)
        finally:
            await generator.close()

    try:
        result = asyncio.run(_generate())
    except (GeneratorError, WorkspaceUnavailableError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    payload = json.dumps(result.model_dump(mode="json"), indent=2)
    if output is not None:
        output.write_text(payload + "\n", encoding="utf-8")
        typer.echo(result.to_markdown())
        typer.echo(f"Plan with {len(result.steps)} steps written to {output}")
    else:
        typer.echo(payload)


@app.command()
def run(
    plan_file: Path = typer.Argument(..., help="Plan JSON file"),
    target: Path = typer.Option(..., "--target", help="File to refactor"),
    workdir: Optional[Path] = typer.Option(None, "--workdir", help="Directory to run commands in"),
):
    """Execute a plan against TARGET, streaming progress."""
    logging.basicConfig(level=logging.WARNING)

    try:
        loaded = load_plan(plan_file)
    except PlanParseError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=2)

    settings = get_settings()
    work_dir = str(workdir) if workdir else settings.workspace_root or os.getcwd()
    executor = PlanExecutor(_build_generator(required=False), work_dir)

    report = asyncio.run(_execute(executor, loaded, str(target)))
    if not report.succeeded:
        raise typer.Exit(code=1)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
):
    """Start the HTTP API."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "morphlex.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    app()
