"""Process runner for plan steps.

Spawns one external command at a time and streams its output:
- stdout/stderr chunks are forwarded as ``LogLine`` events as they arrive
- full output is captured into the returned ``CommandResult``
- a process that cannot be started yields ``exit_code=None`` instead of raising
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from typing import Callable

from morphlex.schemas import CommandResult, Event, Info, LogLine


logger = logging.getLogger(__name__)

# Bytes read per chunk from each output pipe
CHUNK_SIZE = 4096


class ProcessRunner:
    """Runs external commands and forwards their output to a notify callback."""

    def __init__(self, notify: Callable[[Event], None]):
        self._notify = notify

    async def run(self, command: str, args: list[str], cwd: str) -> CommandResult:
        """Run ``command`` with ``args`` inside ``cwd``.

        Args:
            command: Executable to spawn
            args: Arguments passed verbatim (no shell)
            cwd: Working directory for the process

        Returns:
            CommandResult with exit code and captured output
        """
        self._notify(Info(text=" ".join(["Running:", command, *args])))
        logger.info(f"Spawning {command} {args} in {cwd}")

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to spawn {command}: {e}")
            self._notify(LogLine(stream="stderr", text=f"Spawn error: {e}"))
            return CommandResult(exit_code=None, stdout="", stderr=str(e))

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        await asyncio.gather(
            self._pump(process.stdout, "stdout", stdout_parts),
            self._pump(process.stderr, "stderr", stderr_parts),
        )
        exit_code = await process.wait()

        logger.info(f"{command} exited with {exit_code}")

        return CommandResult(
            exit_code=exit_code,
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
        )

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        name: str,
        parts: list[str],
    ) -> None:
        """Forward one pipe chunk by chunk until EOF."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                parts.append(text)
                self._notify(LogLine(stream=name, text=text))
            if not chunk:
                break
