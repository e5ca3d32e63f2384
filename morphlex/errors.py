"""Exception types raised by the engine and its collaborators.

Process failures (a command that could not start, or exited non-zero) are
not exceptions: they are folded into ``CommandResult`` so the executor has a
single check for them.
"""

from __future__ import annotations


class MorphlexError(Exception):
    """Base class for all engine errors."""


class GeneratorError(MorphlexError):
    """The script/plan generator failed or returned unusable content."""


class WorkspaceUnavailableError(MorphlexError):
    """No working directory or target is configured for execution."""


class PlanParseError(MorphlexError):
    """A plan payload could not be turned into steps."""
