"""
Build pipeline error taxonomy and the non-fatal attempt wrapper.

Fatal errors propagate to the orchestrator, which stores the message as the job's
error. Non-fatal work (cache, media, draft generation) goes through best_effort(),
the only place where pipeline exceptions are swallowed.
"""
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from app.core.metrics import metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BuildError(Exception):
    """Base class for build pipeline errors."""
    pass


class InvalidInputError(BuildError):
    """Caller input is unusable; raised before any sandbox or process work."""
    pass


class InvalidArchiveError(InvalidInputError):
    """Template archive is malformed (bad magic bytes, unreadable, empty, unsafe)."""
    pass


class TemplateNotFoundError(InvalidInputError):
    """Referenced template does not exist."""
    pass


class JobNotFoundError(BuildError):
    """Referenced build job does not exist."""
    pass


class InvalidStateError(BuildError):
    """Requested transition is not allowed from the job's current status."""
    pass


class ToolNotConfiguredError(BuildError):
    """External build tool executable path is not configured."""
    pass


class ProcessFailureError(BuildError):
    """External tool exited non-zero, was killed, or could not be started."""

    def __init__(self, message: str, exit_code: Optional[int] = None, timed_out: bool = False):
        super().__init__(message)
        self.exit_code = exit_code
        self.timed_out = timed_out


class OutputMissingError(BuildError):
    """External tool exited 0 but the expected output is absent."""
    pass


class BuildCancelledError(BuildError):
    """Job was cancelled while its pipeline was running."""
    pass


async def best_effort(
    label: str,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> Optional[T]:
    """
    Run a non-fatal pipeline step.

    Returns the step's result, or None when it raised. Failures are logged
    (type only, never payloads) and counted; they never reach the caller.
    """
    try:
        return await fn(*args, **kwargs)
    except Exception as e:
        logger.warning(f"best_effort_failed step={label} error_type={type(e).__name__}")
        metrics.inc("best_effort_failures_total")
        return None
