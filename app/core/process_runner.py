"""
Process Runner - supervises one external tool invocation end to end.

- No shell: argv lists only, via asyncio.create_subprocess_exec
- Environment sanitized of variables that break batch-mode tools
- stdout/stderr pumped concurrently into a bounded tail buffer
- Last non-empty output line persisted through a throttled callback
- Hard wall-clock timeout with SIGKILL
- Handle registered per job id so cancellation can kill it
"""
import asyncio
import codecs
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from app.core.errors import ProcessFailureError
from app.core.log_classifier import LogPattern, classify_log
from app.core.metrics import metrics
from app.core.process_registry import ProcessRegistry, kill_process, process_registry

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_TIMEOUT_S = 20 * 60
READ_CHUNK_SIZE = 8192
TAIL_BUFFER_CHARS = 64 * 1024  # enough for the classifier's line window
MAX_LOG_LINE_CHARS = 500
PUMP_DRAIN_TIMEOUT_S = 5.0

# Environment entries that make the tool try to attach a debugger in batch mode
BLOCKED_ENV_PREFIXES = ("MONO_", "UNITY_DEBUG")
BLOCKED_ENV_KEYS = {"DEBUGGER_AGENT"}
BLOCKED_ENV_VALUE_MARKERS = ("debugger-agent",)


@dataclass
class ToolInvocation:
    """One external tool run."""
    executable: str
    args: list[str]
    timeout_s: float = DEFAULT_TIMEOUT_S
    label: str = "tool"
    job_id: Optional[str] = None  # registers the handle for cancellation
    env: Optional[Mapping[str, str]] = None  # defaults to os.environ
    cwd: Optional[Path] = None


@dataclass
class ProcessResult:
    """Outcome of a finished (or killed) invocation."""
    exit_code: int
    duration_ms: int
    timed_out: bool
    output_tail: str
    last_line: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def sanitize_env(env: Mapping[str, str]) -> dict[str, str]:
    """Copy env without debugger-attachment variables (case-insensitive)."""
    clean = {}
    for key, value in env.items():
        upper_key = key.upper()
        if upper_key in BLOCKED_ENV_KEYS or upper_key.startswith(BLOCKED_ENV_PREFIXES):
            continue
        lower_value = value.lower()
        if any(marker in lower_value for marker in BLOCKED_ENV_VALUE_MARKERS):
            continue
        clean[key] = value
    return clean


def last_non_empty_line(text: str) -> Optional[str]:
    for line in reversed(text.splitlines()):
        stripped = line.strip()
        if stripped:
            return stripped[:MAX_LOG_LINE_CHARS]
    return None


class OutputTail:
    """Most recent output of a process, bounded to max_chars."""

    def __init__(self, max_chars: int = TAIL_BUFFER_CHARS):
        self._max_chars = max_chars
        self._text = ""

    def append(self, text: str) -> None:
        self._text = (self._text + text)[-self._max_chars:]

    @property
    def text(self) -> str:
        return self._text


class LastLineThrottle:
    """
    Forwards the newest log line to a callback at most once per interval.

    A line offered inside the interval is held and sent by a trailing timer, so
    the last line before a quiet period is never lost. close() flushes.
    """

    def __init__(
        self,
        callback: Callable[[str], None],
        interval_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._callback = callback
        self._interval_s = interval_s
        self._clock = clock
        self._last_emit: Optional[float] = None
        self._pending: Optional[str] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self.last_line: Optional[str] = None

    def offer(self, line: str) -> None:
        self._pending = line
        self.last_line = line
        now = self._clock()
        if self._last_emit is None or now - self._last_emit >= self._interval_s:
            self._emit()
        elif self._timer is None:
            delay = self._interval_s - (now - self._last_emit)
            self._timer = asyncio.get_running_loop().call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._emit()

    def _emit(self) -> None:
        line, self._pending = self._pending, None
        if line is None:
            return
        self._last_emit = self._clock()
        try:
            self._callback(line)
        except Exception as e:
            logger.warning(f"log_line_persist_failed error_type={type(e).__name__}")

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._emit()


def failure_message(label: str, result: ProcessResult, timeout_s: float,
                    patterns: Optional[Sequence[LogPattern]] = None) -> str:
    """User-facing error for a failed invocation, built from the classified tail."""
    if result.timed_out:
        head = f"{label} timed out after {int(timeout_s)}s and was killed (exit code {result.exit_code})"
    else:
        head = f"{label} exited with code {result.exit_code}"

    summary = classify_log(result.output_tail, patterns)
    if summary.matched:
        return f"{head}. Error summary:\n{summary.text}"
    if summary.text:
        return f"{head}. Output tail: {summary.text}"
    return f"{head}. No output captured."


class ProcessRunner:
    """Runs external tools under supervision."""

    def __init__(
        self,
        registry: Optional[ProcessRegistry] = None,
        throttle_s: float = 1.0,
        patterns: Optional[Sequence[LogPattern]] = None,
    ):
        self._registry = registry if registry is not None else process_registry
        self._throttle_s = throttle_s
        self._patterns = patterns

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        tail: OutputTail,
        throttle: Optional[LastLineThrottle],
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if not text:
                continue
            tail.append(text)
            if throttle is not None:
                line = last_non_empty_line(text)
                if line:
                    throttle.offer(line)
        rest = decoder.decode(b"", final=True)
        if rest:
            tail.append(rest)

    async def run(
        self,
        invocation: ToolInvocation,
        on_log_line: Optional[Callable[[str], None]] = None,
    ) -> ProcessResult:
        """
        Execute an invocation to completion, timeout, or kill.

        Raises:
            ProcessFailureError: if the executable cannot be started
        """
        label = invocation.label
        env = sanitize_env(invocation.env if invocation.env is not None else os.environ)
        metrics.inc("tool_invocations_total")
        logger.info(
            f"tool_start label={label} executable={os.path.basename(invocation.executable)} "
            f"args={len(invocation.args)} timeout_s={invocation.timeout_s}"
        )

        start = time.perf_counter()
        try:
            proc = await asyncio.create_subprocess_exec(
                invocation.executable,
                *invocation.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=str(invocation.cwd) if invocation.cwd else None,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            logger.warning(f"tool_spawn_failed label={label} error_type={type(e).__name__}")
            raise ProcessFailureError(
                f"Failed to start {label}: {type(e).__name__}: {e}"
            )

        if invocation.job_id:
            self._registry.register(invocation.job_id, proc)

        tail = OutputTail()
        throttle = LastLineThrottle(on_log_line, self._throttle_s) if on_log_line else None
        pumps = [
            asyncio.create_task(self._pump(proc.stdout, tail, throttle)),
            asyncio.create_task(self._pump(proc.stderr, tail, throttle)),
        ]

        timed_out = False
        try:
            try:
                await asyncio.wait_for(proc.wait(), timeout=invocation.timeout_s)
            except asyncio.TimeoutError:
                timed_out = True
                metrics.inc("tool_timeouts_total")
                logger.warning(f"tool_timeout label={label} timeout_s={invocation.timeout_s}")
                kill_process(proc)
                await proc.wait()

            # Orphaned grandchildren may hold the pipes open
            _, pending = await asyncio.wait(pumps, timeout=PUMP_DRAIN_TIMEOUT_S)
            for task in pending:
                task.cancel()
        except asyncio.CancelledError:
            kill_process(proc)
            for task in pumps:
                task.cancel()
            raise
        finally:
            if invocation.job_id:
                self._registry.unregister(invocation.job_id, proc)
            if throttle is not None:
                throttle.close()

        duration_ms = int((time.perf_counter() - start) * 1000)
        exit_code = proc.returncode if proc.returncode is not None else -1
        logger.info(
            f"tool_exit label={label} exit_code={exit_code} timed_out={timed_out} "
            f"duration_ms={duration_ms}"
        )
        return ProcessResult(
            exit_code=exit_code,
            duration_ms=duration_ms,
            timed_out=timed_out,
            output_tail=tail.text,
            last_line=last_non_empty_line(tail.text),
        )

    async def run_checked(
        self,
        invocation: ToolInvocation,
        on_log_line: Optional[Callable[[str], None]] = None,
    ) -> ProcessResult:
        """
        Like run(), but any unsuccessful outcome raises.

        Raises:
            ProcessFailureError: non-zero exit, kill, timeout, or spawn failure,
                carrying the classified error summary as its message
        """
        result = await self.run(invocation, on_log_line=on_log_line)
        if not result.succeeded:
            raise ProcessFailureError(
                failure_message(invocation.label, result, invocation.timeout_s, self._patterns),
                exit_code=result.exit_code,
                timed_out=result.timed_out,
            )
        return result
