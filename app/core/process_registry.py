"""
Live process handles by job id, so a cancel request can kill a running build.
"""
import asyncio
import logging
import os
import signal
import threading
from typing import Optional

logger = logging.getLogger(__name__)


def kill_process(proc: asyncio.subprocess.Process) -> bool:
    """
    SIGKILL a child process and its process group.

    Returns:
        True if a signal was sent, False if the process had already exited
    """
    if proc.returncode is not None:
        return False
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        return False
    except PermissionError:
        # Not a group leader (spawned without a new session)
        proc.kill()
    return True


class ProcessRegistry:
    """Thread-safe map of job id -> the one live process running for it."""

    def __init__(self):
        self._lock = threading.Lock()
        self._handles: dict[str, asyncio.subprocess.Process] = {}

    def register(self, job_id: str, proc: asyncio.subprocess.Process) -> None:
        with self._lock:
            previous = self._handles.get(job_id)
            self._handles[job_id] = proc
        if previous is not None and previous is not proc and previous.returncode is None:
            logger.warning(f"process_handle_replaced job_id={job_id} previous_pid={previous.pid}")
        logger.info(f"process_registered job_id={job_id} pid={proc.pid}")

    def unregister(self, job_id: str, proc: asyncio.subprocess.Process) -> None:
        """Remove the handle, unless another invocation has since taken the slot."""
        with self._lock:
            if self._handles.get(job_id) is proc:
                del self._handles[job_id]

    def get(self, job_id: str) -> Optional[asyncio.subprocess.Process]:
        with self._lock:
            return self._handles.get(job_id)

    def is_active(self, job_id: str) -> bool:
        proc = self.get(job_id)
        return proc is not None and proc.returncode is None

    def kill(self, job_id: str) -> bool:
        """Kill the registered process for job_id. Returns True if one was killed."""
        proc = self.get(job_id)
        if proc is None:
            return False
        killed = kill_process(proc)
        if killed:
            logger.info(f"process_killed job_id={job_id} pid={proc.pid}")
        return killed


# Global process registry
process_registry = ProcessRegistry()
