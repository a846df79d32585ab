"""
Context variables for correlating log lines with the current request and build job.
"""
import uuid
from contextvars import ContextVar, Token
from typing import Optional

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
job_id_var: ContextVar[str] = ContextVar("job_id", default="")


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set the request ID (generates new one if not provided)."""
    rid = request_id or str(uuid.uuid4())
    request_id_var.set(rid)
    return rid


def get_job_id() -> str:
    """Get the build job ID bound to the current task."""
    return job_id_var.get()


def bind_job_id(job_id: str) -> Token:
    """Bind a build job ID to the current task; reset with the returned token."""
    return job_id_var.set(job_id)
