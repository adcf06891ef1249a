"""Error taxonomy for tool resolution, request validation, and job execution.

Validation errors are raised synchronously by the request surface before any
background work starts. Errors raised inside a running job never reach the
caller directly; the job runner turns them into a failed ``pipeline_done``.
"""

from __future__ import annotations

from typing import Optional, Sequence


class PipelineError(Exception):
    """Base class for every error this project raises on purpose."""


class ValidationError(PipelineError):
    """A request was rejected before a job was started."""


class ToolNotInstalled(ValidationError):
    def __init__(self, tool: str) -> None:
        self.tool = tool
        super().__init__(f"{tool} not installed (install {tool} first)")


class ModelNotFound(ValidationError):
    def __init__(self, message: str) -> None:
        super().__init__(message)


class InvalidInputPath(ValidationError):
    def __init__(self, message: str, path: Optional[object] = None) -> None:
        self.path = path
        super().__init__(message)


class EmptyRequiredField(ValidationError):
    def __init__(self, field_name: str, message: Optional[str] = None) -> None:
        self.field_name = field_name
        super().__init__(message or f"{field_name} is required")


class JobBusy(ValidationError):
    """Another job is still running; only one active job is supported."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Another job is still running: {job_id}")


class StageError(PipelineError):
    """A stage failed after the job was started."""


class ProcessSpawnFailure(StageError):
    def __init__(self, tool: str, cause: OSError) -> None:
        self.tool = tool
        self.cause = cause
        super().__init__(f"{tool} failed to start: {cause}")


class ProcessExitFailure(StageError):
    """The tool ran but exited nonzero.

    ``str()`` of this error is the captured stderr tail when there is one,
    otherwise the stage's generic failure text.
    """

    def __init__(
        self,
        tool: str,
        status: int,
        stderr_tail: Sequence[str] = (),
        fallback: Optional[str] = None,
    ) -> None:
        self.tool = tool
        self.status = status
        self.stderr_tail = list(stderr_tail)
        tail_text = "\n".join(self.stderr_tail).strip()
        if tail_text:
            message = tail_text
        else:
            message = fallback or f"{tool} exited with status {status}"
        super().__init__(message)


class NoOutputProduced(StageError):
    def __init__(self, message: str) -> None:
        super().__init__(message)


class JobCancelled(StageError):
    def __init__(self) -> None:
        super().__init__("Cancelled")
