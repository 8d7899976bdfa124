"""Failure taxonomy for the job lifecycle.

Every error carries the HTTP status the routes answer with, so handlers only
need ``HTTPException(status_code=exc.status_code, detail=str(exc))``.
"""
from typing import Optional

# generator stderr can be megabytes of progress output, keep the end of it
STDERR_TAIL = 2000


class JobError(Exception):
    status_code = 500


class InvalidRequest(JobError):
    status_code = 400


class NotFound(JobError):
    status_code = 404


class NotRunning(JobError):
    status_code = 409


class ServiceBusy(JobError):
    status_code = 503


class WorkspaceError(JobError):
    pass


class GenerationFailed(JobError):
    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)

    @classmethod
    def from_exit(cls, returncode: int, stderr: str) -> "GenerationFailed":
        detail = stderr.strip()[-STDERR_TAIL:] or "no error output"
        return cls(f"generator exited with code {returncode}: {detail}", returncode, stderr)


class GenerationTimedOut(JobError):
    def __init__(self, message: str, stderr: str = ""):
        self.stderr = stderr
        super().__init__(message)


class MissingArtifact(JobError):
    pass
