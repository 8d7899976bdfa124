import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterator, Optional, Tuple

from pydantic import ValidationError

from .config import Settings
from .errors import NotFound, WorkspaceError
from .ids import is_valid_job_id
from .models import JobRecord

logger = logging.getLogger(__name__)

RECORD_NAME = ".job.json"


def _checked(job_id: str) -> str:
    if not is_valid_job_id(job_id):
        raise NotFound("job not found")
    return job_id


def job_input_dir(settings: Settings, job_id: str) -> Path:
    return settings.upload_dir / _checked(job_id)


def job_output_dir(settings: Settings, job_id: str) -> Path:
    return settings.output_dir / _checked(job_id)


def create_workspace(settings: Settings, job_id: str) -> Tuple[Path, Path]:
    """Create the job's input and output directories. Safe to call twice."""
    in_dir = job_input_dir(settings, job_id)
    out_dir = job_output_dir(settings, job_id)
    try:
        in_dir.mkdir(parents=True, exist_ok=True)
        out_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise WorkspaceError(f"cannot create workspace for job {job_id}: {exc}") from exc
    return in_dir, out_dir


def destroy_workspace(settings: Settings, job_id: str) -> None:
    """Remove both job directories. Missing directories count as removed."""
    failures = []
    for d in (job_input_dir(settings, job_id), job_output_dir(settings, job_id)):
        try:
            shutil.rmtree(d)
        except (FileNotFoundError, NotADirectoryError):
            continue
        except OSError as exc:
            failures.append(f"{d}: {exc}")
    if failures:
        raise WorkspaceError(f"cannot remove workspace for job {job_id}: {'; '.join(failures)}")


def iter_job_ids(settings: Settings) -> Iterator[str]:
    if not settings.output_dir.is_dir():
        return
    for entry in sorted(settings.output_dir.iterdir()):
        if entry.is_dir() and is_valid_job_id(entry.name):
            yield entry.name


def write_record(out_dir: Path, record: JobRecord) -> None:
    # readers see either the old record or the new one, never a partial file
    fd, tmp = tempfile.mkstemp(dir=str(out_dir), prefix=RECORD_NAME + ".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(record.model_dump_json())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, out_dir / RECORD_NAME)
    except OSError as exc:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise WorkspaceError(f"cannot write job record in {out_dir}: {exc}") from exc


def read_record(out_dir: Path) -> Optional[JobRecord]:
    path = out_dir / RECORD_NAME
    try:
        data = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        return JobRecord.model_validate_json(data)
    except ValidationError:
        logger.warning("Ignoring unreadable job record %s", path)
        return None
