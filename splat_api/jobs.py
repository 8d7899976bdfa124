"""Job lifecycle: admission, workspace, generation, cleanup and status.

There is no in-memory registry of finished jobs. Everything a status query
needs is on disk under the two roots, so the manager can be restarted at any
time; only the set of jobs *in flight* (for admission control and
cancellation) lives in memory.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from typing import Dict, List, NamedTuple, Sequence, Tuple

from .artifacts import artifact_url, resolve_artifact
from .config import Settings
from .errors import (
    GenerationTimedOut,
    MissingArtifact,
    NotRunning,
    ServiceBusy,
    WorkspaceError,
)
from .ids import is_valid_job_id, new_job_id
from .ingest import UploadedImage, save_uploads, validate_uploads
from .models import JobRecord, JobStatus
from .storage import (
    create_workspace,
    destroy_workspace,
    iter_job_ids,
    job_input_dir,
    job_output_dir,
    read_record,
    write_record,
)
from .worker import run_generator

logger = logging.getLogger(__name__)


class JobResult(NamedTuple):
    job_id: str
    file_name: str


class JobManager:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent_jobs,
            thread_name_prefix="generator",
        )
        self._capacity = settings.max_concurrent_jobs + settings.max_queued_jobs
        self._lock = threading.Lock()
        self._active: Dict[str, threading.Event] = {}

    # -- submission ---------------------------------------------------------

    def submit(self, images: Sequence[UploadedImage]) -> Tuple[str, "Future[JobResult]"]:
        """Admit a job and queue it for generation.

        Uploads are validated first, so a rejected request never creates a
        workspace. Raises ServiceBusy when every worker and queue slot is taken.
        """
        images = validate_uploads(self.settings, images)

        with self._lock:
            if len(self._active) >= self._capacity:
                raise ServiceBusy("too many jobs in progress, retry later")
            job_id = new_job_id()
            cancel = threading.Event()
            self._active[job_id] = cancel

        try:
            record = self._prepare(job_id, images)
            future = self._executor.submit(self._run, record, cancel)
        except BaseException:
            logger.exception("Job %s could not be queued", job_id)
            self._cleanup(job_id)
            self._release(job_id)
            raise
        future.add_done_callback(partial(self._reap_cancelled, job_id))
        logger.info("Job %s queued with %d image(s)", job_id, len(images))
        return job_id, future

    def run(self, images: Sequence[UploadedImage]) -> JobResult:
        _, future = self.submit(images)
        return future.result()

    def _prepare(self, job_id: str, images: Sequence[UploadedImage]) -> JobRecord:
        in_dir, out_dir = create_workspace(self.settings, job_id)
        saved = save_uploads(in_dir, images)
        record = JobRecord(job_id=job_id, state="queued", created_at=time.time(), inputs=saved)
        write_record(out_dir, record)
        return record

    def _run(self, record: JobRecord, cancel: threading.Event) -> JobResult:
        job_id = record.job_id
        in_dir = job_input_dir(self.settings, job_id)
        out_dir = job_output_dir(self.settings, job_id)
        try:
            if cancel.is_set():
                raise GenerationTimedOut("generation cancelled")
            record = record.model_copy(update={"state": "running", "started_at": time.time()})
            write_record(out_dir, record)

            run_generator(self.settings, in_dir, out_dir, cancel)

            try:
                name = resolve_artifact(out_dir, self.settings.artifact_ext)
            except OSError as exc:
                raise WorkspaceError(f"cannot list output of job {job_id}: {exc}") from exc
            if name is None:
                raise MissingArtifact(
                    f"generator finished without producing a {self.settings.artifact_ext} file"
                )

            record = record.model_copy(
                update={"state": "completed", "finished_at": time.time(), "artifact": name}
            )
            write_record(out_dir, record)
            logger.info("Job %s completed: %s", job_id, out_dir / name)
            return JobResult(job_id, name)
        except BaseException:
            logger.exception("Job %s failed", job_id)
            self._cleanup(job_id)
            raise
        finally:
            self._release(job_id)

    def _cleanup(self, job_id: str) -> None:
        # never allowed to mask the error that triggered it
        try:
            destroy_workspace(self.settings, job_id)
        except WorkspaceError:
            logger.warning("Cleanup of job %s failed", job_id, exc_info=True)

    def _release(self, job_id: str) -> None:
        with self._lock:
            self._active.pop(job_id, None)

    def _reap_cancelled(self, job_id: str, future: Future) -> None:
        if future.cancelled():
            logger.info("Job %s was cancelled before it started", job_id)
            self._cleanup(job_id)
            self._release(job_id)

    # -- control ------------------------------------------------------------

    def cancel(self, job_id: str) -> None:
        with self._lock:
            event = self._active.get(job_id)
        if event is None:
            raise NotRunning(f"job {job_id} is not running")
        logger.info("Cancelling job %s", job_id)
        event.set()

    def in_flight(self) -> int:
        with self._lock:
            return len(self._active)

    def recover_orphans(self) -> List[str]:
        """Remove workspaces of jobs that were queued or running when a
        previous process died; they can never finish."""
        removed = []
        for job_id in iter_job_ids(self.settings):
            with self._lock:
                if job_id in self._active:
                    continue
            try:
                record = read_record(job_output_dir(self.settings, job_id))
            except OSError:
                logger.warning("Cannot read record of job %s", job_id, exc_info=True)
                continue
            if record is not None and record.state in ("queued", "running"):
                logger.warning("Removing job %s left %s by a previous process", job_id, record.state)
                self._cleanup(job_id)
                removed.append(job_id)
        return removed

    def shutdown(self) -> None:
        with self._lock:
            events = list(self._active.values())
        for event in events:
            event.set()
        self._executor.shutdown(wait=True)

    # -- queries ------------------------------------------------------------

    def status(self, job_id: str) -> JobStatus:
        if not is_valid_job_id(job_id):
            return JobStatus(status="not_found")
        out_dir = job_output_dir(self.settings, job_id)
        try:
            if not out_dir.is_dir():
                return JobStatus(status="not_found", job_id=job_id)
            name = resolve_artifact(out_dir, self.settings.artifact_ext)
            record = read_record(out_dir)
        except FileNotFoundError:
            # removed between the existence check and the listing
            return JobStatus(status="not_found", job_id=job_id)
        except OSError:
            logger.exception("Cannot inspect output of job %s", job_id)
            return JobStatus(status="error", job_id=job_id)

        times = {}
        if record is not None:
            times = {
                "created_at": record.created_at,
                "started_at": record.started_at,
                "finished_at": record.finished_at,
            }
        if name is not None:
            return JobStatus(
                status="completed",
                job_id=job_id,
                file=name,
                ply_url=artifact_url(job_id, name),
                **times,
            )
        stage = record.state if record is not None and record.state != "completed" else None
        return JobStatus(status="processing", job_id=job_id, stage=stage, **times)
