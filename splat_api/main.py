import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from .artifacts import artifact_headers, artifact_url, find_artifact
from .config import Settings, configure_logging, load_settings
from .errors import JobError
from .ingest import UploadedImage
from .jobs import JobManager
from .models import AcceptedJobResponse, JobStatus, SubmitJobResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def _manager(request: Request) -> JobManager:
    return request.app.state.manager


def _http_error(exc: JobError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def _status_response(status: JobStatus) -> JSONResponse:
    code = {"not_found": 404, "error": 500}.get(status.status, 200)
    return JSONResponse(status.model_dump(by_alias=True, exclude_none=True), status_code=code)


async def _read_uploads(images: Optional[List[UploadFile]]) -> List[UploadedImage]:
    uploads = []
    for image in images or []:
        uploads.append(UploadedImage(image.filename or "", await image.read()))
    return uploads


@router.post("/generate", response_model=SubmitJobResponse)
async def generate(request: Request, images: Optional[List[UploadFile]] = File(None)):
    manager = _manager(request)
    uploads = await _read_uploads(images)
    try:
        _, future = await run_in_threadpool(manager.submit, uploads)
        result = await asyncio.wrap_future(future)
    except JobError as exc:
        raise _http_error(exc) from exc
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc) or "generation failed") from exc

    return SubmitJobResponse(
        job_id=result.job_id,
        file_name=result.file_name,
        ply_url=artifact_url(result.job_id, result.file_name),
    )


@router.get("/generate")
def generate_status(request: Request, job_id: Optional[str] = Query(None, alias="jobId")):
    if not job_id:
        raise HTTPException(status_code=400, detail="jobId is required")
    return _status_response(_manager(request).status(job_id))


@router.post("/jobs", status_code=202, response_model=AcceptedJobResponse)
async def create_job(request: Request, images: Optional[List[UploadFile]] = File(None)):
    manager = _manager(request)
    uploads = await _read_uploads(images)
    try:
        job_id, _ = await run_in_threadpool(manager.submit, uploads)
    except JobError as exc:
        raise _http_error(exc) from exc

    return AcceptedJobResponse(job_id=job_id, status_url=f"/api/jobs/{job_id}")


@router.get("/jobs/{job_id}")
def get_job(request: Request, job_id: str):
    return _status_response(_manager(request).status(job_id))


@router.delete("/jobs/{job_id}", status_code=202)
def cancel_job(request: Request, job_id: str):
    try:
        _manager(request).cancel(job_id)
    except JobError as exc:
        raise _http_error(exc) from exc
    return {"jobId": job_id, "status": "cancelling"}


def _serve_artifact(request: Request, job_id: str, file_name: Optional[str]) -> FileResponse:
    settings = _manager(request).settings
    try:
        path = find_artifact(settings, job_id, file_name)
    except JobError as exc:
        raise _http_error(exc) from exc
    return FileResponse(
        str(path),
        media_type=settings.artifact_media_type,
        filename=path.name,
        content_disposition_type="inline",
        headers=artifact_headers(settings),
    )


@router.get("/ply/{job_id}")
def get_artifact(request: Request, job_id: str):
    return _serve_artifact(request, job_id, None)


@router.get("/ply/{job_id}/{file_name}")
def get_named_artifact(request: Request, job_id: str, file_name: str):
    return _serve_artifact(request, job_id, file_name)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    if settings is None:
        settings = load_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager = app.state.manager
        if settings.recover_on_startup:
            removed = await run_in_threadpool(manager.recover_orphans)
            if removed:
                logger.warning("Removed %d orphaned job(s) on startup", len(removed))
        yield
        await run_in_threadpool(manager.shutdown)

    app = FastAPI(title="Splat Generation API", version="0.1.0", lifespan=lifespan)
    app.state.manager = JobManager(settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/healthz")
    def healthz():
        return {"ok": True, "in_flight": app.state.manager.in_flight()}

    app.include_router(router)
    return app


app = create_app()
