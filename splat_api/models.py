from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Literal

# persisted lifecycle of a live job; failed jobs are deleted, not recorded
JobState = Literal["queued", "running", "completed"]

# what a status query reports, derived from the workspace on every call
StatusName = Literal["not_found", "processing", "completed", "error"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class JobRecord(BaseModel):
    job_id: str
    state: JobState
    created_at: float
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    inputs: List[str] = []
    artifact: Optional[str] = None


class JobStatus(_CamelModel):
    status: StatusName
    job_id: Optional[str] = Field(default=None, alias="jobId")
    stage: Optional[JobState] = None
    file: Optional[str] = None
    ply_url: Optional[str] = Field(default=None, alias="plyUrl")
    created_at: Optional[float] = Field(default=None, alias="createdAt")
    started_at: Optional[float] = Field(default=None, alias="startedAt")
    finished_at: Optional[float] = Field(default=None, alias="finishedAt")


class SubmitJobResponse(_CamelModel):
    success: bool = True
    job_id: str = Field(alias="jobId")
    file_name: str = Field(alias="fileName")
    ply_url: str = Field(alias="plyUrl")


class AcceptedJobResponse(_CamelModel):
    job_id: str = Field(alias="jobId")
    status: StatusName = "processing"
    status_url: str = Field(alias="statusUrl")
