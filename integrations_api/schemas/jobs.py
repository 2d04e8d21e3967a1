from datetime import datetime
from typing import Literal

from pydantic import BaseModel

JobStatus = Literal["Processing", "Completed"]

JOB_STATUS_PROCESSING: JobStatus = "Processing"
JOB_STATUS_COMPLETED: JobStatus = "Completed"


class JobOut(BaseModel):
    id: str
    registry: str
    package_name: str
    status: JobStatus
    trace_id: str | None = None
    created_at: datetime


class CreateJobRequest(BaseModel):
    registry: str
    package_name: str


class JobResponse(BaseModel):
    data: JobOut


class JobListResponse(BaseModel):
    data: list[JobOut]
    next_cursor: str | None = None
