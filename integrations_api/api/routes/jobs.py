from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status

from integrations_api.schemas.jobs import CreateJobRequest, JobListResponse, JobOut, JobResponse
from integrations_api.services import jobs as job_service
from integrations_api.services.broker import BrokerError, get_broker
from integrations_api.services.pagination import MAX_PAGE_LIMIT, InvalidCursorError, PageRequest, build_page
from integrations_api.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()

DEFAULT_JOBS_LIMIT = 10


@router.post("", response_model=JobResponse)
async def create_job(
    payload: CreateJobRequest,
    repository=Depends(get_repository),
    broker=Depends(get_broker),
) -> JobResponse:
    try:
        job = await job_service.create_job(
            repository=repository,
            broker=broker,
            registry=payload.registry,
            package_name=payload.package_name,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except BrokerError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobResponse(data=JobOut(**job))


@router.get("", response_model=JobListResponse)
async def list_jobs(
    limit: int = Query(default=DEFAULT_JOBS_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    order: Literal["asc", "desc"] = Query(default="asc"),
    after: str | None = Query(default=None),
    repository=Depends(get_repository),
) -> JobListResponse:
    try:
        page_request = PageRequest.parse(limit=limit, order=order, after=after)
        rows = await repository.list_jobs(page_request)
    except InvalidCursorError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    page = build_page(rows, limit=limit, cursor_of=lambda row: row["id"])
    return JobListResponse(data=[JobOut(**row) for row in page.items], next_cursor=page.next_cursor)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, repository=Depends(get_repository)) -> JobResponse:
    try:
        job = await repository.get_job(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found") from exc
    return JobResponse(data=JobOut(**job))
