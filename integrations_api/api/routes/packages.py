from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status

from integrations_api.schemas.packages import PackageListResponse, PackageOut, PackageResponse
from integrations_api.services.pagination import MAX_PAGE_LIMIT, InvalidCursorError, PageRequest, build_page
from integrations_api.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()

DEFAULT_PACKAGES_LIMIT = 100


@router.get("", response_model=PackageListResponse)
async def list_packages(
    limit: int = Query(default=DEFAULT_PACKAGES_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    order: Literal["asc", "desc"] = Query(default="asc"),
    after: str | None = Query(default=None),
    repository=Depends(get_repository),
) -> PackageListResponse:
    try:
        page_request = PageRequest.parse(limit=limit, order=order, after=after)
        rows = await repository.list_packages(page_request)
    except InvalidCursorError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    page = build_page(rows, limit=limit, cursor_of=lambda row: row["id"])
    return PackageListResponse(data=[PackageOut(**row) for row in page.items], next_cursor=page.next_cursor)


@router.get("/{package_id}", response_model=PackageResponse)
async def get_package(package_id: str, repository=Depends(get_repository)) -> PackageResponse:
    try:
        package = await repository.get_package(package_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Package not found") from exc
    return PackageResponse(data=PackageOut(**package))
