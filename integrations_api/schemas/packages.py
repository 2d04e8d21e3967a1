from pydantic import BaseModel, Field


class PackageOut(BaseModel):
    id: str
    registry: str
    name: str
    version: str
    downloads: int = Field(ge=0)


class PackageResponse(BaseModel):
    data: PackageOut


class PackageListResponse(BaseModel):
    data: list[PackageOut]
    next_cursor: str | None = None
