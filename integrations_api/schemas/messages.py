from pydantic import BaseModel


class JobMessage(BaseModel):
    """Work item published for every accepted job."""

    job_id: str
    registry: str
    package_name: str
    trace_id: str | None = None
