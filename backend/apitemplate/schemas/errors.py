"""Error body returned by the permission gate."""
from datetime import datetime, timezone

from pydantic import BaseModel, Field


class GateErrorResponse(BaseModel):
    StatusCode: int
    Message: str
    Timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
