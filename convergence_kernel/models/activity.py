"""Activity entries for the bounded diagnostics feed."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class ActivityKind(str, Enum):
    EVENT = "event"
    OPERATION = "operation"


class ActivityEntry(BaseModel):
    kind: ActivityKind
    reference: str          # entity_id for events, token for operations
    summary: str
    detail: dict = {}
    recorded_at: datetime
