"""Entity snapshots — the reconciler's notion of current truth per entity."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


class EventKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"     # Tombstone, never a removal


class EntityEvent(BaseModel):
    """An inbound state-change notification. No ordering guarantee."""

    entity_id: str
    version_time: int       # Upstream logical timestamp, not arrival time
    kind: EventKind
    body: Any = None


class EntitySnapshot(BaseModel):
    """Latest accepted state for one entity."""

    entity_id: str
    version_time: int
    kind: EventKind
    body: Any = None

    @property
    def is_tombstone(self) -> bool:
        return self.kind == EventKind.DELETED

    @classmethod
    def from_event(cls, event: EntityEvent) -> "EntitySnapshot":
        return cls(
            entity_id=event.entity_id,
            version_time=event.version_time,
            kind=event.kind,
            body=event.body,
        )


class ApplyResult(BaseModel):
    """Outcome of applying one event to the reconciliation map."""

    event: EntityEvent
    accepted: bool
    current: EntitySnapshot                 # Snapshot stored after the apply
    previous: Optional[EntitySnapshot] = None


class SnapshotReplaced(BaseModel):
    """Notification emitted for every accepted mutation, in acceptance order."""

    sequence: int
    entity_id: str
    previous: Optional[EntitySnapshot] = None
    current: EntitySnapshot
    replaced_at: datetime
