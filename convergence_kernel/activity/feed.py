"""Bounded recent-activity feed for diagnostics."""

import threading
from collections import deque
from datetime import datetime
from typing import Deque, List, Optional

from convergence_kernel.models.activity import ActivityEntry, ActivityKind
from convergence_kernel.models.operation import Operation
from convergence_kernel.models.snapshot import EntityEvent


class ActivityFeed:
    """
    Keeps the last `max_entries` raw events and operation changes.
    Older entries fall off the end.
    """

    def __init__(self, max_entries: int = 50):
        self._entries: Deque[ActivityEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    @property
    def max_entries(self) -> int:
        return self._entries.maxlen

    def record_event(self, event: EntityEvent, accepted: bool) -> ActivityEntry:
        return self._append(ActivityEntry(
            kind=ActivityKind.EVENT,
            reference=event.entity_id,
            summary=f"{event.kind.value} @ {event.version_time}: "
                    f"{'accepted' if accepted else 'discarded'}",
            detail={
                "version_time": event.version_time,
                "kind": event.kind.value,
                "accepted": accepted,
                "body": event.body,
            },
            recorded_at=datetime.utcnow(),
        ))

    def record_operation(self, operation: Operation, summary: str) -> ActivityEntry:
        return self._append(ActivityEntry(
            kind=ActivityKind.OPERATION,
            reference=operation.token,
            summary=summary,
            detail={
                "status": operation.status.value,
                "attempt_count": operation.attempt_count,
            },
            recorded_at=datetime.utcnow(),
        ))

    def record_note(self, token: str, summary: str) -> ActivityEntry:
        return self._append(ActivityEntry(
            kind=ActivityKind.OPERATION,
            reference=token,
            summary=summary,
            recorded_at=datetime.utcnow(),
        ))

    def recent(self, limit: Optional[int] = None) -> List[ActivityEntry]:
        """Newest first."""
        with self._lock:
            entries = list(reversed(self._entries))
        return entries[:limit] if limit is not None else entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _append(self, entry: ActivityEntry) -> ActivityEntry:
        with self._lock:
            self._entries.append(entry)
        return entry
