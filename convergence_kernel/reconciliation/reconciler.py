"""
Out-of-Order Event Reconciler — last-writer-wins merge of a notification stream.

Events arrive duplicated, late and in any order. Each one is compared with the
stored snapshot for its entity by upstream version_time:

    no snapshot, or event newer  → replace the snapshot, notify subscribers
    event not newer              → discard (normal under reordering)

A tombstone takes part in the same comparison as any other kind, so it blocks
every older create/update while still yielding to a genuinely newer create.

Equal version_time is discarded. The first event to arrive at a given
timestamp therefore wins; when a discarded equal-time event differs from the
stored one this is logged as a warning, since there is no tie-break.
"""

import itertools
import threading
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from convergence_kernel.activity.feed import ActivityFeed
from convergence_kernel.errors import ReconciliationStaleEvent
from convergence_kernel.logs import get_logger
from convergence_kernel.models.config import ReconcilerSettings
from convergence_kernel.models.snapshot import (
    ApplyResult,
    EntityEvent,
    EntitySnapshot,
    SnapshotReplaced,
)
from convergence_kernel.reconciliation.snapshot_map import ReconciliationMap

logger = get_logger("reconciliation")

Listener = Callable[[SnapshotReplaced], None]


class OutOfOrderReconciler:

    def __init__(
        self,
        snapshot_map: ReconciliationMap,
        activity: Optional[ActivityFeed] = None,
        config: Optional[ReconcilerSettings] = None,
    ):
        self.snapshot_map = snapshot_map
        self.config = config or ReconcilerSettings()
        self.activity = activity or ActivityFeed(self.config.activity_feed_size)

        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()
        self._sequence = itertools.count(1)
        self._notify_lock = threading.Lock()

    # --- Subscriptions ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register for SnapshotReplaced notifications. Returns an unsubscribe callable."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # --- Apply ---

    def apply(self, event: EntityEvent) -> ApplyResult:
        """Merge one event into the map."""
        candidate = EntitySnapshot.from_event(event)

        with self.snapshot_map.locked(event.entity_id):
            try:
                previous = self.snapshot_map.replace_if_newer(candidate)
            except ReconciliationStaleEvent as stale:
                stored = stale.stored
                self._log_discard(event, stored, stale)
                self.activity.record_event(event, accepted=False)
                return ApplyResult(
                    event=event, accepted=False, current=stored, previous=stored
                )

            # Still under the entity lock, so notifications for one entity
            # go out in the order the snapshots were accepted.
            self.activity.record_event(event, accepted=True)
            self._notify(event.entity_id, previous, candidate)

        logger.debug(
            "Accepted %s for %s at %d", event.kind.value, event.entity_id, event.version_time,
            extra={"structured": {
                "entity_id": event.entity_id,
                "version_time": event.version_time,
                "kind": event.kind.value,
            }},
        )
        return ApplyResult(event=event, accepted=True, current=candidate, previous=previous)

    def apply_many(self, events: Iterable[EntityEvent]) -> List[ApplyResult]:
        return [self.apply(event) for event in events]

    # --- Views ---

    def get(self, entity_id: str) -> Optional[EntitySnapshot]:
        return self.snapshot_map.get(entity_id)

    def active_entities(self) -> List[EntitySnapshot]:
        """Current entities, tombstones excluded."""
        return self.snapshot_map.active()

    def full_history(self) -> List[EntitySnapshot]:
        """Every snapshot, tombstones included."""
        return self.snapshot_map.history()

    # --- Internals ---

    def _notify(
        self,
        entity_id: str,
        previous: Optional[EntitySnapshot],
        current: EntitySnapshot,
    ) -> None:
        with self._notify_lock:
            notification = SnapshotReplaced(
                sequence=next(self._sequence),
                entity_id=entity_id,
                previous=previous,
                current=current,
                replaced_at=datetime.utcnow(),
            )
            with self._listeners_lock:
                listeners = list(self._listeners)

            for listener in listeners:
                try:
                    listener(notification)
                except Exception:
                    logger.exception(
                        "Snapshot listener failed for %s", entity_id,
                        extra={"structured": {"entity_id": entity_id}},
                    )

    def _log_discard(
        self,
        event: EntityEvent,
        stored: Optional[EntitySnapshot],
        stale: ReconciliationStaleEvent,
    ) -> None:
        conflicting = (
            stored is not None
            and stored.version_time == event.version_time
            and (stored.kind != event.kind or stored.body != event.body)
        )
        structured = {
            "entity_id": event.entity_id,
            "version_time": event.version_time,
            "stored_version_time": stale.stored_version,
            "kind": event.kind.value,
        }
        if conflicting:
            logger.warning(
                "Equal version_time %d for %s with different content; keeping first arrival",
                event.version_time, event.entity_id,
                extra={"structured": structured},
            )
        else:
            logger.debug("Discarded %s", stale, extra={"structured": structured})
