from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from calsync.description import DEFAULT_CODEC, DescriptionCodec
from calsync.models import Changes, Event, _ensure_tz

logger = logging.getLogger(__name__)


class DuplicateSourceIDError(ValueError):
    def __init__(self, source_ids: list[str]) -> None:
        self.source_ids = source_ids
        super().__init__(f"Duplicate source ids in desired events: {', '.join(source_ids)}")


def events_equal(a: Event, b: Event, codec: DescriptionCodec = DEFAULT_CODEC) -> bool:
    """Compare two events the way a sync decides whether to write.

    Only the managed part of the description counts, so an annotation added
    in the calendar never causes an update. ``remote_id`` is ignored.
    """
    return (
        a.title == b.title
        and _ensure_tz(a.start) == _ensure_tz(b.start)
        and _ensure_tz(a.end) == _ensure_tz(b.end)
        and a.location == b.location
        and a.source_id == b.source_id
        and codec.managed_text(a.description) == codec.managed_text(b.description)
    )


def build_update(remote: Event, desired: Event, codec: DescriptionCodec = DEFAULT_CODEC) -> Event:
    return Event(
        title=desired.title,
        start=desired.start,
        end=desired.end,
        location=desired.location,
        description=codec.merge(remote.description, desired.description),
        source_id=desired.source_id,
        remote_id=remote.remote_id,
    )


def _index_desired(
    now: datetime,
    desired_events: Iterable[Event],
    allow_duplicates: bool,
) -> dict[str, Event]:
    indexed: dict[str, Event] = {}
    duplicates: list[str] = []
    for event in desired_events:
        if _ensure_tz(event.end) <= now:
            continue
        if event.source_id in indexed and event.source_id not in duplicates:
            duplicates.append(event.source_id)
        indexed[event.source_id] = event
    if duplicates:
        if not allow_duplicates:
            raise DuplicateSourceIDError(duplicates)
        logger.warning("Duplicate source ids, keeping the last event for each: %s", ", ".join(duplicates))
    return indexed


def compute_changes(
    now: datetime,
    remote_events: Iterable[Event],
    desired_events: Iterable[Event],
    *,
    codec: DescriptionCodec = DEFAULT_CODEC,
    allow_duplicates: bool = False,
) -> Changes:
    """Work out the deletes, updates and adds that make the remote events
    match the desired ones.

    Desired events that ended at or before ``now`` are ignored. Remote events
    are matched to desired events by ``source_id`` only. Neither input is
    modified; updates are new ``Event`` values carrying the remote id and the
    remote annotation.
    """
    now = _ensure_tz(now)
    unclaimed = _index_desired(now, desired_events, allow_duplicates)
    changes = Changes()

    for remote in remote_events:
        desired = unclaimed.pop(remote.source_id, None)
        if desired is None:
            changes.deletes.append(remote)
            continue
        if not events_equal(remote, desired, codec):
            changes.updates.append(build_update(remote, desired, codec))

    changes.adds.extend(unclaimed.values())
    return changes
