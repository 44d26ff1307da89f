from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import recurring_ical_events
import requests
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from calsync.models import Event, FeedConfig, MalformedEventError, _ensure_tz, date_to_datetime

logger = logging.getLogger(__name__)

RECURRENCE_PROPERTIES = ("RRULE", "RDATE", "RECURRENCE-ID")


def _as_datetime(value: Any, field_name: str, summary: str) -> datetime:
    if isinstance(value, (datetime, date)):
        converted = date_to_datetime(value)
        if converted is not None:
            return converted
    raise MalformedEventError(f"Event {summary!r} has an invalid {field_name}")


def _uid(vevent: ICEvent) -> str:
    return str(vevent.get("UID", "")).strip()


def _is_recurring(vevent: ICEvent) -> bool:
    return any(vevent.get(name) is not None for name in RECURRENCE_PROPERTIES)


def _instance_source_id(vevent: ICEvent) -> str:
    """Identity of one occurrence: the series UID plus its original start.

    A moved occurrence is keyed by its RECURRENCE-ID, so it keeps the
    identity of the slot it replaces.
    """
    summary = str(vevent.get("SUMMARY", "")).strip()
    name = "RECURRENCE-ID" if vevent.get("RECURRENCE-ID") is not None else "DTSTART"
    try:
        instant = _as_datetime(vevent.decoded(name), name, summary)
    except (ValueError, TypeError) as exc:
        raise MalformedEventError(f"Unable to parse {name} of event {summary!r}: {exc}") from exc
    return f"{_uid(vevent)}/{instant.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%SZ')}"


def event_from_vevent(vevent: ICEvent, source_id: str | None = None) -> Event:
    summary = str(vevent.get("SUMMARY", "")).strip()
    if not _uid(vevent):
        raise MalformedEventError(f"Event {summary!r} has no UID")
    if vevent.get("DTSTART") is None:
        raise MalformedEventError(f"Event {summary!r} has no DTSTART")
    try:
        start = _as_datetime(vevent.decoded("DTSTART"), "DTSTART", summary)
        if vevent.get("DTEND") is not None:
            end = _as_datetime(vevent.decoded("DTEND"), "DTEND", summary)
        elif vevent.get("DURATION") is not None:
            end = start + vevent.decoded("DURATION")
        else:
            end = start + timedelta(hours=1)
    except (ValueError, TypeError) as exc:
        raise MalformedEventError(f"Unable to parse times of event {summary!r}: {exc}") from exc
    if end < start:
        raise MalformedEventError(f"Event {summary!r} ends before it starts")
    return Event(
        title=summary,
        start=start,
        end=end,
        location=str(vevent.get("LOCATION", "")).strip(),
        description=str(vevent.get("DESCRIPTION", "")),
        source_id=source_id or _uid(vevent),
    )


def parse_feed(raw_ical: str | bytes, window_start: datetime, window_end: datetime) -> list[Event]:
    """Build the desired events of a feed.

    Single events are returned as they are. Recurring series are expanded
    into one event per occurrence overlapping ``window_start`` to
    ``window_end``; each occurrence gets its own ``source_id``.
    """
    try:
        calendar_obj = ICalendar.from_ical(raw_ical)
    except ValueError as exc:
        raise MalformedEventError(f"Feed is not a valid iCalendar document: {exc}") from exc

    vevents = calendar_obj.walk("VEVENT")
    for vevent in vevents:
        if not _uid(vevent):
            raise MalformedEventError(f"Event {str(vevent.get('SUMMARY', '')).strip()!r} has no UID")
    recurring_uids = {_uid(vevent) for vevent in vevents if _is_recurring(vevent)}

    events = [event_from_vevent(vevent) for vevent in vevents if _uid(vevent) not in recurring_uids]
    if recurring_uids:
        try:
            occurrences = recurring_ical_events.of(calendar_obj).between(
                _ensure_tz(window_start), _ensure_tz(window_end)
            )
        except ValueError as exc:
            raise MalformedEventError(f"Unable to expand recurring events: {exc}") from exc
        for occurrence in occurrences:
            if _uid(occurrence) in recurring_uids:
                events.append(event_from_vevent(occurrence, source_id=_instance_source_id(occurrence)))
    events.sort(key=lambda event: (event.start, event.source_id))
    return events


class FeedSource:
    """Loads the desired events from an iCalendar feed."""

    def __init__(self, config: FeedConfig) -> None:
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.url or self.config.path)

    def _read(self) -> bytes:
        if self.config.url:
            response = requests.get(self.config.url, timeout=self.config.timeout_seconds)
            response.raise_for_status()
            return response.content
        if self.config.path:
            return Path(self.config.path).read_bytes()
        raise ValueError("Feed config is incomplete: url or path required.")

    def load_events(self, now: datetime | None = None) -> list[Event]:
        window_start = _ensure_tz(now) if now is not None else datetime.now(timezone.utc)
        window_end = window_start + timedelta(days=self.config.window_days)
        events = parse_feed(self._read(), window_start, window_end)
        logger.info("Loaded %d events from feed", len(events))
        return events
