from __future__ import annotations

import hashlib
import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from calsync.description import DEFAULT_CODEC, DescriptionCodec
from calsync.models import CalDAVConfig, CalendarInfo, Event, MalformedEventError, date_to_datetime

try:
    import caldav
except ImportError:  # pragma: no cover - dependency managed by requirements
    caldav = None

logger = logging.getLogger(__name__)

SCOPE_PROPERTY = "X-CALSYNC-SCOPE"
SOURCE_ID_PROPERTY = "X-CALSYNC-SOURCE-ID"


class CalendarFetchError(RuntimeError):
    pass


class CalendarWriteError(RuntimeError):
    pass


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _normalize_calendar_name(value: str) -> str:
    collapsed = re.sub(r"\s+", " ", str(value or "").strip())
    return collapsed.casefold()


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, (datetime, date)):
        return date_to_datetime(value)
    return None


def event_uid(scope: str, source_id: str) -> str:
    digest = hashlib.sha1(f"{scope}\x00{source_id}".encode("utf-8")).hexdigest()  # nosec B324
    return f"{digest}@{scope}"


def parse_vevent(vevent: ICEvent, remote_id: str = "") -> Event:
    """Build an ``Event`` from a synced VEVENT, or raise ``MalformedEventError``."""
    # SUMMARY is kept verbatim so it compares equal to the title that was written.
    summary = str(vevent.get("SUMMARY", ""))
    if vevent.get("DTSTART") is None:
        raise MalformedEventError(f"Event {summary!r} has no DTSTART")
    try:
        start = _coerce_datetime(vevent.decoded("DTSTART"))
        end_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
    except (ValueError, TypeError) as exc:
        raise MalformedEventError(f"Unable to parse times of event {summary!r}: {exc}") from exc
    end = _coerce_datetime(end_raw)
    if start is None:
        raise MalformedEventError(f"Unable to parse start of event {summary!r}")
    if end is None:
        end = start + timedelta(hours=1)
    return Event(
        title=summary,
        start=start,
        end=end,
        location=str(vevent.get("LOCATION", "")),
        description=str(vevent.get("DESCRIPTION", "")),
        source_id=str(vevent.get(SOURCE_ID_PROPERTY, "")),
        remote_id=remote_id,
    )


class CalDAVService:
    def __init__(
        self,
        config: CalDAVConfig,
        scope: str = "calsync",
        codec: DescriptionCodec = DEFAULT_CODEC,
    ) -> None:
        self.config = config
        self.scope = scope
        self.codec = codec
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _require_dependency(self) -> None:
        if caldav is None:
            raise RuntimeError("caldav dependency is not installed.")

    def _connect(self) -> None:
        self._require_dependency()
        if self._principal is not None:
            return
        if not self.config.base_url or not self.config.username:
            raise RuntimeError("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        self._principal = self._client.principal()

    def list_calendars(self) -> list[CalendarInfo]:
        self._connect()
        self._calendar_cache = {}
        calendars: list[CalendarInfo] = []
        for calendar in self._principal.calendars():
            calendar_id = str(calendar.url)
            name = getattr(calendar, "name", "") or calendar_id
            self._calendar_cache[calendar_id] = calendar
            calendars.append(CalendarInfo(calendar_id=calendar_id, name=name, url=calendar_id))
        return calendars

    def _get_calendar(self, calendar_id: str) -> Any:
        if calendar_id in self._calendar_cache:
            return self._calendar_cache[calendar_id]
        self.list_calendars()
        if calendar_id not in self._calendar_cache:
            raise RuntimeError(f"Calendar not found: {calendar_id}")
        return self._calendar_cache[calendar_id]

    def ensure_calendar(self, calendar_id: str, calendar_name: str, create: bool = True) -> CalendarInfo | None:
        """Find the sync target by id, then by name, creating it if missing.

        With ``create=False`` a missing calendar gives ``None`` instead.
        """
        calendars = self.list_calendars()
        calendar_id_norm = _normalize_calendar_id(calendar_id)
        if calendar_id_norm:
            for info in calendars:
                if _normalize_calendar_id(info.calendar_id) == calendar_id_norm:
                    return info
        calendar_name_norm = _normalize_calendar_name(calendar_name)
        if calendar_name_norm:
            same_name = [info for info in calendars if _normalize_calendar_name(info.name) == calendar_name_norm]
            if same_name:
                same_name.sort(key=lambda item: item.calendar_id)
                return same_name[0]

        if not create:
            return None
        logger.info("Creating calendar %r", calendar_name)
        calendar = self._principal.make_calendar(name=calendar_name)
        created_id = str(calendar.url)
        self._calendar_cache[created_id] = calendar
        return CalendarInfo(
            calendar_id=created_id,
            name=getattr(calendar, "name", calendar_name) or calendar_name,
            url=created_id,
        )

    def fetch_events(self, calendar_id: str, now: datetime) -> list[Event]:
        """Return upcoming events owned by this scope.

        Events that already ended are left alone by a sync, so they are not
        returned.
        """
        try:
            self._connect()
            calendar = self._get_calendar(calendar_id)
            resources = calendar.events()
        except Exception as exc:
            raise CalendarFetchError(f"Unable to retrieve events from {calendar_id}: {exc}") from exc

        events: list[Event] = []
        for resource in resources:
            raw_ical = _decode_raw_ical(resource.data)
            try:
                vevent = self._parse_resource(resource, raw_ical)
            except MalformedEventError:
                # Only resources carrying a scope marker can belong to a sync.
                if SCOPE_PROPERTY not in raw_ical.upper():
                    logger.warning("Skipping unparsable resource %s", getattr(resource, "url", ""))
                    continue
                raise
            if vevent is None or str(vevent.get(SCOPE_PROPERTY, "")) != self.scope:
                continue
            event = parse_vevent(vevent, remote_id=str(getattr(resource, "url", "") or ""))
            if not event.source_id:
                logger.warning("Skipping %s: no %s property", event, SOURCE_ID_PROPERTY)
                continue
            if event.end <= now:
                continue
            events.append(event)
        logger.info("Fetched %d synced events from %s", len(events), calendar_id)
        return events

    def _parse_resource(self, resource: Any, raw_ical: str) -> ICEvent | None:
        try:
            calendar_obj = ICalendar.from_ical(raw_ical)
        except ValueError as exc:
            raise MalformedEventError(f"Unparsable calendar resource {getattr(resource, 'url', '')}: {exc}") from exc
        return _first_vevent(calendar_obj)

    def _build_ical(self, event: Event, uid: str) -> str:
        calendar_obj = ICalendar()
        calendar_obj.add("PRODID", "-//Calsync//Calendar Sync//EN")
        calendar_obj.add("VERSION", "2.0")
        vevent = ICEvent()
        vevent.add("UID", uid)
        vevent.add("SUMMARY", event.title or "")
        vevent.add("DESCRIPTION", self.codec.export_description(event))
        if event.location:
            vevent.add("LOCATION", event.location)
        vevent.add("DTSTART", event.start)
        vevent.add("DTEND", event.end)
        vevent.add("DTSTAMP", datetime.now(timezone.utc))
        vevent.add(SCOPE_PROPERTY, self.scope)
        vevent.add(SOURCE_ID_PROPERTY, event.source_id)
        calendar_obj.add_component(vevent)
        return calendar_obj.to_ical().decode("utf-8")

    def add_event(self, calendar_id: str, event: Event) -> None:
        uid = event_uid(self.scope, event.source_id)
        try:
            self._connect()
            calendar = self._get_calendar(calendar_id)
            calendar.save_event(self._build_ical(event, uid))
        except Exception as exc:
            raise CalendarWriteError(f"insert {event.title!r}: {exc}") from exc

    def update_event(self, calendar_id: str, event: Event) -> None:
        if not event.remote_id:
            raise CalendarWriteError(f"update {event.title!r}: event has no remote id")
        try:
            self._connect()
            calendar = self._get_calendar(calendar_id)
            resource = calendar.event_by_url(event.remote_id)
            current = self._parse_resource(resource, _decode_raw_ical(resource.data))
            uid = str(current.get("UID", "")) if current is not None else ""
            resource.data = self._build_ical(event, uid or event_uid(self.scope, event.source_id))
            resource.save()
        except Exception as exc:
            raise CalendarWriteError(f"update {event.title!r}: {exc}") from exc

    def delete_event(self, calendar_id: str, event: Event) -> None:
        if not event.remote_id:
            raise CalendarWriteError(f"deleting {event.title!r}: event has no remote id")
        try:
            self._connect()
            calendar = self._get_calendar(calendar_id)
            calendar.event_by_url(event.remote_id).delete()
        except Exception as exc:
            raise CalendarWriteError(f"deleting {event.remote_id}: {exc}") from exc
