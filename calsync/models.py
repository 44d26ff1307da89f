from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any

from calsync.description import DEFAULT_DELIMITER


class MalformedEventError(ValueError):
    """An event could not be built from its remote or feed representation."""


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
        )


@dataclass
class FeedConfig:
    url: str = ""
    path: str = ""
    timeout_seconds: int = 30
    window_days: int = 365

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FeedConfig":
        data = data or {}
        return cls(
            url=str(data.get("url", "") or "").strip(),
            path=str(data.get("path", "") or "").strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            window_days=max(1, int(data.get("window_days", 365))),
        )


@dataclass
class SyncConfig:
    scope: str = "calsync"
    calendar_id: str = ""
    calendar_name: str = "Calsync"
    delimiter: str = DEFAULT_DELIMITER
    interval_seconds: int = 900
    dry_run: bool = False
    allow_duplicate_source_ids: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        # Delimiter whitespace is significant, so it is not stripped.
        delimiter = str(data.get("delimiter", DEFAULT_DELIMITER) or "")
        return cls(
            scope=str(data.get("scope", "calsync")).strip() or "calsync",
            calendar_id=str(data.get("calendar_id", "")).strip(),
            calendar_name=str(data.get("calendar_name", "Calsync")).strip() or "Calsync",
            delimiter=delimiter or DEFAULT_DELIMITER,
            interval_seconds=max(30, int(data.get("interval_seconds", 900))),
            dry_run=bool(data.get("dry_run", False)),
            allow_duplicate_source_ids=bool(data.get("allow_duplicate_source_ids", False)),
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            feed=FeedConfig.from_dict(data.get("feed")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Event:
    """A calendar entry that can be synced.

    ``source_id`` is the identity used to match a desired event with the
    copy stored in the remote calendar. ``remote_id`` is only set on events
    read back from the remote calendar.
    """

    title: str
    start: datetime
    end: datetime
    location: str = ""
    description: str = ""
    source_id: str = ""
    remote_id: str = ""

    def __str__(self) -> str:
        return f"{self.start.strftime('%Y/%m/%d')}: {self.title}"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


@dataclass
class Changes:
    deletes: list[Event] = field(default_factory=list)
    updates: list[Event] = field(default_factory=list)
    adds: list[Event] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [f"Delete {event}" for event in self.deletes]
        lines.extend(f"Update {event}" for event in self.updates)
        lines.extend(f"Add {event}" for event in self.adds)
        return "\n".join(lines)

    def total(self) -> int:
        return len(self.deletes) + len(self.updates) + len(self.adds)

    def is_empty(self) -> bool:
        return self.total() == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "deletes": [event.to_dict() for event in self.deletes],
            "updates": [event.to_dict() for event in self.updates],
            "adds": [event.to_dict() for event in self.adds],
        }


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    deletes: int = 0
    updates: int = 0
    adds: int = 0
    dry_run: bool = False
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "deletes": self.deletes,
            "updates": self.updates,
            "adds": self.adds,
            "dry_run": self.dry_run,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
