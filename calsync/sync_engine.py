from __future__ import annotations

import logging
import threading
import traceback
from datetime import datetime, timezone
from typing import Iterable

from calsync.caldav_client import CalDAVService
from calsync.config_manager import ConfigManager
from calsync.description import DescriptionCodec
from calsync.feed_source import FeedSource
from calsync.models import AppConfig, Changes, Event, SyncResult, _ensure_tz
from calsync.reconciler import compute_changes
from calsync.state_store import StateStore

logger = logging.getLogger(__name__)


def _now(now: datetime | None) -> datetime:
    return _ensure_tz(now) if now is not None else datetime.now(timezone.utc)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SyncEngine:
    def __init__(self, config_manager: ConfigManager, state_store: StateStore) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self._run_lock = threading.Lock()

    def interval_seconds(self) -> int:
        return self.config_manager.load().sync.interval_seconds

    def service_for(self, config: AppConfig) -> CalDAVService:
        return CalDAVService(
            config.caldav,
            scope=config.sync.scope,
            codec=DescriptionCodec(config.sync.delimiter),
        )

    def _snapshot(
        self,
        service: CalDAVService,
        config: AppConfig,
        now: datetime,
        create_calendar: bool,
    ) -> tuple[str, list[Event]]:
        info = service.ensure_calendar(
            config.sync.calendar_id,
            config.sync.calendar_name,
            create=create_calendar,
        )
        if info is None:
            logger.info("Calendar %r does not exist yet", config.sync.calendar_name)
            return "", []
        return info.calendar_id, service.fetch_events(info.calendar_id, now)

    def fetch(self, now: datetime | None = None) -> list[Event]:
        config = self.config_manager.load()
        _, events = self._snapshot(self.service_for(config), config, _now(now), create_calendar=False)
        return events

    def preview(self, source_events: Iterable[Event], now: datetime | None = None) -> Changes:
        return self.sync(source_events, dry_run=True, now=now)

    def sync(
        self,
        source_events: Iterable[Event],
        *,
        dry_run: bool = False,
        now: datetime | None = None,
        run_id: int | None = None,
    ) -> Changes:
        """Bring the calendar in line with ``source_events``.

        The remote snapshot is fetched first; if that fails nothing is
        reconciled. Deletes, updates and adds are then applied in that order
        and the first failing write aborts the rest of the batch.
        """
        now = _now(now)
        config = self.config_manager.load()
        service = self.service_for(config)
        calendar_id, remote_events = self._snapshot(service, config, now, create_calendar=not dry_run)
        changes = compute_changes(
            now,
            remote_events,
            source_events,
            codec=service.codec,
            allow_duplicates=config.sync.allow_duplicate_source_ids,
        )
        if dry_run:
            for line in str(changes).splitlines():
                logger.info("[dry-run] %s", line)
            return changes

        for event in changes.deletes:
            service.delete_event(calendar_id, event)
            self._record(run_id, "delete", event)
        for event in changes.updates:
            service.update_event(calendar_id, event)
            self._record(run_id, "update", event)
        for event in changes.adds:
            service.add_event(calendar_id, event)
            self._record(run_id, "add", event)
        return changes

    def _record(self, run_id: int | None, action: str, event: Event) -> None:
        logger.info("%s %s", action.capitalize(), event)
        self.state_store.record_operation(run_id, action, event)

    def run_once(self, trigger: str = "manual", dry_run: bool | None = None) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        if not self._run_lock.acquire(blocking=False):
            return SyncResult(
                status="skipped",
                message="A sync run is already in progress.",
                duration_ms=0,
                trigger=trigger,
            )
        try:
            return self._run_locked(trigger, dry_run, started_at)
        finally:
            self._run_lock.release()

    def _run_locked(self, trigger: str, dry_run: bool | None, started_at: datetime) -> SyncResult:
        config = self.config_manager.load()
        if dry_run is None:
            dry_run = config.sync.dry_run
        run_id = self.state_store.open_run(trigger, dry_run=dry_run)
        try:
            source_events = FeedSource(config.feed).load_events(now=started_at)
            changes = self.sync(source_events, dry_run=dry_run, now=started_at, run_id=run_id)
        except Exception as exc:
            duration_ms = _elapsed_ms(started_at)
            error_message = f"{type(exc).__name__}: {exc}"
            logger.error("Sync run %s failed: %s", run_id, error_message)
            self.state_store.close_run(
                run_id,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                error_trace=traceback.format_exc(limit=5),
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                trigger=trigger,
                dry_run=dry_run,
            )

        duration_ms = _elapsed_ms(started_at)
        prefix = "Would apply" if dry_run else "Applied"
        message = (
            f"{prefix} {len(changes.deletes)} deletes, {len(changes.updates)} updates, "
            f"{len(changes.adds)} adds."
        )
        logger.info("Sync run %s: %s", run_id, message)
        self.state_store.close_run(
            run_id,
            status="success",
            message=message,
            duration_ms=duration_ms,
            changes=changes,
        )
        return SyncResult(
            status="success",
            message=f"{message} run_id={run_id}",
            duration_ms=duration_ms,
            trigger=trigger,
            deletes=len(changes.deletes),
            updates=len(changes.updates),
            adds=len(changes.adds),
            dry_run=dry_run,
        )
