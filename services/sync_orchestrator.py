"""One synchronization run for a single owner and calendar.

A run walks Authenticating -> FullSync | IncrementalSync -> Reconciling ->
Committing. Item failures are collected on the result; auth expiry, a second
410 and mapping uniqueness violations abort the run after its log row is
written. The cursor is written last and only for a completed, non-dry run.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from core.errors import (
    FATAL_ERRORS,
    ConflictResolutionError,
    EventNotFoundError,
    SyncTimeoutError,
    SyncTokenInvalidError,
    error_type_of,
)
from core.log import ensure_logger, kv
from core.settings import GOOGLE_SYNC, GoogleSyncSettings
from core.task_options import normalize_status
from datetime_utils import ensure_utc, get_zone, utc_now
from models.event import EventPage, ExternalEvent
from models.sync_run import (
    DIRECTIONS,
    PULL_DIRECTIONS,
    PUSH_DIRECTIONS,
    STATUS_ERROR,
    STATUS_PARTIAL,
    STATUS_SUCCESS,
    ConflictRecord,
    SyncRunResult,
)
from models.sync_state import SyncCursor, SyncMapping
from models.task import Task
from services.calendar_client import CalendarClient
from services.credential_store import CredentialStore
from services.event_mapper import (
    content_hash,
    detail_hash,
    event_to_task,
    has_event_changed,
    should_exclude_from_sync,
    task_to_event,
)
from services.sync_state_store import SyncStateStore
from services.task_repository import TaskStore

ClientFactory = Callable[[str], CalendarClient]


def final_status(result: SyncRunResult) -> str:
    if result.timed_out:
        return STATUS_PARTIAL
    if not result.errors:
        return STATUS_SUCCESS
    if result.writes > 0 or result.events_processed > len(result.errors):
        return STATUS_PARTIAL
    return STATUS_ERROR


class SyncPhase(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    FULL_SYNC = "full_sync"
    INCREMENTAL_SYNC = "incremental_sync"
    RECONCILING = "reconciling"
    COMMITTING = "committing"
    FAILED = "failed"


@dataclass
class _Run:
    owner_id: str
    calendar_id: str
    direction: str
    result: SyncRunResult
    dry_run: bool
    push_target: bool
    deadline: float
    sync_type: str
    watermark: datetime
    phase: SyncPhase = SyncPhase.IDLE
    client: Optional[CalendarClient] = None
    # tasks written from remote in this run; never pushed back
    touched: Set[str] = field(default_factory=set)
    # tasks whose local edit won a conflict; pushed regardless of watermark
    local_wins: Set[str] = field(default_factory=set)


class SyncOrchestrator:
    def __init__(
        self,
        tasks: TaskStore,
        state: SyncStateStore,
        credentials: CredentialStore,
        client_factory: Optional[ClientFactory] = None,
        *,
        settings: GoogleSyncSettings = GOOGLE_SYNC,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        tz: Optional[tzinfo] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.tasks = tasks
        self.state = state
        self.credentials = credentials
        self.settings = settings
        self._client_factory = client_factory or (
            lambda token: CalendarClient.for_access_token(token, settings=settings)
        )
        self._clock = clock
        self._monotonic = monotonic
        self._tz = tz or get_zone(settings.default_timezone)
        self.logger = logger or ensure_logger("orchestrator")

    # ------------------------------------------------------------------ entry
    def run(
        self,
        owner_id: str,
        calendar_id: str,
        direction: str = "both",
        *,
        force_full_sync: bool = False,
        dry_run: bool = False,
        push_target: bool = True,
        deadline: Optional[float] = None,
        parent_run_id: Optional[str] = None,
        sync_type: str = "manual",
    ) -> SyncRunResult:
        if direction not in DIRECTIONS:
            raise ValueError(f"unknown sync direction: {direction}")
        result = SyncRunResult(
            owner_id=owner_id,
            direction=direction,
            calendar_id=calendar_id,
            parent_run_id=parent_run_id,
            dry_run=dry_run,
            started_at=self._clock(),
        )
        run = _Run(
            owner_id=owner_id,
            calendar_id=calendar_id,
            direction=direction,
            result=result,
            dry_run=dry_run,
            push_target=push_target,
            deadline=deadline if deadline is not None else self._monotonic() + self.settings.run_timeout_sec,
            sync_type=sync_type,
            watermark=result.started_at,
        )
        self.logger.info(
            kv("sync.run.start", run=result.run_id, owner=owner_id, calendar=calendar_id,
               direction=direction, dry_run=dry_run or None)
        )
        try:
            self._transition(run, SyncPhase.AUTHENTICATING)
            token = self.credentials.get_valid_token(owner_id)
            run.client = self._client_factory(token)
            cursor = self.state.get_cursor(owner_id, calendar_id)

            page: Optional[EventPage] = None
            full = False
            pull_clean = push_clean = True
            if direction in PULL_DIRECTIONS:
                page, full = self._fetch(run, cursor, force_full_sync)
                self._transition(run, SyncPhase.RECONCILING)
                pull_clean = self._reconcile_pull(run, page)
            if direction in PUSH_DIRECTIONS and not result.timed_out:
                if run.phase is not SyncPhase.RECONCILING:
                    self._transition(run, SyncPhase.RECONCILING)
                since = None if force_full_sync or cursor is None else ensure_utc(cursor.last_sync_at)
                push_clean = self._reconcile_push(run, since)

            self._transition(run, SyncPhase.COMMITTING)
            result.status = final_status(result)
            result.completed_at = self._clock()
            self.state.append_run_result(result, sync_type)
            if not dry_run and not result.timed_out:
                self._commit_cursor(run, page, full, pull_clean, push_clean)
        except Exception as exc:
            # fatal errors, listing failures that outlived their retries and store failures
            self._fail(run, exc)
            raise
        self._transition(run, SyncPhase.IDLE)
        self.logger.info(
            kv("sync.run.completed", run=result.run_id, calendar=calendar_id, status=result.status,
               strategy=result.strategy, processed=result.events_processed,
               created=result.events_created, updated=result.events_updated,
               deleted=result.events_deleted, skipped=result.events_skipped,
               errors=len(result.errors), conflicts=len(result.conflicts),
               timed_out=result.timed_out or None)
        )
        return result

    # --------------------------------------------------------------- helpers
    def _transition(self, run: _Run, phase: SyncPhase) -> None:
        self.logger.info(
            kv("sync.phase", run=run.result.run_id, calendar=run.calendar_id,
               from_phase=run.phase.value, to_phase=phase.value)
        )
        run.phase = phase

    def _fail(self, run: _Run, exc: BaseException) -> None:
        self._transition(run, SyncPhase.FAILED)
        result = run.result
        result.add_error(error_type_of(exc), str(exc))
        result.status = STATUS_ERROR
        result.completed_at = self._clock()
        self.logger.error(kv("sync.run.failed", run=result.run_id, calendar=run.calendar_id, error=exc))
        self.state.append_run_result(result, run.sync_type)

    def _out_of_time(self, run: _Run) -> bool:
        if self._monotonic() < run.deadline:
            return False
        if not run.result.timed_out:
            run.result.timed_out = True
            exc = SyncTimeoutError("run deadline reached; remaining items are left for the next run")
            run.result.add_error(error_type_of(exc), str(exc))
            self.logger.warning(kv("sync.run.deadline", run=run.result.run_id, calendar=run.calendar_id))
        return True

    def _synced_at(self, task: Optional[Task]) -> datetime:
        now = self._clock()
        updated = ensure_utc(task.updated_at) if task is not None else None
        return max(now, updated) if updated else now

    def _record_error(self, run: _Run, exc: Exception, *, task_id=None, event_id=None) -> None:
        run.result.add_error(error_type_of(exc), str(exc), task_id=task_id, event_id=event_id)
        self.logger.warning(
            kv("sync.item.failed", run=run.result.run_id, calendar=run.calendar_id,
               task=task_id, event=event_id, error=exc)
        )

    # ----------------------------------------------------------------- fetch
    def _full_window(self) -> tuple[Optional[datetime], Optional[datetime]]:
        days = self.settings.full_sync_window_days
        if not days:
            return None, None
        now = self._clock()
        return now - timedelta(days=days), now + timedelta(days=days)

    def _fetch(self, run: _Run, cursor: Optional[SyncCursor], force_full: bool) -> tuple[EventPage, bool]:
        client = run.client
        token = None if force_full or cursor is None else cursor.sync_token
        if token:
            self._transition(run, SyncPhase.INCREMENTAL_SYNC)
            run.result.strategy = "incremental"
            try:
                return client.list_events_since(run.calendar_id, token), False
            except SyncTokenInvalidError:
                self.logger.warning(
                    kv("sync.token.invalid", run=run.result.run_id, calendar=run.calendar_id)
                )
                run.result.escalated_to_full = True
                if not run.dry_run:
                    self.state.clear_sync_token(run.owner_id, run.calendar_id)
        self._transition(run, SyncPhase.FULL_SYNC)
        run.result.strategy = "full"
        time_min, time_max = self._full_window()
        # a 410 here is the second one for this run and propagates
        return client.list_events(run.calendar_id, time_min, time_max), True

    # ------------------------------------------------------------------ pull
    def _reconcile_pull(self, run: _Run, page: EventPage) -> bool:
        errors_before = len(run.result.errors)
        for event in page.events:
            if self._out_of_time(run):
                break
            try:
                self._pull_event(run, event)
            except FATAL_ERRORS:
                raise
            except Exception as exc:
                self._record_error(run, exc, event_id=event.id)
        return len(run.result.errors) == errors_before and not run.result.timed_out

    def _pull_event(self, run: _Run, event: ExternalEvent) -> None:
        result = run.result
        mapping = self.state.get_mapping_by_event(run.owner_id, run.calendar_id, event.id)

        if event.status == "cancelled":
            if mapping is not None and mapping.task_id:
                self._apply_remote_delete(run, mapping)
            else:
                result.events_skipped += 1
            return
        if should_exclude_from_sync(event):
            result.events_skipped += 1
            return

        result.events_processed += 1
        if mapping is None and event.marker is not None:
            mapping = self._adopt(run, event)
            if mapping is None:
                return
        if mapping is None:
            self._import_event(run, event)
            return
        if mapping.task_id is None:
            # claim left behind by an interrupted import
            self._import_event(run, event, claim=mapping)
            return

        task = self.tasks.get_task(run.owner_id, mapping.task_id)
        if task is None:
            if run.direction in PUSH_DIRECTIONS:
                # the push phase removes the remote side
                result.events_skipped += 1
                return
            if not run.dry_run:
                self.state.delete_mapping(mapping.id)
            self._import_event(run, event)
            return

        if mapping.content_hash == content_hash(event) and mapping.detail_hash == detail_hash(event):
            result.events_skipped += 1
            return
        self._apply_remote_change(run, event, task, mapping)

    def _adopt(self, run: _Run, event: ExternalEvent) -> Optional[SyncMapping]:
        """Attach a marked event with no mapping to the task named in its marker."""
        marker = event.marker
        task = self.tasks.get_task(run.owner_id, marker.task_id)
        if task is None:
            self.logger.warning(
                kv("sync.event.orphan", run=run.result.run_id, event=event.id, task=marker.task_id)
            )
            run.result.events_skipped += 1
            return None
        existing = self.state.get_mapping_by_task(run.owner_id, run.calendar_id, task.id)
        if existing is not None and existing.event_id and existing.event_id != event.id:
            self.logger.warning(
                kv("sync.event.duplicate", run=run.result.run_id, event=event.id,
                   task=task.id, mapped_event=existing.event_id)
            )
            run.result.events_skipped += 1
            return None
        if existing is not None:
            return existing
        # no last_synced_at: timestamps decide between the two sides
        return SyncMapping(owner_id=run.owner_id, calendar_id=run.calendar_id, task_id=task.id)

    def _import_event(self, run: _Run, event: ExternalEvent, claim: Optional[SyncMapping] = None) -> None:
        result = run.result
        draft = event_to_task(event, tz=self._tz).validate()
        if run.dry_run:
            result.events_created += 1
            return
        claim = claim or self.state.claim_event_mapping(run.owner_id, run.calendar_id, event.id)
        try:
            task = self.tasks.create_task(run.owner_id, draft)
        except Exception:
            self.state.delete_mapping(claim.id)
            raise
        self.state.upsert_mapping(
            run.owner_id,
            run.calendar_id,
            task_id=task.id,
            event_id=event.id,
            content_hash=content_hash(event),
            detail_hash=detail_hash(event),
            remote_updated_at=event.updated,
            last_synced_at=self._synced_at(task),
            mapping_id=claim.id,
        )
        run.touched.add(task.id)
        result.events_created += 1

    def _apply_remote_change(self, run: _Run, event: ExternalEvent, task: Task, mapping: SyncMapping) -> None:
        result = run.result
        last_synced = ensure_utc(mapping.last_synced_at)
        local_ts = ensure_utc(task.updated_at)
        local_changed = run.direction == "both" and (last_synced is None or local_ts > last_synced)
        if local_changed:
            remote_ts = ensure_utc(event.updated)
            if remote_ts is None:
                # neither side is applied; the push phase leaves the task alone too
                run.touched.add(task.id)
                raise ConflictResolutionError(
                    f"task {task.id} and event {event.id} both changed and the event has no update time"
                )
            winner = "remote" if remote_ts >= local_ts else "local"
            result.conflicts.append(
                ConflictRecord(
                    task_id=task.id,
                    event_id=event.id,
                    winner=winner,
                    local_updated_at=local_ts,
                    remote_updated_at=remote_ts,
                )
            )
            self.logger.info(
                kv("sync.conflict", run=result.run_id, task=task.id, event=event.id, winner=winner)
            )
            if winner == "local":
                run.local_wins.add(task.id)
                if not run.dry_run and mapping.event_id is None:
                    self.state.upsert_mapping(
                        run.owner_id, run.calendar_id, task_id=task.id, event_id=event.id,
                        remote_updated_at=event.updated, last_synced_at=last_synced,
                        mapping_id=mapping.id,
                    )
                return

        draft = event_to_task(event, tz=self._tz).validate()
        patch = draft.as_patch()
        if event.marker is None:
            # an unmarked event carries no task state beyond its schedule
            for key in ("status", "category_id"):
                patch.pop(key, None)
        if run.dry_run:
            result.events_updated += 1
            return
        now = self._synced_at(task)
        patch["updated_at"] = now
        self.tasks.update_task(run.owner_id, task.id, patch)
        self.state.upsert_mapping(
            run.owner_id,
            run.calendar_id,
            task_id=task.id,
            event_id=event.id,
            content_hash=content_hash(event),
            detail_hash=detail_hash(event),
            remote_updated_at=event.updated,
            last_synced_at=now,
            mapping_id=mapping.id,
        )
        run.touched.add(task.id)
        result.events_updated += 1

    def _apply_remote_delete(self, run: _Run, mapping: SyncMapping) -> None:
        result = run.result
        result.events_processed += 1
        if run.dry_run:
            result.events_deleted += 1
            return
        task = self.tasks.get_task(run.owner_id, mapping.task_id)
        if task is not None:
            if self.settings.delete_on_remote_cancel:
                self.tasks.delete_task(run.owner_id, task.id)
            elif normalize_status(task.status) != "cancelled":
                self.tasks.update_task(run.owner_id, task.id, {"status": "cancelled"})
        self.state.delete_mapping(mapping.id)
        run.touched.add(mapping.task_id)
        result.events_deleted += 1

    # ------------------------------------------------------------------ push
    def _reconcile_push(self, run: _Run, since: Optional[datetime]) -> bool:
        errors_before = len(run.result.errors)
        candidates: Dict[str, Task] = {
            task.id: task for task in self.tasks.list_tasks_changed_since(run.owner_id, since)
        }
        for task_id in run.local_wins:
            if task_id not in candidates:
                task = self.tasks.get_task(run.owner_id, task_id)
                if task is not None:
                    candidates[task_id] = task

        for task in candidates.values():
            if task.id in run.touched:
                continue
            if self._out_of_time(run):
                break
            try:
                self._push_task(run, task)
            except FATAL_ERRORS:
                raise
            except Exception as exc:
                self._record_error(run, exc, task_id=task.id)

        if not run.result.timed_out:
            self._push_local_deletes(run)
        return len(run.result.errors) == errors_before and not run.result.timed_out

    def _push_task(self, run: _Run, task: Task) -> None:
        result = run.result
        client = run.client
        mapping = self.state.get_mapping_by_task(run.owner_id, run.calendar_id, task.id)
        cancelled = normalize_status(task.status) == "cancelled"

        if mapping is not None and mapping.event_id:
            result.events_processed += 1
            if cancelled:
                if not run.dry_run:
                    client.delete_event(run.calendar_id, mapping.event_id)
                    self.state.delete_mapping(mapping.id)
                result.events_deleted += 1
                return
            last_synced = ensure_utc(mapping.last_synced_at)
            if (
                task.id not in run.local_wins
                and last_synced is not None
                and ensure_utc(task.updated_at) <= last_synced
            ):
                result.events_skipped += 1
                return
            event = task_to_event(task, run.calendar_id, tz=self._tz)
            if mapping.content_hash == content_hash(event) and mapping.detail_hash == detail_hash(event):
                result.events_skipped += 1
                return
            if run.dry_run:
                result.events_updated += 1
                return
            try:
                remote = client.update_event(run.calendar_id, mapping.event_id, event)
                result.events_updated += 1
            except EventNotFoundError:
                remote = client.create_event(run.calendar_id, event)
                result.events_created += 1
            self._complete_mapping(run, task, remote, mapping.id)
            return

        if not self._exportable(run, task, cancelled):
            return
        result.events_processed += 1
        if run.dry_run:
            result.events_created += 1
            return
        # a pending claim from an interrupted export is reused as is
        claim = mapping or self.state.claim_task_mapping(run.owner_id, run.calendar_id, task.id)
        event = task_to_event(task, run.calendar_id, tz=self._tz)
        existing = client.find_event_by_task(run.calendar_id, task.id)
        if existing is None:
            remote = client.create_event(run.calendar_id, event)
        elif has_event_changed(existing, event):
            remote = client.update_event(run.calendar_id, existing.id, event)
        else:
            remote = existing
        self._complete_mapping(run, task, remote, claim.id)
        result.events_created += 1

    def _exportable(self, run: _Run, task: Task, cancelled: bool) -> bool:
        if not run.push_target or cancelled:
            return False
        if task.start_date is None and task.due_date is None and not self.settings.export_undated_tasks:
            return False
        created = ensure_utc(task.created_at)
        if created is not None and created >= run.watermark:
            # created while this run was in flight; the next run picks it up
            return False
        mapped_elsewhere: List[SyncMapping] = [
            m for m in self.state.find_task_mappings(run.owner_id, task.id)
            if m.calendar_id != run.calendar_id
        ]
        return not mapped_elsewhere

    def _complete_mapping(self, run: _Run, task: Task, remote: ExternalEvent, mapping_id: Optional[int]) -> None:
        self.state.upsert_mapping(
            run.owner_id,
            run.calendar_id,
            task_id=task.id,
            event_id=remote.id,
            content_hash=content_hash(remote),
            detail_hash=detail_hash(remote),
            remote_updated_at=remote.updated,
            last_synced_at=self._synced_at(task),
            mapping_id=mapping_id,
        )

    def _push_local_deletes(self, run: _Run) -> None:
        for mapping in self.state.list_mappings(run.owner_id, run.calendar_id):
            if not mapping.task_id or not mapping.event_id or mapping.task_id in run.touched:
                continue
            if self._out_of_time(run):
                return
            if self.tasks.get_task(run.owner_id, mapping.task_id) is not None:
                continue
            run.result.events_processed += 1
            try:
                if not run.dry_run:
                    run.client.delete_event(run.calendar_id, mapping.event_id)
                    self.state.delete_mapping(mapping.id)
                run.result.events_deleted += 1
            except FATAL_ERRORS:
                raise
            except Exception as exc:
                self._record_error(run, exc, task_id=mapping.task_id, event_id=mapping.event_id)

    # ---------------------------------------------------------------- commit
    def _commit_cursor(
        self,
        run: _Run,
        page: Optional[EventPage],
        full: bool,
        pull_clean: bool,
        push_clean: bool,
    ) -> None:
        fields: Dict[str, object] = {}
        if page is not None and pull_clean:
            if page.next_sync_token:
                fields["sync_token"] = page.next_sync_token
            if full:
                fields["last_full_sync_at"] = self._clock()
        if run.direction in PUSH_DIRECTIONS and push_clean:
            fields["last_sync_at"] = run.watermark
        if fields:
            self.state.set_cursor(run.owner_id, run.calendar_id, **fields)


__all__ = ["SyncOrchestrator", "SyncPhase", "final_status"]
