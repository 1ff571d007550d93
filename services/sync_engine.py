from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlmodel import Session

from core.errors import FATAL_ERRORS, SyncDisabledError, SyncError, SyncInProgressError, error_type_of
from core.log import ensure_logger, kv
from core.settings import GOOGLE_SYNC, GoogleSyncSettings
from datetime_utils import utc_now
from models.sync_run import DIRECTIONS, STATUS_ERROR, SyncItemError, SyncRunResult
from models.sync_state import SyncProfile
from services.calendar_client import CalendarClient
from services.credential_store import CredentialStore
from services.google_auth import GoogleAuth
from services.sync_orchestrator import SyncOrchestrator, final_status
from services.sync_state_store import SyncStateStore
from services.task_repository import TaskRepository, TaskStore
from storage.db import get_session


@dataclass
class SyncRequest:
    owner_id: str
    calendar_ids: List[str] = field(default_factory=list)
    direction: Optional[str] = None   # None: the profile's sync_direction
    force_full_sync: bool = False
    dry_run: bool = False
    timeout_sec: Optional[float] = None
    sync_type: str = "manual"


class SyncEngine:
    """Entry point for manual and scheduled syncs.

    One run per (owner, calendar) at a time; a request touching a busy key is
    rejected instead of queued. Calendar runs share a bounded worker pool.
    """

    EVENTS = ("completed", "failed")

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        state: SyncStateStore,
        *,
        settings: GoogleSyncSettings = GOOGLE_SYNC,
        executor: Optional[ThreadPoolExecutor] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.orchestrator = orchestrator
        self.state = state
        self.settings = settings
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.batch_concurrency, thread_name_prefix="taskshoot-sync"
        )
        self._owns_executor = executor is None
        self._monotonic = monotonic
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._listeners: Dict[str, List[Callable]] = {name: [] for name in self.EVENTS}
        self.logger = ensure_logger("engine")

    @classmethod
    def create(
        cls,
        session_factory: Callable[[], Session] = get_session,
        *,
        auth: Optional[GoogleAuth] = None,
        tasks: Optional[TaskStore] = None,
        client_factory: Optional[Callable[[str], CalendarClient]] = None,
        settings: GoogleSyncSettings = GOOGLE_SYNC,
    ) -> "SyncEngine":
        state = SyncStateStore(session_factory)
        credentials = CredentialStore(
            session_factory,
            refresher=(auth or GoogleAuth()).refresh,
            on_auth_expired=state.mark_reconnect_required,
        )
        orchestrator = SyncOrchestrator(
            tasks or TaskRepository(session_factory),
            state,
            credentials,
            client_factory,
            settings=settings,
        )
        return cls(orchestrator, state, settings=settings)

    # ----- listeners -----
    def subscribe(self, event: str, callback: Callable) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unsupported event: {event}")
        self._listeners[event].append(callback)

    def unsubscribe(self, event: str, callback: Callable) -> None:
        if event not in self._listeners:
            return
        if callback in self._listeners[event]:
            self._listeners[event].remove(callback)

    def _emit(self, event: str, payload) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(payload)
            except Exception as exc:
                self.logger.warning(kv("sync.listener.failed", listener=getattr(listener, "__name__", listener), error=exc))

    # ----- locking -----
    def _lock_for(self, key: Tuple[str, str]) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _acquire_all(self, owner_id: str, calendar_ids: Sequence[str]) -> List[threading.Lock]:
        acquired: List[threading.Lock] = []
        for calendar_id in calendar_ids:
            lock = self._lock_for((owner_id, calendar_id))
            if not lock.acquire(blocking=False):
                for held in acquired:
                    held.release()
                raise SyncInProgressError(owner_id, calendar_id)
            acquired.append(lock)
        return acquired

    def is_running(self, owner_id: str, calendar_id: str) -> bool:
        return self._lock_for((owner_id, calendar_id)).locked()

    # ----- requests -----
    def resolve_calendars(self, request: SyncRequest, profile: Optional[SyncProfile]) -> List[str]:
        ids = list(request.calendar_ids or [])
        if not ids and profile is not None:
            ids = list(profile.selected_calendars or [])
        if not ids:
            ids = [self.settings.default_calendar_id]
        ids = list(dict.fromkeys(cid for cid in ids if cid))
        if len(ids) > self.settings.max_selected_calendars:
            raise ValueError(f"at most {self.settings.max_selected_calendars} calendars can be synced at once")
        return ids

    def resolve_direction(self, request: SyncRequest, profile: Optional[SyncProfile]) -> str:
        direction = request.direction or (profile.sync_direction if profile is not None else None)
        direction = direction or self.settings.default_direction
        if direction not in DIRECTIONS:
            raise ValueError(f"unknown sync direction: {direction}")
        return direction

    def sync(self, request: SyncRequest) -> SyncRunResult:
        profile = self.state.get_profile(request.owner_id)
        request = replace(request, direction=self.resolve_direction(request, profile))
        if profile is not None and not profile.enabled:
            raise SyncDisabledError(f"calendar sync is disabled for owner {request.owner_id}")
        calendar_ids = self.resolve_calendars(request, profile)

        locks = self._acquire_all(request.owner_id, calendar_ids)
        try:
            return self._run_locked(request, calendar_ids)
        finally:
            for lock in locks:
                lock.release()

    def _run_locked(self, request: SyncRequest, calendar_ids: List[str]) -> SyncRunResult:
        owner_id = request.owner_id
        timeout = request.timeout_sec if request.timeout_sec is not None else self.settings.run_timeout_sec
        deadline = self._monotonic() + timeout
        multi = len(calendar_ids) > 1
        aggregate = SyncRunResult(
            owner_id=owner_id,
            direction=request.direction,
            calendar_id=None if multi else calendar_ids[0],
            dry_run=request.dry_run,
        )
        if not request.dry_run:
            self.state.update_profile(owner_id, sync_status="syncing")

        self.logger.info(
            kv("sync.request", run=aggregate.run_id, owner=owner_id,
               calendars=",".join(calendar_ids), direction=request.direction)
        )
        futures: List[Tuple[str, Future]] = []
        for index, calendar_id in enumerate(calendar_ids):
            futures.append(
                (
                    calendar_id,
                    self._executor.submit(
                        self.orchestrator.run,
                        owner_id,
                        calendar_id,
                        request.direction,
                        force_full_sync=request.force_full_sync,
                        dry_run=request.dry_run,
                        push_target=index == 0,
                        deadline=deadline,
                        parent_run_id=aggregate.run_id if multi else None,
                        sync_type=request.sync_type,
                    ),
                )
            )

        fatal: Optional[BaseException] = None
        for calendar_id, future in futures:
            try:
                aggregate.merge(future.result())
            except FATAL_ERRORS as exc:
                fatal = fatal or exc
            except SyncError as exc:
                aggregate.errors.append(
                    SyncItemError(type=error_type_of(exc), message=str(exc), calendar_id=calendar_id)
                )
            except Exception as exc:
                self.logger.error(kv("sync.calendar.crashed", run=aggregate.run_id, calendar=calendar_id, error=exc))
                fatal = fatal or exc

        if fatal is not None:
            self._finish_profile(owner_id, request, STATUS_ERROR)
            self._emit("failed", fatal)
            raise fatal

        if multi:
            aggregate.status = final_status(aggregate)
            aggregate.completed_at = utc_now()
            self.state.append_run_result(aggregate, request.sync_type)
            result = aggregate
        elif aggregate.children:
            result = aggregate.children[0]
        else:
            aggregate.status = STATUS_ERROR
            aggregate.completed_at = utc_now()
            result = aggregate

        self._finish_profile(owner_id, request, result.status)
        self._emit("completed", result)
        return result

    def _finish_profile(self, owner_id: str, request: SyncRequest, status: str) -> None:
        if request.dry_run:
            return
        fields = {"sync_status": status}
        if status != STATUS_ERROR:
            fields["last_sync_at"] = utc_now()
        self.state.update_profile(owner_id, **fields)

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def __enter__(self) -> "SyncEngine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()


__all__ = ["SyncEngine", "SyncRequest"]
