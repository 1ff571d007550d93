"""Google Calendar v3 access with retries, throttling and error translation."""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

import httplib2
from google.auth.exceptions import TransportError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from core.errors import (
    CalendarApiError,
    EventNotFoundError,
    RateLimitedError,
    SyncError,
    SyncTokenInvalidError,
    TransientNetworkError,
)
from core.log import ensure_logger, kv
from core.settings import GOOGLE_SYNC, GoogleSyncSettings
from datetime_utils import to_rfc3339_utc
from models.event import TASK_ID_KEY, CalendarInfo, EventPage, ExternalEvent
from services.google_auth import access_token_credentials

RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
_TRANSPORT_ERRORS = (httplib2.HttpLib2Error, TransportError, ConnectionError, TimeoutError)


def build_calendar_service(access_token: str) -> Any:
    return build(
        "calendar",
        "v3",
        credentials=access_token_credentials(access_token),
        cache_discovery=False,
    )


def _http_status(exc: HttpError) -> int:
    status = getattr(exc, "resp", None) and getattr(exc.resp, "status", None)
    try:
        return int(status or 0)
    except (TypeError, ValueError):
        return 0


def _http_reasons(exc: HttpError) -> set[str]:
    reasons: set[str] = set()
    content = getattr(exc, "content", None) or b""
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    try:
        payload = json.loads(content) if content else {}
    except ValueError:
        payload = {}
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        for item in error.get("errors") or []:
            if isinstance(item, dict) and item.get("reason"):
                reasons.add(str(item["reason"]))
    for item in getattr(exc, "error_details", None) or []:
        if isinstance(item, dict) and item.get("reason"):
            reasons.add(str(item["reason"]))
    return reasons


def translate_http_error(exc: HttpError) -> SyncError:
    status = _http_status(exc)
    message = f"Google Calendar API error {status}: {exc}"
    if status == 410:
        return SyncTokenInvalidError(message, status)
    if status == 404:
        return EventNotFoundError(message, status)
    if status == 429:
        return RateLimitedError(message)
    if status == 403 and _http_reasons(exc) & RATE_LIMIT_REASONS:
        return RateLimitedError(message)
    if status >= 500:
        return TransientNetworkError(message)
    return CalendarApiError(message, status)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, SyncError) and exc.retryable


class CalendarClient:
    """Thin, typed wrapper around ``service.events()`` and ``service.calendarList()``.

    ``service_factory`` is called once per thread; the discovery service object
    is not safe to share between threads.
    """

    def __init__(
        self,
        service_factory: Callable[[], Any],
        *,
        settings: GoogleSyncSettings = GOOGLE_SYNC,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._service_factory = service_factory
        self._settings = settings
        self._sleep = sleep
        self._clock = clock
        self.logger = logger or ensure_logger("calendar")
        self._local = threading.local()
        self._throttle_lock = threading.Lock()
        self._last_request_at: Optional[float] = None

    @classmethod
    def for_access_token(cls, access_token: str, **kwargs) -> "CalendarClient":
        return cls(lambda: build_calendar_service(access_token), **kwargs)

    # ----- plumbing -----
    @property
    def service(self) -> Any:
        svc = getattr(self._local, "service", None)
        if svc is None:
            svc = self._local.service = self._service_factory()
        return svc

    def _throttle(self) -> None:
        interval = self._settings.min_request_interval_sec
        if interval <= 0:
            return
        with self._throttle_lock:
            now = self._clock()
            if self._last_request_at is not None:
                wait = self._last_request_at + interval - now
                if wait > 0:
                    self._sleep(wait)
                    now += wait
            self._last_request_at = now

    def _log_retry(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else None
        self.logger.warning(
            kv("calendar.retry", attempt=state.attempt_number, delay=delay, error=type(exc).__name__)
        )

    def _retrying(self) -> Retrying:
        wait = wait_exponential(
            multiplier=self._settings.retry_base_delay_sec,
            max=self._settings.retry_max_delay_sec,
        )
        if self._settings.retry_jitter_sec > 0:
            wait = wait + wait_random(0, self._settings.retry_jitter_sec)
        return Retrying(
            stop=stop_after_attempt(self._settings.max_retries + 1),
            wait=wait,
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _execute_once(self, make_request: Callable[[Any], Any]) -> Dict[str, Any]:
        self._throttle()
        try:
            return make_request(self.service).execute() or {}
        except HttpError as exc:
            raise translate_http_error(exc) from exc
        except _TRANSPORT_ERRORS as exc:
            raise TransientNetworkError(f"network error: {exc}") from exc

    def _call(self, op: str, make_request: Callable[[Any], Any]) -> Dict[str, Any]:
        try:
            return self._retrying()(self._execute_once, make_request)
        except SyncError as exc:
            self.logger.info(kv("calendar.call.failed", op=op, error=type(exc).__name__))
            raise

    def _paginate(
        self,
        op: str,
        calendar_id: str,
        params: Dict[str, Any],
        max_pages: Optional[int],
    ) -> EventPage:
        page = EventPage()
        fetched = 0
        while True:
            resp = self._call(op, lambda svc, p=dict(params): svc.events().list(**p))
            page.events.extend(
                ExternalEvent.from_api(item, calendar_id) for item in resp.get("items") or []
            )
            fetched += 1
            next_token = resp.get("nextPageToken")
            if not next_token:
                page.next_sync_token = resp.get("nextSyncToken")
                return page
            if max_pages is not None and fetched >= max_pages:
                page.next_page_token = next_token
                return page
            params["pageToken"] = next_token

    # ----- calendars -----
    def list_calendars(self) -> List[CalendarInfo]:
        calendars: List[CalendarInfo] = []
        params: Dict[str, Any] = {}
        while True:
            resp = self._call("calendars.list", lambda svc, p=dict(params): svc.calendarList().list(**p))
            calendars.extend(CalendarInfo.from_api(item) for item in resp.get("items") or [])
            next_token = resp.get("nextPageToken")
            if not next_token:
                return calendars
            params["pageToken"] = next_token

    # ----- events -----
    def list_events(
        self,
        calendar_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        page_token: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> EventPage:
        params: Dict[str, Any] = {
            "calendarId": calendar_id,
            "maxResults": self._settings.page_size,
            "singleEvents": True,
        }
        if time_min is not None:
            params["timeMin"] = to_rfc3339_utc(time_min)
        if time_max is not None:
            params["timeMax"] = to_rfc3339_utc(time_max)
        if page_token:
            params["pageToken"] = page_token
        return self._paginate("events.list", calendar_id, params, max_pages)

    def list_events_since(
        self,
        calendar_id: str,
        sync_token: str,
        page_token: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> EventPage:
        params: Dict[str, Any] = {
            "calendarId": calendar_id,
            "maxResults": self._settings.page_size,
            "singleEvents": True,
            "showDeleted": True,
            "syncToken": sync_token,
        }
        if page_token:
            params["pageToken"] = page_token
        return self._paginate("events.list_since", calendar_id, params, max_pages)

    def get_event(self, calendar_id: str, event_id: str) -> ExternalEvent:
        resp = self._call(
            "events.get",
            lambda svc: svc.events().get(calendarId=calendar_id, eventId=event_id),
        )
        return ExternalEvent.from_api(resp, calendar_id)

    def create_event(self, calendar_id: str, event: ExternalEvent) -> ExternalEvent:
        body = event.to_api()
        resp = self._call(
            "events.insert",
            lambda svc: svc.events().insert(calendarId=calendar_id, body=body),
        )
        return ExternalEvent.from_api(resp, calendar_id)

    def update_event(self, calendar_id: str, event_id: str, event: ExternalEvent) -> ExternalEvent:
        body = event.to_api()
        resp = self._call(
            "events.update",
            lambda svc: svc.events().update(calendarId=calendar_id, eventId=event_id, body=body),
        )
        return ExternalEvent.from_api(resp, calendar_id)

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete an event; returns False when it was already gone."""
        try:
            self._call(
                "events.delete",
                lambda svc: svc.events().delete(calendarId=calendar_id, eventId=event_id),
            )
        except (EventNotFoundError, SyncTokenInvalidError):
            return False
        return True

    def find_event_by_task(self, calendar_id: str, task_id: str) -> Optional[ExternalEvent]:
        """Look up an event previously created for ``task_id`` via its private property."""
        resp = self._call(
            "events.find_by_task",
            lambda svc: svc.events().list(
                calendarId=calendar_id,
                privateExtendedProperty=f"{TASK_ID_KEY}={task_id}",
                showDeleted=False,
                maxResults=10,
            ),
        )
        for item in resp.get("items") or []:
            event = ExternalEvent.from_api(item, calendar_id)
            if event.status != "cancelled":
                return event
        return None

    def list_events_batch(
        self,
        calendar_ids: Iterable[str],
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        max_pages: Optional[int] = None,
        continue_on_error: bool = True,
    ) -> Dict[str, EventPage]:
        ids = list(dict.fromkeys(calendar_ids))
        if not ids:
            return {}
        workers = max(1, min(self._settings.batch_concurrency, len(ids)))
        results: Dict[str, EventPage] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="gcal-batch") as pool:
            futures = {
                cid: pool.submit(self.list_events, cid, time_min, time_max, None, max_pages)
                for cid in ids
            }
            for cid, future in futures.items():
                try:
                    results[cid] = future.result()
                except SyncError as exc:
                    if not continue_on_error:
                        raise
                    self.logger.error(kv("calendar.batch.failed", calendar=cid, error=exc))
                    results[cid] = EventPage()
        return results


__all__ = [
    "CalendarClient",
    "RATE_LIMIT_REASONS",
    "build_calendar_service",
    "translate_http_error",
]
