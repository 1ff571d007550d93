import json
from dataclasses import replace

import httplib2
import pytest
from googleapiclient.errors import HttpError

from core.errors import (
    CalendarApiError,
    EventNotFoundError,
    RateLimitedError,
    SyncTokenInvalidError,
    TransientNetworkError,
)
from core.settings import GOOGLE_SYNC
from models.event import ExternalEvent
from services.calendar_client import CalendarClient, translate_http_error

FAST = replace(GOOGLE_SYNC, retry_jitter_sec=0.0, min_request_interval_sec=0.0)


def http_error(status: int, reason: str = "") -> HttpError:
    body = {"error": {"code": status, "message": "boom", "errors": [{"reason": reason}] if reason else []}}
    return HttpError(httplib2.Response({"status": status}), json.dumps(body).encode("utf-8"))


class FakeRequest:
    def __init__(self, outcome):
        self.outcome = outcome

    def execute(self):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


class FakeResource:
    def __init__(self, service, prefix):
        self.service = service
        self.prefix = prefix

    def __getattr__(self, name):
        op = f"{self.prefix}.{name}"

        def call(**params):
            self.service.calls.append((op, params))
            return FakeRequest(self.service.next_outcome(op, params))

        return call


class FakeService:
    """Scripted stand-in for the discovery service: outcomes are consumed per operation."""

    def __init__(self, script=None):
        self.script = {key: list(value) for key, value in (script or {}).items()}
        self.calls = []

    def next_outcome(self, op, params):
        queue = self.script.get(op)
        if not queue:
            return {}
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        return outcome(params) if callable(outcome) else outcome

    def events(self):
        return FakeResource(self, "events")

    def calendarList(self):
        return FakeResource(self, "calendarList")


def make_client(service, settings=FAST, clock=None):
    sleeps = []
    client = CalendarClient(
        lambda: service,
        settings=settings,
        sleep=sleeps.append,
        clock=clock or (lambda: 0.0),
    )
    return client, sleeps


def event_payload(event_id, summary="Event"):
    return {
        "id": event_id,
        "summary": summary,
        "start": {"dateTime": "2026-02-01T10:00:00Z"},
        "end": {"dateTime": "2026-02-01T11:00:00Z"},
        "updated": "2026-01-31T09:00:00Z",
    }


def test_rate_limit_is_retried_with_exponential_backoff():
    service = FakeService({"events.list": [http_error(429), http_error(429), {"items": [], "nextSyncToken": "t1"}]})
    client, sleeps = make_client(service)

    page = client.list_events("primary")

    assert page.next_sync_token == "t1"
    assert len(service.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_rate_limit_gives_up_after_max_retries():
    service = FakeService({"events.list": [http_error(429)]})
    client, sleeps = make_client(service)

    with pytest.raises(RateLimitedError):
        client.list_events("primary")

    assert len(service.calls) == GOOGLE_SYNC.max_retries + 1
    assert sleeps == [1.0, 2.0, 4.0]


def test_forbidden_rate_limit_reason_is_retried():
    service = FakeService({"events.get": [http_error(403, "userRateLimitExceeded"), event_payload("e1")]})
    client, _ = make_client(service)

    assert client.get_event("primary", "e1").id == "e1"
    assert len(service.calls) == 2


def test_plain_forbidden_is_not_retried():
    service = FakeService({"events.get": [http_error(403, "forbidden")]})
    client, sleeps = make_client(service)

    with pytest.raises(CalendarApiError) as excinfo:
        client.get_event("primary", "e1")

    assert excinfo.value.status == 403
    assert len(service.calls) == 1
    assert sleeps == []


def test_gone_raises_sync_token_invalid_without_retry():
    service = FakeService({"events.list": [http_error(410)]})
    client, _ = make_client(service)

    with pytest.raises(SyncTokenInvalidError):
        client.list_events_since("primary", "stale")

    assert len(service.calls) == 1
    assert service.calls[0][1]["syncToken"] == "stale"
    assert service.calls[0][1]["showDeleted"] is True


def test_server_errors_and_transport_errors_are_retried():
    service = FakeService(
        {"events.get": [http_error(503), ConnectionError("reset"), event_payload("e1")]}
    )
    client, sleeps = make_client(service)

    assert client.get_event("primary", "e1").id == "e1"
    assert len(sleeps) == 2


def test_transport_error_surfaces_as_transient():
    service = FakeService({"events.get": [httplib2.HttpLib2Error("down")]})
    client, _ = make_client(service)

    with pytest.raises(TransientNetworkError):
        client.get_event("primary", "e1")


def test_not_found_and_delete_of_missing_event():
    service = FakeService({"events.get": [http_error(404)], "events.delete": [http_error(404)]})
    client, _ = make_client(service)

    with pytest.raises(EventNotFoundError):
        client.get_event("primary", "missing")
    assert client.delete_event("primary", "missing") is False


def test_delete_of_gone_event_is_not_an_error():
    service = FakeService({"events.delete": [http_error(410)]})
    client, _ = make_client(service)
    assert client.delete_event("primary", "gone") is False


def test_pagination_is_exhausted_and_keeps_sync_token():
    service = FakeService(
        {
            "events.list": [
                {"items": [event_payload("a")], "nextPageToken": "p2"},
                {"items": [event_payload("b")], "nextSyncToken": "sync-2"},
            ]
        }
    )
    client, _ = make_client(service)

    page = client.list_events("primary")

    assert [e.id for e in page.events] == ["a", "b"]
    assert page.next_sync_token == "sync-2"
    assert page.has_more is False
    assert service.calls[1][1]["pageToken"] == "p2"
    assert "orderBy" not in service.calls[0][1]


def test_max_pages_reports_more():
    service = FakeService(
        {
            "events.list": [
                {"items": [event_payload("a")], "nextPageToken": "p2"},
                {"items": [event_payload("b")], "nextSyncToken": "sync-2"},
            ]
        }
    )
    client, _ = make_client(service)

    page = client.list_events("primary", max_pages=1)

    assert [e.id for e in page.events] == ["a"]
    assert page.next_page_token == "p2"
    assert page.next_sync_token is None
    assert len(service.calls) == 1


def test_find_event_by_task_queries_private_property():
    marked = event_payload("e9")
    marked["extendedProperties"] = {
        "private": {"taskshoot_source": "true", "taskshoot_task_id": "t-1"}
    }
    service = FakeService({"events.list": [{"items": [marked]}]})
    client, _ = make_client(service)

    found = client.find_event_by_task("primary", "t-1")

    assert found is not None and found.marker.task_id == "t-1"
    assert service.calls[0][1]["privateExtendedProperty"] == "taskshoot_task_id=t-1"


def test_create_event_sends_api_body():
    service = FakeService({"events.insert": [lambda params: dict(params["body"], id="new-1")]})
    client, _ = make_client(service)

    created = client.create_event("primary", ExternalEvent.from_api(event_payload(None, "Plan")))

    assert created.id == "new-1"
    assert created.title == "Plan"
    assert service.calls[0][1]["calendarId"] == "primary"


def test_batch_isolates_failing_calendar():
    def listing(params):
        if params["calendarId"] == "broken":
            return http_error(404)
        return {"items": [event_payload(f"{params['calendarId']}-1")], "nextSyncToken": "s"}

    client, _ = make_client(FakeService({"events.list": [listing]}))

    pages = client.list_events_batch(["primary", "broken", "work"])

    assert set(pages) == {"primary", "broken", "work"}
    assert pages["broken"].events == []
    assert [e.id for e in pages["work"].events] == ["work-1"]


def test_batch_can_propagate_errors():
    service = FakeService({"events.list": [http_error(404)]})
    client, _ = make_client(service)

    with pytest.raises(EventNotFoundError):
        client.list_events_batch(["primary"], continue_on_error=False)


def test_throttle_spaces_requests():
    service = FakeService({"events.get": [event_payload("e1")]})
    settings = replace(FAST, min_request_interval_sec=0.1)
    client, sleeps = make_client(service, settings=settings, clock=lambda: 5.0)

    client.get_event("primary", "e1")
    client.get_event("primary", "e1")

    assert sleeps == [pytest.approx(0.1)]


def test_translate_http_error_mapping():
    assert isinstance(translate_http_error(http_error(500)), TransientNetworkError)
    assert isinstance(translate_http_error(http_error(403, "rateLimitExceeded")), RateLimitedError)
    err = translate_http_error(http_error(400))
    assert type(err) is CalendarApiError and err.status == 400
