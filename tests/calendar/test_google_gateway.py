"""Tests for GoogleCalendarGateway request construction."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import httpx
import pytest

from genewa.calendar.connection import GoogleApiConnection
from genewa.calendar.errors import NotFoundError, ProtectedResourceError
from genewa.calendar.google import GoogleCalendarGateway
from genewa.calendar.inputs import CalendarPatch, EventDraft, EventPatch
from genewa.calendar.models import SendUpdatesPolicy, StructuredPayload, TimeRange
from genewa.core.metrics import CalendarMetrics

pytestmark = pytest.mark.unit

FAKE_CREDS = json.dumps(
    {
        "client_id": "test-client-id",
        "client_secret": "test-client-secret",
        "refresh_token": "test-refresh-token",
    }
)

WINDOW = TimeRange(
    start=datetime(2024, 1, 1, 0, 0, tzinfo=UTC),
    end=datetime(2024, 1, 8, 0, 0, tzinfo=UTC),
)

EXISTING_EVENT = {
    "id": "evt-1",
    "etag": '"etag-1"',
    "summary": "Planning",
    "start": {"dateTime": "2024-01-01T10:00:00Z", "timeZone": "UTC"},
    "end": {"dateTime": "2024-01-01T11:00:00Z", "timeZone": "UTC"},
}


class GoogleApi:
    """Minimal stand-in for the Google Calendar API behind httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], httpx.Response] = {}

    def route(self, method: str, path: str, response: httpx.Response) -> None:
        self.routes[(method, f"/calendar/v3{path}")] = response

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": "token", "expires_in": 3600})
        self.requests.append(request)
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404, json={"error": {"message": "Not Found"}})
        return response

    def sent(self, method: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method]


@pytest.fixture
def api() -> GoogleApi:
    return GoogleApi()


@pytest.fixture
def gateway(api: GoogleApi) -> GoogleCalendarGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(api))
    connection = GoogleApiConnection(
        credentials_json=FAKE_CREDS, http_client=client, metrics=CalendarMetrics("google")
    )
    return GoogleCalendarGateway(connection, default_time_zone="Europe/Berlin")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:
    async def test_list_calendars(self, api, gateway):
        api.route("GET", "/users/me/calendarList", httpx.Response(200, json={"items": []}))

        payload = await gateway.list_calendars()

        assert isinstance(payload, StructuredPayload)
        assert payload.data == {"items": []}

    async def test_list_events_params(self, api, gateway):
        api.route("GET", "/calendars/primary/events", httpx.Response(200, json={"items": []}))

        await gateway.list_events(
            calendar_id="primary", time_range=WINDOW, max_results=10_000, time_zone="UTC"
        )

        params = api.requests[-1].url.params
        assert params["timeMin"] == "2024-01-01T00:00:00Z"
        assert params["timeMax"] == "2024-01-08T00:00:00Z"
        assert params["maxResults"] == "2500"
        assert params["singleEvents"] == "true"
        assert params["orderBy"] == "startTime"
        assert "q" not in params

    async def test_search_events_adds_query(self, api, gateway):
        api.route(
            "GET",
            "/calendars/team@example.com/events",
            httpx.Response(200, json={"items": []}),
        )

        await gateway.search_events(
            calendar_id="team@example.com", query="retro", time_range=WINDOW
        )

        assert api.requests[-1].url.params["q"] == "retro"

    async def test_free_busy_body(self, api, gateway):
        api.route("POST", "/freeBusy", httpx.Response(200, json={"calendars": {}}))

        await gateway.query_free_busy(
            calendar_ids=["primary", "work"], time_range=WINDOW, time_zone="UTC"
        )

        body = json.loads(api.requests[-1].content)
        assert body == {
            "timeMin": "2024-01-01T00:00:00Z",
            "timeMax": "2024-01-08T00:00:00Z",
            "timeZone": "UTC",
            "items": [{"id": "primary"}, {"id": "work"}],
        }


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestWrites:
    async def test_create_event(self, api, gateway):
        api.route("POST", "/calendars/primary/events", httpx.Response(200, json={"id": "new"}))
        draft = EventDraft.from_input(
            {"summary": "Sync", "start": "2024-01-02T09:00", "end": "2024-01-02T09:30"},
            default_time_zone="Europe/Berlin",
        )

        payload = await gateway.create_event(calendar_id="primary", draft=draft)

        assert payload.data == {"id": "new"}
        request = api.sent("POST")[0]
        assert request.url.params["sendUpdates"] == "all"
        body = json.loads(request.content)
        assert body["start"] == {"dateTime": "2024-01-02T09:00:00Z", "timeZone": "Europe/Berlin"}
        assert body["reminders"] == {"useDefault": True}

    async def test_update_event_fetches_then_puts_with_etag(self, api, gateway):
        path = "/calendars/primary/events/evt-1"
        api.route("GET", path, httpx.Response(200, json=EXISTING_EVENT))
        api.route("PUT", path, httpx.Response(200, json={**EXISTING_EVENT, "summary": "Renamed"}))

        payload = await gateway.update_event(
            calendar_id="primary",
            event_id="evt-1",
            patch=EventPatch.from_input({"summary": "Renamed", "sendUpdates": "none"}),
        )

        assert payload.data["summary"] == "Renamed"
        put = api.sent("PUT")[0]
        assert put.headers["If-Match"] == '"etag-1"'
        assert put.url.params["sendUpdates"] == "none"
        body = json.loads(put.content)
        assert body["summary"] == "Renamed"
        assert body["start"] == EXISTING_EVENT["start"]

    async def test_update_missing_event_is_not_found(self, api, gateway):
        with pytest.raises(NotFoundError):
            await gateway.update_event(
                calendar_id="primary",
                event_id="ghost",
                patch=EventPatch.from_input({"summary": "x"}),
            )
        assert api.sent("PUT") == []

    async def test_delete_event_returns_title(self, api, gateway):
        path = "/calendars/primary/events/evt-1"
        api.route("GET", path, httpx.Response(200, json=EXISTING_EVENT))
        api.route("DELETE", path, httpx.Response(204))

        payload = await gateway.delete_event(
            calendar_id="primary", event_id="evt-1", send_updates=SendUpdatesPolicy.external_only
        )

        assert payload.data == {"deleted": True, "id": "evt-1", "title": "Planning"}
        assert api.sent("DELETE")[0].url.params["sendUpdates"] == "externalOnly"

    async def test_update_calendar_merges(self, api, gateway):
        path = "/calendars/team"
        api.route("GET", path, httpx.Response(200, json={"id": "team", "summary": "Team"}))
        api.route("PUT", path, httpx.Response(200, json={"id": "team", "summary": "Team"}))

        await gateway.update_calendar(
            calendar_id="team", patch=CalendarPatch.from_input({"description": "Shared"})
        )

        body = json.loads(api.sent("PUT")[0].content)
        assert body == {"id": "team", "summary": "Team", "description": "Shared"}

    async def test_delete_primary_calendar_makes_no_request(self, api, gateway):
        with pytest.raises(ProtectedResourceError, match="Cannot delete the primary calendar"):
            await gateway.delete_calendar(calendar_id="primary")
        assert api.requests == []
