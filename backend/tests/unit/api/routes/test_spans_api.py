"""Tests for the span REST endpoints: auth, rate limiting, create and list."""

from __future__ import annotations

from httpx import ASGITransport, AsyncClient

from causable.api.sse.broadcaster import EventBroadcaster
from causable.core.config import Settings
from causable.spans.schemas import Span

# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthentication:
    async def test_missing_header(self, client: AsyncClient) -> None:
        response = await client.get("/api/spans")

        assert response.status_code == 401
        body = response.json()
        assert body["code"] == "unauthorised"
        assert body["message"] == "Missing Authorization header"
        assert response.headers["www-authenticate"] == 'Bearer realm="Causable API"'

    async def test_wrong_scheme(self, client: AsyncClient) -> None:
        response = await client.get("/api/spans", headers={"Authorization": "Basic abc"})

        assert response.status_code == 401
        assert response.json()["message"] == (
            "Invalid Authorization format. Expected: Bearer <token>"
        )

    async def test_unknown_key(self, client: AsyncClient) -> None:
        response = await client.get("/api/spans", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid API key"

    async def test_valid_key(self, client: AsyncClient, auth_headers: dict[str, str]) -> None:
        response = await client.get("/api/spans", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == []
        assert response.headers["x-ratelimit-limit"] == "1000"


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class TestRateLimiting:
    async def test_exhausted_window_returns_429(
        self, app_settings: Settings, test_session_factory, auth_headers: dict[str, str]
    ) -> None:
        from causable.api.main import create_app
        from causable.core.database import get_db_session

        settings = app_settings.model_copy(update={"rate_limit_max_requests": 2})
        application = create_app(settings)

        async def _override_session():
            async with test_session_factory() as session:
                yield session

        application.dependency_overrides[get_db_session] = _override_session
        transport = ASGITransport(app=application)
        async with AsyncClient(transport=transport, base_url="http://test") as http:
            first = await http.get("/api/spans", headers=auth_headers)
            second = await http.get("/api/spans", headers=auth_headers)
            third = await http.get("/api/spans", headers=auth_headers)

        assert first.headers["x-ratelimit-remaining"] == "1"
        assert second.headers["x-ratelimit-remaining"] == "0"
        assert third.status_code == 429
        assert third.json()["code"] == "rate_limited"
        assert int(third.headers["retry-after"]) >= 1
        assert third.headers["x-ratelimit-remaining"] == "0"

    async def test_clients_are_counted_separately(
        self, app_settings: Settings, test_session_factory, auth_headers: dict[str, str]
    ) -> None:
        from causable.api.main import create_app
        from causable.core.database import get_db_session

        settings = app_settings.model_copy(update={"rate_limit_max_requests": 1})
        application = create_app(settings)

        async def _override_session():
            async with test_session_factory() as session:
                yield session

        application.dependency_overrides[get_db_session] = _override_session
        transport = ASGITransport(app=application)
        async with AsyncClient(transport=transport, base_url="http://test") as http:
            a = await http.get(
                "/api/spans", headers={**auth_headers, "X-Forwarded-For": "10.0.0.1"}
            )
            b = await http.get(
                "/api/spans", headers={**auth_headers, "X-Forwarded-For": "10.0.0.2"}
            )
            again = await http.get(
                "/api/spans", headers={**auth_headers, "X-Forwarded-For": "10.0.0.1"}
            )

        assert a.status_code == 200
        assert b.status_code == 200
        assert again.status_code == 429


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreateSpan:
    async def test_create_fills_defaults(
        self, client: AsyncClient, auth_headers: dict[str, str]
    ) -> None:
        response = await client.post("/api/spans", json={"did": "ran"}, headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["id"]
        assert body["seq"] == 0
        assert body["entity_type"] == "unknown"
        assert body["who"] == "unknown"
        assert body["this"] == "unknown"
        assert body["did"] == "ran"
        assert body["visibility"] == "private"
        assert body["is_deleted"] is False
        assert body["at"] is not None

    async def test_create_keeps_supplied_fields(
        self, client: AsyncClient, auth_headers: dict[str, str]
    ) -> None:
        response = await client.post(
            "/api/spans",
            json={
                "id": "s1",
                "who": "alice",
                "did": "created",
                "this": "x",
                "entity_type": "execution",
                "metadata": {"k": "v"},
                "duration_ms": 12.5,
            },
            headers=auth_headers,
        )

        body = response.json()
        assert body["id"] == "s1"
        assert body["entity_type"] == "execution"
        assert body["metadata"] == {"k": "v"}
        assert body["duration_ms"] == 12.5

    async def test_create_publishes_to_live_streams(
        self, app, client: AsyncClient, auth_headers: dict[str, str]
    ) -> None:
        broadcaster: EventBroadcaster = app.state.broadcaster
        received: list[Span] = []
        broadcaster.subscribe(received.append)

        await client.post(
            "/api/spans",
            json={"id": "s1", "who": "alice", "did": "created", "this": "x"},
            headers=auth_headers,
        )

        assert [s.id for s in received] == ["s1"]
        assert received[0].who == "alice"

    async def test_duplicate_id_is_a_conflict(
        self, client: AsyncClient, auth_headers: dict[str, str]
    ) -> None:
        body = {"id": "dup", "who": "a", "this": "x"}

        first = await client.post("/api/spans", json=body, headers=auth_headers)
        second = await client.post("/api/spans", json=body, headers=auth_headers)

        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json() == {
            "code": "conflict",
            "message": "Span dup already exists",
            "detail": None,
        }

        # The failed write left nothing half-done behind
        listed = await client.get("/api/spans", headers=auth_headers)
        assert [s["id"] for s in listed.json()] == ["dup"]

    async def test_invalid_body_is_rejected(
        self, client: AsyncClient, auth_headers: dict[str, str]
    ) -> None:
        response = await client.post(
            "/api/spans", json={"duration_ms": -1}, headers=auth_headers
        )

        assert response.status_code == 422


# ---------------------------------------------------------------------------
# List
# ---------------------------------------------------------------------------


class TestListSpans:
    async def _seed(self, client: AsyncClient, headers: dict[str, str]) -> None:
        spans = [
            {"id": "a", "entity_type": "function", "status": "active",
             "at": "2025-01-01T00:00:00Z"},
            {"id": "b", "entity_type": "execution", "status": "complete",
             "at": "2025-01-02T00:00:00Z"},
            {"id": "c", "entity_type": "execution", "status": "failed",
             "at": "2025-01-03T00:00:00Z", "trace_id": "t-1"},
        ]
        for span in spans:
            response = await client.post("/api/spans", json=span, headers=headers)
            assert response.status_code == 200

    async def test_newest_first(self, client: AsyncClient, auth_headers: dict[str, str]) -> None:
        await self._seed(client, auth_headers)

        response = await client.get("/api/spans", headers=auth_headers)

        assert [s["id"] for s in response.json()] == ["c", "b", "a"]

    async def test_filter_by_entity_type(
        self, client: AsyncClient, auth_headers: dict[str, str]
    ) -> None:
        await self._seed(client, auth_headers)

        response = await client.get(
            "/api/spans", params={"entity_type": "execution"}, headers=auth_headers
        )

        assert [s["id"] for s in response.json()] == ["c", "b"]

    async def test_filter_by_trace_and_status(
        self, client: AsyncClient, auth_headers: dict[str, str]
    ) -> None:
        await self._seed(client, auth_headers)

        by_trace = await client.get("/api/spans", params={"trace_id": "t-1"}, headers=auth_headers)
        by_status = await client.get(
            "/api/spans", params={"status": "active"}, headers=auth_headers
        )

        assert [s["id"] for s in by_trace.json()] == ["c"]
        assert [s["id"] for s in by_status.json()] == ["a"]

    async def test_limit(self, client: AsyncClient, auth_headers: dict[str, str]) -> None:
        await self._seed(client, auth_headers)

        response = await client.get("/api/spans", params={"limit": 2}, headers=auth_headers)

        assert len(response.json()) == 2

    async def test_limit_out_of_range(
        self, client: AsyncClient, auth_headers: dict[str, str]
    ) -> None:
        response = await client.get("/api/spans", params={"limit": 0}, headers=auth_headers)

        assert response.status_code == 422
