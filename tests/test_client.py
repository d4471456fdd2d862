"""End-to-end tests for ApiClient against a faked backend."""

import asyncio

import httpx
import pytest

from kidspoints_api import (
    APIConfig,
    APITimeoutError,
    ApiClient,
    ConcurrentTokenUpdateError,
    ErrorKind,
    NetworkError,
    NotFoundError,
    ServerError,
    UnauthorizedError,
    ValidationError,
)

from .helpers import BASE_URL, bearer, json_body


def refresh_ok(token="a2", refresh_token="r2", delay=0.0):
    async def handler(request):
        if delay:
            await asyncio.sleep(delay)
        return httpx.Response(200, json={"token": token, "refreshToken": refresh_token})
    return handler


def accepts_token(token, payload):
    def handler(request):
        if bearer(request) != token:
            return httpx.Response(401, json={"message": "Expired JWT Token"})
        return httpx.Response(200, json=payload)
    return handler


class TestTokenRefresh:

    def test_expired_token_refreshed_and_replayed(self, backend, make_client, storage, events):
        backend.route("GET", "/api/missions", accepts_token("a2", [{"id": 1, "title": "Tidy room"}]))
        backend.route("POST", "/api/auth/refresh", refresh_ok())
        refreshed = []
        events.on_token_refreshed(refreshed.append)
        client = make_client()

        result = asyncio.run(client.get("/missions"))

        assert result == [{"id": 1, "title": "Tidy room"}]
        refresh_calls = backend.calls_to("POST", "/api/auth/refresh")
        assert len(refresh_calls) == 1
        assert json_body(refresh_calls[0]) == {"refreshToken": "r1"}
        assert "Authorization" not in refresh_calls[0].headers
        mission_calls = backend.calls_to("GET", "/api/missions")
        assert [bearer(r) for r in mission_calls] == ["a1", "a2"]
        assert storage.data["access_token"] == "a2"
        assert storage.data["refresh_token"] == "r2"
        assert refreshed == ["a2"]

    def test_concurrent_401s_share_one_refresh(self, backend, make_client):
        backend.route("POST", "/api/missions/1/complete", accepts_token("a2", {"status": "completed"}))
        backend.route("POST", "/api/missions/2/complete", accepts_token("a2", {"status": "completed"}))
        backend.route("POST", "/api/missions/3/complete", accepts_token("a2", {"status": "completed"}))
        backend.route("POST", "/api/auth/refresh", refresh_ok(delay=0.05))
        client = make_client()

        async def scenario():
            return await asyncio.gather(*[
                client.post(f"/missions/{i}/complete") for i in (1, 2, 3)
            ])

        results = asyncio.run(scenario())

        assert results == [{"status": "completed"}] * 3
        assert len(backend.calls_to("POST", "/api/auth/refresh")) == 1
        assert client.refresh_coordinator.refresh_count == 1

    @pytest.mark.parametrize("count", [1, 5, 20])
    def test_single_flight_any_concurrency(self, backend, make_client, count):
        backend.route("GET", "/api/rewards", accepts_token("a2", []))
        backend.route("POST", "/api/auth/refresh", refresh_ok(delay=0.02))
        client = make_client()

        async def scenario():
            return await asyncio.gather(*[client.get("/rewards") for _ in range(count)])

        assert asyncio.run(scenario()) == [[]] * count
        assert len(backend.calls_to("POST", "/api/auth/refresh")) == 1

    def test_revoked_refresh_token_logs_out_once(self, backend, make_client, storage, events):
        backend.route("GET", "/api/missions", accepts_token("a2", []))
        backend.route("GET", "/api/rewards", accepts_token("a2", []))
        backend.route("GET", "/api/punishments", accepts_token("a2", []))

        async def revoked(request):
            await asyncio.sleep(0.05)
            return httpx.Response(401, json={"message": "Invalid refresh token"})

        backend.route("POST", "/api/auth/refresh", revoked)
        logouts = []
        events.on_auth_logout(lambda: logouts.append(1))
        client = make_client()

        async def scenario():
            return await asyncio.gather(
                client.get("/missions"),
                client.get("/rewards"),
                client.get("/punishments"),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        assert all(isinstance(r, UnauthorizedError) for r in results)
        assert all(r.kind is ErrorKind.UNAUTHORIZED for r in results)
        assert len(backend.calls_to("POST", "/api/auth/refresh")) == 1
        assert storage.data == {}
        assert logouts == [1]

    def test_no_refresh_token_logs_out(self, backend, make_client, storage, events):
        del storage.data["refresh_token"]
        backend.route("GET", "/api/missions", accepts_token("a2", []))
        logouts = []
        events.on_auth_logout(lambda: logouts.append(1))
        client = make_client()

        with pytest.raises(UnauthorizedError):
            asyncio.run(client.get("/missions"))

        assert backend.calls_to("POST", "/api/auth/refresh") == []
        assert storage.data == {}
        assert logouts == [1]

    def test_replay_401_is_surfaced_without_second_refresh(self, backend, make_client, events):
        backend.route("GET", "/api/children/4", lambda r: httpx.Response(401, json={"message": "Nope"}))
        backend.route("POST", "/api/auth/refresh", refresh_ok())
        logouts = []
        events.on_auth_logout(lambda: logouts.append(1))
        client = make_client()

        with pytest.raises(UnauthorizedError):
            asyncio.run(client.get("/children/4"))

        assert len(backend.calls_to("POST", "/api/auth/refresh")) == 1
        assert len(backend.calls_to("GET", "/api/children/4")) == 2
        assert logouts == []

    def test_replay_is_not_retried(self, backend, make_client, sleeps):
        responses = iter([
            httpx.Response(401),
            httpx.Response(503),
        ])
        backend.route("GET", "/api/badges", lambda r: next(responses))
        backend.route("POST", "/api/auth/refresh", refresh_ok())
        client = make_client()

        with pytest.raises(ServerError):
            asyncio.run(client.get("/badges"))

        assert len(backend.calls_to("GET", "/api/badges")) == 2
        assert sleeps.delays == []

    def test_skip_auth_401_is_not_refreshed(self, backend, make_client):
        backend.route("POST", "/api/auth/login", lambda r: httpx.Response(401, json={"message": "Invalid credentials."}))
        client = make_client()

        with pytest.raises(UnauthorizedError) as exc_info:
            asyncio.run(client.post("/auth/login", {"email": "p@example.com", "password": "x"}, skip_auth=True))

        assert exc_info.value.message == "Invalid credentials."
        assert backend.calls_to("POST", "/api/auth/refresh") == []
        assert "Authorization" not in backend.calls[0].headers

    def test_stale_token_replays_without_refresh(self, backend, make_client, storage):
        backend.route("GET", "/api/activities", accepts_token("a2", ["done"]))
        client = make_client()

        async def scenario():
            # Simulates a refresh finishing while this request was in flight
            original_execute = client.executor.execute

            async def execute(descriptor, token):
                result = original_execute(descriptor, token)
                storage.data["access_token"] = "a2"
                return await result

            client.executor.execute = execute
            return await client.get("/activities")

        assert asyncio.run(scenario()) == ["done"]
        assert backend.calls_to("POST", "/api/auth/refresh") == []

    def test_session_cleared_in_flight_is_not_refreshed_again(self, backend, make_client, storage, events):
        async def children(request):
            # Another part of the app logs out while this request is in flight
            storage.data.clear()
            return httpx.Response(401)

        backend.route("GET", "/api/children", children)
        logouts = []
        events.on_auth_logout(lambda: logouts.append(1))
        client = make_client()

        with pytest.raises(UnauthorizedError):
            asyncio.run(client.get("/children"))

        assert backend.calls_to("POST", "/api/auth/refresh") == []
        assert logouts == []

    def test_episode_failing_during_recovery_logs_out_once(self, backend, make_client, storage, events):
        backend.route("GET", "/api/children", lambda r: httpx.Response(401))
        backend.route("POST", "/api/auth/refresh", lambda r: httpx.Response(401, json={"message": "Revoked"}))
        logouts = []
        events.on_auth_logout(lambda: logouts.append(1))
        client = make_client()
        read_access_token = client.token_store.get_access_token
        reads = []

        async def get_access_token():
            reads.append(1)
            if len(reads) == 2:
                # A concurrent episode starts and fails while the 401 is handled
                with pytest.raises(UnauthorizedError):
                    await client.refresh_coordinator.refresh()
            return await read_access_token()

        client.token_store.get_access_token = get_access_token

        with pytest.raises(UnauthorizedError):
            asyncio.run(client.get("/children"))

        assert len(backend.calls_to("POST", "/api/auth/refresh")) == 1
        assert client.refresh_coordinator.refresh_count == 1
        assert storage.data == {}
        assert logouts == [1]

    def test_force_token_refresh(self, backend, make_client, storage):
        backend.route("POST", "/api/auth/refresh", refresh_ok("a9", "r9"))
        client = make_client()

        assert asyncio.run(client.force_token_refresh()) == "a9"
        assert storage.data["refresh_token"] == "r9"

    def test_malformed_refresh_response_logs_out(self, backend, make_client, storage, events):
        backend.route("GET", "/api/missions", accepts_token("a2", []))
        backend.route("POST", "/api/auth/refresh", lambda r: httpx.Response(200, json={"token": "a2"}))
        logouts = []
        events.on_auth_logout(lambda: logouts.append(1))
        client = make_client()

        with pytest.raises(UnauthorizedError):
            asyncio.run(client.get("/missions"))

        assert storage.data == {}
        assert logouts == [1]


class TestRetries:

    def test_unreachable_host_backoff(self, backend, make_client, sleeps):
        def unreachable(request):
            raise httpx.ConnectError("Name or service not known", request=request)

        backend.route("GET", "/api/rewards", unreachable)
        client = make_client(retries=3, retry_delay=1.0)

        with pytest.raises(NetworkError) as exc_info:
            asyncio.run(client.get("/rewards"))

        assert exc_info.value.to_dict()["kind"] == "NetworkError"
        assert len(backend.calls_to("GET", "/api/rewards")) == 4
        assert sleeps.delays == [1.0, 2.0, 4.0]

    def test_503_attempted_retries_plus_one(self, backend, make_client, sleeps):
        backend.route("GET", "/api/tournaments", lambda r: httpx.Response(503))
        client = make_client(retries=2, retry_delay=0.5)

        with pytest.raises(ServerError):
            asyncio.run(client.get("/tournaments"))

        assert len(backend.calls_to("GET", "/api/tournaments")) == 3
        assert sleeps.delays == [0.5, 1.0]

    def test_recovers_after_server_error(self, backend, make_client):
        responses = iter([httpx.Response(500), httpx.Response(200, json={"ok": True})])
        backend.route("GET", "/api/guilds", lambda r: next(responses))
        client = make_client()

        assert asyncio.run(client.get("/guilds")) == {"ok": True}

    def test_validation_error_not_retried(self, backend, make_client, sleeps):
        backend.route("POST", "/api/punishments", lambda r: httpx.Response(422, json={
            "violations": [{"propertyPath": "duration", "message": "This value should be positive."}],
        }))
        client = make_client()

        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(client.post("/punishments", {"duration": -1}))

        assert exc_info.value.kind is ErrorKind.VALIDATION
        assert exc_info.value.violations[0]["propertyPath"] == "duration"
        assert len(backend.calls_to("POST", "/api/punishments")) == 1
        assert sleeps.delays == []

    def test_not_found_not_retried(self, backend, make_client):
        client = make_client()

        with pytest.raises(NotFoundError):
            asyncio.run(client.get("/missions/999"))

        assert len(backend.calls) == 1

    def test_skip_retry_option(self, backend, make_client):
        backend.route("GET", "/api/dashboard", lambda r: httpx.Response(500))
        client = make_client()

        with pytest.raises(ServerError):
            asyncio.run(client.get("/dashboard", skip_retry=True))

        assert len(backend.calls) == 1

    def test_timeout_is_classified_as_timeout(self, backend, make_client):
        async def slow(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json=[])

        backend.route("GET", "/api/leaderboard", slow)
        client = make_client(retries=1, retry_delay=0.0)

        with pytest.raises(APITimeoutError) as exc_info:
            asyncio.run(client.get("/leaderboard", timeout=0.05))

        assert exc_info.value.kind is ErrorKind.TIMEOUT
        assert exc_info.value.retryable
        assert len(backend.calls_to("GET", "/api/leaderboard")) == 2


class TestConnectivity:

    def test_offline_fails_immediately(self, backend, make_client, sleeps):
        client = make_client(online=False)

        with pytest.raises(NetworkError) as exc_info:
            asyncio.run(client.get("/missions"))

        assert exc_info.value.message == "No internet connection"
        assert not exc_info.value.retryable
        assert backend.calls == []
        assert sleeps.delays == []

    def test_probe_checked_before_every_attempt(self, backend, make_client):
        backend.route("GET", "/api/missions", lambda r: httpx.Response(502))
        client = make_client(retries=2, retry_delay=0.0)

        with pytest.raises(ServerError):
            asyncio.run(client.get("/missions"))

        assert client.connectivity.checks == 3


class TestRequests:

    def test_headers(self, backend, make_client):
        backend.route("GET", "/api/children", lambda r: httpx.Response(200, json=[]))
        client = make_client()

        asyncio.run(client.get("/children"))

        headers = backend.calls[0].headers
        assert headers["Authorization"] == "Bearer a1"
        assert headers["Content-Type"] == "application/json"
        assert headers["Accept"] == "application/json"
        assert headers["User-Agent"].startswith("KidsPointsApp/")
        assert headers["X-Request-ID"]

    def test_query_params_drop_none(self, backend, make_client):
        backend.route("GET", "/api/missions", lambda r: httpx.Response(200, json=[]))
        client = make_client()

        asyncio.run(client.get("/missions", params={"child": 3, "status": None, "page": 2}))

        assert dict(backend.calls[0].url.params) == {"child": "3", "page": "2"}

    @pytest.mark.parametrize("method", ["post", "put", "patch"])
    def test_json_body_verbs(self, backend, make_client, method):
        backend.route(method.upper(), "/api/rewards/5", lambda r: httpx.Response(200, json=json_body(r)))
        client = make_client()

        result = asyncio.run(getattr(client, method)("/rewards/5", {"cost": 50}))

        assert result == {"cost": 50}

    def test_delete_empty_response(self, backend, make_client):
        backend.route("DELETE", "/api/rewards/5", lambda r: httpx.Response(204))
        client = make_client()

        assert asyncio.run(client.delete("/rewards/5")) == ""

    def test_text_response(self, backend, make_client):
        backend.route("GET", "/api/health", lambda r: httpx.Response(200, text="OK"))
        client = make_client()

        assert asyncio.run(client.get("/health")) == "OK"

    def test_upload_is_multipart(self, backend, make_client):
        backend.route("POST", "/api/children/3/avatar", lambda r: httpx.Response(201, json={"uploaded": True}))
        client = make_client()

        result = asyncio.run(client.upload(
            "/children/3/avatar", b"\x89PNG...", filename="avatar.png", additional_data={"crop": True},
        ))

        assert result == {"uploaded": True}
        request = backend.calls[0]
        assert request.headers["Content-Type"].startswith("multipart/form-data; boundary=")
        body = request.content
        assert b'name="file"; filename="avatar.png"' in body
        assert b'name="crop"' in body and b"True" in body

    def test_absolute_url(self, backend, make_client):
        backend.route("GET", "/status", lambda r: httpx.Response(200, json={"up": True}))
        client = make_client()

        assert asyncio.run(client.get("https://api.test/status")) == {"up": True}

    def test_build_url_keeps_base_path(self):
        client = ApiClient(APIConfig(base_url="https://api.example.com/api/"))

        assert client._build_url("/missions") == "https://api.example.com/api/missions"
        assert client._build_url("missions") == "https://api.example.com/api/missions"

    def test_default_headers_can_be_changed(self, backend, make_client):
        backend.route("GET", "/api/children", lambda r: httpx.Response(200, json=[]))
        client = make_client()
        client.set_header("Accept-Language", "fr")

        async def scenario():
            await client.get("/children")
            client.remove_header("Accept-Language")
            await client.get("/children")

        asyncio.run(scenario())

        assert backend.calls[0].headers["Accept-Language"] == "fr"
        assert "Accept-Language" not in backend.calls[1].headers

    def test_header_changes_stay_on_one_client(self, backend):
        backend.route("GET", "/api/children", lambda r: httpx.Response(200, json=[]))
        config = APIConfig(base_url=BASE_URL)
        first = ApiClient(config, transport=httpx.MockTransport(backend))
        second = ApiClient(config, transport=httpx.MockTransport(backend))

        first.set_header("Accept-Language", "fr")
        second.remove_header("User-Agent")
        asyncio.run(second.get("/children", skip_auth=True))

        assert "Accept-Language" not in backend.calls[0].headers
        assert "Accept-Language" not in config.default_headers
        assert config.default_headers["User-Agent"] == first.executor.default_headers["User-Agent"]


class TestSession:

    def test_login_tokens_and_session(self, make_client, storage):
        storage.data.clear()
        client = make_client()

        async def scenario():
            assert not await client.is_authenticated()
            await client.set_tokens("a5", "r5")
            await client.set_user({"id": 1, "firstName": "Sam"})
            return await client.get_session()

        session = asyncio.run(scenario())

        assert session.access_token == "a5"
        assert session.refresh_token == "r5"
        assert session.user == {"id": 1, "firstName": "Sam"}

    def test_clear_tokens(self, make_client, storage):
        client = make_client()

        asyncio.run(client.clear_tokens())

        assert storage.data == {}

    def test_tokens_locked_during_refresh(self, backend, make_client):
        backend.route("POST", "/api/auth/refresh", refresh_ok(delay=0.05))
        client = make_client()

        async def scenario():
            refresh = asyncio.ensure_future(client.force_token_refresh())
            await asyncio.sleep(0.01)
            with pytest.raises(ConcurrentTokenUpdateError):
                await client.set_tokens("x", "y")
            with pytest.raises(ConcurrentTokenUpdateError):
                await client.clear_tokens()
            return await refresh

        assert asyncio.run(scenario()) == "a2"

    def test_async_context_manager_closes_client(self):
        async def scenario():
            async with ApiClient(APIConfig(base_url=BASE_URL)) as client:
                pass
            return client

        client = asyncio.run(scenario())

        assert client._http_client.is_closed
