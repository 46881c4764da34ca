import asyncio
import socket

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from campaign_data.barb_client import AuthenticationError, BarbClient, TransportError


def _token_routes(state):
    async def token(request):
        body = await request.json()
        state["auth_calls"] = state.get("auth_calls", 0) + 1
        if body.get("email") != "ops@example.com" or body.get("password") != "secret":
            return web.json_response({"detail": "No active account"}, status=401)
        return web.json_response({"access": f"tok{state['auth_calls']}", "refresh": "r1"})

    async def refresh(request):
        body = await request.json()
        state["refresh_calls"] = state.get("refresh_calls", 0) + 1
        if body.get("refresh") != "r1":
            return web.json_response({"detail": "bad refresh"}, status=401)
        return web.json_response({"access": "tok-refreshed"})

    return [("POST", "/api/v1/auth/token/", token), ("POST", "/api/v1/auth/token/refresh/", refresh)]


def _paged(items, state, always_next=False):
    async def handler(request):
        state.setdefault("auth_headers", []).append(request.headers.get("Authorization"))
        state["requests"] = state.get("requests", 0) + 1
        page = int(request.query.get("page", "1"))
        size = int(request.query["page_size"])
        chunk = items[(page - 1) * size : page * size]
        nxt = None
        if always_next or page * size < len(items):
            nxt = str(request.url.update_query({"page": str(page + 1)}))
        return web.json_response({"results": chunk, "next": nxt})

    return handler


def _run(routes, scenario):
    async def main():
        app = web.Application()
        for method, path, handler in routes:
            app.router.add_route(method, path, handler)
        server = TestServer(app)
        await server.start_server()
        try:
            return await scenario(str(server.make_url("/api/v1")))
        finally:
            await server.close()

    return asyncio.run(main())


def _client(base_url, **kwargs):
    opts = {"page_size": 2, "max_retries": 2, "backoff": 0}
    opts.update(kwargs)
    return BarbClient("ops@example.com", opts.pop("password", "secret"), base_url=base_url, **opts)


def test_build_url_drops_blank_params():
    client = BarbClient("e", "p", base_url="https://example.test/api/v1/")
    assert client.build_url("/stations/", {"a": 1, "b": None, "c": ""}) == "https://example.test/api/v1/stations/?a=1"
    assert client.build_url("https://other.test/x?page=2", {"page_size": 5}) == "https://other.test/x?page=2&page_size=5"
    assert client.build_url("/stations/") == "https://example.test/api/v1/stations/"


def test_get_all_follows_next_cursor():
    state = {}
    items = [{"id": i} for i in range(5)]
    routes = _token_routes(state) + [("GET", "/api/v1/stations/", _paged(items, state))]

    async def scenario(base):
        async with _client(base) as c:
            return await c.list_stations()

    result = _run(routes, scenario)
    assert result == items
    assert state["requests"] == 3
    assert state["auth_calls"] == 1
    assert set(state["auth_headers"]) == {"Bearer tok1"}


def test_short_page_stops_even_with_next():
    state = {}
    items = [{"id": i} for i in range(3)]
    routes = _token_routes(state) + [("GET", "/api/v1/buyers/", _paged(items, state, always_next=True))]

    async def scenario(base):
        async with _client(base) as c:
            return await c.list_buyers()

    assert len(_run(routes, scenario)) == 3
    assert state["requests"] == 2


def test_empty_page_stops():
    state = {}
    routes = _token_routes(state) + [("GET", "/api/v1/buyers/", _paged([], state, always_next=True))]

    async def scenario(base):
        async with _client(base) as c:
            return await c.list_buyers()

    assert _run(routes, scenario) == []
    assert state["requests"] == 1


def test_page_ceiling():
    state = {}
    items = [{"id": i} for i in range(100)]
    routes = _token_routes(state) + [("GET", "/api/v1/advertisers/", _paged(items, state))]

    async def scenario(base):
        async with _client(base, max_pages=3) as c:
            return await c.list_advertisers()

    assert len(_run(routes, scenario)) == 6
    assert state["requests"] == 3


def test_events_key_and_bare_list_bodies():
    state = {}

    async def events(request):
        return web.json_response({"events": [{"id": 1}], "next": None})

    async def bare(request):
        return web.json_response([{"id": 2}, {"id": 3}])

    routes = _token_routes(state) + [
        ("GET", "/api/v1/events/", events),
        ("GET", "/api/v1/bare/", bare),
    ]

    async def scenario(base):
        async with _client(base) as c:
            return await c.get_all("/events/"), await c.get_all("/bare/")

    first, second = _run(routes, scenario)
    assert first == [{"id": 1}]
    assert second == [{"id": 2}, {"id": 3}]


def test_spots_request_carries_date_range():
    state = {}

    async def spots(request):
        state["query"] = dict(request.query)
        return web.json_response({"results": [{"broadcaster_spot_number": 1}, None], "next": None})

    routes = _token_routes(state) + [("GET", "/api/v1/advertising_spots/", spots)]

    async def scenario(base):
        async with _client(base) as c:
            return await c.list_advertising_spots("2025-03-01")

    assert _run(routes, scenario) == [{"broadcaster_spot_number": 1}]
    assert state["query"]["min_transmission_date"] == "2025-03-01"
    assert state["query"]["max_transmission_date"] == "2025-03-01"


def test_rejected_credentials():
    state = {}

    async def scenario(base):
        async with _client(base, password="wrong") as c:
            with pytest.raises(AuthenticationError):
                await c.authenticate()

    _run(_token_routes(state), scenario)
    assert state["auth_calls"] == 1


def test_missing_credentials_raise_before_request():
    async def scenario():
        async with BarbClient(None, None, base_url="http://127.0.0.1:9") as c:
            with pytest.raises(AuthenticationError):
                await c.get_all("/stations/")

    asyncio.run(scenario())


def test_retries_transient_status_then_succeeds():
    state = {"calls": 0}

    async def flaky(request):
        state["calls"] += 1
        if state["calls"] < 3:
            return web.json_response({"detail": "busy"}, status=503)
        return web.json_response({"results": [{"id": 1}], "next": None})

    routes = _token_routes(state) + [("GET", "/api/v1/stations/", flaky)]

    async def scenario(base):
        async with _client(base) as c:
            return await c.list_stations()

    assert _run(routes, scenario) == [{"id": 1}]
    assert state["calls"] == 3


def test_retries_are_bounded():
    state = {"calls": 0}

    async def down(request):
        state["calls"] += 1
        return web.json_response({"detail": "busy"}, status=503)

    routes = _token_routes(state) + [("GET", "/api/v1/stations/", down)]

    async def scenario(base):
        async with _client(base, max_retries=2) as c:
            with pytest.raises(TransportError) as info:
                await c.list_stations()
            return info.value.status

    assert _run(routes, scenario) == 503
    assert state["calls"] == 3


def test_non_retryable_status_fails_fast():
    state = {"calls": 0}

    async def broken(request):
        state["calls"] += 1
        return web.Response(status=500, text="boom")

    routes = _token_routes(state) + [("GET", "/api/v1/stations/", broken)]

    async def scenario(base):
        async with _client(base) as c:
            with pytest.raises(TransportError):
                await c.list_stations()

    _run(routes, scenario)
    assert state["calls"] == 1


def test_expired_token_is_refreshed_once():
    state = {}

    async def guarded(request):
        if request.headers.get("Authorization") != "Bearer tok-refreshed":
            return web.json_response({"detail": "expired"}, status=401)
        return web.json_response({"results": [{"id": 1}], "next": None})

    routes = _token_routes(state) + [("GET", "/api/v1/stations/", guarded)]

    async def scenario(base):
        async with _client(base) as c:
            return await c.list_stations()

    assert _run(routes, scenario) == [{"id": 1}]
    assert state["refresh_calls"] == 1


def test_timeout_is_retried():
    state = {"calls": 0}

    async def slow_then_ok(request):
        state["calls"] += 1
        if state["calls"] == 1:
            await asyncio.sleep(1)
        return web.json_response({"results": [{"id": 1}], "next": None})

    routes = _token_routes(state) + [("GET", "/api/v1/stations/", slow_then_ok)]

    async def scenario(base):
        async with _client(base, timeout=0.3) as c:
            return await c.list_stations()

    assert _run(routes, scenario) == [{"id": 1}]
    assert state["calls"] == 2


def test_connection_errors_are_retried_then_raised():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()

    async def scenario():
        async with BarbClient("e", "p", base_url=f"http://127.0.0.1:{port}/api/v1", max_retries=2, backoff=0) as c:
            c.access_token = "tok"
            with pytest.raises(TransportError) as info:
                await c.list_stations()
            return info.value.status

    assert asyncio.run(scenario()) is None


def test_second_unauthorized_fails():
    state = {"calls": 0}

    async def always_401(request):
        state["calls"] += 1
        return web.json_response({"detail": "forbidden"}, status=401)

    routes = _token_routes(state) + [("GET", "/api/v1/stations/", always_401)]

    async def scenario(base):
        async with _client(base) as c:
            with pytest.raises(TransportError) as info:
                await c.list_stations()
            return info.value.status

    assert _run(routes, scenario) == 401
    assert state["calls"] == 2
    assert state["refresh_calls"] == 1


def test_token_reply_that_is_not_json():
    async def token(request):
        return web.Response(text="<html>maintenance</html>", content_type="text/html")

    async def scenario(base):
        async with _client(base) as c:
            with pytest.raises(TransportError):
                await c.authenticate()

    _run([("POST", "/api/v1/auth/token/", token)], scenario)
