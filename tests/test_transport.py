import asyncio
import json

import pytest
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer, unused_port

from errors import NetworkError
from transport import HttpTransport


async def serve(handler):
    app = web.Application()
    app.router.add_get("/feed", handler)
    server = TestServer(app)
    await server.start_server()
    return server


async def echo_headers(request):
    return web.json_response(
        {
            "cache-control": request.headers.get("Cache-Control"),
            "pragma": request.headers.get("Pragma"),
            "user-agent": request.headers.get("User-Agent"),
        },
        headers={"X-Feed-Source": "Local"},
    )


@pytest.mark.asyncio
async def test_get_sends_no_cache_headers_and_lowercases_response_headers():
    server = await serve(echo_headers)
    transport = HttpTransport(user_agent="newsdeck-test/1.0")
    try:
        response = await transport.get(str(server.make_url("/feed")))
    finally:
        await transport.close()
        await server.close()

    assert response.ok
    assert response.status == 200
    assert response.content_type.startswith("application/json")
    assert response.headers["x-feed-source"] == "Local"
    assert all(key == key.lower() for key in response.headers)
    assert json.loads(response.body) == {
        "cache-control": "no-cache",
        "pragma": "no-cache",
        "user-agent": "newsdeck-test/1.0",
    }


@pytest.mark.asyncio
async def test_get_follows_redirects():
    async def redirect(request):
        raise web.HTTPFound("/final")

    async def final(request):
        return web.Response(text="<rss/>", content_type="application/rss+xml")

    app = web.Application()
    app.router.add_get("/feed", redirect)
    app.router.add_get("/final", final)
    server = TestServer(app)
    await server.start_server()
    transport = HttpTransport()
    try:
        response = await transport.get(str(server.make_url("/feed")))
    finally:
        await transport.close()
        await server.close()

    assert response.status == 200
    assert response.body == "<rss/>"
    assert response.content_type == "application/rss+xml; charset=utf-8"


@pytest.mark.asyncio
async def test_non_2xx_is_returned_not_raised():
    async def missing(request):
        return web.Response(status=503, text="busy")

    server = await serve(missing)
    transport = HttpTransport()
    try:
        response = await transport.get(str(server.make_url("/feed")))
    finally:
        await transport.close()
        await server.close()

    assert response.status == 503
    assert not response.ok
    assert response.body == "busy"


@pytest.mark.asyncio
async def test_connection_refused_raises_network_error():
    transport = HttpTransport()
    try:
        with pytest.raises(NetworkError) as excinfo:
            await transport.get(f"http://127.0.0.1:{unused_port()}/feed")
    finally:
        await transport.close()

    assert str(excinfo.value).startswith("Network error")
    assert excinfo.value.detail


@pytest.mark.asyncio
async def test_slow_response_raises_network_error():
    async def slow(request):
        await asyncio.sleep(0.5)
        return web.Response(text="late")

    server = await serve(slow)
    transport = HttpTransport(timeout=0.05)
    try:
        with pytest.raises(NetworkError) as excinfo:
            await transport.get(str(server.make_url("/feed")))
    finally:
        await transport.close()
        await server.close()

    assert "timed out after 0.05s" in str(excinfo.value)


@pytest.mark.asyncio
async def test_close_leaves_injected_session_open():
    async with ClientSession() as session:
        transport = HttpTransport(session=session)
        await transport.close()
        assert not session.closed
