"""Envelope delivery: endpoints, headers, echo mode and failure handling."""

import logging

import httpx
import pytest

from tracklet.config import build_options
from tracklet.transport.http import Transport

HOST = "https://collect.example.com"
WRITE_KEY = "key1:secret1"


class FakeDispatcher:
    def __init__(self):
        self.calls = []

    async def dispatch(self, descriptors, method, event, instance=None, debug=False):
        self.calls.append((descriptors, method, event))


def envelope():
    return {"type": "track", "event": "signup", "anonymousId": "anon-1", "messageId": "m1"}


def transport_for(handler):
    dispatcher = FakeDispatcher()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Transport(dispatcher, client), dispatcher


class TestEndpoint:
    def test_browser_and_s2s_paths(self):
        assert Transport.endpoint("https://h.example.com/", "track", s2s=False) == "https://h.example.com/api/s/track"
        assert Transport.endpoint("https://h.example.com", "page", s2s=True) == "https://h.example.com/api/s/s2s/page"


class TestSend:
    @pytest.mark.asyncio
    async def test_posts_with_headers(self, collector, http_client):
        transport = Transport(FakeDispatcher(), http_client)
        options = build_options(host=HOST, write_key=WRITE_KEY, debug=True, privacy={"ip_policy": "stripLastOctet"})
        result = await transport.send("track", envelope(), options, s2s=False)
        assert result == envelope()
        (request,) = collector.requests
        assert request.url.path == "/api/s/track"
        assert request.headers["X-Write-Key"] == WRITE_KEY
        assert request.headers["X-Enable-Debug"] == "true"
        assert request.headers["X-IP-Policy"] == "stripLastOctet"
        assert request.headers["Content-Type"] == "application/json"
        assert collector.events == [envelope()]

    @pytest.mark.asyncio
    async def test_optional_headers_omitted(self, collector, http_client):
        transport = Transport(FakeDispatcher(), http_client)
        await transport.send("track", envelope(), build_options(host=HOST), s2s=True)
        (request,) = collector.requests
        assert request.url.path == "/api/s/s2s/track"
        assert "X-Write-Key" not in request.headers
        assert "X-Enable-Debug" not in request.headers
        assert "X-IP-Policy" not in request.headers

    @pytest.mark.asyncio
    async def test_echo_mode_skips_network(self, collector, http_client, caplog):
        caplog.set_level(logging.INFO, logger="tracklet")
        transport = Transport(FakeDispatcher(), http_client)
        result = await transport.send("track", envelope(), build_options(echo_events=True), s2s=False)
        assert result == envelope()
        assert collector.requests == []
        assert "[echo] sending 'track' event" in caplog.text

    @pytest.mark.asyncio
    async def test_destinations_handed_to_dispatcher(self, collector, http_client):
        collector.destinations = [{"id": "d1"}]
        dispatcher = FakeDispatcher()
        await Transport(dispatcher, http_client).send("track", envelope(), build_options(host=HOST), s2s=False)
        assert dispatcher.calls == [([{"id": "d1"}], "track", envelope())]

    @pytest.mark.asyncio
    async def test_destinations_ignored_server_to_server(self, collector, http_client, caplog):
        collector.destinations = [{"id": "d1"}]
        dispatcher = FakeDispatcher()
        await Transport(dispatcher, http_client).send("track", envelope(), build_options(host=HOST), s2s=True)
        assert dispatcher.calls == []
        assert "ignored in server-to-server mode" in caplog.text


class TestFailures:
    @pytest.mark.asyncio
    async def test_http_error_resolves_to_none(self, collector, http_client, caplog):
        collector.status = 500
        transport = Transport(FakeDispatcher(), http_client)
        result = await transport.send("track", envelope(), build_options(host=HOST, debug=True), s2s=False)
        assert result is None
        assert "Delivery of track event m1 failed" in caplog.text
        assert "replied 500" in caplog.text

    @pytest.mark.asyncio
    async def test_failure_quiet_without_debug(self, collector, http_client, caplog):
        caplog.set_level(logging.WARNING, logger="tracklet")
        collector.status = 503
        transport = Transport(FakeDispatcher(), http_client)
        assert await transport.send("track", envelope(), build_options(host=HOST), s2s=False) is None
        assert "Delivery of track event" not in caplog.text

    @pytest.mark.asyncio
    async def test_unparsable_body(self, collector, http_client, caplog):
        collector.body = "<html>oops</html>"
        transport = Transport(FakeDispatcher(), http_client)
        assert await transport.send("track", envelope(), build_options(host=HOST, debug=True), s2s=False) is None
        assert "Can't parse JSON" in caplog.text

    @pytest.mark.asyncio
    async def test_malformed_destinations_ignored(self, collector, http_client, caplog):
        collector.body = '{"destinations": 5}'
        dispatcher = FakeDispatcher()
        for s2s in (False, True):
            result = await Transport(dispatcher, http_client).send("track", envelope(), build_options(host=HOST), s2s=s2s)
            assert result == envelope()
        assert dispatcher.calls == []
        assert "malformed destinations 5" in caplog.text

    @pytest.mark.asyncio
    async def test_timeout(self, caplog):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        transport, _ = transport_for(handler)
        options = build_options(host=HOST, debug=True, fetch_timeout_ms=250)
        assert await transport.send("track", envelope(), options, s2s=False) is None
        assert "timed out after 0.25s" in caplog.text

    @pytest.mark.asyncio
    async def test_unreachable_endpoint(self, caplog):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport, dispatcher = transport_for(handler)
        assert await transport.send("track", envelope(), build_options(host=HOST, debug=True), s2s=False) is None
        assert "connection refused" in caplog.text
        assert dispatcher.calls == []
