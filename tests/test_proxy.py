"""
Tests for the HTTP reverse proxy
"""

import asyncio
import gzip
import json

import httpx
from starlette.requests import Request
from starlette.responses import StreamingResponse

from vncp_console.proxy import ProxyClient, forward_headers


def make_request(method="POST", path="/app/items", query=b"a=1", body=b"payload"):
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": query,
        "scheme": "http",
        "server": ("console", 9091),
        "client": ("10.0.0.1", 51234),
        "headers": [
            (b"host", b"console:9091"),
            (b"connection", b"keep-alive"),
            (b"x-custom", b"1"),
        ],
    }

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def client_with(handler) -> ProxyClient:
    proxy = ProxyClient()
    proxy._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return proxy


class TestForwardHeaders:
    def test_hop_by_hop_removed_and_forwarded_added(self):
        headers = forward_headers(make_request(), "app")

        assert "host" not in headers
        assert "connection" not in headers
        assert headers["x-custom"] == "1"
        assert headers["x-forwarded-for"] == "10.0.0.1"
        assert headers["x-forwarded-host"] == "console:9091"
        assert headers["x-forwarded-proto"] == "http"
        assert headers["x-forwarded-prefix"] == "/app"


class TestProxyClient:
    def test_forwards_request_and_filters_response_headers(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["method"] = request.method
            seen["body"] = request.content
            return httpx.Response(201, content=b"created", headers={"x-upstream": "yes", "connection": "close"})

        async def scenario():
            proxy = client_with(handler)
            try:
                return await proxy.proxy_request(make_request(), "app", "http://upstream:8080/items")
            finally:
                await proxy.close()

        response = asyncio.run(scenario())

        assert seen == {"url": "http://upstream:8080/items?a=1", "method": "POST", "body": b"payload"}
        assert response.status_code == 201
        assert response.body == b"created"
        assert response.headers["x-upstream"] == "yes"
        assert "connection" not in response.headers

    def test_connect_error_is_502(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        response = asyncio.run(client_with(handler).proxy_request(make_request(), "app", "http://upstream/"))

        assert response.status_code == 502
        assert "error" in json.loads(response.body)

    def test_timeout_is_504(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        response = asyncio.run(client_with(handler).proxy_request(make_request(), "app", "http://upstream/"))

        assert response.status_code == 504

    def test_event_stream_is_passed_through(self):
        def handler(request):
            return httpx.Response(
                200,
                content=b"data: one\n\ndata: two\n\n",
                headers={"content-type": "text/event-stream"},
            )

        async def scenario():
            proxy = client_with(handler)
            response = await proxy.proxy_request(make_request(method="GET", body=b""), "app", "http://upstream/events")
            chunks = [chunk async for chunk in response.body_iterator]
            await proxy.close()
            return response, b"".join(chunks)

        response, body = asyncio.run(scenario())

        assert isinstance(response, StreamingResponse)
        assert response.media_type == "text/event-stream"
        assert body == b"data: one\n\ndata: two\n\n"

    def test_compressed_event_stream_is_decoded(self):
        def handler(request):
            return httpx.Response(
                200,
                content=gzip.compress(b"data: hello\n\n"),
                headers={"content-type": "text/event-stream", "content-encoding": "gzip"},
            )

        async def scenario():
            proxy = client_with(handler)
            response = await proxy.proxy_request(make_request(method="GET", body=b""), "app", "http://upstream/events")
            chunks = [chunk async for chunk in response.body_iterator]
            await proxy.close()
            return response, b"".join(chunks)

        response, body = asyncio.run(scenario())

        assert body == b"data: hello\n\n"
        assert "content-encoding" not in response.headers
