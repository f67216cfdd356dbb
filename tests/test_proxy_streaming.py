import asyncio
import gzip
import json
from typing import Any, AsyncIterator, Callable

import httpx
import pytest
from fastapi.responses import StreamingResponse

from azure_openai_gateway.gateway.errors import (
    UpstreamConnectionError,
    UpstreamTimeoutError,
)
from azure_openai_gateway.gateway.proxy import ReverseProxy, is_event_stream
from azure_openai_gateway.gateway.translator import OutboundRequest
from tests.client_test_utils import as_stream

BACKEND_URL = "https://unit-test.openai.azure.com/openai/deployments/gpt-4/chat/completions"


class _RecordingEventLog:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def emit(self, event: str, **fields: Any) -> None:
        self.events.append({"event": event, **fields})


def _outbound() -> OutboundRequest:
    return OutboundRequest(
        method="POST",
        url=BACKEND_URL,
        params=[("api-version", "2024-06-01")],
        headers={"content-type": "application/json", "api-key": "backend-key"},
        content=b'{"model":"gpt-4","stream":true}',
        endpoint="chat.completions",
        deployment="gpt-4",
    )


def _proxy(
    handler: Callable[[httpx.Request], httpx.Response],
    event_log: Any = None,
) -> ReverseProxy:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: as_stream(handler(request)))
    )
    return ReverseProxy(client=client, event_log=event_log)


async def _forward_and_collect(
    proxy: ReverseProxy, **kwargs: Any
) -> tuple[StreamingResponse, list[bytes]]:
    try:
        response = await proxy.forward(_outbound(), request_id="req-1", **kwargs)
        chunks = [chunk async for chunk in response.body_iterator]
        return response, chunks
    finally:
        await proxy.close()


def _header_values(response: StreamingResponse, name: str) -> list[str]:
    key = name.lower().encode("latin-1")
    return [
        value.decode("latin-1") for header, value in response.raw_headers if header == key
    ]


def test_event_stream_gets_exactly_one_trailing_delimiter() -> None:
    upstream_chunks = [b"data: {\"a\":1}\n\n", b"data: {\"a\":2}\n\n", b"data: [DONE]\n\n"]

    async def body() -> AsyncIterator[bytes]:
        for chunk in upstream_chunks:
            yield chunk

    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream; charset=utf-8"},
            content=body(),
        )

    response, chunks = asyncio.run(_forward_and_collect(_proxy(handler)))

    assert response.status_code == 200
    assert b"".join(chunks) == b"".join(upstream_chunks) + b"\n"
    assert chunks[-1] == b"\n"
    assert _header_values(response, "content-type") == ["text/event-stream; charset=utf-8"]


def test_non_stream_response_is_forwarded_without_additions() -> None:
    payload = {"id": "chatcmpl-1", "choices": []}

    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=payload)

    _, chunks = asyncio.run(_forward_and_collect(_proxy(handler)))
    assert json.loads(b"".join(chunks)) == payload
    assert not b"".join(chunks).endswith(b"\n")


def test_passthrough_event_stream_is_not_terminated() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=b"data: [DONE]\n\n",
        )

    _, chunks = asyncio.run(
        _forward_and_collect(_proxy(handler), terminate_event_streams=False)
    )
    assert b"".join(chunks) == b"data: [DONE]\n\n"


def test_backend_error_is_forwarded_verbatim_and_recorded() -> None:
    error_body = (
        b'{"error":{"code":"429","message":"Requests to the ChatCompletions_Create '
        b'Operation have exceeded call rate limit."}}'
    )

    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            headers={"content-type": "application/json", "retry-after": "7"},
            content=error_body,
        )

    event_log = _RecordingEventLog()
    response, chunks = asyncio.run(
        _forward_and_collect(_proxy(handler, event_log=event_log))
    )

    assert response.status_code == 429
    assert b"".join(chunks) == error_body
    assert _header_values(response, "retry-after") == ["7"]
    assert [event["event"] for event in event_log.events] == ["proxy_response_error"]
    assert event_log.events[0]["status"] == 429
    assert event_log.events[0]["deployment"] == "gpt-4"


def test_hop_by_hop_headers_are_dropped_and_repeated_headers_kept() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers=[
                ("content-type", "application/json"),
                ("connection", "keep-alive"),
                ("set-cookie", "a=1"),
                ("set-cookie", "b=2"),
                ("apim-request-id", "abc"),
            ],
            content=b"{}",
        )

    response, _ = asyncio.run(_forward_and_collect(_proxy(handler)))
    assert _header_values(response, "connection") == []
    assert _header_values(response, "content-length") == []
    assert _header_values(response, "set-cookie") == ["a=1", "b=2"]
    assert _header_values(response, "apim-request-id") == ["abc"]


def test_compressed_event_stream_is_decoded_before_terminating() -> None:
    raw = b"data: hello\n\n"

    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream", "content-encoding": "gzip"},
            stream=httpx.ByteStream(gzip.compress(raw)),
        )

    response, chunks = asyncio.run(_forward_and_collect(_proxy(handler)))
    assert b"".join(chunks) == raw + b"\n"
    assert _header_values(response, "content-encoding") == []


def test_outbound_request_carries_translated_url_and_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    asyncio.run(_forward_and_collect(_proxy(handler)))
    request = seen[0]
    assert request.url.path == "/openai/deployments/gpt-4/chat/completions"
    assert request.url.params["api-version"] == "2024-06-01"
    assert request.headers["api-key"] == "backend-key"
    assert request.content == b'{"model":"gpt-4","stream":true}'


def test_unreachable_backend_is_a_gateway_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    event_log = _RecordingEventLog()
    with pytest.raises(UpstreamConnectionError) as excinfo:
        asyncio.run(_forward_and_collect(_proxy(handler, event_log=event_log)))
    assert excinfo.value.status_code == 502
    assert "backend-key" not in json.dumps(excinfo.value.to_payload())
    assert event_log.events[0]["event"] == "proxy_request_error"


def test_backend_timeout_is_a_gateway_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(UpstreamTimeoutError) as excinfo:
        asyncio.run(_forward_and_collect(_proxy(handler)))
    assert excinfo.value.status_code == 504


def test_is_event_stream_matches_media_type_only() -> None:
    assert is_event_stream("text/event-stream")
    assert is_event_stream("Text/Event-Stream; charset=utf-8")
    assert not is_event_stream("application/json")
    assert not is_event_stream(None)


def test_mid_stream_backend_failure_aborts_the_body() -> None:
    async def body() -> AsyncIterator[bytes]:
        yield b'{"id":"chatcmpl-1","choi'
        raise httpx.ReadError("connection reset by peer")

    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"content-type": "application/json"}, content=body()
        )

    event_log = _RecordingEventLog()
    proxy = _proxy(handler, event_log=event_log)
    received: list[bytes] = []

    async def _consume() -> None:
        try:
            response = await proxy.forward(_outbound(), request_id="req-1")
            async for chunk in response.body_iterator:
                received.append(chunk)
        finally:
            await proxy.close()

    with pytest.raises(httpx.ReadError):
        asyncio.run(_consume())

    assert received == [b'{"id":"chatcmpl-1","choi']
    assert [event["event"] for event in event_log.events] == ["proxy_stream_error"]
    assert event_log.events[0]["error_type"] == "ReadError"


class _StalledStream(httpx.AsyncByteStream):
    """Delivers one event and then waits forever, like an idle completion."""

    def __init__(self) -> None:
        self.waiting = asyncio.Event()
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield b"data: {\"a\":1}\n\n"
        self.waiting.set()
        await asyncio.Event().wait()
        yield b"data: [DONE]\n\n"

    async def aclose(self) -> None:
        self.closed = True


def test_client_disconnect_closes_the_backend_stream() -> None:
    async def _scenario() -> tuple[_StalledStream, list[bytes]]:
        stream = _StalledStream()
        proxy = _proxy(
            lambda _request: httpx.Response(
                200, headers={"content-type": "text/event-stream"}, stream=stream
            )
        )
        received: list[bytes] = []
        try:
            response = await proxy.forward(_outbound(), request_id="req-1")

            async def _consume() -> None:
                async for chunk in response.body_iterator:
                    received.append(chunk)

            task = asyncio.create_task(_consume())
            await stream.waiting.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            await proxy.close()
        return stream, received

    stream, received = asyncio.run(_scenario())

    assert stream.closed
    assert received == [b"data: {\"a\":1}\n\n"]
