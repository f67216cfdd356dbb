from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator

import httpx
from fastapi.responses import StreamingResponse

from azure_openai_gateway.gateway.audit import GatewayEventLog
from azure_openai_gateway.gateway.errors import (
    UpstreamConnectionError,
    UpstreamTimeoutError,
)
from azure_openai_gateway.gateway.translator import OutboundRequest

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}

EVENT_STREAM_MEDIA_TYPE = "text/event-stream"
EVENT_STREAM_TERMINATOR = b"\n"

logger = logging.getLogger("uvicorn.error")


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    error_message = str(exc).strip() or error_repr
    error_type = exc.__class__.__name__.strip() or "RequestError"
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": error_type,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        request = exc.request
    except RuntimeError:
        request = None
    if request is not None:
        details["request_method"] = request.method
        details["request_path"] = request.url.path
    return details


def _filter_response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    return [
        (name, value)
        for name, value in headers.multi_items()
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS
    ]


def _media_type(content_type: str | None) -> str | None:
    if not content_type:
        return None
    return content_type.split(";", 1)[0].strip().lower() or None


def is_event_stream(content_type: str | None) -> bool:
    return _media_type(content_type) == EVENT_STREAM_MEDIA_TYPE


def build_http_client(
    *,
    connect_timeout_seconds: float,
    read_timeout_seconds: float,
    write_timeout_seconds: float,
    pool_timeout_seconds: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    # No total deadline: the read timeout bounds the wait for each chunk, so a
    # long completion stays alive as long as bytes keep arriving.
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=max(0.1, connect_timeout_seconds),
            read=max(0.1, read_timeout_seconds),
            write=max(0.1, write_timeout_seconds),
            pool=max(0.1, pool_timeout_seconds),
        ),
        limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
        transport=transport,
    )


class ReverseProxy:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        event_log: GatewayEventLog | None = None,
    ) -> None:
        self.client = client
        self._event_log = event_log

    async def close(self) -> None:
        await self.client.aclose()

    def _emit(self, event: str, **fields: Any) -> None:
        if self._event_log is None:
            return
        self._event_log.emit(event, **fields)

    async def forward(
        self,
        outbound: OutboundRequest,
        *,
        request_id: str,
        terminate_event_streams: bool = True,
    ) -> StreamingResponse:
        """Send ``outbound`` and stream the backend response back unchanged.

        Backend error statuses are returned like any other response. Only a
        failure to obtain response headers at all raises, as
        ``UpstreamTimeoutError`` or ``UpstreamConnectionError``. A transport
        error after the body has started is re-raised from the body iterator
        so the server aborts the connection instead of ending it cleanly.
        """
        request = self.client.build_request(
            method=outbound.method,
            url=outbound.url,
            params=outbound.params,
            headers=outbound.headers,
            content=outbound.content,
        )
        started = time.perf_counter()
        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "proxy_request_error request_id=%s endpoint=%s error_type=%s error=%s",
                request_id,
                outbound.endpoint,
                details["error_type"],
                details["error"],
            )
            self._emit(
                "proxy_request_error",
                request_id=request_id,
                endpoint=outbound.endpoint,
                deployment=outbound.deployment,
                latency_ms=round((time.perf_counter() - started) * 1000.0, 3),
                **details,
            )
            if isinstance(exc, httpx.TimeoutException):
                raise UpstreamTimeoutError(
                    f"Timed out waiting for backend ({details['error_type']}).",
                ) from exc
            raise UpstreamConnectionError(
                f"Could not reach backend ({details['error_type']}): {details['error']}",
            ) from exc

        connect_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "proxy_upstream_connected request_id=%s endpoint=%s deployment=%s "
            "connect_ms=%.2f status=%d",
            request_id,
            outbound.endpoint,
            outbound.deployment,
            connect_ms,
            upstream.status_code,
        )

        content_type = upstream.headers.get("content-type")
        append_terminator = terminate_event_streams and is_event_stream(content_type)
        # The terminator is plain text, so a compressed event stream is
        # decoded here instead of being relayed raw.
        decode = append_terminator and "content-encoding" in upstream.headers
        response_headers = [
            (name, value)
            for name, value in _filter_response_headers(upstream.headers)
            if not (decode and name.lower() == "content-encoding")
        ]

        async def stream_body() -> AsyncIterator[bytes]:
            outcome = "completed"
            try:
                chunks = upstream.aiter_bytes() if decode else upstream.aiter_raw()
                async for chunk in chunks:
                    yield chunk
                if append_terminator:
                    yield EVENT_STREAM_TERMINATOR
            except asyncio.CancelledError:
                outcome = "cancelled"
                raise
            except httpx.RequestError as exc:
                outcome = "interrupted"
                details = _request_error_details(exc)
                logger.warning(
                    "proxy_stream_error request_id=%s endpoint=%s error_type=%s error=%s",
                    request_id,
                    outbound.endpoint,
                    details["error_type"],
                    details["error"],
                )
                self._emit(
                    "proxy_stream_error",
                    request_id=request_id,
                    endpoint=outbound.endpoint,
                    **details,
                )
                # Headers are already sent; an aborted response marks the truncation.
                raise
            finally:
                await upstream.aclose()
                self._record_completion(
                    outbound=outbound,
                    request_id=request_id,
                    status_code=upstream.status_code,
                    outcome=outcome,
                    elapsed_ms=(time.perf_counter() - started) * 1000.0,
                )

        response = StreamingResponse(
            content=stream_body(),
            status_code=upstream.status_code,
        )
        response.raw_headers.extend(
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in response_headers
        )
        return response

    def _record_completion(
        self,
        *,
        outbound: OutboundRequest,
        request_id: str,
        status_code: int,
        outcome: str,
        elapsed_ms: float,
    ) -> None:
        if outcome == "cancelled":
            logger.info(
                "proxy_client_disconnected request_id=%s endpoint=%s elapsed_ms=%.2f",
                request_id,
                outbound.endpoint,
                elapsed_ms,
            )
        if status_code < 400:
            return
        logger.warning(
            "proxy_response_error request_id=%s method=%s endpoint=%s deployment=%s status=%d",
            request_id,
            outbound.method,
            outbound.endpoint,
            outbound.deployment,
            status_code,
        )
        self._emit(
            "proxy_response_error",
            request_id=request_id,
            method=outbound.method,
            endpoint=outbound.endpoint,
            deployment=outbound.deployment,
            status=status_code,
            outcome=outcome,
            elapsed_ms=round(elapsed_ms, 3),
        )
