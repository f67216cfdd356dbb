from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Awaitable, Callable
from uuid import uuid4

import httpx
import yaml
from fastapi import FastAPI, Request
from fastapi.responses import Response

from azure_openai_gateway.config import load_deployment_map
from azure_openai_gateway.gateway.audit import GatewayEventLog
from azure_openai_gateway.gateway.catalog import ModelCatalogAggregator
from azure_openai_gateway.gateway.cors import preflight_response
from azure_openai_gateway.gateway.credentials import (
    CredentialResolver,
    build_credential_resolver,
)
from azure_openai_gateway.gateway.errors import GatewayError, gateway_error_handler
from azure_openai_gateway.gateway.proxy import ReverseProxy, build_http_client
from azure_openai_gateway.gateway.translator import (
    ROUTE_RULES,
    DeploymentResolver,
    MappedDeploymentResolver,
    RequestTranslator,
    RouteRule,
    UnavailableDeploymentResolver,
    verbatim_request,
)
from azure_openai_gateway.settings import Settings, get_settings

logger = logging.getLogger("uvicorn.error")

PASSTHROUGH_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


def _request_id(request: Request) -> str:
    return (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )


def _build_deployment_resolver(settings: Settings) -> DeploymentResolver:
    try:
        mapping = load_deployment_map(settings)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.error(
            "deployment_map_load_failed path=%s error=%s",
            settings.azure_openai_deployment_map_path,
            exc,
        )
        return UnavailableDeploymentResolver(
            f"Deployment map could not be loaded: {exc}"
        )
    if mapping:
        logger.info("deployment_map_loaded entries=%d", len(mapping))
    return MappedDeploymentResolver(mapping)


async def _forward_translated(
    request: Request,
    rule: RouteRule,
    path_params: Mapping[str, str],
    *,
    translator: RequestTranslator,
    credential_resolver: CredentialResolver,
    proxy: ReverseProxy,
) -> Response:
    request_id = _request_id(request)
    outbound = await translator.translate_request(
        request, rule, path_params=path_params
    )
    outbound.headers.update(
        await credential_resolver.resolve(request.headers.get("authorization"))
    )
    logger.info(
        "proxy_request request_id=%s endpoint=%s method=%s deployment=%s",
        request_id,
        rule.name,
        rule.method,
        outbound.deployment,
    )
    return await proxy.forward(outbound, request_id=request_id)


def _translated_handler(
    rule: RouteRule,
    *,
    translator: RequestTranslator,
    credential_resolver: CredentialResolver,
    proxy: ReverseProxy,
) -> Callable[[Request], Awaitable[Response]]:
    async def handler(request: Request) -> Response:
        return await _forward_translated(
            request,
            rule,
            request.path_params,
            translator=translator,
            credential_resolver=credential_resolver,
            proxy=proxy,
        )

    handler.__name__ = rule.name.replace(".", "_")
    return handler


def _mount_translated_routes(
    app: FastAPI,
    settings: Settings,
    proxy: ReverseProxy,
    event_log: GatewayEventLog,
) -> None:
    if settings.azure_endpoint is None:
        logger.error(
            "azure_endpoint_missing translated endpoints will fail until "
            "AZURE_OPENAI_ENDPOINT is set"
        )
    translator = RequestTranslator(
        endpoint=settings.azure_endpoint,
        api_version=settings.azure_openai_api_version,
        deployment_resolver=_build_deployment_resolver(settings),
    )
    credential_resolver = build_credential_resolver(
        settings, client_getter=lambda: proxy.client
    )
    aggregator = ModelCatalogAggregator(
        client_getter=lambda: proxy.client,
        translator=translator,
        credential_resolver=credential_resolver,
        event_log=event_log,
    )
    app.state.translator = translator
    app.state.credential_resolver = credential_resolver
    app.state.catalog_aggregator = aggregator

    @app.middleware("http")
    async def cors_preflight_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if request.method == "OPTIONS":
            return preflight_response()
        return await call_next(request)

    @app.get("/v1/models")
    async def models(request: Request) -> dict[str, Any]:
        model_list = await aggregator.list_deployed_models(
            request.headers.get("authorization"),
            request_id=_request_id(request),
        )
        return model_list.model_dump(mode="json")

    for rule in ROUTE_RULES:
        app.add_api_route(
            rule.inbound_path,
            _translated_handler(
                rule,
                translator=translator,
                credential_resolver=credential_resolver,
                proxy=proxy,
            ),
            methods=[rule.method],
            name=rule.name,
        )

    # Must stay last. Trailing-slash variants resolve through the rule table;
    # unknown paths and wrong methods raise TranslationError (404 / 405).
    @app.api_route("/{path:path}", methods=PASSTHROUGH_METHODS, include_in_schema=False)
    async def unmatched(path: str, request: Request) -> Response:
        rule, path_params = translator.match(request.method, request.url.path)
        return await _forward_translated(
            request,
            rule,
            path_params,
            translator=translator,
            credential_resolver=credential_resolver,
            proxy=proxy,
        )


def _mount_passthrough_routes(
    app: FastAPI,
    settings: Settings,
    proxy: ReverseProxy,
) -> None:
    origin = settings.openai_passthrough_base_url

    @app.api_route("/{path:path}", methods=PASSTHROUGH_METHODS)
    async def passthrough(path: str, request: Request) -> Response:
        return await proxy.forward(
            verbatim_request(request, origin),
            request_id=_request_id(request),
            terminate_event_streams=False,
        )


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the gateway for the mode in ``settings``; the mode never changes afterwards."""
    settings = settings or get_settings()
    app = FastAPI(
        title="Azure OpenAI Gateway",
        description="OpenAI-compatible front end for Azure OpenAI deployments.",
        version="0.1.0",
    )
    event_log = GatewayEventLog(
        path=settings.gateway_audit_log_path,
        enabled=settings.gateway_audit_log_enabled,
    )
    proxy = ReverseProxy(
        client=build_http_client(
            connect_timeout_seconds=settings.backend_connect_timeout_seconds,
            read_timeout_seconds=settings.backend_read_timeout_seconds,
            write_timeout_seconds=settings.backend_write_timeout_seconds,
            pool_timeout_seconds=settings.backend_pool_timeout_seconds,
            transport=transport,
        ),
        event_log=event_log,
    )
    app.state.settings = settings
    app.state.event_log = event_log
    app.state.backend_proxy = proxy
    app.add_exception_handler(GatewayError, gateway_error_handler)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await proxy.close()
        event_log.close()
        logger.info("shutdown complete")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "mode": settings.proxy_mode}

    if settings.proxy_mode == "azure":
        _mount_translated_routes(app, settings, proxy, event_log)
    else:
        _mount_passthrough_routes(app, settings, proxy)

    logger.info(
        "startup complete address=%s proxy_mode=%s endpoint=%s api_version=%s auth_mode=%s",
        settings.proxy_address,
        settings.proxy_mode,
        settings.azure_endpoint,
        settings.azure_openai_api_version,
        settings.azure_openai_auth_mode,
    )
    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "azure_openai_gateway.main:create_app",
        factory=True,
        host=settings.listen_host,
        port=settings.listen_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
