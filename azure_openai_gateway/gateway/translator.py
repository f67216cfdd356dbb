from __future__ import annotations

import json
import re
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Literal, Protocol
from urllib.parse import quote

from fastapi import Request, status

from azure_openai_gateway.gateway.credentials import AUTH_HEADER_NAMES
from azure_openai_gateway.gateway.errors import ConfigurationError, TranslationError

HOP_BY_HOP_REQUEST_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
}

METHODS_WITH_BODY = {"POST", "PUT", "PATCH"}

ModelSource = Literal["json", "form", "query"]


class EndpointCategory(StrEnum):
    INFERENCE = "inference"
    IMAGES = "images"
    AUDIO = "audio"
    FINE_TUNES = "fine_tunes"
    FILES = "files"
    DEPLOYMENTS = "deployments"
    MODEL_CAPABILITIES = "model_capabilities"


@dataclass(frozen=True, slots=True)
class RouteRule:
    name: str
    category: EndpointCategory
    method: str
    inbound_path: str
    outbound_path: str
    model_source: ModelSource | None = None

    @property
    def deployment_scoped(self) -> bool:
        return self.model_source is not None

    @property
    def path_params(self) -> tuple[str, ...]:
        return tuple(re.findall(r"\{(\w+)\}", self.inbound_path))


_DEPLOYMENT_PREFIX = "/openai/deployments/{deployment}"

ROUTE_RULES: tuple[RouteRule, ...] = (
    RouteRule(
        "chat.completions",
        EndpointCategory.INFERENCE,
        "POST",
        "/v1/chat/completions",
        f"{_DEPLOYMENT_PREFIX}/chat/completions",
        "json",
    ),
    RouteRule(
        "completions",
        EndpointCategory.INFERENCE,
        "POST",
        "/v1/completions",
        f"{_DEPLOYMENT_PREFIX}/completions",
        "json",
    ),
    RouteRule(
        "embeddings",
        EndpointCategory.INFERENCE,
        "POST",
        "/v1/embeddings",
        f"{_DEPLOYMENT_PREFIX}/embeddings",
        "json",
    ),
    RouteRule(
        "images.generations",
        EndpointCategory.IMAGES,
        "POST",
        "/v1/images/generations",
        f"{_DEPLOYMENT_PREFIX}/images/generations",
        "json",
    ),
    RouteRule(
        "audio.speech",
        EndpointCategory.AUDIO,
        "POST",
        "/v1/audio/speech",
        f"{_DEPLOYMENT_PREFIX}/audio/speech",
        "json",
    ),
    RouteRule(
        "audio.voices",
        EndpointCategory.AUDIO,
        "GET",
        "/v1/audio/voices",
        f"{_DEPLOYMENT_PREFIX}/audio/voices",
        "query",
    ),
    RouteRule(
        "audio.transcriptions",
        EndpointCategory.AUDIO,
        "POST",
        "/v1/audio/transcriptions",
        f"{_DEPLOYMENT_PREFIX}/audio/transcriptions",
        "form",
    ),
    RouteRule(
        "audio.translations",
        EndpointCategory.AUDIO,
        "POST",
        "/v1/audio/translations",
        f"{_DEPLOYMENT_PREFIX}/audio/translations",
        "form",
    ),
    RouteRule(
        "fine_tunes.create",
        EndpointCategory.FINE_TUNES,
        "POST",
        "/v1/fine_tunes",
        "/openai/fine_tuning/jobs",
    ),
    RouteRule(
        "fine_tunes.list",
        EndpointCategory.FINE_TUNES,
        "GET",
        "/v1/fine_tunes",
        "/openai/fine_tuning/jobs",
    ),
    RouteRule(
        "fine_tunes.get",
        EndpointCategory.FINE_TUNES,
        "GET",
        "/v1/fine_tunes/{fine_tune_id}",
        "/openai/fine_tuning/jobs/{fine_tune_id}",
    ),
    RouteRule(
        "fine_tunes.cancel",
        EndpointCategory.FINE_TUNES,
        "POST",
        "/v1/fine_tunes/{fine_tune_id}/cancel",
        "/openai/fine_tuning/jobs/{fine_tune_id}/cancel",
    ),
    RouteRule(
        "fine_tunes.events",
        EndpointCategory.FINE_TUNES,
        "GET",
        "/v1/fine_tunes/{fine_tune_id}/events",
        "/openai/fine_tuning/jobs/{fine_tune_id}/events",
    ),
    RouteRule(
        "files.create",
        EndpointCategory.FILES,
        "POST",
        "/v1/files",
        "/openai/files",
    ),
    RouteRule(
        "files.list",
        EndpointCategory.FILES,
        "GET",
        "/v1/files",
        "/openai/files",
    ),
    RouteRule(
        "files.delete",
        EndpointCategory.FILES,
        "DELETE",
        "/v1/files/{file_id}",
        "/openai/files/{file_id}",
    ),
    RouteRule(
        "files.get",
        EndpointCategory.FILES,
        "GET",
        "/v1/files/{file_id}",
        "/openai/files/{file_id}",
    ),
    RouteRule(
        "files.content",
        EndpointCategory.FILES,
        "GET",
        "/v1/files/{file_id}/content",
        "/openai/files/{file_id}/content",
    ),
    RouteRule(
        "deployments.list",
        EndpointCategory.DEPLOYMENTS,
        "GET",
        "/deployments",
        "/openai/deployments",
    ),
    RouteRule(
        "deployments.get",
        EndpointCategory.DEPLOYMENTS,
        "GET",
        "/deployments/{deployment_id}",
        "/openai/deployments/{deployment_id}",
    ),
    RouteRule(
        "models.capabilities",
        EndpointCategory.MODEL_CAPABILITIES,
        "GET",
        "/v1/models/{model_id}/capabilities",
        "/openai/models/{model_id}",
    ),
)


class DeploymentResolver(Protocol):
    def __call__(self, model: str) -> str: ...


class MappedDeploymentResolver:
    """Maps a model name to a deployment name; unmapped names pass through."""

    def __init__(self, mapping: Mapping[str, str] | None = None) -> None:
        self._mapping = dict(mapping or {})

    def __call__(self, model: str) -> str:
        return self._mapping.get(model, model)


class UnavailableDeploymentResolver:
    def __init__(self, reason: str) -> None:
        self.reason = reason

    def __call__(self, model: str) -> str:
        raise ConfigurationError(self.reason)


@dataclass(slots=True)
class OutboundRequest:
    method: str
    url: str
    params: list[tuple[str, str]] | None
    headers: dict[str, str]
    content: bytes | AsyncIterator[bytes] | None
    endpoint: str
    deployment: str | None = None


def _compile_inbound_pattern(template: str) -> re.Pattern[str]:
    pattern = re.sub(r"\{(\w+)\}", r"(?P<\1>[^/]+)", template)
    return re.compile(f"^{pattern}/?$")


_RULE_PATTERNS = tuple(
    (rule, _compile_inbound_pattern(rule.inbound_path)) for rule in ROUTE_RULES
)


def extract_model_from_json(body: bytes) -> str | None:
    if not body:
        return None
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise TranslationError(f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise TranslationError("Expected a JSON object request body.")
    return _clean_model(payload.get("model"))


def _clean_model(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def forwardable_headers(
    headers: Mapping[str, str],
    *,
    drop: set[str] | None = None,
) -> dict[str, str]:
    excluded = HOP_BY_HOP_REQUEST_HEADERS | (drop or set())
    return {
        name: value
        for name, value in headers.items()
        if name.lower() not in excluded
    }


class RequestTranslator:
    def __init__(
        self,
        *,
        endpoint: str | None,
        api_version: str,
        deployment_resolver: DeploymentResolver | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/") if endpoint else None
        self.api_version = api_version
        self.deployment_resolver: DeploymentResolver = (
            deployment_resolver or MappedDeploymentResolver()
        )

    def match(self, method: str, path: str) -> tuple[RouteRule, dict[str, str]]:
        method = method.upper()
        path_matched = False
        for rule, pattern in _RULE_PATTERNS:
            found = pattern.match(path)
            if found is None:
                continue
            path_matched = True
            if rule.method == method:
                return rule, found.groupdict()
        if path_matched:
            raise TranslationError(
                f"Method {method} is not supported for {path}.",
                status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
            )
        raise TranslationError(
            f"Unrecognized endpoint: {method} {path}",
            status_code=status.HTTP_404_NOT_FOUND,
        )

    def backend_url(self, path: str) -> str:
        if not self.endpoint:
            raise ConfigurationError(
                "AZURE_OPENAI_ENDPOINT is not configured; translated endpoints are unavailable."
            )
        return f"{self.endpoint}{path}"

    def versioned_params(
        self, query_params: list[tuple[str, str]] | None = None
    ) -> list[tuple[str, str]]:
        params = [
            (key, value)
            for key, value in (query_params or [])
            if key != "api-version"
        ]
        params.append(("api-version", self.api_version))
        return params

    def outbound_path(
        self,
        rule: RouteRule,
        path_params: Mapping[str, str],
        model: str | None,
    ) -> tuple[str, str | None]:
        values = {
            name: quote(str(path_params[name]), safe="")
            for name in rule.path_params
            if name in path_params
        }
        missing = [name for name in rule.path_params if not values.get(name)]
        if missing:
            raise TranslationError(
                f"Missing path parameter(s) for {rule.name}: {', '.join(missing)}"
            )

        deployment: str | None = None
        if rule.deployment_scoped:
            if not model:
                raise TranslationError(
                    f"A 'model' is required for {rule.inbound_path}; it names the deployment.",
                    param="model",
                )
            deployment = self.deployment_resolver(model)
            if not deployment:
                raise TranslationError(
                    f"Model '{model}' does not resolve to a deployment.",
                    param="model",
                )
            values["deployment"] = quote(deployment, safe="")
        return rule.outbound_path.format(**values), deployment

    def translate(
        self,
        *,
        rule: RouteRule,
        path_params: Mapping[str, str],
        query_params: list[tuple[str, str]],
        headers: Mapping[str, str],
        model: str | None,
        content: bytes | AsyncIterator[bytes] | None,
    ) -> OutboundRequest:
        path, deployment = self.outbound_path(rule, path_params, model)
        url = self.backend_url(path)
        drop = set(AUTH_HEADER_NAMES)
        if not isinstance(content, AsyncIterator):
            drop.add("content-length")
        return OutboundRequest(
            method=rule.method,
            url=url,
            params=self.versioned_params(query_params),
            headers=forwardable_headers(headers, drop=drop),
            content=content,
            endpoint=rule.name,
            deployment=deployment,
        )

    async def translate_request(
        self,
        request: Request,
        rule: RouteRule,
        *,
        path_params: Mapping[str, str] | None = None,
    ) -> OutboundRequest:
        """Read only as much of ``request`` as ``rule`` needs, then translate it.

        Deployment-scoped rules read the body (or form, or query) to find the
        model; account-level rules forward the inbound body as a stream.
        """
        model: str | None = None
        content: bytes | AsyncIterator[bytes] | None = None
        if rule.model_source == "json":
            content = await request.body()
            model = extract_model_from_json(content)
        elif rule.model_source == "form":
            content = await request.body()
            model = await _extract_model_from_form(request)
        elif rule.model_source == "query":
            model = _clean_model(request.query_params.get("model"))
        elif request.method.upper() in METHODS_WITH_BODY:
            content = request.stream()

        return self.translate(
            rule=rule,
            path_params=request.path_params if path_params is None else path_params,
            query_params=list(request.query_params.multi_items()),
            headers=request.headers,
            model=model,
            content=content,
        )


async def _extract_model_from_form(request: Request) -> str | None:
    content_type = request.headers.get("content-type", "")
    if not content_type.lower().startswith(
        ("multipart/form-data", "application/x-www-form-urlencoded")
    ):
        raise TranslationError(
            "Expected a multipart/form-data request body."
        )
    async with request.form() as form:
        return _clean_model(form.get("model"))


def verbatim_request(request: Request, origin: str) -> OutboundRequest:
    """Forward ``request`` to ``origin`` with its path and query untouched."""
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    query = request.url.query
    url = f"{origin.rstrip('/')}{path}"
    if query:
        url = f"{url}?{query}"
    method = request.method.upper()
    return OutboundRequest(
        method=method,
        url=url,
        params=None,
        headers=forwardable_headers(request.headers),
        content=request.stream() if method in METHODS_WITH_BODY else None,
        endpoint="passthrough",
    )
