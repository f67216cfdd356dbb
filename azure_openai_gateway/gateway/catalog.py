from __future__ import annotations

import logging
from typing import Any, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from azure_openai_gateway.gateway.audit import GatewayEventLog
from azure_openai_gateway.gateway.credentials import CredentialResolver
from azure_openai_gateway.gateway.errors import AggregationError
from azure_openai_gateway.gateway.translator import RequestTranslator

logger = logging.getLogger("uvicorn.error")

DEPLOYMENTS_PATH = "/openai/deployments"
MODELS_PATH = "/openai/models"
_MAX_ERROR_BODY_CHARS = 2000


class Capabilities(BaseModel):
    model_config = ConfigDict(extra="allow")

    fine_tune: bool = False
    inference: bool = False
    completion: bool = False
    chat_completion: bool = False
    embeddings: bool = False


class Deprecation(BaseModel):
    model_config = ConfigDict(extra="allow")

    fine_tune: int | None = None
    inference: int | None = None


class Model(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    object: str = "model"
    created_at: int | None = None
    capabilities: Capabilities = Field(default_factory=Capabilities)
    lifecycle_status: str | None = None
    status: str | None = None
    deprecation: Deprecation = Field(default_factory=Deprecation)
    fine_tune: str | None = None


class Deployment(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    model: str


class ModelList(BaseModel):
    object: str = "list"
    data: list[Model] = Field(default_factory=list)


def filter_deployed_models(
    deployments: list[Deployment],
    models: list[Model],
) -> list[Model]:
    """Keep the models that back at least one deployment, in listing order."""
    deployed = {deployment.model for deployment in deployments}
    return [model for model in models if model.id in deployed]


def _decode_entries[T: BaseModel](
    entries: list[Any],
    model_cls: type[T],
    label: str,
) -> list[T]:
    decoded: list[T] = []
    for index, entry in enumerate(entries):
        try:
            decoded.append(model_cls.model_validate(entry))
        except ValidationError as exc:
            logger.warning(
                "catalog_entry_skipped listing=%s index=%d errors=%d",
                label,
                index,
                exc.error_count(),
            )
    return decoded


class ModelCatalogAggregator:
    def __init__(
        self,
        *,
        client_getter: Callable[[], httpx.AsyncClient],
        translator: RequestTranslator,
        credential_resolver: CredentialResolver,
        event_log: GatewayEventLog | None = None,
    ) -> None:
        self._client_getter = client_getter
        self._translator = translator
        self._credential_resolver = credential_resolver
        self._event_log = event_log

    async def list_deployed_models(
        self,
        inbound_authorization: str | None,
        *,
        request_id: str = "-",
    ) -> ModelList:
        deployments_url = self._translator.backend_url(DEPLOYMENTS_PATH)
        models_url = self._translator.backend_url(MODELS_PATH)
        auth_headers = await self._credential_resolver.resolve(inbound_authorization)

        raw_deployments = await self._fetch_listing(
            deployments_url, auth_headers, label="deployments", request_id=request_id
        )
        deployments = _decode_entries(raw_deployments, Deployment, "deployments")

        raw_models = await self._fetch_listing(
            models_url, auth_headers, label="models", request_id=request_id
        )
        models = _decode_entries(raw_models, Model, "models")

        deployed_models = filter_deployed_models(deployments, models)
        logger.info(
            "catalog_built request_id=%s deployments=%d models=%d deployed_models=%d",
            request_id,
            len(deployments),
            len(models),
            len(deployed_models),
        )
        return ModelList(data=deployed_models)

    async def _fetch_listing(
        self,
        url: str,
        auth_headers: dict[str, str],
        *,
        label: str,
        request_id: str,
    ) -> list[Any]:
        try:
            response = await self._client_getter().get(
                url,
                params=self._translator.versioned_params(),
                headers={"Accept": "application/json", **auth_headers},
            )
        except httpx.RequestError as exc:
            self._record_failure(label, request_id, error_type=exc.__class__.__name__)
            raise AggregationError(
                f"failed to fetch {label}: backend unreachable ({exc.__class__.__name__})"
            ) from exc

        if not response.is_success:
            body = response.text[:_MAX_ERROR_BODY_CHARS]
            self._record_failure(label, request_id, status=response.status_code)
            raise AggregationError(
                f"failed to fetch {label}",
                backend_status=response.status_code,
                backend_body=body,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            self._record_failure(label, request_id, status=response.status_code)
            raise AggregationError(
                f"failed to decode {label} listing: {exc}"
            ) from exc

        entries = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            self._record_failure(label, request_id, status=response.status_code)
            raise AggregationError(f"failed to decode {label} listing: missing 'data' list")
        return entries

    def _record_failure(self, label: str, request_id: str, **fields: Any) -> None:
        logger.warning(
            "catalog_fetch_failed request_id=%s listing=%s %s",
            request_id,
            label,
            " ".join(f"{key}={value}" for key, value in fields.items()),
        )
        if self._event_log is not None:
            self._event_log.emit(
                "catalog_fetch_failed",
                request_id=request_id,
                listing=label,
                **fields,
            )
