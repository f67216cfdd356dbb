from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_API_VERSION = "2024-06-01"
DEFAULT_TOKEN_SCOPE = "https://cognitiveservices.azure.com/.default"


class Settings(BaseSettings):
    proxy_address: str = Field(
        default="0.0.0.0:11437",
        validation_alias=AliasChoices("AZURE_OPENAI_PROXY_ADDRESS", "proxy_address"),
    )
    proxy_mode: Literal["azure", "openai"] = Field(
        default="azure",
        validation_alias=AliasChoices("AZURE_OPENAI_PROXY_MODE", "proxy_mode"),
    )
    azure_openai_endpoint: str | None = None
    azure_openai_api_version: str = Field(
        default=DEFAULT_API_VERSION,
        validation_alias=AliasChoices(
            "AZURE_OPENAI_APIVERSION",
            "AZURE_OPENAI_API_VERSION",
            "azure_openai_api_version",
        ),
    )
    azure_openai_auth_mode: Literal["api_key", "bearer_token"] = "api_key"
    azure_openai_api_key: str | None = None
    azure_openai_token: str | None = None
    azure_openai_tenant_id: str | None = None
    azure_openai_client_id: str | None = None
    azure_openai_client_secret: str | None = None
    azure_openai_token_scope: str = DEFAULT_TOKEN_SCOPE
    azure_openai_token_url: str | None = None
    azure_openai_model_mapper: str = ""
    azure_openai_deployment_map_path: str | None = None
    openai_passthrough_base_url: str = "https://api.openai.com"
    backend_connect_timeout_seconds: float = 5.0
    backend_read_timeout_seconds: float = 300.0
    backend_write_timeout_seconds: float = 60.0
    backend_pool_timeout_seconds: float = 5.0
    gateway_audit_log_enabled: bool = False
    gateway_audit_log_path: str = "logs/gateway_events.jsonl"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    @field_validator("proxy_mode", mode="before")
    @classmethod
    def _normalize_proxy_mode(cls, value: object) -> str:
        # Unset or empty keeps "azure"; any other value selects passthrough.
        normalized = str(value or "").strip().lower()
        if normalized in {"", "azure"}:
            return "azure"
        return "openai"

    @property
    def listen_host(self) -> str:
        host, _, _ = self.proxy_address.rpartition(":")
        return host or "0.0.0.0"

    @property
    def listen_port(self) -> int:
        _, _, port = self.proxy_address.rpartition(":")
        try:
            return int(port)
        except ValueError:
            return 11437

    @property
    def azure_endpoint(self) -> str | None:
        if not self.azure_openai_endpoint or not self.azure_openai_endpoint.strip():
            return None
        return self.azure_openai_endpoint.strip().rstrip("/")

    @property
    def token_url(self) -> str | None:
        if self.azure_openai_token_url:
            return self.azure_openai_token_url
        if self.azure_openai_tenant_id:
            return (
                "https://login.microsoftonline.com/"
                f"{self.azure_openai_tenant_id}/oauth2/v2.0/token"
            )
        return None

    @property
    def client_credentials_configured(self) -> bool:
        return bool(
            self.token_url
            and self.azure_openai_client_id
            and self.azure_openai_client_secret
        )

    @property
    def model_mapper_dict(self) -> dict[str, str]:
        return _split_mapping(self.azure_openai_model_mapper)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _split_mapping(value: str | None) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for item in _split_csv(value):
        model, sep, deployment = item.partition("=")
        if not sep or not model.strip() or not deployment.strip():
            continue
        mapping[model.strip()] = deployment.strip()
    return mapping


@lru_cache
def get_settings() -> Settings:
    return Settings()
