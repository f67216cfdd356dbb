from __future__ import annotations

import pytest

from azure_openai_gateway.gateway.errors import ConfigurationError, TranslationError
from azure_openai_gateway.gateway.translator import (
    ROUTE_RULES,
    EndpointCategory,
    MappedDeploymentResolver,
    RequestTranslator,
    extract_model_from_json,
    forwardable_headers,
)

ENDPOINT = "https://unit-test.openai.azure.com"


def _translator(**kwargs: object) -> RequestTranslator:
    return RequestTranslator(endpoint=ENDPOINT, api_version="2024-06-01", **kwargs)


def _rule(name: str):
    return next(rule for rule in ROUTE_RULES if rule.name == name)


def test_chat_completions_uses_model_as_deployment() -> None:
    outbound = _translator().translate(
        rule=_rule("chat.completions"),
        path_params={},
        query_params=[],
        headers={"content-type": "application/json", "authorization": "Bearer sk-1"},
        model="gpt-4",
        content=b'{"model":"gpt-4","messages":[]}',
    )

    assert outbound.method == "POST"
    assert outbound.url == f"{ENDPOINT}/openai/deployments/gpt-4/chat/completions"
    assert outbound.params == [("api-version", "2024-06-01")]
    assert outbound.deployment == "gpt-4"
    assert "authorization" not in outbound.headers
    assert outbound.headers["content-type"] == "application/json"


def test_model_bound_endpoint_without_model_fails_fast() -> None:
    with pytest.raises(TranslationError) as excinfo:
        _translator().translate(
            rule=_rule("embeddings"),
            path_params={},
            query_params=[],
            headers={},
            model=None,
            content=b"{}",
        )
    assert excinfo.value.status_code == 400
    assert excinfo.value.param == "model"


def test_account_level_endpoints_use_flat_paths() -> None:
    translator = _translator()
    expectations = {
        ("files.list", ()): "/openai/files",
        ("files.get", (("file_id", "file-1"),)): "/openai/files/file-1",
        ("files.content", (("file_id", "file-1"),)): "/openai/files/file-1/content",
        ("fine_tunes.cancel", (("fine_tune_id", "ft-9"),)): (
            "/openai/fine_tuning/jobs/ft-9/cancel"
        ),
        ("deployments.list", ()): "/openai/deployments",
        ("deployments.get", (("deployment_id", "dep-a"),)): "/openai/deployments/dep-a",
        ("models.capabilities", (("model_id", "gpt-4"),)): "/openai/models/gpt-4",
    }
    for (name, params), expected_path in expectations.items():
        path, deployment = translator.outbound_path(_rule(name), dict(params), None)
        assert path == expected_path
        assert deployment is None


def test_every_rule_is_deterministic_and_categorized() -> None:
    translator = _translator()
    for rule in ROUTE_RULES:
        assert isinstance(rule.category, EndpointCategory)
        params = {name: "id-1" for name in rule.path_params}
        model = "gpt-4" if rule.deployment_scoped else None
        first = translator.outbound_path(rule, params, model)
        second = translator.outbound_path(rule, params, model)
        assert first == second
        assert first[0].startswith("/openai/")
        if rule.deployment_scoped:
            assert first[0].startswith("/openai/deployments/gpt-4/")


def test_inbound_query_is_preserved_and_api_version_replaced() -> None:
    params = _translator().versioned_params(
        [("limit", "10"), ("api-version", "1999-01-01"), ("after", "file-1")]
    )
    assert params == [
        ("limit", "10"),
        ("after", "file-1"),
        ("api-version", "2024-06-01"),
    ]


def test_deployment_resolver_is_injectable() -> None:
    translator = _translator(
        deployment_resolver=MappedDeploymentResolver({"gpt-3.5-turbo": "gpt-35-turbo"})
    )
    path, deployment = translator.outbound_path(
        _rule("completions"), {}, "gpt-3.5-turbo"
    )
    assert deployment == "gpt-35-turbo"
    assert path == "/openai/deployments/gpt-35-turbo/completions"

    path, deployment = translator.outbound_path(_rule("completions"), {}, "gpt-4o")
    assert deployment == "gpt-4o"


def test_path_segments_are_quoted() -> None:
    path, _ = _translator().outbound_path(
        _rule("files.get"), {"file_id": "a/b c"}, None
    )
    assert path == "/openai/files/a%2Fb%20c"


def test_match_resolves_rules_and_rejects_unknown_paths() -> None:
    translator = _translator()
    rule, params = translator.match("get", "/v1/fine_tunes/ft-1/events")
    assert rule.name == "fine_tunes.events"
    assert params == {"fine_tune_id": "ft-1"}

    rule, params = translator.match("DELETE", "/v1/files/file-7")
    assert rule.name == "files.delete"

    with pytest.raises(TranslationError) as excinfo:
        translator.match("POST", "/v1/moderations")
    assert excinfo.value.status_code == 404

    with pytest.raises(TranslationError) as excinfo:
        translator.match("PUT", "/v1/chat/completions")
    assert excinfo.value.status_code == 405


def test_missing_endpoint_is_a_configuration_error() -> None:
    translator = RequestTranslator(endpoint=None, api_version="2024-06-01")
    with pytest.raises(ConfigurationError):
        translator.translate(
            rule=_rule("files.list"),
            path_params={},
            query_params=[],
            headers={},
            model=None,
            content=None,
        )


def test_extract_model_from_json() -> None:
    assert extract_model_from_json(b'{"model":" gpt-4 "}') == "gpt-4"
    assert extract_model_from_json(b'{"messages":[]}') is None
    assert extract_model_from_json(b'{"model": 7}') is None
    assert extract_model_from_json(b"") is None
    with pytest.raises(TranslationError):
        extract_model_from_json(b"not-json")
    with pytest.raises(TranslationError):
        extract_model_from_json(b'["gpt-4"]')


def test_forwardable_headers_strips_hop_by_hop_and_dropped_names() -> None:
    headers = forwardable_headers(
        {
            "Host": "gateway.local",
            "Connection": "keep-alive",
            "Content-Type": "application/json",
            "api-key": "client-supplied",
            "X-Request-Id": "req-1",
        },
        drop={"api-key"},
    )
    assert headers == {"Content-Type": "application/json", "X-Request-Id": "req-1"}
