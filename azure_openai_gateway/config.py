from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from azure_openai_gateway.settings import Settings


def load_yaml_dict(
    path: str | Path,
    *,
    error_message: str | None = None,
) -> dict[str, Any]:
    resolved = Path(path)
    with resolved.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if isinstance(payload, dict):
        return payload
    if error_message is not None:
        raise ValueError(error_message)
    raise ValueError(f"Expected YAML object in '{resolved}'.")


def load_deployment_map(settings: Settings) -> dict[str, str]:
    """Merge the YAML deployment map (if configured) with the env mapper.

    The file may either be a flat ``model: deployment`` object or nest the
    same object under a ``deployments`` key. Entries from
    ``AZURE_OPENAI_MODEL_MAPPER`` win over the file.
    """
    mapping: dict[str, str] = {}
    if settings.azure_openai_deployment_map_path:
        payload = load_yaml_dict(
            settings.azure_openai_deployment_map_path,
            error_message=(
                "Deployment map must be a YAML object of model: deployment pairs."
            ),
        )
        nested = payload.get("deployments")
        if isinstance(nested, dict):
            payload = nested
        for model, deployment in payload.items():
            if not isinstance(model, str) or not isinstance(deployment, str):
                continue
            if model.strip() and deployment.strip():
                mapping[model.strip()] = deployment.strip()
    mapping.update(settings.model_mapper_dict)
    return mapping
