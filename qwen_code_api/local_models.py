from __future__ import annotations

from typing import Any

LOCAL_MODEL_OWNER = "qwen-oauth"

# Model ids accepted by the Qwen OAuth upstream.
LOCAL_OPENAI_MODELS: tuple[dict[str, Any], ...] = (
    {"id": "coder-model", "object": "model", "created": 0, "owned_by": LOCAL_MODEL_OWNER},
    {"id": "vision-model", "object": "model", "created": 0, "owned_by": LOCAL_MODEL_OWNER},
)


def build_models_response() -> dict[str, Any]:
    return {"object": "list", "data": [dict(model) for model in LOCAL_OPENAI_MODELS]}


def find_local_model(model_id: str) -> dict[str, Any] | None:
    for model in LOCAL_OPENAI_MODELS:
        if model["id"] == model_id:
            return dict(model)
    return None
