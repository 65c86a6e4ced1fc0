from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

import httpx
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response

from qwen_code_api.errors import (
    GatewayError,
    internal_error_response,
    openai_error_response,
)
from qwen_code_api.gateway.auth import Authenticator
from qwen_code_api.gateway.proxy import UpstreamForwarder, read_request_body
from qwen_code_api.local_models import build_models_response, find_local_model
from qwen_code_api.oauth.store import OAuthCredentialStore
from qwen_code_api.oauth.token_endpoint import QwenTokenEndpoint
from qwen_code_api.settings import Settings, get_settings

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
CONNECT_TIMEOUT_SECONDS = 10.0

logger = logging.getLogger("uvicorn.error")


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    timeout_seconds = settings.request_timeout_seconds
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout_seconds,
            connect=min(CONNECT_TIMEOUT_SECONDS, timeout_seconds),
        ),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
    )


@asynccontextmanager
async def lifespan(app_obj: FastAPI) -> AsyncIterator[None]:
    settings: Settings = getattr(app_obj.state, "settings", None) or get_settings()
    http_client = build_http_client(settings)

    def client_getter() -> httpx.AsyncClient:
        return app_obj.state.http_client

    token_endpoint = QwenTokenEndpoint(client_getter=client_getter)
    credential_store = OAuthCredentialStore(
        credentials_file=settings.credentials_file,
        token_refresh_buffer_ms=settings.token_refresh_buffer_ms,
        token_endpoint=token_endpoint,
    )
    app_obj.state.settings = settings
    app_obj.state.http_client = http_client
    app_obj.state.authenticator = Authenticator(settings.api_key or "")
    app_obj.state.credential_store = credential_store
    app_obj.state.upstream_forwarder = UpstreamForwarder(
        credential_store=credential_store,
        client_getter=client_getter,
        request_timeout_seconds=settings.request_timeout_seconds,
        upstream_base_url=settings.api_upstream_base_url,
    )
    logger.info(
        "startup complete credentials_file=%s upstream_override=%s "
        "token_refresh_buffer_ms=%d request_timeout_ms=%d",
        settings.credentials_file,
        settings.api_upstream_base_url,
        settings.token_refresh_buffer_ms,
        settings.api_request_timeout_ms,
    )
    try:
        yield
    finally:
        await http_client.aclose()
        logger.info("shutdown complete")


app = FastAPI(
    title="Qwen Code API",
    description="OpenAI-compatible local gateway for Qwen OAuth credentials.",
    version="0.1.0",
    lifespan=lifespan,
)


def _is_public_request(request: Request) -> bool:
    return request.method == "GET" and request.url.path == "/healthz"


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if _is_public_request(request):
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is None:
        return internal_error_response(RuntimeError("Authenticator is not configured."))
    auth_error = await authenticator.authenticate_request(request)
    if auth_error is not None:
        return auth_error

    return await call_next(request)


def _method_not_allowed(method: str) -> JSONResponse:
    return openai_error_response(
        status.HTTP_405_METHOD_NOT_ALLOWED,
        f"Method {method} is not allowed.",
        code="method_not_allowed",
        headers={"Allow": "GET"},
    )


def _raw_request_target(request: Request) -> tuple[str, str]:
    # Forward the path still percent-encoded, as received.
    raw_path = request.scope.get("raw_path")
    if raw_path:
        path = raw_path.split(b"?", 1)[0].decode("latin-1")
    else:
        path = request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    return path, query


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.api_route("/v1/models", methods=ALL_METHODS)
async def list_models(request: Request) -> Response:
    if request.method != "GET":
        return _method_not_allowed(request.method)
    return JSONResponse(content=build_models_response())


@app.api_route("/v1/models/{model_id:path}", methods=ALL_METHODS)
async def retrieve_model(model_id: str, request: Request) -> Response:
    if request.method != "GET":
        return _method_not_allowed(request.method)
    model = find_local_model(model_id)
    if model is None:
        return openai_error_response(
            status.HTTP_404_NOT_FOUND,
            f"The model '{model_id}' does not exist.",
            param="model",
            code="model_not_found",
        )
    return JSONResponse(content=model)


@app.api_route("/v1", methods=ALL_METHODS)
@app.api_route("/v1/{subpath:path}", methods=ALL_METHODS)
async def v1_passthrough(request: Request) -> Response:
    forwarder: UpstreamForwarder = app.state.upstream_forwarder
    path, query = _raw_request_target(request)
    try:
        body = await read_request_body(request)
        return await forwarder.forward(
            method=request.method,
            path=path,
            query=query,
            headers=request.headers.items(),
            body=body,
        )
    except GatewayError as exc:
        return exc.to_response()
    except Exception as exc:
        logger.exception(
            "proxy_unhandled_error method=%s path=%s error_type=%s",
            request.method,
            path,
            exc.__class__.__name__,
        )
        return internal_error_response(exc)


@app.api_route("/{path:path}", methods=ALL_METHODS)
async def not_found(path: str) -> JSONResponse:
    return openai_error_response(
        status.HTTP_404_NOT_FOUND,
        f"Route /{path} not found. Only /v1/* is proxied.",
        code="not_found",
    )


@app.exception_handler(GatewayError)
async def gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
    return exc.to_response()
