from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any

import uvicorn
from pydantic import ValidationError

from qwen_code_api.errors import GatewayError
from qwen_code_api.main import app, build_http_client
from qwen_code_api.oauth.store import OAuthCredentialStore
from qwen_code_api.oauth.token_endpoint import QwenTokenEndpoint
from qwen_code_api.settings import Settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qwen-code-api",
        description="Serve an OpenAI-compatible API backed by Qwen OAuth credentials.",
    )
    parser.add_argument("--host", help="Interface to listen on.")
    parser.add_argument("-p", "--port", type=int, help="Port to listen on.")
    parser.add_argument(
        "--api-key",
        help="Local API key clients must send as a Bearer token. Generated when omitted.",
    )
    parser.add_argument(
        "--credentials-file",
        help="Path to the Qwen OAuth credentials JSON file.",
    )
    parser.add_argument(
        "--upstream-base-url",
        help="Override the upstream base URL derived from the credentials.",
    )
    parser.add_argument(
        "--token-refresh-buffer-ms",
        type=int,
        help="Refresh the access token this many milliseconds before it expires.",
    )
    parser.add_argument(
        "--request-timeout-ms",
        type=int,
        help="Timeout for each upstream request in milliseconds.",
    )
    return parser


def build_settings(args: argparse.Namespace) -> Settings:
    candidates: dict[str, Any] = {
        "api_host": args.host,
        "api_port": args.port,
        "api_key": args.api_key,
        "oauth_credentials_path": args.credentials_file,
        "api_upstream_base_url": args.upstream_base_url,
        "token_refresh_buffer_ms": args.token_refresh_buffer_ms,
        "api_request_timeout_ms": args.request_timeout_ms,
    }
    overrides = {key: value for key, value in candidates.items() if value is not None}
    return Settings(**overrides)


async def run_preflight(settings: Settings) -> tuple[str, Path]:
    """Validate (and refresh if needed) the credential before serving."""
    async with build_http_client(settings) as client:
        store = OAuthCredentialStore(
            credentials_file=settings.credentials_file,
            token_refresh_buffer_ms=settings.token_refresh_buffer_ms,
            token_endpoint=QwenTokenEndpoint(client_getter=lambda: client),
        )
        credentials = await store.get_valid_credentials(False)
        upstream_base_url = store.get_upstream_base_url(
            credentials, settings.api_upstream_base_url
        )
    return upstream_base_url, store.credentials_file_path


def format_startup_banner(
    settings: Settings,
    upstream_base_url: str,
    credentials_file: Path,
) -> str:
    if settings.api_key_generated:
        api_key_line = f"API key: {settings.api_key}"
    else:
        api_key_line = "API key: (provided via --api-key or env)"
    return "\n".join(
        [
            f"qwen-code-api listening on http://{settings.api_host}:{settings.api_port}",
            f"Upstream base URL: {upstream_base_url}",
            f"Credentials file: {credentials_file}",
            api_key_line,
        ]
    )


def _fail(reason: object) -> int:
    print(f"Failed to start qwen-code-api: {reason}", file=sys.stderr)
    return 1


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = build_settings(args)
    except ValidationError as exc:
        return _fail(exc)

    try:
        upstream_base_url, credentials_file = asyncio.run(run_preflight(settings))
    except GatewayError as exc:
        return _fail(exc.message)
    except ValueError as exc:
        return _fail(exc)

    print(format_startup_banner(settings, upstream_base_url, credentials_file))
    app.state.settings = settings
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
