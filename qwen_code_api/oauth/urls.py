from __future__ import annotations

import re
from urllib.parse import urlsplit, urlunsplit

from qwen_code_api.errors import ErrorKind, ProxyRequestError

DEFAULT_DASHSCOPE_BASE_URL = "https://dashscope.aliyuncs.com/compatible-mode/v1"
API_PREFIX = "/v1"

_SCHEME_PATTERN = re.compile(r"^https?://", re.IGNORECASE)
_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_resource_url(resource_url: str | None = None) -> str:
    """Return the canonical upstream base URL, always ending in ``/v1``.

    ``resource_url`` is the vendor hint from the OAuth credentials (or an
    explicit override). Bare hosts get an ``https://`` scheme, query and
    fragment are dropped and the path gains a ``/v1`` suffix unless it already
    ends with one. The function is idempotent.
    """
    value = (resource_url or "").strip() or DEFAULT_DASHSCOPE_BASE_URL
    if not _SCHEME_PATTERN.match(value):
        value = f"https://{value}"

    parts = urlsplit(value)
    scheme = parts.scheme.lower()
    netloc = _normalize_netloc(scheme, parts.netloc)
    if not parts.hostname:
        raise ValueError(f"Invalid upstream base URL: {resource_url!r}")

    path = parts.path.rstrip("/")
    if not path:
        path = API_PREFIX
    elif not path.endswith(API_PREFIX):
        path = f"{path}{API_PREFIX}"

    return urlunsplit((scheme, netloc, path, "", ""))


def build_upstream_url(
    upstream_base_url: str,
    request_path: str,
    request_search: str,
) -> str:
    if not request_path.startswith(API_PREFIX):
        raise ProxyRequestError(
            f"Invalid request path for proxy: {request_path}",
            ErrorKind.INVALID_PROXY_PATH,
        )

    parts = urlsplit(upstream_base_url)
    base_path = parts.path.rstrip("/")
    suffix = "" if request_path == API_PREFIX else request_path[len(API_PREFIX) :]
    query = request_search[1:] if request_search.startswith("?") else request_search
    return urlunsplit((parts.scheme, parts.netloc, f"{base_path}{suffix}", query, ""))


def _normalize_netloc(scheme: str, netloc: str) -> str:
    userinfo, at, hostport = netloc.rpartition("@")
    hostport = hostport.lower()
    default_port = _DEFAULT_PORTS.get(scheme)
    if default_port is not None and hostport.endswith(f":{default_port}"):
        hostport = hostport[: -len(f":{default_port}")]
    return f"{userinfo}{at}{hostport}"
