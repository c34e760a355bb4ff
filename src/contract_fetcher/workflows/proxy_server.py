"""Server-side proxy used as the fallback when direct contract fetches are blocked.

``GET /?url=<encoded target>`` streams the target back with an
``X-Proxy-File-Size`` header, or answers with a JSON error body
``{"error": true, "code", "message", "httpStatus"?, "fileSize"?}`` that the
fetch orchestrator re-classifies.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Tuple
from urllib.parse import urlparse

import aiohttp
from aiohttp import web

from .fetch_config import (
    FETCH_TIMEOUT_MS,
    HDR_AUTHORIZATION,
    HDR_PROXY_FILE_SIZE,
    MAX_DOCUMENT_BYTES,
    MIB,
    PROXY_ALLOWED_CONTENT_TYPES,
    PROXY_ALLOWED_HOSTS,
    PROXY_USER_AGENT,
    PipelineSettings,
)
from .fetch_utils import has_pdf_signature, host_matches_allowlist, is_private_network, parse_content_length

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Expose-Headers": HDR_PROXY_FILE_SIZE,
}

_ERROR_STATUS = {
    "file_too_large": 413,
    "http_error": 502,
    "timeout": 504,
}


@dataclass(frozen=True)
class ProxyServerSettings:
    allowed_hosts: Tuple[str, ...] = PROXY_ALLOWED_HOSTS
    max_bytes: int = MAX_DOCUMENT_BYTES
    timeout_ms: int = FETCH_TIMEOUT_MS
    allowed_content_types: Tuple[str, ...] = PROXY_ALLOWED_CONTENT_TYPES
    token: Optional[str] = None
    block_private_networks: bool = True
    user_agent: str = PROXY_USER_AGENT

    @classmethod
    def from_pipeline(cls, settings: PipelineSettings, **overrides: Any) -> "ProxyServerSettings":
        values: Dict[str, Any] = {
            "allowed_hosts": settings.proxy_allowed_hosts,
            "max_bytes": settings.max_document_bytes,
            "timeout_ms": settings.fetch_timeout_ms,
            "token": settings.proxy_token,
        }
        values.update(overrides)
        return cls(**values)


SETTINGS_KEY = web.AppKey("proxy_settings", ProxyServerSettings)
SESSION_KEY = web.AppKey("proxy_session", aiohttp.ClientSession)


def _error_response(code: str, message: str, **extra: Any) -> web.Response:
    body: Dict[str, Any] = {"error": True, "code": code, "message": message}
    body.update({k: v for k, v in extra.items() if v is not None})
    return web.json_response(body, status=_ERROR_STATUS.get(code, 400), headers=CORS_HEADERS)


def _is_allowed_content_type(content_type: Optional[str], allowed: Tuple[str, ...]) -> bool:
    if not content_type:
        return False
    lower = content_type.lower()
    return any(token in lower for token in allowed)


def _token_ok(request: web.Request, expected: Optional[str]) -> bool:
    if not expected:
        return True
    header = request.headers.get(HDR_AUTHORIZATION, "")
    scheme, _, supplied = header.partition(" ")
    if scheme.lower() != "bearer":
        return False
    return hmac.compare_digest(supplied.strip(), expected)


async def handle_options(request: web.Request) -> web.Response:
    return web.Response(status=200, headers=CORS_HEADERS)


async def handle_proxy(request: web.Request) -> web.StreamResponse:
    settings = request.app[SETTINGS_KEY]
    if request.method != "GET":
        return _error_response("invalid_url", "Only GET requests are allowed")
    if not _token_ok(request, settings.token):
        return _error_response("proxy_failed", "Missing or invalid bearer token")

    target = request.query.get("url")
    if not target:
        return _error_response("invalid_url", "Missing 'url' query parameter")
    try:
        parsed = urlparse(target)
        hostname = parsed.hostname or ""
    except ValueError:
        return _error_response("invalid_url", "Invalid URL format")
    if not parsed.scheme or not hostname:
        return _error_response("invalid_url", "Invalid URL format")
    if parsed.scheme.lower() not in {"http", "https"}:
        return _error_response("invalid_url", "Only http and https protocols are allowed")
    if settings.block_private_networks and is_private_network(hostname):
        return _error_response("blocked_private_network", "Access to private networks is blocked")
    if not host_matches_allowlist(hostname, settings.allowed_hosts):
        return _error_response("host_not_allowed", f"Host '{hostname}' is not in the allowlist")

    session = request.app[SESSION_KEY]
    timeout = aiohttp.ClientTimeout(total=max(0.001, settings.timeout_ms / 1000.0))
    limit_mb = settings.max_bytes / MIB
    chunks = []
    total = 0
    try:
        async with session.get(target, timeout=timeout, headers={"User-Agent": settings.user_agent}) as resp:
            if not 200 <= resp.status < 300:
                return _error_response(
                    "http_error",
                    f"Remote server returned {resp.status}",
                    httpStatus=resp.status,
                )
            content_type = resp.headers.get("Content-Type")
            disposition = resp.headers.get("Content-Disposition")
            declared = parse_content_length(resp.headers.get("Content-Length"))
            if declared and declared > settings.max_bytes:
                return _error_response(
                    "file_too_large",
                    f"File size {declared / MIB:.1f} MB exceeds limit of {limit_mb:g} MB",
                    fileSize=declared,
                )
            first = True
            async for chunk in resp.content.iter_any():
                if not chunk:
                    continue
                total += len(chunk)
                if total > settings.max_bytes:
                    return _error_response(
                        "file_too_large",
                        f"File exceeds size limit of {limit_mb:g} MB",
                        fileSize=total,
                    )
                if first:
                    first = False
                    if not has_pdf_signature(chunk) and not _is_allowed_content_type(
                        content_type, settings.allowed_content_types
                    ):
                        return _error_response(
                            "not_supported_type",
                            f"Content type '{content_type or 'unknown'}' is not supported",
                        )
                chunks.append(chunk)
    except asyncio.TimeoutError:
        logger.info("Proxy upstream timed out for %s", hostname)
        return _error_response("timeout", f"Request timed out after {settings.timeout_ms / 1000:g} seconds")
    except aiohttp.ClientError as exc:
        logger.info("Proxy upstream network error for %s: %s", hostname, exc)
        return _error_response("network_error", f"Network error: {exc}")

    if not chunks:
        return _error_response("network_error", "Empty response from remote server")

    headers = dict(CORS_HEADERS)
    headers["Cache-Control"] = "no-store"
    headers[HDR_PROXY_FILE_SIZE] = str(total)
    if content_type:
        headers["Content-Type"] = content_type
    if disposition:
        headers["Content-Disposition"] = disposition
    logger.info("Proxied %s (%d bytes)", hostname, total)
    return web.Response(body=b"".join(chunks), status=200, headers=headers)


async def _client_session_ctx(app: web.Application) -> AsyncIterator[None]:
    app[SESSION_KEY] = aiohttp.ClientSession()
    yield
    await app[SESSION_KEY].close()


def create_app(settings: Optional[ProxyServerSettings] = None) -> web.Application:
    app = web.Application()
    app[SETTINGS_KEY] = settings or ProxyServerSettings()
    app.cleanup_ctx.append(_client_session_ctx)
    app.router.add_route("OPTIONS", "/", handle_options)
    app.router.add_route("*", "/", handle_proxy)
    return app


def run_proxy(host: str = "127.0.0.1", port: int = 8787, settings: Optional[ProxyServerSettings] = None) -> None:
    app = create_app(settings)
    logger.info("Contract proxy listening on http://%s:%d/", host, port)
    web.run_app(app, host=host, port=port, print=None)


__all__ = [
    "CORS_HEADERS",
    "ProxyServerSettings",
    "create_app",
    "handle_proxy",
    "run_proxy",
]
