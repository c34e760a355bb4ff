import asyncio

from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from contract_fetcher.workflows.fetch_config import HDR_PROXY_FILE_SIZE, PipelineSettings
from contract_fetcher.workflows.proxy_server import ProxyServerSettings, create_app

PDF_BYTES = b"%PDF-1.7\n" + b"0" * 2048


def _origin_app():
    async def contract(request):
        return web.Response(
            body=PDF_BYTES,
            content_type="application/pdf",
            headers={"Content-Disposition": 'inline; filename="c.pdf"'},
        )

    async def unlabeled(request):
        return web.Response(body=PDF_BYTES, content_type="text/plain")

    async def page(request):
        return web.Response(text="<html>hi</html>", content_type="text/html")

    async def forbidden(request):
        return web.Response(status=403, text="denied")

    async def slow(request):
        await asyncio.sleep(0.4)
        return web.Response(body=PDF_BYTES, content_type="application/pdf")

    app = web.Application()
    app.router.add_get("/c.pdf", contract)
    app.router.add_get("/unlabeled", unlabeled)
    app.router.add_get("/page", page)
    app.router.add_get("/forbidden", forbidden)
    app.router.add_get("/slow.pdf", slow)
    return app


def _settings(**overrides) -> ProxyServerSettings:
    values = {"allowed_hosts": ("127.0.0.1",), "block_private_networks": False}
    values.update(overrides)
    return ProxyServerSettings(**values)


async def _proxy_get(settings, path=None, *, target=None, headers=None):
    async with TestServer(_origin_app()) as origin:
        async with TestClient(TestServer(create_app(settings))) as client:
            params = {}
            if target is not None:
                params["url"] = target
            elif path is not None:
                params["url"] = str(origin.make_url(path))
            resp = await client.get("/", params=params, headers=headers or {})
            body = await resp.read()
            if resp.content_type == "application/json":
                return resp.status, dict(resp.headers), await resp.json()
            return resp.status, dict(resp.headers), body


def test_streams_pdf_with_size_header() -> None:
    status, headers, body = asyncio.run(_proxy_get(_settings(), "/c.pdf"))
    assert status == 200
    assert body == PDF_BYTES
    assert headers[HDR_PROXY_FILE_SIZE] == str(len(PDF_BYTES))
    assert headers["Content-Disposition"] == 'inline; filename="c.pdf"'
    assert headers["Access-Control-Allow-Origin"] == "*"
    assert headers["Cache-Control"] == "no-store"


def test_pdf_signature_overrides_content_type() -> None:
    status, _, body = asyncio.run(_proxy_get(_settings(), "/unlabeled"))
    assert status == 200
    assert body == PDF_BYTES


def test_rejects_unsupported_type() -> None:
    status, _, body = asyncio.run(_proxy_get(_settings(), "/page"))
    assert status == 400
    assert body["code"] == "not_supported_type"
    assert body["error"] is True


def test_reports_upstream_status() -> None:
    status, _, body = asyncio.run(_proxy_get(_settings(), "/forbidden"))
    assert status == 502
    assert body["code"] == "http_error"
    assert body["httpStatus"] == 403


def test_enforces_size_ceiling() -> None:
    status, _, body = asyncio.run(_proxy_get(_settings(max_bytes=1024), "/c.pdf"))
    assert status == 413
    assert body["code"] == "file_too_large"
    assert body["fileSize"] == len(PDF_BYTES)


def test_upstream_timeout() -> None:
    status, _, body = asyncio.run(_proxy_get(_settings(timeout_ms=100), "/slow.pdf"))
    assert status == 504
    assert body["code"] == "timeout"


def test_missing_url_parameter() -> None:
    status, _, body = asyncio.run(_proxy_get(_settings()))
    assert status == 400
    assert body["code"] == "invalid_url"


def test_rejects_non_http_scheme() -> None:
    status, _, body = asyncio.run(_proxy_get(_settings(), target="file:///etc/passwd"))
    assert body["code"] == "invalid_url"


def test_host_not_in_allowlist() -> None:
    settings = _settings(allowed_hosts=("*.example.com",))
    status, _, body = asyncio.run(_proxy_get(settings, target="https://files.evil.io/c.pdf"))
    assert status == 400
    assert body["code"] == "host_not_allowed"


def test_blocks_private_networks_by_default() -> None:
    settings = _settings(block_private_networks=True)
    status, _, body = asyncio.run(_proxy_get(settings, "/c.pdf"))
    assert body["code"] == "blocked_private_network"


def test_bearer_token_required_when_configured() -> None:
    settings = _settings(token="s3cret")
    status, _, body = asyncio.run(_proxy_get(settings, "/c.pdf"))
    assert body["code"] == "proxy_failed"

    status, _, body = asyncio.run(
        _proxy_get(settings, "/c.pdf", headers={"Authorization": "Bearer s3cret"})
    )
    assert status == 200
    assert body == PDF_BYTES


def test_options_preflight() -> None:
    async def run():
        async with TestClient(TestServer(create_app(_settings()))) as client:
            resp = await client.options("/")
            return resp.status, dict(resp.headers)

    status, headers = asyncio.run(run())
    assert status == 200
    assert "GET" in headers["Access-Control-Allow-Methods"]
    assert headers["Access-Control-Expose-Headers"] == HDR_PROXY_FILE_SIZE


def test_settings_from_pipeline() -> None:
    pipeline = PipelineSettings(proxy_token="t", proxy_allowed_hosts=("a.example.com",), max_document_bytes=99)
    settings = ProxyServerSettings.from_pipeline(pipeline, block_private_networks=False)
    assert settings.token == "t"
    assert settings.allowed_hosts == ("a.example.com",)
    assert settings.max_bytes == 99
    assert settings.block_private_networks is False
