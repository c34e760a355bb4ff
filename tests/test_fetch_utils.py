from pathlib import Path

from contract_fetcher.workflows import fetch_utils
from contract_fetcher.workflows.fetch_config import (
    CACHE_PATH,
    MAX_DOCUMENT_BYTES,
    PROXY_ALLOWED_HOSTS,
    load_settings_from_env,
)
from contract_fetcher.workflows.fetch_utils import (
    build_cache_key,
    has_pdf_signature,
    host_matches_allowlist,
    is_document_content_type,
    is_pdf_content_type,
    is_pdf_url,
    is_private_network,
    parse_content_length,
)


def test_cache_key_is_stable_and_url_sensitive() -> None:
    first = build_cache_key("Vendors", 4, "https://example.com/a.pdf")
    again = build_cache_key("Vendors", 4, "https://example.com/a.pdf")
    other = build_cache_key("Vendors", 4, "https://example.com/b.pdf")

    assert first == again
    assert first != other
    assert first.startswith("Vendors_4_")
    assert len(first.rsplit("_", 1)[1]) == 12


def test_allowlist_wildcards() -> None:
    allowed = ("*.s3.amazonaws.com", "files.example.com")
    assert host_matches_allowlist("bucket.s3.amazonaws.com", allowed) == "*.s3.amazonaws.com"
    assert host_matches_allowlist("FILES.example.com.", allowed) == "files.example.com"
    assert host_matches_allowlist("s3.amazonaws.com.evil.io", allowed) is None
    assert host_matches_allowlist("", allowed) is None


def test_private_network_literals() -> None:
    assert is_private_network("localhost")
    assert is_private_network("10.1.2.3")
    assert is_private_network("[::1]")
    assert is_private_network("169.254.169.254")
    assert not is_private_network("8.8.8.8")
    assert not is_private_network("example.com")


def test_pdf_content_type_strict_vs_lenient() -> None:
    assert is_pdf_content_type("application/pdf; charset=binary")
    assert is_pdf_content_type("application/octet-stream")
    assert not is_pdf_content_type(None)
    assert not is_pdf_content_type("text/html")

    assert is_document_content_type(None)
    assert is_document_content_type("binary/octet-stream")
    assert not is_document_content_type("text/html")


def test_pdf_url_detection() -> None:
    assert is_pdf_url("https://example.com/files/contract.PDF")
    assert is_pdf_url("https://bucket.s3.amazonaws.com/obj?response-content-type=application%2Fpdf")
    assert is_pdf_url("https://example.com/download?name=contract.pdf")
    assert not is_pdf_url("https://example.com/view?id=7")


def test_pdf_signature() -> None:
    assert has_pdf_signature(b"%PDF-1.7\n...")
    assert not has_pdf_signature(b"<html>")
    assert not has_pdf_signature(b"%PD")
    assert not has_pdf_signature(None)


def test_parse_content_length() -> None:
    assert parse_content_length("1024") == 1024
    assert parse_content_length(" 7 ") == 7
    assert parse_content_length("-1") is None
    assert parse_content_length("abc") is None
    assert parse_content_length(None) is None


def test_environment_warnings_proxy_missing(monkeypatch) -> None:
    monkeypatch.delenv("CONTRACT_PROXY_ENDPOINT", raising=False)
    codes = {item["code"] for item in fetch_utils.collect_environment_warnings()}
    assert "proxy_endpoint_missing" in codes


def test_environment_warnings_token_missing(monkeypatch) -> None:
    monkeypatch.setenv("CONTRACT_PROXY_ENDPOINT", "https://proxy.example.com/")
    monkeypatch.delenv("CONTRACT_PROXY_TOKEN", raising=False)
    codes = {item["code"] for item in fetch_utils.collect_environment_warnings()}
    assert "proxy_token_missing" in codes
    assert "proxy_endpoint_missing" not in codes


def test_environment_warnings_pymupdf_missing(monkeypatch) -> None:
    from contract_fetcher.workflows import text_layer

    monkeypatch.setattr(text_layer, "fitz", None)
    codes = {item["code"] for item in fetch_utils.collect_environment_warnings()}
    assert "pymupdf_missing" in codes


def test_settings_defaults(monkeypatch) -> None:
    for name in (
        "CONTRACT_PROXY_ENDPOINT",
        "CONTRACT_PROXY_ALLOWED_HOSTS",
        "CONTRACT_MAX_DOCUMENT_BYTES",
        "CONTRACT_CACHE_PATH",
        "CONTRACT_CACHE_DISABLE",
        "CONTRACT_PROXY_DISABLE",
    ):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings_from_env()
    assert settings.proxy_endpoint is None
    assert settings.proxy_available is False
    assert settings.proxy_allowed_hosts == PROXY_ALLOWED_HOSTS
    assert settings.max_document_bytes == MAX_DOCUMENT_BYTES
    assert settings.cache_path == CACHE_PATH
    assert settings.cache_disabled is False


def test_settings_from_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CONTRACT_PROXY_ENDPOINT", " https://proxy.example.com/ ")
    monkeypatch.setenv("CONTRACT_PROXY_TOKEN", "secret-token")
    monkeypatch.setenv("CONTRACT_PROXY_ALLOWED_HOSTS", "A.example.com, *.cdn.example.com,a.example.com")
    monkeypatch.setenv("CONTRACT_MAX_DOCUMENT_BYTES", "2048")
    monkeypatch.setenv("CONTRACT_FETCH_TIMEOUT_MS", "not-a-number")
    monkeypatch.setenv("CONTRACT_CACHE_PATH", str(tmp_path / "c.sqlite3"))
    monkeypatch.setenv("CONTRACT_CACHE_DISABLE", "yes")
    monkeypatch.setenv("CONTRACT_PROXY_DISABLE", "0")

    settings = load_settings_from_env()

    assert settings.proxy_endpoint == "https://proxy.example.com/"
    assert settings.proxy_token == "secret-token"
    assert settings.proxy_allowed_hosts == ("a.example.com", "*.cdn.example.com")
    assert settings.max_document_bytes == 2048
    assert settings.fetch_timeout_ms == 30_000
    assert settings.cache_path == tmp_path / "c.sqlite3"
    assert settings.cache_disabled is True
    assert settings.proxy_available is True
