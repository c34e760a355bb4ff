"""Shared helper functions used by the acquisition pipeline."""

from __future__ import annotations

import hashlib
import ipaddress
import os
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import parse_qs, urlparse

from .fetch_config import DOCUMENT_CONTENT_TYPES, PDF_MAGIC

_PRIVATE_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "127.0.0.0/8",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "0.0.0.0/8",
        "169.254.0.0/16",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)


def idna_normalize(host: str) -> str:
    """Return a lowercase, IDNA-normalized host name."""

    h = (host or "").strip().rstrip(".").lower()
    if not h:
        return ""
    try:
        h = h.encode("idna").decode("ascii")
    except Exception:
        pass
    return h


def host_matches_allowlist(host: str, allowed: Iterable[str]) -> Optional[str]:
    """Return the allow-list entry matching ``host``.

    Entries are exact host names or ``*.suffix`` wildcards; a wildcard also
    matches the bare suffix itself.
    """

    normalized = idna_normalize(host)
    if not normalized:
        return None
    for entry in allowed:
        token = (entry or "").strip().lower()
        if not token:
            continue
        if token.startswith("*."):
            bare = token[2:]
            if normalized == bare or normalized.endswith(f".{bare}"):
                return entry
            continue
        if normalized == token:
            return entry
    return None


def is_private_network(host: str) -> bool:
    """Return True for localhost and private / link-local address literals."""

    h = (host or "").strip().strip("[]").lower()
    if not h:
        return False
    if h == "localhost":
        return True
    try:
        address = ipaddress.ip_address(h)
    except ValueError:
        return False
    return any(address in network for network in _PRIVATE_NETWORKS)


# Characters a spreadsheet cell commonly wraps a URL in; anything else at the
# edges is left for the hidden-character check.
_URL_EDGE_WHITESPACE = " \t\r\n"


def trim_url(url: Optional[str]) -> str:
    return (url or "").strip(_URL_EDGE_WHITESPACE)


def encode_url_spaces(url: str) -> str:
    """Percent-encode literal spaces left inside an otherwise valid URL."""

    return url.replace(" ", "%20")


def hash_url(url: str) -> str:
    return hashlib.sha256((url or "").encode("utf-8")).hexdigest()[:12]


def build_cache_key(sheet_name: str, row_index: int, url: str) -> str:
    """Key a cached contract by (sheet, row, url-hash)."""

    return f"{sheet_name}_{row_index}_{hash_url(url)}"


def is_pdf_content_type(content_type: Optional[str]) -> bool:
    """Strict check used on live responses: missing content type is not a PDF."""

    if not content_type:
        return False
    lower = content_type.lower()
    return "application/pdf" in lower or "application/octet-stream" in lower


def is_document_content_type(content_type: Optional[str]) -> bool:
    """Lenient check used by the classifier: missing content type is acceptable."""

    if not content_type:
        return True
    lower = content_type.lower()
    return any(token in lower for token in DOCUMENT_CONTENT_TYPES)


def is_pdf_url(url: str) -> bool:
    """Return True when the URL itself advertises a PDF document."""

    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    path = (parsed.path or "").lower()
    if path.endswith(".pdf") or ".pdf" in path:
        return True
    query = (parsed.query or "").lower()
    if ".pdf" in query:
        return True
    for value in parse_qs(parsed.query).get("response-content-type", []):
        if is_pdf_content_type(value):
            return True
    return False


def has_pdf_signature(data: Optional[bytes]) -> bool:
    if not data or len(data) < len(PDF_MAGIC):
        return False
    return data[: len(PDF_MAGIC)] == PDF_MAGIC


def format_size(size_bytes: int) -> str:
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / (1024 * 1024):.1f} MB"


def parse_content_length(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed if parsed >= 0 else None


def collect_environment_warnings() -> List[Dict[str, Any]]:
    """Report soft misconfigurations that silently disable pipeline features."""

    warnings: List[Dict[str, Any]] = []
    if not os.getenv("CONTRACT_PROXY_ENDPOINT", "").strip():
        warnings.append(
            {
                "code": "proxy_endpoint_missing",
                "message": "CONTRACT_PROXY_ENDPOINT unset; cross-origin failures will not fall back to the proxy.",
            }
        )
    elif not os.getenv("CONTRACT_PROXY_TOKEN", "").strip():
        warnings.append(
            {
                "code": "proxy_token_missing",
                "message": "CONTRACT_PROXY_TOKEN unset; proxy requests are sent without a bearer token.",
            }
        )
    try:
        from . import text_layer

        text_layer_ok = getattr(text_layer, "fitz", None) is not None
    except Exception:
        text_layer_ok = False
    if not text_layer_ok:
        warnings.append(
            {
                "code": "pymupdf_missing",
                "message": "PyMuPDF is not importable; readability verification cannot extract text.",
            }
        )
    return warnings


def sanity_check() -> None:
    assert idna_normalize("ExAmple.COM.") == "example.com"
    assert host_matches_allowlist("files.example.com", ("*.example.com",)) == "*.example.com"
    assert host_matches_allowlist("example.com", ("*.example.com",)) == "*.example.com"
    assert host_matches_allowlist("evil-example.com", ("*.example.com",)) is None
    assert is_private_network("192.168.1.10")
    assert not is_private_network("93.184.216.34")
    assert build_cache_key("Sheet1", 3, "https://x/a.pdf").startswith("Sheet1_3_")


sanity_check()

__all__ = [
    "idna_normalize",
    "host_matches_allowlist",
    "is_private_network",
    "trim_url",
    "encode_url_spaces",
    "hash_url",
    "build_cache_key",
    "is_pdf_content_type",
    "is_document_content_type",
    "is_pdf_url",
    "has_pdf_signature",
    "format_size",
    "parse_content_length",
    "collect_environment_warnings",
    "sanity_check",
]
