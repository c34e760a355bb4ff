"""Failure classifier: maps heterogeneous acquisition signals to an actionable category."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from .fetch_config import MAX_DOCUMENT_BYTES, MIB
from .fetch_utils import is_document_content_type, trim_url

logger = logging.getLogger(__name__)

CORS_BLOCKED = "cors_blocked"
HTTP_UNAUTHORIZED = "http_unauthorized"
HTTP_FORBIDDEN = "http_forbidden"
HTTP_NOT_FOUND = "http_not_found"
HTTP_RATE_LIMITED = "http_rate_limited"
HTTP_SERVER_ERROR = "http_server_error"
HTTP_OTHER = "http_other"
NOT_PDF = "not_pdf"
FILE_TOO_LARGE = "file_too_large"
TIMEOUT = "timeout"
NETWORK_ERROR = "network_error"
INVALID_URL = "invalid_url"
HIDDEN_CHARS = "hidden_chars"
PARSE_ERROR = "parse_error"
UNKNOWN = "unknown"

CATEGORIES: Tuple[str, ...] = (
    CORS_BLOCKED,
    HTTP_UNAUTHORIZED,
    HTTP_FORBIDDEN,
    HTTP_NOT_FOUND,
    HTTP_RATE_LIMITED,
    HTTP_SERVER_ERROR,
    HTTP_OTHER,
    NOT_PDF,
    FILE_TOO_LARGE,
    TIMEOUT,
    NETWORK_ERROR,
    INVALID_URL,
    HIDDEN_CHARS,
    PARSE_ERROR,
    UNKNOWN,
)

HIGH = "high"
MEDIUM = "medium"
LOW = "low"
CONFIDENCES: Tuple[str, ...] = (HIGH, MEDIUM, LOW)

# Display order for category pickers: most common failures first.
CATEGORY_ORDER: Tuple[str, ...] = (
    HTTP_NOT_FOUND,
    HTTP_FORBIDDEN,
    CORS_BLOCKED,
    FILE_TOO_LARGE,
    TIMEOUT,
    NETWORK_ERROR,
    HTTP_SERVER_ERROR,
    HTTP_UNAUTHORIZED,
    HTTP_RATE_LIMITED,
    NOT_PDF,
    INVALID_URL,
    HIDDEN_CHARS,
    PARSE_ERROR,
    HTTP_OTHER,
    UNKNOWN,
)

OVERRIDE_REASONS: Tuple[str, ...] = (
    "False positive",
    "New edge case",
    "Data source issue",
    "Temporary error",
    "Other",
)

_CATEGORY_LABELS: Dict[str, str] = {
    CORS_BLOCKED: "CORS Blocked",
    HTTP_UNAUTHORIZED: "Unauthorized (401)",
    HTTP_FORBIDDEN: "Forbidden (403)",
    HTTP_NOT_FOUND: "Not Found (404)",
    HTTP_RATE_LIMITED: "Rate Limited (429)",
    HTTP_SERVER_ERROR: "Server Error (5xx)",
    HTTP_OTHER: "HTTP Error (Other)",
    NOT_PDF: "Not a PDF",
    FILE_TOO_LARGE: "File Too Large",
    TIMEOUT: "Timeout",
    NETWORK_ERROR: "Network Error",
    INVALID_URL: "Invalid URL",
    HIDDEN_CHARS: "Hidden Characters",
    PARSE_ERROR: "Parse Error",
    UNKNOWN: "Unknown",
}

_CATEGORY_GUIDANCE: Dict[str, str] = {
    CORS_BLOCKED: 'Direct access was blocked by the remote host. Try "Open in New Tab" to verify the link works.',
    HTTP_UNAUTHORIZED: "Authentication required (401). Request credentials or an updated link from the source.",
    HTTP_FORBIDDEN: "Access denied (403). The signed link may be expired or restricted. Request a new link.",
    HTTP_NOT_FOUND: "File not found (404). The contract may have been moved or deleted. Verify with source.",
    HTTP_RATE_LIMITED: "Too many requests (429). Wait a few minutes and retry, or open in new tab.",
    HTTP_SERVER_ERROR: "Remote server error (5xx). The hosting service may be experiencing issues. Retry later.",
    HTTP_OTHER: 'Unexpected HTTP response. Try "Open in New Tab" to diagnose.',
    NOT_PDF: "The URL does not point to a valid PDF file. Verify the link is correct.",
    FILE_TOO_LARGE: 'File exceeds {limit_mb:g}MB limit. Use "Open in New Tab" to download locally.',
    TIMEOUT: "Request timed out. The server may be slow or the file very large. Retry or open in new tab.",
    NETWORK_ERROR: "Network connection failed. Check your internet connection and retry.",
    INVALID_URL: "The contract URL is malformed or invalid. Re-copy the link carefully.",
    HIDDEN_CHARS: "Hidden/invisible characters detected in URL. Re-copy the link as plain text.",
    PARSE_ERROR: "PDF file could not be parsed. The file may be corrupted or password-protected.",
    UNKNOWN: 'An unexpected error occurred. Try "Open in New Tab" to verify the link.',
}

# Internal error codes raised by the orchestrator and the proxy intermediary.
_ERROR_CODE_MAP: Dict[str, Tuple[str, str]] = {
    "timeout": (TIMEOUT, HIGH),
    "cors_blocked": (CORS_BLOCKED, MEDIUM),
    "network_error": (NETWORK_ERROR, MEDIUM),
    "not_pdf": (NOT_PDF, MEDIUM),
    "not_supported_type": (NOT_PDF, MEDIUM),
    "pdf_parse_error": (PARSE_ERROR, HIGH),
    "invalid_url": (INVALID_URL, HIGH),
    "file_too_large": (FILE_TOO_LARGE, HIGH),
    "host_not_allowed": (CORS_BLOCKED, MEDIUM),
    "blocked_private_network": (CORS_BLOCKED, MEDIUM),
    "proxy_failed": (NETWORK_ERROR, MEDIUM),
}

_MESSAGE_PATTERNS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("timeout", "timed out"), TIMEOUT),
    (("cors", "cross-origin"), CORS_BLOCKED),
    (("network", "fetch failed", "failed to fetch", "load failed"), NETWORK_ERROR),
    (("parse", "invalid pdf", "corrupted"), PARSE_ERROR),
)

_HIDDEN_CHAR_PATTERN = re.compile(
    r"[\u200b-\u200d\ufeff\u00ad\u2060-\u2064\u206a-\u206f\x00-\x1f\x7f-\x9f]"
)


@dataclass(frozen=True)
class FailureSignals:
    """Everything known about a failed acquisition; every field is optional."""

    url: Optional[str] = None
    error_code: Optional[str] = None
    http_status: Optional[int] = None
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None
    thrown_message: Optional[str] = None
    used_proxy: bool = False
    pdf_signature_valid: Optional[bool] = None


@dataclass(frozen=True)
class FailureRecord:
    """Structured, operator-facing description of why an acquisition failed."""

    category: str
    confidence: str
    message: str
    detected_at: str
    http_status: Optional[int] = None
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None
    url: Optional[str] = None
    used_proxy: bool = False
    error_code: Optional[str] = None
    overridden: bool = False
    override_reason: Optional[str] = None
    original_category: Optional[str] = None
    original_confidence: Optional[str] = None

    @property
    def label(self) -> str:
        return category_label(self.category)

    @property
    def guidance(self) -> str:
        return guidance_for(self.category)

    def to_dict(self) -> Dict[str, Any]:
        payload = {key: value for key, value in asdict(self).items() if value is not None}
        payload["label"] = self.label
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


@dataclass(frozen=True)
class UrlValidation:
    valid: bool
    category: Optional[str] = None
    confidence: Optional[str] = None
    message: Optional[str] = None


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def category_order() -> List[str]:
    return list(CATEGORY_ORDER)


def category_label(category: str) -> str:
    return _CATEGORY_LABELS.get(category, _CATEGORY_LABELS[UNKNOWN])


def guidance_for(category: str, *, max_bytes: int = MAX_DOCUMENT_BYTES) -> str:
    template = _CATEGORY_GUIDANCE.get(category, _CATEGORY_GUIDANCE[UNKNOWN])
    if category == FILE_TOO_LARGE:
        return template.format(limit_mb=max_bytes / MIB)
    return template


def detect_hidden_characters(url: str) -> bool:
    return bool(_HIDDEN_CHAR_PATTERN.search(url or ""))


def _parses_as_url(url: str) -> bool:
    # Spaces in the path or query are percent-encoded before fetching; a host
    # can never contain one.
    try:
        parsed = urlparse(url)
        parsed.port  # raises ValueError on a malformed port
    except ValueError:
        return False
    if not parsed.scheme or any(ch.isspace() for ch in parsed.netloc):
        return False
    if parsed.scheme in {"http", "https"}:
        return bool(parsed.hostname)
    return bool(parsed.netloc or parsed.path)


def validate_contract_url(url: Any) -> UrlValidation:
    """Syntactic URL checks, in order: empty, hidden characters, parse, scheme."""

    if not url or not isinstance(url, str):
        return UrlValidation(False, INVALID_URL, HIGH, "URL is empty or not a string")
    trimmed = trim_url(url)
    if not trimmed:
        return UrlValidation(False, INVALID_URL, HIGH, "URL is empty")
    if detect_hidden_characters(trimmed):
        return UrlValidation(False, HIDDEN_CHARS, HIGH, "URL contains hidden or control characters")
    if not _parses_as_url(trimmed):
        return UrlValidation(False, INVALID_URL, HIGH, "URL format is invalid")
    scheme = urlparse(trimmed).scheme.lower()
    if scheme not in {"http", "https"}:
        return UrlValidation(False, INVALID_URL, HIGH, f"Unsupported protocol: {scheme}:")
    return UrlValidation(True)


def _classify_by_http_status(status: int) -> Optional[Tuple[str, str]]:
    if status == 401:
        return HTTP_UNAUTHORIZED, HIGH
    if status == 403:
        return HTTP_FORBIDDEN, HIGH
    if status == 404:
        return HTTP_NOT_FOUND, HIGH
    if status == 429:
        return HTTP_RATE_LIMITED, HIGH
    if 500 <= status < 600:
        return HTTP_SERVER_ERROR, HIGH
    if 400 <= status < 500:
        return HTTP_OTHER, MEDIUM
    return None


def _classify_by_error_code(code: str) -> Optional[Tuple[str, str]]:
    return _ERROR_CODE_MAP.get((code or "").strip().lower())


def _classify_by_message(message: str) -> Optional[Tuple[str, str]]:
    lower = (message or "").lower()
    for needles, category in _MESSAGE_PATTERNS:
        if any(needle in lower for needle in needles):
            return category, MEDIUM
    return None


def _build_record(
    category: str,
    confidence: str,
    message: str,
    signals: FailureSignals,
    detected_at: Optional[str],
) -> FailureRecord:
    return FailureRecord(
        category=category,
        confidence=confidence,
        message=message,
        detected_at=detected_at or _utc_now(),
        http_status=signals.http_status,
        content_type=signals.content_type,
        size_bytes=signals.size_bytes,
        url=signals.url,
        used_proxy=signals.used_proxy,
        error_code=signals.error_code,
    )


def classify_failure(
    signals: Optional[FailureSignals] = None,
    *,
    max_bytes: int = MAX_DOCUMENT_BYTES,
    detected_at: Optional[str] = None,
    **kwargs: Any,
) -> FailureRecord:
    """Return exactly one FailureRecord for any combination of signals.

    Rules are evaluated in a fixed priority order and the first match wins:
    URL syntax, HTTP status, declared size, content type, PDF signature,
    internal error code, thrown-message text, then ``unknown``.
    Keyword arguments are accepted as a shorthand for ``FailureSignals``.
    """

    if signals is None:
        signals = FailureSignals(**kwargs)
    elif kwargs:
        signals = replace(signals, **kwargs)

    if signals.url:
        validation = validate_contract_url(signals.url)
        if not validation.valid and validation.category:
            return _build_record(
                validation.category,
                validation.confidence or HIGH,
                validation.message or guidance_for(validation.category),
                signals,
                detected_at,
            )

    if signals.http_status:
        by_status = _classify_by_http_status(int(signals.http_status))
        if by_status:
            category, confidence = by_status
            message = f"HTTP {signals.http_status}: {guidance_for(category)}"
            return _build_record(category, confidence, message, signals, detected_at)

    if signals.size_bytes is not None and signals.size_bytes > max_bytes:
        size_mb = signals.size_bytes / MIB
        message = f"File size ({size_mb:.1f}MB) exceeds limit. {guidance_for(FILE_TOO_LARGE, max_bytes=max_bytes)}"
        return _build_record(FILE_TOO_LARGE, HIGH, message, signals, detected_at)

    if signals.content_type and not is_document_content_type(signals.content_type):
        message = f'Content-Type "{signals.content_type}" is not PDF. {guidance_for(NOT_PDF)}'
        return _build_record(NOT_PDF, MEDIUM, message, signals, detected_at)

    if signals.pdf_signature_valid is False:
        message = f"File does not have valid PDF signature. {guidance_for(NOT_PDF)}"
        return _build_record(NOT_PDF, HIGH, message, signals, detected_at)

    if signals.error_code:
        by_code = _classify_by_error_code(signals.error_code)
        if by_code:
            category, confidence = by_code
            return _build_record(
                category, confidence, guidance_for(category, max_bytes=max_bytes), signals, detected_at
            )

    if signals.thrown_message:
        by_message = _classify_by_message(signals.thrown_message)
        if by_message:
            category, confidence = by_message
            return _build_record(category, confidence, guidance_for(category), signals, detected_at)

    return _build_record(UNKNOWN, LOW, guidance_for(UNKNOWN), signals, detected_at)


def override_category(
    existing: FailureRecord,
    new_category: str,
    reason: Optional[str] = None,
) -> FailureRecord:
    """Return a manually re-categorized copy of ``existing``.

    Detection fields (status, url, size, timestamps) are carried over untouched,
    and the originally detected category survives in ``original_category`` even
    when a record is overridden more than once.
    """

    if new_category not in CATEGORIES:
        raise ValueError(f"Unknown failure category: {new_category!r}")
    original_category = existing.original_category if existing.overridden else existing.category
    original_confidence = existing.original_confidence if existing.overridden else existing.confidence
    logger.info(
        "Failure category overridden %s -> %s (%s)",
        original_category,
        new_category,
        reason or "no reason given",
    )
    return replace(
        existing,
        category=new_category,
        overridden=True,
        override_reason=reason,
        original_category=original_category,
        original_confidence=original_confidence,
    )


def build_review_comment(record: FailureRecord, *, max_bytes: int = MAX_DOCUMENT_BYTES) -> str:
    """Render the auto-generated reviewer comment for a failed contract load."""

    lines = [
        "[AUTO] Contract failed to load",
        f"Reason: {record.category} ({record.confidence} confidence)",
    ]
    if record.http_status:
        lines.append(f"HTTP Status: {record.http_status}")
    if record.size_bytes:
        lines.append(f"Size: {record.size_bytes / MIB:.1f} MB")
    lines.append(f"Suggestion: {guidance_for(record.category, max_bytes=max_bytes)}")
    return "\n".join(lines)


def preflight_contract_urls(sheets: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Flag contract links that parse as URLs but would fail validation.

    Each sheet is a mapping with ``name``, ``headers`` and ``rows``; the contract
    link lives in the second column.
    """

    findings: List[Dict[str, Any]] = []
    for sheet in sheets:
        headers = list(sheet.get("headers") or [])
        if len(headers) < 2 or not headers[1]:
            continue
        contract_header = headers[1]
        for row_index, row in enumerate(sheet.get("rows") or []):
            value = row.get(contract_header) if isinstance(row, Mapping) else None
            if not value or not isinstance(value, str):
                continue
            url = trim_url(value)
            if not url or not _parses_as_url(url):
                continue
            validation = validate_contract_url(url)
            if validation.valid:
                continue
            findings.append(
                {
                    "url": url,
                    "row_index": row_index,
                    "sheet_name": sheet.get("name"),
                    "field_name": contract_header,
                    "valid": False,
                    "category": validation.category,
                    "confidence": validation.confidence,
                    "message": validation.message,
                }
            )
    return findings


__all__ = [
    "CATEGORIES",
    "CATEGORY_ORDER",
    "CONFIDENCES",
    "OVERRIDE_REASONS",
    "FailureRecord",
    "FailureSignals",
    "UrlValidation",
    "build_review_comment",
    "category_label",
    "category_order",
    "classify_failure",
    "detect_hidden_characters",
    "guidance_for",
    "override_category",
    "preflight_contract_urls",
    "validate_contract_url",
]
