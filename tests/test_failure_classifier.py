import json

import pytest

from contract_fetcher.workflows import failure_classifier as fc
from contract_fetcher.workflows.failure_classifier import (
    FailureSignals,
    build_review_comment,
    classify_failure,
    override_category,
    preflight_contract_urls,
    validate_contract_url,
)
from contract_fetcher.workflows.fetch_config import MIB

ZWSP = "\N{ZERO WIDTH SPACE}"


def test_http_status_wins_over_later_rules() -> None:
    record = classify_failure(
        FailureSignals(
            url="https://example.com/c.pdf",
            http_status=403,
            content_type="text/html",
            size_bytes=50 * MIB,
        )
    )
    assert record.category == fc.HTTP_FORBIDDEN
    assert record.confidence == fc.HIGH
    assert record.message.startswith("HTTP 403:")


@pytest.mark.parametrize(
    "status,category,confidence",
    [
        (401, fc.HTTP_UNAUTHORIZED, fc.HIGH),
        (404, fc.HTTP_NOT_FOUND, fc.HIGH),
        (429, fc.HTTP_RATE_LIMITED, fc.HIGH),
        (503, fc.HTTP_SERVER_ERROR, fc.HIGH),
        (418, fc.HTTP_OTHER, fc.MEDIUM),
    ],
)
def test_http_status_categories(status, category, confidence) -> None:
    record = classify_failure(http_status=status)
    assert record.category == category
    assert record.confidence == confidence
    assert record.http_status == status


def test_non_error_status_falls_through_to_unknown() -> None:
    record = classify_failure(http_status=302)
    assert record.category == fc.UNKNOWN
    assert record.confidence == fc.LOW


def test_url_validation_runs_first() -> None:
    record = classify_failure(url=f"https://example.com/a{ZWSP}.pdf", http_status=404)
    assert record.category == fc.HIDDEN_CHARS
    assert record.confidence == fc.HIGH


def test_size_over_limit_is_file_too_large() -> None:
    record = classify_failure(size_bytes=12 * MIB, content_type="text/html")
    assert record.category == fc.FILE_TOO_LARGE
    assert "12.0MB" in record.message


def test_size_limit_is_configurable() -> None:
    record = classify_failure(size_bytes=2 * MIB, max_bytes=1 * MIB)
    assert record.category == fc.FILE_TOO_LARGE
    assert "1MB limit" in record.message


def test_size_at_limit_is_not_too_large() -> None:
    record = classify_failure(size_bytes=10 * MIB)
    assert record.category == fc.UNKNOWN


def test_html_content_type_is_not_pdf() -> None:
    record = classify_failure(content_type="text/html; charset=utf-8")
    assert record.category == fc.NOT_PDF
    assert record.confidence == fc.MEDIUM
    assert "text/html" in record.message


def test_octet_stream_is_accepted_as_document() -> None:
    record = classify_failure(content_type="binary/octet-stream", error_code="timeout")
    assert record.category == fc.TIMEOUT


def test_bad_signature_is_high_confidence_not_pdf() -> None:
    record = classify_failure(content_type="application/pdf", pdf_signature_valid=False)
    assert record.category == fc.NOT_PDF
    assert record.confidence == fc.HIGH


@pytest.mark.parametrize(
    "code,category",
    [
        ("timeout", fc.TIMEOUT),
        ("cors_blocked", fc.CORS_BLOCKED),
        ("host_not_allowed", fc.CORS_BLOCKED),
        ("blocked_private_network", fc.CORS_BLOCKED),
        ("not_supported_type", fc.NOT_PDF),
        ("pdf_parse_error", fc.PARSE_ERROR),
        ("proxy_failed", fc.NETWORK_ERROR),
        ("FILE_TOO_LARGE", fc.FILE_TOO_LARGE),
    ],
)
def test_error_codes(code, category) -> None:
    assert classify_failure(error_code=code).category == category


def test_thrown_message_patterns() -> None:
    assert classify_failure(thrown_message="Request timed out").category == fc.TIMEOUT
    assert classify_failure(thrown_message="TypeError: Failed to fetch").category == fc.NETWORK_ERROR
    assert classify_failure(thrown_message="TypeError: fetch failed").category == fc.NETWORK_ERROR
    assert classify_failure(thrown_message="blocked by CORS policy").category == fc.CORS_BLOCKED
    assert classify_failure(thrown_message="Invalid PDF structure").category == fc.PARSE_ERROR
    assert classify_failure(thrown_message="kaboom").category == fc.UNKNOWN


def test_no_signals_is_unknown_low() -> None:
    record = classify_failure()
    assert record.category == fc.UNKNOWN
    assert record.confidence == fc.LOW
    assert record.detected_at


def test_record_serializes_without_nones() -> None:
    record = classify_failure(http_status=404, detected_at="2024-01-01T00:00:00+00:00")
    payload = json.loads(record.to_json())
    assert payload["category"] == "http_not_found"
    assert payload["label"] == "Not Found (404)"
    assert payload["detected_at"] == "2024-01-01T00:00:00+00:00"
    assert "size_bytes" not in payload


@pytest.mark.parametrize(
    "url,valid,category",
    [
        ("https://example.com/contract.pdf", True, None),
        ("  http://example.com/x  ", True, None),
        ("", False, fc.INVALID_URL),
        ("   ", False, fc.INVALID_URL),
        ("ftp://example.com/x.pdf", False, fc.INVALID_URL),
        ("not a url", False, fc.INVALID_URL),
        ("https://", False, fc.INVALID_URL),
        (f"https://exa{ZWSP}mple.com/x.pdf", False, fc.HIDDEN_CHARS),
        ("https://example.com/\N{SOFT HYPHEN}x.pdf", False, fc.HIDDEN_CHARS),
        ("https://example.com/x.pdf\x07", False, fc.HIDDEN_CHARS),
        ("https://example.com/x.pdf\x1f", False, fc.HIDDEN_CHARS),
        ("https://example.com/x.pdf\x85", False, fc.HIDDEN_CHARS),
        ("https://bucket.s3.amazonaws.com/Contract Final.pdf", True, None),
        ("https://bad host.example.com/x.pdf", False, fc.INVALID_URL),
    ],
)
def test_validate_contract_url(url, valid, category) -> None:
    result = validate_contract_url(url)
    assert result.valid is valid
    assert result.category == category


def test_validate_rejects_non_string() -> None:
    assert validate_contract_url(None).category == fc.INVALID_URL
    assert validate_contract_url(42).category == fc.INVALID_URL


def test_override_preserves_detection_fields() -> None:
    original = classify_failure(url="https://example.com/c.pdf", http_status=403)
    overridden = override_category(original, fc.CORS_BLOCKED, "False positive")

    assert overridden.category == fc.CORS_BLOCKED
    assert overridden.overridden is True
    assert overridden.override_reason == "False positive"
    assert overridden.original_category == fc.HTTP_FORBIDDEN
    assert overridden.original_confidence == fc.HIGH
    assert overridden.http_status == 403
    assert overridden.url == original.url
    assert overridden.detected_at == original.detected_at
    assert original.overridden is False


def test_repeated_override_keeps_first_detection() -> None:
    record = classify_failure(http_status=404)
    once = override_category(record, fc.TIMEOUT)
    twice = override_category(once, fc.NETWORK_ERROR, "Other")
    assert twice.category == fc.NETWORK_ERROR
    assert twice.original_category == fc.HTTP_NOT_FOUND


def test_override_rejects_unknown_category() -> None:
    record = classify_failure(http_status=404)
    with pytest.raises(ValueError):
        override_category(record, "nonsense")


def test_category_order_covers_every_category() -> None:
    assert sorted(fc.category_order()) == sorted(fc.CATEGORIES)
    assert fc.category_order()[0] == fc.HTTP_NOT_FOUND


def test_review_comment_includes_status_and_size() -> None:
    record = classify_failure(http_status=500, size_bytes=3 * MIB)
    comment = build_review_comment(record)
    lines = comment.splitlines()
    assert lines[0] == "[AUTO] Contract failed to load"
    assert "Reason: http_server_error (high confidence)" in lines
    assert "HTTP Status: 500" in lines
    assert "Size: 3.0 MB" in lines
    assert lines[-1].startswith("Suggestion: Remote server error")


def test_preflight_flags_only_parseable_invalid_links() -> None:
    sheets = [
        {
            "name": "Vendors",
            "headers": ["Vendor", "Contract", "Owner"],
            "rows": [
                {"Contract": "https://example.com/ok.pdf"},
                {"Contract": "ftp://example.com/x.pdf"},
                {"Contract": "see attached"},
                {"Contract": f"https://example.com/a{ZWSP}b.pdf"},
                {"Contract": None},
            ],
        },
        {"name": "Empty", "headers": ["Only"], "rows": [{"Only": "ftp://x"}]},
    ]

    findings = preflight_contract_urls(sheets)

    assert [(f["row_index"], f["category"]) for f in findings] == [
        (1, fc.INVALID_URL),
        (3, fc.HIDDEN_CHARS),
    ]
    assert findings[0]["sheet_name"] == "Vendors"
    assert findings[0]["field_name"] == "Contract"
