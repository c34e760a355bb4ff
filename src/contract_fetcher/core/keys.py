"""Shared schema keys to avoid magic strings across pipeline payloads."""

from __future__ import annotations

# Request / cache identity
K_URL = "url"
K_SOURCE_URL = "source_url"
K_SHEET = "sheet_name"
K_ROW = "row_index"
K_CACHE_KEY = "cache_key"

# Document handle / blob
K_CONTENT_TYPE = "content_type"
K_SIZE_BYTES = "size_bytes"
K_FETCHED_AT = "fetched_at"
K_LAST_ACCESSED_AT = "last_accessed_at"
K_IS_CACHED = "is_cached"
K_VIA_PROXY = "via_proxy"
K_SOURCE = "source"

# Failure records
K_CATEGORY = "category"
K_CONFIDENCE = "confidence"
K_HTTP_STATUS = "http_status"
K_MESSAGE = "message"
K_DETECTED_AT = "detected_at"
K_OVERRIDDEN = "overridden"
K_OVERRIDE_REASON = "override_reason"
K_ORIGINAL_CATEGORY = "original_category"

# Readability verdicts
K_DECISION = "decision"
K_REASON = "reason"
