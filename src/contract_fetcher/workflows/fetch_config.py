"""Pipeline defaults (proxy hosts, size ceilings, timeouts, paths) and env-driven settings.

Centralizes static defaults so the orchestrator has no embedded magic numbers.
Callers can inject their own PipelineSettings to override any of them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set, Tuple

MIB = 1024 * 1024

# Size ceilings / budgets
MAX_DOCUMENT_BYTES = 10 * MIB
CACHE_MAX_BYTES = 500 * MIB

# Timeouts (milliseconds)
FETCH_TIMEOUT_MS = 30_000
SIZE_PROBE_TIMEOUT_MS = 5_000

# Paths (project-relative)
CACHE_PATH = Path("run") / "contract_cache" / "blobs.sqlite3"

# Headers
HDR_AUTHORIZATION = "Authorization"
HDR_PROXY_FILE_SIZE = "X-Proxy-File-Size"
PROXY_USER_AGENT = "ContractFetcher-Proxy/1.0"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

# Proxy allow-list defaults
PROXY_ALLOWED_HOSTS: Tuple[str, ...] = (
    "app-myautobots-public-dev.s3.amazonaws.com",
)

# Content sniffing
PDF_MAGIC = b"%PDF"
DOCUMENT_CONTENT_TYPES: Tuple[str, ...] = (
    "application/pdf",
    "application/octet-stream",
    "binary/octet-stream",
)
PROXY_ALLOWED_CONTENT_TYPES: Tuple[str, ...] = (
    "application/pdf",
    "application/octet-stream",
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)

# Readability policy
MIN_ELIGIBLE_FIELDS = 2
MIN_EXTRACTED_TEXT_LENGTH = 200
GIBBERISH_RATIO_THRESHOLD = 0.02
MIN_MATCHED_FIELDS = 1
MIN_MATCHABLE_CHARS = 4

ENV_PREFIX = "CONTRACT_"


def _env_int(name: str, default: int) -> int:
    try:
        raw = os.getenv(name, "")
        return int(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: str = "0") -> bool:
    raw = os.getenv(name, default)
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


def _split_env_list(value: str, *, lower: bool = False) -> Tuple[str, ...]:
    tokens: List[str] = []
    seen: Set[str] = set()
    for token in value.split(","):
        cleaned = token.strip()
        if not cleaned:
            continue
        if lower:
            cleaned = cleaned.lower()
        if cleaned in seen:
            continue
        seen.add(cleaned)
        tokens.append(cleaned)
    return tuple(tokens)


@dataclass(frozen=True)
class PipelineSettings:
    """Environment-level options recognized by the acquisition pipeline."""

    proxy_endpoint: Optional[str] = None
    proxy_token: Optional[str] = None
    proxy_enabled: bool = True
    proxy_allowed_hosts: Tuple[str, ...] = PROXY_ALLOWED_HOSTS
    max_document_bytes: int = MAX_DOCUMENT_BYTES
    fetch_timeout_ms: int = FETCH_TIMEOUT_MS
    size_probe_timeout_ms: int = SIZE_PROBE_TIMEOUT_MS
    cache_max_bytes: int = CACHE_MAX_BYTES
    cache_path: Optional[Path] = CACHE_PATH
    cache_disabled: bool = False
    min_matched_fields: int = MIN_MATCHED_FIELDS
    user_agent: str = DEFAULT_USER_AGENT

    @property
    def fetch_timeout_s(self) -> float:
        return max(0.001, self.fetch_timeout_ms / 1000.0)

    @property
    def size_probe_timeout_s(self) -> float:
        return max(0.001, self.size_probe_timeout_ms / 1000.0)

    @property
    def proxy_available(self) -> bool:
        return self.proxy_enabled and bool(self.proxy_endpoint)


def load_settings_from_env() -> PipelineSettings:
    """Build settings from ``CONTRACT_*`` environment variables.

    Malformed numbers fall back to their defaults rather than raising.
    """

    endpoint = os.getenv("CONTRACT_PROXY_ENDPOINT", "").strip() or None
    token = os.getenv("CONTRACT_PROXY_TOKEN", "").strip() or None
    hosts = _split_env_list(os.getenv("CONTRACT_PROXY_ALLOWED_HOSTS", ""), lower=True)
    cache_path_raw = os.getenv("CONTRACT_CACHE_PATH", "").strip()
    return PipelineSettings(
        proxy_endpoint=endpoint,
        proxy_token=token,
        proxy_enabled=not _env_bool("CONTRACT_PROXY_DISABLE"),
        proxy_allowed_hosts=hosts or PROXY_ALLOWED_HOSTS,
        max_document_bytes=max(1, _env_int("CONTRACT_MAX_DOCUMENT_BYTES", MAX_DOCUMENT_BYTES)),
        fetch_timeout_ms=max(1, _env_int("CONTRACT_FETCH_TIMEOUT_MS", FETCH_TIMEOUT_MS)),
        size_probe_timeout_ms=max(1, _env_int("CONTRACT_SIZE_PROBE_TIMEOUT_MS", SIZE_PROBE_TIMEOUT_MS)),
        cache_max_bytes=max(0, _env_int("CONTRACT_CACHE_MAX_BYTES", CACHE_MAX_BYTES)),
        cache_path=Path(cache_path_raw) if cache_path_raw else CACHE_PATH,
        cache_disabled=_env_bool("CONTRACT_CACHE_DISABLE"),
        min_matched_fields=max(1, _env_int("CONTRACT_MIN_MATCHED_FIELDS", MIN_MATCHED_FIELDS)),
    )


DEFAULT_SETTINGS = PipelineSettings()
