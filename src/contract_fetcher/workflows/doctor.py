from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .fetch_config import PipelineSettings, load_settings_from_env
from .fetch_utils import collect_environment_warnings, format_size


_SECRET_TOKENS = ("key", "token", "secret", "password", "pass")


def _is_secret_name(name: str) -> bool:
    lowered = (name or "").lower()
    return any(token in lowered for token in _SECRET_TOKENS)


def redact_value(value: str, keep: int = 4) -> str:
    raw = (value or "").strip()
    if not raw:
        return ""
    if len(raw) <= keep * 2:
        return "*" * len(raw)
    return f"{raw[:keep]}...{raw[-keep:]}"


def _redacted_env_value(name: str, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return redact_value(value) if _is_secret_name(name) else value


def _check_text_layer_available() -> bool:
    try:
        from . import text_layer
        return getattr(text_layer, "fitz", None) is not None
    except Exception:
        return False


def _check_writable(path: Path) -> bool:
    try:
        if path.exists():
            return os.access(path, os.W_OK)
        parent = path.parent
        while not parent.exists() and parent != parent.parent:
            parent = parent.parent
        return os.access(parent, os.W_OK)
    except OSError:
        return False


def build_doctor_report(settings: Optional[PipelineSettings] = None) -> Dict[str, Any]:
    settings = settings or load_settings_from_env()
    report: Dict[str, Any] = {
        "generated_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "ok": True,
        "checks": [],
        "environment_warnings": collect_environment_warnings(),
    }

    def add_check(
        name: str,
        status: bool,
        *,
        detail: Optional[str] = None,
        remedy: Optional[str] = None,
        level: str = "warn",
        value: Optional[str] = None,
    ) -> None:
        entry = {
            "name": name,
            "status": "ok" if status else "missing",
            "level": level,
            "detail": detail,
        }
        if remedy:
            entry["remedy"] = remedy
        if value is not None:
            entry["value"] = _redacted_env_value(name, value)
        report["checks"].append(entry)
        if not status and level == "warn":
            report["ok"] = False

    add_check(
        "CONTRACT_PROXY_ENDPOINT",
        bool(settings.proxy_endpoint),
        detail="Proxy fallback enabled" if settings.proxy_available else "Proxy fallback disabled",
        remedy="Set CONTRACT_PROXY_ENDPOINT to the proxy URL (see `contract-fetcher serve-proxy`).",
        level="warn",
        value=settings.proxy_endpoint,
    )
    add_check(
        "CONTRACT_PROXY_TOKEN",
        bool(settings.proxy_token),
        detail="Bearer token configured" if settings.proxy_token else "Proxy requests are unauthenticated",
        remedy="Set CONTRACT_PROXY_TOKEN if the proxy requires authorization.",
        level="info",
        value=settings.proxy_token,
    )
    add_check(
        "CONTRACT_PROXY_ALLOWED_HOSTS",
        bool(settings.proxy_allowed_hosts),
        detail=", ".join(settings.proxy_allowed_hosts) or "no hosts allowed",
        remedy="Set CONTRACT_PROXY_ALLOWED_HOSTS to a comma-separated list (wildcards like *.example.com).",
        level="info",
    )

    text_layer_ok = _check_text_layer_available()
    add_check(
        "pymupdf",
        text_layer_ok,
        detail="Text-layer readability checks enabled" if text_layer_ok else "Readability checks disabled",
        remedy="Install PyMuPDF (`pip install pymupdf`).",
        level="warn",
    )

    if settings.cache_disabled:
        add_check("CONTRACT_CACHE_DISABLE", True, detail="Contract cache disabled", level="info")
    elif settings.cache_path is not None:
        writable = _check_writable(Path(settings.cache_path))
        add_check(
            "CONTRACT_CACHE_PATH",
            writable,
            detail=f"{settings.cache_path} (budget {format_size(settings.cache_max_bytes)})",
            remedy="Create the cache directory or set CONTRACT_CACHE_PATH to a writable location.",
            level="warn",
        )

    add_check(
        "limits",
        True,
        detail=(
            f"max document {format_size(settings.max_document_bytes)}, "
            f"fetch timeout {settings.fetch_timeout_ms} ms, "
            f"size probe timeout {settings.size_probe_timeout_ms} ms"
        ),
        level="info",
    )
    return report


def format_doctor_report(report: Dict[str, Any]) -> str:
    lines: List[str] = []
    lines.append("Contract fetcher doctor")
    lines.append(f"Generated: {report.get('generated_at')}")
    lines.append("Values are redacted where applicable.")
    lines.append("")
    for check in report.get("checks", []):
        name = check.get("name", "check")
        status = check.get("status", "unknown")
        level = check.get("level", "info")
        detail = check.get("detail")
        value = check.get("value")
        label = f"{name}: {status}"
        if value:
            label = f"{label} ({value})"
        lines.append(f"- [{level}] {label}")
        if detail:
            lines.append(f"  detail: {detail}")
        remedy = check.get("remedy")
        if remedy:
            lines.append(f"  remedy: {remedy}")
    warnings = report.get("environment_warnings") or []
    if warnings:
        lines.append("")
        lines.append("Environment warnings:")
        for warning in warnings:
            lines.append(f"- {warning.get('code', 'warning')}: {warning.get('message', '')}")
    return "\n".join(lines).rstrip() + "\n"


__all__ = ["build_doctor_report", "format_doctor_report", "redact_value"]
