from __future__ import annotations

import asyncio
import csv
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from dotenv import load_dotenv

from .workflows.acquire import ContractFetcher, DocumentHandle, FetchRequest
from .workflows.contract_cache import format_cache_size, open_contract_cache
from .workflows.doctor import build_doctor_report, format_doctor_report
from .workflows.eligibility import glossary_from_records
from .workflows.failure_classifier import (
    FailureRecord,
    FailureSignals,
    build_review_comment,
    classify_failure,
    preflight_contract_urls,
)
from .workflows.fetch_config import PipelineSettings, load_settings_from_env
from .workflows.proxy_server import ProxyServerSettings, run_proxy
from .workflows.verify import verify_row

app = typer.Typer(add_help_option=False, no_args_is_help=False)
cache_app = typer.Typer(help="Inspect or clear the local contract cache.")
app.add_typer(cache_app, name="cache")


def _minimal_help() -> str:
    return """Contract fetcher

Usage:
  contract-fetcher get <url> --sheet <NAME> --row <N> [--out <FILE>] [--json] [--soft-fail]
  contract-fetcher get-manifest <manifest.csv|-> [--concurrency N] [--json] [--soft-fail]
  contract-fetcher verify <url> --sheet <NAME> --row <N> --row-json <FILE> [--glossary <FILE>]
  contract-fetcher classify [--url U] [--status N] [--content-type T] [--size N] [--error-code C] [--message M]
  contract-fetcher preflight <sheets.json>
  contract-fetcher cache stats|keys|clear
  contract-fetcher serve-proxy [--host H] [--port P]
  contract-fetcher doctor

Discoverability:
  --help-full     Expanded help + env vars.
  --find <query>  Search commands, flags, env vars.
  --doctor        Run environment diagnostics and exit.
  --verbose       Log pipeline steps to stderr.
"""


def _help_full() -> str:
    return """Contract fetcher CLI

Commands:
  get            Acquire one contract (cache, direct fetch, proxy fallback).
  get-manifest   Acquire many contracts from a CSV manifest (sheet_name,row_index,url).
  verify         Acquire a contract and judge whether its text layer is usable.
  classify       Classify a failure from raw signals and print the record.
  preflight      Flag malformed contract links across already-parsed sheets.
  cache          stats | keys | clear [--sheet NAME --row N].
  serve-proxy    Run the fallback proxy server.
  doctor         Print environment and dependency diagnostics.

Exit codes:
  0  success (or --soft-fail)
  1  at least one acquisition failed
  2  bad input / doctor found problems
  3  fatal error

Important env vars:
  CONTRACT_PROXY_ENDPOINT
  CONTRACT_PROXY_TOKEN
  CONTRACT_PROXY_ALLOWED_HOSTS
  CONTRACT_PROXY_DISABLE
  CONTRACT_MAX_DOCUMENT_BYTES
  CONTRACT_FETCH_TIMEOUT_MS
  CONTRACT_SIZE_PROBE_TIMEOUT_MS
  CONTRACT_CACHE_PATH
  CONTRACT_CACHE_MAX_BYTES
  CONTRACT_CACHE_DISABLE
  CONTRACT_MIN_MATCHED_FIELDS
"""


_FIND_INDEX = [
    ("command", "get", "Acquire one contract."),
    ("command", "get-manifest", "Acquire contracts listed in a CSV manifest."),
    ("command", "verify", "Acquire a contract and judge text-layer readability."),
    ("command", "classify", "Classify a failure from raw signals."),
    ("command", "preflight", "Flag malformed contract links in parsed sheets."),
    ("command", "cache", "Inspect or clear the contract cache."),
    ("command", "serve-proxy", "Run the fallback proxy server."),
    ("command", "doctor", "Print environment and dependency diagnostics."),
    ("flag", "--sheet", "Sheet name used in the cache key."),
    ("flag", "--row", "Row index used in the cache key."),
    ("flag", "--out", "Write the acquired bytes to this file."),
    ("flag", "--json", "Print JSON to stdout only."),
    ("flag", "--soft-fail", "Exit 0 even if acquisitions fail."),
    ("flag", "--no-cache", "Bypass the contract cache for this run."),
    ("flag", "--help-full", "Expanded help and env vars."),
    ("flag", "--find", "Search commands, flags, env vars."),
    ("flag", "--doctor", "Run environment diagnostics and exit."),
    ("flag", "--verbose", "Log pipeline steps to stderr."),
    ("env", "CONTRACT_PROXY_ENDPOINT", "Proxy URL used for the fallback fetch."),
    ("env", "CONTRACT_PROXY_TOKEN", "Bearer token sent to the proxy."),
    ("env", "CONTRACT_PROXY_ALLOWED_HOSTS", "Hosts eligible for the proxy fallback."),
    ("env", "CONTRACT_PROXY_DISABLE", "Disable the proxy fallback."),
    ("env", "CONTRACT_MAX_DOCUMENT_BYTES", "Maximum proxied document size."),
    ("env", "CONTRACT_FETCH_TIMEOUT_MS", "Per-attempt fetch timeout."),
    ("env", "CONTRACT_CACHE_PATH", "SQLite cache file location."),
    ("env", "CONTRACT_CACHE_MAX_BYTES", "Cache byte budget."),
    ("env", "CONTRACT_CACHE_DISABLE", "Disable cache read/write."),
]


def _run_find(query: str) -> str:
    needle = (query or "").strip().lower()
    if not needle:
        return ""
    lines = []
    for category, name, desc in _FIND_INDEX:
        haystack = f"{category} {name} {desc}".lower()
        if needle in haystack:
            lines.append(f"{category} {name} - {desc}")
    return "\n".join(lines)


def _settings(no_cache: bool = False) -> PipelineSettings:
    settings = load_settings_from_env()
    if no_cache:
        settings = replace(settings, cache_disabled=True)
    return settings


def _emit_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")


def _load_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise typer.BadParameter(f"cannot read {path}: {exc}") from exc


def _load_manifest(path_or_dash: str) -> List[FetchRequest]:
    if path_or_dash == "-":
        lines = sys.stdin.read().splitlines()
    else:
        lines = Path(path_or_dash).read_text(encoding="utf-8").splitlines()
    requests: List[FetchRequest] = []
    for lineno, record in enumerate(csv.DictReader(lines), start=2):
        url = (record.get("url") or "").strip()
        sheet = (record.get("sheet_name") or "").strip()
        row_raw = (record.get("row_index") or "").strip()
        if not url or not sheet or not row_raw:
            raise ValueError(f"line {lineno}: sheet_name, row_index and url are required")
        try:
            row_index = int(row_raw)
        except ValueError as exc:
            raise ValueError(f"line {lineno}: row_index must be an integer") from exc
        requests.append(FetchRequest(url=url, sheet_name=sheet, row_index=row_index))
    return requests


def _load_glossary(path: Optional[Path]) -> Optional[Dict[str, Any]]:
    if path is None:
        return None
    if path.suffix.lower() == ".csv":
        with path.open(encoding="utf-8", newline="") as handle:
            return glossary_from_records(csv.DictReader(handle))
    data = _load_json(path)
    if not isinstance(data, list):
        raise typer.BadParameter("glossary JSON must be a list of entries")
    return glossary_from_records(data)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    help: bool = typer.Option(False, "--help", "-h", is_eager=True, help="Show minimal help."),
    help_full: bool = typer.Option(False, "--help-full", is_eager=True, help="Show expanded help."),
    find: Optional[str] = typer.Option(None, "--find", is_eager=True, help="Search commands, flags, env vars."),
    doctor: bool = typer.Option(False, "--doctor", is_eager=True, help="Run environment diagnostics and exit."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log pipeline steps to stderr."),
) -> None:
    load_dotenv(override=False)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if help_full:
        typer.echo(_help_full())
        raise typer.Exit(code=0)
    if find is not None:
        output = _run_find(find)
        if output:
            typer.echo(output)
        raise typer.Exit(code=0)
    if doctor:
        report = build_doctor_report()
        typer.echo(format_doctor_report(report))
        raise typer.Exit(code=0 if report.get("ok", True) else 2)
    if help or ctx.invoked_subcommand is None:
        typer.echo(_minimal_help())
        raise typer.Exit(code=0)


@app.command("doctor", add_help_option=True)
def doctor_cmd(json_out: bool = typer.Option(False, "--json", help="Print the report as JSON.")) -> None:
    """Print environment and dependency diagnostics."""
    report = build_doctor_report()
    if json_out:
        _emit_json(report)
    else:
        typer.echo(format_doctor_report(report))
    raise typer.Exit(code=0 if report.get("ok", True) else 2)


@app.command("get", add_help_option=True)
def get_contract(
    url: str = typer.Argument(..., help="Contract URL."),
    sheet: str = typer.Option(..., "--sheet", help="Sheet name used in the cache key."),
    row: int = typer.Option(..., "--row", help="Row index used in the cache key."),
    out: Optional[Path] = typer.Option(None, "--out", help="Write the acquired bytes to this file."),
    json_out: bool = typer.Option(False, "--json", help="Print JSON to stdout only."),
    soft_fail: bool = typer.Option(False, "--soft-fail", help="Exit 0 even if the acquisition fails."),
    no_cache: bool = typer.Option(False, "--no-cache", help="Bypass the contract cache."),
) -> None:
    async def _run() -> Any:
        async with ContractFetcher(_settings(no_cache)) as fetcher:
            return await fetcher.acquire(sheet, row, url)

    try:
        outcome = asyncio.run(_run())
    except Exception as exc:
        if not json_out:
            typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)

    if isinstance(outcome, DocumentHandle):
        if out is not None:
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_bytes(outcome.data)
        if json_out:
            _emit_json({"ok": True, "document": outcome.to_dict()})
        else:
            typer.echo(f"ok: {outcome.size_bytes} bytes via {outcome.source} ({outcome.content_type})")
        raise typer.Exit(code=0)

    if not isinstance(outcome, FailureRecord):
        # Superseded by a newer acquisition of the same row; nothing to report.
        if not json_out:
            typer.echo("fatal: acquisition was cancelled", err=True)
        raise typer.Exit(code=3)
    if json_out:
        _emit_json({"ok": False, "failure": outcome.to_dict()})
    else:
        typer.echo(build_review_comment(outcome), err=True)
    raise typer.Exit(code=0 if soft_fail else 1)


@app.command("get-manifest", add_help_option=True)
def get_manifest(
    path_or_dash: str = typer.Argument(..., help="CSV manifest (sheet_name,row_index,url) or '-' for stdin."),
    concurrency: int = typer.Option(4, "--concurrency", min=1, help="Parallel acquisitions."),
    json_out: bool = typer.Option(False, "--json", help="Print JSON to stdout only."),
    soft_fail: bool = typer.Option(False, "--soft-fail", help="Exit 0 even if some acquisitions fail."),
    no_cache: bool = typer.Option(False, "--no-cache", help="Bypass the contract cache."),
) -> None:
    try:
        requests = _load_manifest(path_or_dash)
    except (OSError, ValueError) as exc:
        if not json_out:
            typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)

    def _progress(done: int, total: int, request: FetchRequest, result: Any) -> None:
        if not json_out:
            status = "ok" if result.ok else (result.failure.category if result.failure else "superseded")
            typer.echo(f"[{done}/{total}] {request.sheet_name}#{request.row_index} {status}", err=True)

    async def _run() -> Any:
        async with ContractFetcher(_settings(no_cache)) as fetcher:
            return await fetcher.acquire_many(requests, progress_hook=_progress, concurrency=concurrency)

    try:
        results, audit = asyncio.run(_run())
    except Exception as exc:
        if not json_out:
            typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    if json_out:
        _emit_json({"audit": audit, "results": [r.to_dict() for r in results]})
    else:
        typer.echo(
            f"requested={audit['requested']} acquired={audit['acquired']} "
            f"failed={audit['failed']} cache_hits={audit['cache_hits']}"
        )
    failed = audit["failed"] > 0
    raise typer.Exit(code=1 if failed and not soft_fail else 0)


@app.command("verify", add_help_option=True)
def verify_contract(
    url: str = typer.Argument(..., help="Contract URL."),
    sheet: str = typer.Option(..., "--sheet", help="Sheet name used in the cache key."),
    row: int = typer.Option(..., "--row", help="Row index used in the cache key."),
    row_json: Path = typer.Option(..., "--row-json", help='JSON file: {"headers": [...], "row": {...}}.'),
    glossary_path: Optional[Path] = typer.Option(None, "--glossary", help="Glossary as JSON list or CSV."),
    json_out: bool = typer.Option(False, "--json", help="Print JSON to stdout only."),
    no_cache: bool = typer.Option(False, "--no-cache", help="Bypass the contract cache."),
) -> None:
    payload = _load_json(row_json)
    if not isinstance(payload, dict) or not isinstance(payload.get("headers"), list):
        raise typer.BadParameter("--row-json must contain 'headers' (list) and 'row' (object)")
    headers = [str(h) for h in payload["headers"]]
    row_data = payload.get("row") or {}
    glossary = _load_glossary(glossary_path)

    async def _run() -> Any:
        async with ContractFetcher(_settings(no_cache)) as fetcher:
            return await verify_row(fetcher, sheet, row, url, headers, row_data, glossary)

    try:
        result = asyncio.run(_run())
    except Exception as exc:
        if not json_out:
            typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    if result is None:
        raise typer.Exit(code=3)
    if json_out:
        _emit_json(result.to_dict())
    elif result.failure is not None:
        typer.echo(build_review_comment(result.failure))
    elif result.verdict is not None:
        typer.echo(result.verdict.note)
    else:
        typer.echo("loaded; no eligible fields to check")
    raise typer.Exit(code=1 if result.failure is not None else 0)


@app.command("classify", add_help_option=True)
def classify_cmd(
    url: Optional[str] = typer.Option(None, "--url"),
    status: Optional[int] = typer.Option(None, "--status", help="HTTP status code."),
    content_type: Optional[str] = typer.Option(None, "--content-type"),
    size: Optional[int] = typer.Option(None, "--size", help="Declared size in bytes."),
    error_code: Optional[str] = typer.Option(None, "--error-code"),
    message: Optional[str] = typer.Option(None, "--message", help="Thrown error text."),
    signature_invalid: bool = typer.Option(False, "--signature-invalid", help="Bytes lack the PDF header."),
    comment: bool = typer.Option(False, "--comment", help="Print the reviewer comment instead of JSON."),
) -> None:
    """Classify a failure from raw signals."""
    record = classify_failure(
        FailureSignals(
            url=url,
            error_code=error_code,
            http_status=status,
            content_type=content_type,
            size_bytes=size,
            thrown_message=message,
            pdf_signature_valid=False if signature_invalid else None,
        ),
        max_bytes=load_settings_from_env().max_document_bytes,
    )
    if comment:
        typer.echo(build_review_comment(record))
    else:
        _emit_json(record.to_dict())


@app.command("preflight", add_help_option=True)
def preflight_cmd(
    sheets_json: Path = typer.Argument(..., help='JSON list of {"name", "headers", "rows"} sheets.'),
) -> None:
    """Flag contract links that would fail URL validation."""
    sheets = _load_json(sheets_json)
    if not isinstance(sheets, list):
        raise typer.BadParameter("sheets JSON must be a list")
    findings = preflight_contract_urls(sheets)
    _emit_json({"invalid": len(findings), "findings": findings})
    raise typer.Exit(code=1 if findings else 0)


@cache_app.command("stats")
def cache_stats(json_out: bool = typer.Option(False, "--json", help="Print JSON to stdout only.")) -> None:
    cache = open_contract_cache(_settings())
    if cache is None:
        typer.echo("cache disabled or unavailable", err=True)
        raise typer.Exit(code=2)
    try:
        stats = asyncio.run(cache.stats())
    finally:
        cache.close()
    if json_out:
        _emit_json(stats)
    else:
        typer.echo(
            f"{stats['count']} contract(s), {format_cache_size(stats['total_bytes'])} "
            f"of {format_cache_size(stats['max_bytes'])}"
        )


@cache_app.command("keys")
def cache_keys() -> None:
    cache = open_contract_cache(_settings())
    if cache is None:
        typer.echo("cache disabled or unavailable", err=True)
        raise typer.Exit(code=2)
    try:
        keys = asyncio.run(cache.cached_keys())
    finally:
        cache.close()
    for key in keys:
        typer.echo(key)


@cache_app.command("clear")
def cache_clear(
    sheet: Optional[str] = typer.Option(None, "--sheet", help="Only clear this sheet's row (requires --row)."),
    row: Optional[int] = typer.Option(None, "--row", help="Row index to clear."),
) -> None:
    if (sheet is None) != (row is None):
        raise typer.BadParameter("--sheet and --row must be given together")
    cache = open_contract_cache(_settings())
    if cache is None:
        typer.echo("cache disabled or unavailable", err=True)
        raise typer.Exit(code=2)
    try:
        if sheet is not None and row is not None:
            removed = asyncio.run(cache.clear_for_row(sheet, row))
        else:
            removed = asyncio.run(cache.clear_all())
    finally:
        cache.close()
    typer.echo(f"removed {removed} cached contract(s)")


@app.command("serve-proxy", add_help_option=True)
def serve_proxy(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8787, "--port"),
    allow_private: bool = typer.Option(
        False, "--allow-private", help="Permit private/loopback targets (local testing only)."
    ),
) -> None:
    """Run the fallback proxy server."""
    settings = ProxyServerSettings.from_pipeline(_settings(), block_private_networks=not allow_private)
    run_proxy(host=host, port=port, settings=settings)


__all__ = ["app"]
