import asyncio
import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from contract_fetcher.cli import _run_find, app
from contract_fetcher.workflows.acquire import ContractFetcher
from contract_fetcher.workflows.blob_store import SqliteBlobStore
from contract_fetcher.workflows.contract_cache import ContractCache
from contract_fetcher.workflows.fetch_utils import build_cache_key


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def cache_env(monkeypatch, tmp_path: Path) -> Path:
    path = tmp_path / "cache" / "blobs.sqlite3"
    monkeypatch.setenv("CONTRACT_CACHE_PATH", str(path))
    monkeypatch.delenv("CONTRACT_CACHE_DISABLE", raising=False)
    return path


def _last_json(output: str):
    return json.loads(output.strip().splitlines()[-1])


def test_no_args_prints_minimal_help(cli_runner) -> None:
    result = cli_runner.invoke(app, [])
    assert result.exit_code == 0
    assert "contract-fetcher get <url>" in result.output


def test_help_full_lists_env_vars(cli_runner) -> None:
    result = cli_runner.invoke(app, ["--help-full"])
    assert result.exit_code == 0
    assert "CONTRACT_PROXY_ENDPOINT" in result.output


def test_find_matches_commands_and_env() -> None:
    output = _run_find("proxy")
    assert "command serve-proxy" in output
    assert "env CONTRACT_PROXY_TOKEN" in output
    assert _run_find("  ") == ""


def test_classify_prints_record(cli_runner) -> None:
    result = cli_runner.invoke(app, ["classify", "--status", "404", "--url", "https://example.com/c.pdf"])
    assert result.exit_code == 0
    payload = _last_json(result.stdout)
    assert payload["category"] == "http_not_found"
    assert payload["confidence"] == "high"


def test_classify_comment(cli_runner) -> None:
    result = cli_runner.invoke(app, ["classify", "--content-type", "text/html", "--comment"])
    assert result.exit_code == 0
    assert "[AUTO] Contract failed to load" in result.output
    assert "Reason: not_pdf (medium confidence)" in result.output


def test_get_invalid_url_reports_failure(cli_runner, cache_env) -> None:
    result = cli_runner.invoke(app, ["get", "ftp://example.com/c.pdf", "--sheet", "Vendors", "--row", "1", "--json"])
    assert result.exit_code == 1
    payload = _last_json(result.stdout)
    assert payload["ok"] is False
    assert payload["failure"]["category"] == "invalid_url"


def test_get_soft_fail(cli_runner, cache_env) -> None:
    result = cli_runner.invoke(
        app, ["get", "ftp://example.com/c.pdf", "--sheet", "Vendors", "--row", "1", "--soft-fail"]
    )
    assert result.exit_code == 0


def test_get_cancelled_acquisition_exits_3(cli_runner, cache_env, monkeypatch) -> None:
    async def cancelled(self, sheet_name, row_index, url):
        return None

    monkeypatch.setattr(ContractFetcher, "acquire", cancelled)
    result = cli_runner.invoke(app, ["get", "https://example.com/c.pdf", "--sheet", "Vendors", "--row", "1"])
    assert result.exit_code == 3
    assert "cancelled" in result.output


def test_preflight_reports_findings(cli_runner, tmp_path: Path) -> None:
    sheets = [
        {
            "name": "Vendors",
            "headers": ["Vendor", "Contract"],
            "rows": [{"Contract": "https://example.com/ok.pdf"}, {"Contract": "ftp://example.com/x.pdf"}],
        }
    ]
    path = tmp_path / "sheets.json"
    path.write_text(json.dumps(sheets), encoding="utf-8")

    result = cli_runner.invoke(app, ["preflight", str(path)])

    assert result.exit_code == 1
    payload = _last_json(result.stdout)
    assert payload["invalid"] == 1
    assert payload["findings"][0]["row_index"] == 1


def test_cache_stats_and_clear_row(cli_runner, cache_env) -> None:
    key = build_cache_key("Vendors", 4, "https://example.com/c.pdf")
    cache = ContractCache(SqliteBlobStore(cache_env), max_bytes=10_000)
    asyncio.run(cache.cache_contract(key, b"%PDF-1.4", "https://example.com/c.pdf", "application/pdf"))
    cache.close()

    stats = cli_runner.invoke(app, ["cache", "stats", "--json"])
    assert stats.exit_code == 0
    assert _last_json(stats.stdout)["count"] == 1

    keys = cli_runner.invoke(app, ["cache", "keys"])
    assert key in keys.output

    cleared = cli_runner.invoke(app, ["cache", "clear", "--sheet", "Vendors", "--row", "4"])
    assert cleared.exit_code == 0
    assert "removed 1 cached contract(s)" in cleared.output


def test_cache_clear_requires_sheet_and_row_together(cli_runner, cache_env) -> None:
    result = cli_runner.invoke(app, ["cache", "clear", "--sheet", "Vendors"])
    assert result.exit_code == 2


def test_cache_disabled(cli_runner, monkeypatch) -> None:
    monkeypatch.setenv("CONTRACT_CACHE_DISABLE", "1")
    result = cli_runner.invoke(app, ["cache", "stats"])
    assert result.exit_code == 2


def test_doctor_json(cli_runner, cache_env, monkeypatch) -> None:
    monkeypatch.setenv("CONTRACT_PROXY_ENDPOINT", "https://proxy.example.com/")
    monkeypatch.setenv("CONTRACT_PROXY_TOKEN", "abcdefghijklmnop")

    result = cli_runner.invoke(app, ["doctor", "--json"])

    assert result.exit_code == 0
    report = _last_json(result.stdout)
    checks = {check["name"]: check for check in report["checks"]}
    assert checks["CONTRACT_PROXY_ENDPOINT"]["status"] == "ok"
    assert checks["CONTRACT_PROXY_TOKEN"]["value"] == "abcd...mnop"
    assert checks["pymupdf"]["status"] == "ok"


def test_doctor_flags_missing_proxy(cli_runner, cache_env, monkeypatch) -> None:
    monkeypatch.delenv("CONTRACT_PROXY_ENDPOINT", raising=False)
    result = cli_runner.invoke(app, ["--doctor"])
    assert result.exit_code == 2
    assert "Contract fetcher doctor" in result.output
    assert "CONTRACT_PROXY_ENDPOINT: missing" in result.output
