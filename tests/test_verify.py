import asyncio
import json

from contract_fetcher.workflows import verify as verify_mod
from contract_fetcher.workflows import failure_classifier as fc
from contract_fetcher.workflows import readability
from contract_fetcher.workflows.acquire import DocumentHandle
from contract_fetcher.workflows.eligibility import glossary_from_records
from contract_fetcher.workflows.failure_classifier import classify_failure
from contract_fetcher.workflows.fetch_config import PipelineSettings
from contract_fetcher.workflows.text_layer import TextLayerError

HEADERS = ["Vendor", "Contract", "Vendor_Name__c", "Account_Number__c"]
ROW = {
    "Vendor": "Acme",
    "Contract": "https://files.example.com/c.pdf",
    "Vendor_Name__c": "Acme Industrial Supply",
    "Account_Number__c": "AC-99812",
}
GLOSSARY = glossary_from_records(
    [
        {"field_key": "vendor_name__c", "required_status": "Required", "data_type": "text"},
        {"field_key": "account_number__c", "required_status": "Required", "data_type": "identifier"},
    ]
)


class _StubFetcher:
    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.settings = PipelineSettings(cache_path=None)
        self.requests = []

    async def acquire_request(self, request):
        self.requests.append(request)
        return self.outcome


def _handle(**overrides) -> DocumentHandle:
    values = {
        "data": b"%PDF-1.4",
        "content_type": "application/pdf",
        "size_bytes": 8,
        "source_url": ROW["Contract"],
        "cache_key": "Vendors_3_abcdefabcdef",
        "via_proxy": True,
    }
    values.update(overrides)
    return DocumentHandle(**values)


def test_matchable_row(monkeypatch) -> None:
    text = "Agreement with Acme Industrial Supply. Account AC-99812. " + "terms " * 60
    monkeypatch.setattr(verify_mod, "extract_pdf_text", lambda data, source: (text, {"page_count": 1}))
    fetcher = _StubFetcher(_handle())

    result = asyncio.run(verify_mod.verify_row(fetcher, "Vendors", 3, ROW["Contract"], HEADERS, ROW, GLOSSARY))

    assert result.failure is None
    assert result.verdict.decision == readability.MATCHABLE
    assert result.verdict.pdf_source == "proxy"
    assert result.extraction == {"page_count": 1}
    assert [f.field_name for f in result.eligible_fields] == ["Vendor_Name__c", "Account_Number__c"]
    assert fetcher.requests[0].row_index == 3
    payload = json.loads(result.to_json())
    assert payload["verdict"]["decision"] == "matchable"
    assert payload["document"]["via_proxy"] is True


def test_acquisition_failure_has_no_verdict() -> None:
    failure = classify_failure(http_status=404)
    result = asyncio.run(
        verify_mod.verify_row(_StubFetcher(failure), "Vendors", 3, ROW["Contract"], HEADERS, ROW, GLOSSARY)
    )
    assert result.failure is failure
    assert result.verdict is None
    assert result.document is None


def test_unopenable_pdf_is_parse_error(monkeypatch) -> None:
    def boom(data, source):
        raise TextLayerError("PDF is password-protected")

    monkeypatch.setattr(verify_mod, "extract_pdf_text", boom)
    result = asyncio.run(
        verify_mod.verify_row(_StubFetcher(_handle()), "Vendors", 3, ROW["Contract"], HEADERS, ROW, GLOSSARY)
    )
    assert result.failure.category == fc.PARSE_ERROR
    assert result.failure.used_proxy is True
    assert result.verdict is None


def test_no_eligible_fields_skips_verdict(monkeypatch) -> None:
    monkeypatch.setattr(verify_mod, "extract_pdf_text", lambda data, source: ("x" * 500, {}))
    row = {"Vendor": "Acme", "Contract": ROW["Contract"], "Vendor_Name__c": "N/A", "Account_Number__c": ""}
    result = asyncio.run(
        verify_mod.verify_row(_StubFetcher(_handle()), "Vendors", 3, ROW["Contract"], HEADERS, row, GLOSSARY)
    )
    assert result.failure is None
    assert result.eligible_fields == []
    assert result.verdict is None


def test_superseded_acquisition_returns_none() -> None:
    result = asyncio.run(
        verify_mod.verify_row(_StubFetcher(None), "Vendors", 3, ROW["Contract"], HEADERS, ROW, GLOSSARY)
    )
    assert result is None
