"""Row-level pipeline: acquire the contract, read its text layer, judge readability."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..core.keys import K_ROW, K_SHEET, K_URL
from .acquire import ContractFetcher, DocumentHandle, FetchRequest
from .eligibility import EligibleField, GlossaryEntry, select_fields
from .failure_classifier import FailureRecord, FailureSignals, classify_failure
from .readability import ReadabilityVerdict, evaluate
from .text_layer import TextLayerError, extract_pdf_text

logger = logging.getLogger(__name__)


@dataclass
class RowVerification:
    request: FetchRequest
    document: Optional[DocumentHandle] = None
    failure: Optional[FailureRecord] = None
    verdict: Optional[ReadabilityVerdict] = None
    eligible_fields: List[EligibleField] = field(default_factory=list)
    extraction: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            K_URL: self.request.url,
            K_SHEET: self.request.sheet_name,
            K_ROW: self.request.row_index,
            "eligible_fields": [f.to_dict() for f in self.eligible_fields],
        }
        if self.document is not None:
            payload["document"] = self.document.to_dict()
        if self.failure is not None:
            payload["failure"] = self.failure.to_dict()
        if self.verdict is not None:
            payload["verdict"] = self.verdict.to_dict()
        if self.extraction:
            payload["extraction"] = self.extraction
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


async def verify_row(
    fetcher: ContractFetcher,
    sheet_name: str,
    row_index: int,
    url: str,
    headers: Sequence[str],
    row: Mapping[str, Any],
    glossary: Optional[Mapping[str, GlossaryEntry]] = None,
) -> Optional[RowVerification]:
    """Acquire and check one row's contract. None when the acquisition was superseded.

    A verdict is produced only for loaded documents whose text layer opened
    and whose row has at least one eligible field.
    """

    request = FetchRequest(url=url, sheet_name=sheet_name, row_index=row_index)
    outcome = await fetcher.acquire_request(request)
    if outcome is None:
        return None
    fields = select_fields(headers, row, glossary)
    result = RowVerification(request=request, eligible_fields=fields)
    if isinstance(outcome, FailureRecord):
        result.failure = outcome
        return result
    result.document = outcome

    try:
        text, meta = extract_pdf_text(outcome.data, source=outcome.source_url)
    except TextLayerError as exc:
        logger.warning("Text layer unreadable for %s: %s", request.cache_key, exc)
        result.failure = classify_failure(
            FailureSignals(
                url=outcome.source_url,
                error_code="pdf_parse_error",
                content_type=outcome.content_type,
                size_bytes=outcome.size_bytes,
                used_proxy=outcome.via_proxy,
                thrown_message=str(exc),
            ),
            max_bytes=fetcher.settings.max_document_bytes,
        )
        return result
    result.extraction = meta

    if not fields:
        logger.info("No eligible fields for %s; skipping readability check", request.cache_key)
        return result
    result.verdict = evaluate(
        text,
        fields,
        pdf_source=outcome.source,
        size_bytes=outcome.size_bytes,
        min_matched_fields=fetcher.settings.min_matched_fields,
    )
    return result


__all__ = ["RowVerification", "verify_row"]
