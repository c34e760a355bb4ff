"""Readability evaluator: is a document's extracted text layer usable for verification?"""

from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from .eligibility import EligibleField
from .fetch_config import (
    GIBBERISH_RATIO_THRESHOLD,
    MIN_ELIGIBLE_FIELDS,
    MIN_EXTRACTED_TEXT_LENGTH,
    MIN_MATCHABLE_CHARS,
    MIN_MATCHED_FIELDS,
)

MATCHABLE = "matchable"
UNREADABLE = "unreadable"
INSUFFICIENT_EVIDENCE = "insufficient_evidence"
TEXT_EXTRACTION_FAILED = "text_extraction_failed"
DECISIONS = (MATCHABLE, UNREADABLE, INSUFFICIENT_EVIDENCE, TEXT_EXTRACTION_FAILED)

PDF_SOURCES = ("direct", "proxy", "cache")

_REPLACEMENT_CHAR = "\ufffd"
_NON_PRINTABLE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[^\w\s]")


def normalize_for_match(text: str) -> str:
    if not text or not isinstance(text, str):
        return ""
    collapsed = _WHITESPACE.sub(" ", text.lower().strip())
    return _PUNCTUATION.sub("", collapsed)


def compute_gibberish_ratio(text: str) -> float:
    """Share of replacement and control characters (tab/newline/CR excluded)."""

    if not text:
        return 0.0
    count = text.count(_REPLACEMENT_CHAR) + len(_NON_PRINTABLE.findall(text))
    return count / max(1, len(text))


def is_matchable_value(value: str) -> bool:
    return len(normalize_for_match(value)) >= MIN_MATCHABLE_CHARS


def text_contains_value(extracted_text: str, value: str) -> bool:
    if not extracted_text or not value:
        return False
    needle = normalize_for_match(value)
    if len(needle) < MIN_MATCHABLE_CHARS:
        return False
    return needle in normalize_for_match(extracted_text)


@dataclass
class ReadabilityVerdict:
    decision: str
    confidence: str
    reason: str
    eligible_field_count: int
    matched_field_count: int
    extracted_text_length: int
    gibberish_ratio: float
    eligible_field_names: List[str] = field(default_factory=list)
    matched_field_names: List[str] = field(default_factory=list)
    pdf_source: Optional[str] = None
    size_bytes: Optional[int] = None
    detected_at: str = ""

    @property
    def note(self) -> str:
        return build_review_note(self)

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def evaluate(
    extracted_text: Optional[str],
    eligible_fields: Sequence[EligibleField],
    pdf_source: Optional[str] = None,
    size_bytes: Optional[int] = None,
    *,
    min_matched_fields: int = MIN_MATCHED_FIELDS,
) -> ReadabilityVerdict:
    """Run the readability ladder; the first rung that applies decides.

    Too little text, then garbled text, then too few eligible fields, then a
    verbatim search for each eligible value in the normalized text.
    """

    text = extracted_text or ""
    length = len(text)
    ratio = compute_gibberish_ratio(text)
    eligible = list(eligible_fields)
    eligible_count = len(eligible)

    def verdict(decision: str, confidence: str, reason: str, matched: Sequence[EligibleField] = ()) -> ReadabilityVerdict:
        return ReadabilityVerdict(
            decision=decision,
            confidence=confidence,
            reason=reason,
            eligible_field_count=eligible_count,
            matched_field_count=len(matched),
            extracted_text_length=length,
            gibberish_ratio=ratio,
            eligible_field_names=[f.field_name for f in eligible],
            matched_field_names=[f.field_name for f in matched],
            pdf_source=pdf_source,
            size_bytes=size_bytes,
            detected_at=datetime.now(timezone.utc).isoformat(),
        )

    if length < MIN_EXTRACTED_TEXT_LENGTH:
        return verdict(
            TEXT_EXTRACTION_FAILED,
            "medium",
            f"Extracted text too short ({length} chars, minimum {MIN_EXTRACTED_TEXT_LENGTH})",
        )

    if ratio > GIBBERISH_RATIO_THRESHOLD:
        return verdict(
            UNREADABLE,
            "medium",
            f"High gibberish ratio ({ratio * 100:.1f}%, threshold {GIBBERISH_RATIO_THRESHOLD * 100:g}%)",
        )

    if eligible_count < MIN_ELIGIBLE_FIELDS:
        return verdict(
            INSUFFICIENT_EVIDENCE,
            "low",
            f"Insufficient eligible fields ({eligible_count}, minimum {MIN_ELIGIBLE_FIELDS})",
        )

    normalized_text = normalize_for_match(text)
    matched = [
        f
        for f in eligible
        if is_matchable_value(f.value) and normalize_for_match(f.value) in normalized_text
    ]

    if len(matched) < max(1, min_matched_fields):
        return verdict(
            UNREADABLE,
            "high",
            f"No eligible fields found in PDF text ({len(matched)}/{eligible_count} matched)"
            if not matched
            else f"Too few eligible fields found in PDF text ({len(matched)}/{eligible_count} matched, "
            f"minimum {min_matched_fields})",
            matched,
        )

    return verdict(
        MATCHABLE,
        "high",
        f"{len(matched)}/{eligible_count} eligible fields found in PDF text",
        matched,
    )


def build_review_note(verdict: ReadabilityVerdict) -> str:
    """Reviewer-facing one-paragraph summary of an unreadable or inconclusive verdict."""

    lines = [f"[AUTO] Contract text check: {verdict.decision} ({verdict.confidence} confidence)"]
    lines.append(f"Reason: {verdict.reason}")
    if verdict.eligible_field_names:
        lines.append(f"Checked fields: {', '.join(verdict.eligible_field_names)}")
    if verdict.pdf_source:
        lines.append(f"Source: {verdict.pdf_source}")
    return "\n".join(lines)


__all__ = [
    "DECISIONS",
    "INSUFFICIENT_EVIDENCE",
    "MATCHABLE",
    "TEXT_EXTRACTION_FAILED",
    "UNREADABLE",
    "ReadabilityVerdict",
    "build_review_note",
    "compute_gibberish_ratio",
    "evaluate",
    "is_matchable_value",
    "normalize_for_match",
    "text_contains_value",
]
