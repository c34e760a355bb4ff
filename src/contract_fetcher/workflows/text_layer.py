"""Text-layer reader for acquired contract PDFs (PyMuPDF)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple

try:  # Prefer classic fitz alias; fall back to pymupdf if needed
    import fitz  # type: ignore
except ImportError:  # pragma: no cover - environment-specific
    import pymupdf as fitz  # type: ignore

logger = logging.getLogger(__name__)


class TextLayerError(RuntimeError):
    """The document could not be opened or is password-protected."""


def _words_fallback(doc: Any) -> str:
    word_text: List[str] = []
    for page in doc:
        words = page.get_text("words") or []
        if not words:
            continue
        ordered = sorted(words, key=lambda w: (w[3], w[0]))
        builder: List[str] = []
        last_y = None
        for x0, y0, x1, y1, word, *_ in ordered:
            if last_y is not None and abs(y0 - last_y) > 2.5:
                builder.append("\n")
            builder.append(word)
            builder.append(" ")
            last_y = y0
        text = "".join(builder).strip()
        if text:
            word_text.append(text)
    return "\n".join(word_text)


def extract_pdf_text(raw_bytes: bytes, source: str = "<memory>") -> Tuple[str, Dict[str, Any]]:
    """Return the concatenated page text plus extraction metadata.

    Raises TextLayerError when the bytes are not an openable PDF or when the
    document needs a password; callers classify that as ``parse_error``.
    """

    try:
        doc = fitz.open(stream=raw_bytes, filetype="pdf")
    except Exception as exc:
        raise TextLayerError(f"PDF open failed for {source}: {exc}") from exc
    metadata: Dict[str, Any] = {}
    try:
        # Recent PyMuPDF opens arbitrary bytes as a one-page non-PDF document.
        if not doc.is_pdf or doc.page_count == 0:
            raise TextLayerError(f"Not a readable PDF: {source}")
        if bool(getattr(doc, "needs_pass", False)):
            raise TextLayerError(f"PDF is password-protected: {source}")
        metadata["page_count"] = doc.page_count
        text_parts: List[str] = []
        for page in doc:
            page_text = page.get_text("text") or ""
            if page_text:
                text_parts.append(page_text.strip())
        full_text = "\n".join(part for part in text_parts if part)
        if not full_text.strip():
            full_text = _words_fallback(doc)
            metadata["words_fallback"] = True
    finally:
        doc.close()
    metadata["text_length"] = len(full_text)
    logger.debug("Extracted %d chars from %s", len(full_text), source)
    return full_text, metadata


__all__ = ["TextLayerError", "extract_pdf_text", "fitz"]
