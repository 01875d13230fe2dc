"""Text preprocessing to cut prompt size before extraction.

Removes OCR and page artifacts, compresses table spacing and common PO labels,
and normalizes whitespace. If the result loses a key signal that the raw text
had (PO label, supplier, totals, line-item headers), the raw text is used.
"""

import logging
import re
from datetime import datetime
from typing import Dict, List, Optional, Pattern

from ..core.exceptions import PreprocessingError
from ..core.models import PreprocessOptions, PreprocessResult
from .anchors import AnchorExtractor

logger = logging.getLogger(__name__)

PREPROCESSING_FAILED_ISSUE = "Text preprocessing failed; extraction used raw text"

OCR_ARTIFACTS: List[Pattern] = [
    re.compile(r"Scanned by [^\n]+", re.IGNORECASE),
    re.compile(r"Page \d+ of \d+", re.IGNORECASE),
    re.compile(r"--- Page Break ---", re.IGNORECASE),
    re.compile(r"\[Barcode: [^\]]+\]", re.IGNORECASE),
    re.compile(r"Document ID: [^\n]+", re.IGNORECASE),
    re.compile(r"Print Date: [^\n]+", re.IGNORECASE),
    re.compile(r"Generated on [^\n]+", re.IGNORECASE),
    re.compile(r"This document was electronically generated[^\n]*", re.IGNORECASE),
    re.compile(r"Powered by (?:QuickBooks|Xero|SAP)[^\n]*", re.IGNORECASE),
    re.compile(r"Please retain for your records[^\n]*", re.IGNORECASE),
    re.compile(r"\[(?:DRAFT|COPY|DUPLICATE)\]", re.IGNORECASE),
]

KEY_SIGNAL_PATTERNS: Dict[str, Pattern] = {
    "po_number": re.compile(r"\b(?:purchase\s+order|po|p\.o\.)\s*(?:number|no\.?|#)", re.IGNORECASE),
    "invoice": re.compile(r"\binvoice\s*(?:number|no\.?|#)", re.IGNORECASE),
    "supplier": re.compile(r"\b(?:supplier|vendor)\b", re.IGNORECASE),
    "totals": re.compile(r"\b(?:grand\s+)?total\b", re.IGNORECASE),
    "line_items": re.compile(r"\b(?:qty|quantity|description|unit\s*price|amount)\b", re.IGNORECASE),
}

_PO_NUMBER = re.compile(
    r"\b(?:Purchase\s+Order|P\.?O\.?)\s*(?:(?:Number|No\.?|#)\s*:?|:)\s*([A-Za-z0-9][\w\-/]*)",
    re.IGNORECASE
)
_ORDER_DATE = re.compile(
    r"\b(?:Invoice|Order|PO)\s+Date\s*:?\s*([A-Za-z]+\.?\s+\d{1,2},?\s+\d{4})",
    re.IGNORECASE
)
_SUPPLIER_NAME = re.compile(r"\b(?:Supplier|Vendor)\s+Name\s*:?\s*([^\n]+)", re.IGNORECASE)
_TOTAL = re.compile(
    r"\b(?:Grand\s+Total|Total)\s*:?\s*\$?\s*(\d[\d,]*(?:\.\d+)?)",
    re.IGNORECASE
)
_TABLE_GAP = re.compile(r"[ ]{2,}|\t+")
_DATE_FORMATS = ("%B %d %Y", "%b %d %Y")


def normalize_date(date_str: str) -> Optional[str]:
    """Normalize "April 5, 2025" to "2025-04-05"; None when unparseable."""
    cleaned = re.sub(r"[.,]", " ", date_str)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def count_key_signals(text: str) -> Dict[str, int]:
    if not text:
        return {key: 0 for key in KEY_SIGNAL_PATTERNS}
    return {key: len(pattern.findall(text)) for key, pattern in KEY_SIGNAL_PATTERNS.items()}


class TextPreprocessor:
    """Preprocessing pipeline with per-vendor artifact sets."""

    def __init__(self, anchor_extractor: Optional[AnchorExtractor] = None):
        self.anchor_extractor = anchor_extractor or AnchorExtractor()
        self._vendor_artifacts: Dict[str, List[Pattern]] = {}

    def register_vendor_artifacts(self, vendor_key: str, patterns: List[str | Pattern]) -> None:
        """Register extra boilerplate patterns stripped for one vendor."""
        if not vendor_key or not isinstance(vendor_key, str):
            raise ValueError("vendor_key must be a non-empty string")

        compiled = [p if isinstance(p, re.Pattern) else re.compile(p, re.IGNORECASE) for p in patterns]
        existing = self._vendor_artifacts.get(vendor_key, [])
        self._vendor_artifacts[vendor_key] = [*existing, *compiled]

    def preprocess(self, raw_text: str, options: Optional[PreprocessOptions] = None) -> PreprocessResult:
        """Run the enabled steps and guard against losing key signals.

        Raises:
            PreprocessingError: If a step fails unexpectedly
        """
        options = options or PreprocessOptions()
        original_length = len(raw_text)
        optimized = raw_text
        anchor_extraction = None

        if options.remove_artifacts:
            optimized = self._run("remove_artifacts", self.clean_ocr_text, optimized, options.vendor_key)
        if options.compress_tables:
            optimized = self._run("compress_tables", self.compress_line_item_tables, optimized)
        if options.normalize_whitespace:
            optimized = self._run("normalize_whitespace", self.normalize_whitespace, optimized)
        if options.compress_patterns:
            optimized = self._run("compress_patterns", self.compress_po_format, optimized)
        if options.use_anchor_extraction:
            anchor_extraction = self._run(
                "anchor_extraction", self.anchor_extractor.extract, optimized, options.pattern_set
            )
            if anchor_extraction.applied:
                optimized = anchor_extraction.combined_text

        fallback_reasons: List[str] = []
        if not optimized.strip():
            fallback_reasons.append("empty_output")
        else:
            original_signals = count_key_signals(raw_text)
            optimized_signals = count_key_signals(optimized)
            lost = [k for k, count in original_signals.items() if count > 0 and optimized_signals[k] == 0]
            if lost:
                fallback_reasons.append(f"lost_signals:{','.join(lost)}")

        if fallback_reasons:
            logger.warning(f"[PREPROCESS] Fallback to raw text ({'; '.join(fallback_reasons)})")
            optimized = raw_text

        optimized_length = len(optimized)
        reduction_percent = 0.0
        if original_length:
            reduction_percent = round((1 - optimized_length / original_length) * 100, 1)

        logger.debug(
            f"[PREPROCESS] {original_length} -> {optimized_length} chars ({reduction_percent}% reduction)"
        )

        return PreprocessResult(
            text=optimized,
            original_length=original_length,
            optimized_length=optimized_length,
            reduction_percent=reduction_percent,
            estimated_token_savings=max(0, (original_length - optimized_length) // 4),
            fallback_applied=bool(fallback_reasons),
            fallback_reasons=fallback_reasons,
            anchor_extraction=anchor_extraction,
        )

    @staticmethod
    def _run(step: str, func, *args):
        try:
            return func(*args)
        except Exception as e:
            raise PreprocessingError(step, e) from e

    def clean_ocr_text(self, text: str, vendor_key: Optional[str] = None) -> str:
        """Remove common OCR artifacts, watermarks and registered vendor boilerplate."""
        patterns = list(OCR_ARTIFACTS)
        if vendor_key:
            patterns.extend(self._vendor_artifacts.get(vendor_key, []))

        for pattern in patterns:
            text = pattern.sub("", text)
        return text

    @staticmethod
    def compress_line_item_tables(text: str) -> str:
        """Turn runs of spaces or tabs between table cells into ' | '."""
        lines = []
        for line in text.split("\n"):
            stripped = line.strip()
            if _TABLE_GAP.search(stripped):
                line = _TABLE_GAP.sub(" | ", stripped)
            lines.append(line)
        return "\n".join(lines)

    @staticmethod
    def normalize_whitespace(text: str) -> str:
        """Collapse spaces, trim lines and keep at most one blank line between blocks."""
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        text = re.sub(r"\t+", " ", text)
        text = re.sub(r"[ ]{2,}", " ", text)
        lines = [line.strip() for line in text.split("\n")]
        text = "\n".join(lines)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()

    @staticmethod
    def compress_po_format(text: str) -> str:
        """Shorten common PO labels."""
        text = _PO_NUMBER.sub(lambda m: f"PO#{m.group(1)}", text)

        def _date(m: re.Match) -> str:
            normalized = normalize_date(m.group(1))
            return f"Date:{normalized}" if normalized else m.group(0)

        text = _ORDER_DATE.sub(_date, text)
        text = _SUPPLIER_NAME.sub(lambda m: f"Supplier:{m.group(1).strip()}", text)
        text = _TOTAL.sub(lambda m: f"Total:{m.group(1).replace(',', '')}", text)
        return text
