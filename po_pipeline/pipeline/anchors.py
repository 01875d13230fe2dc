"""Anchor-based prompt shortening.

Keeps only text windows around purchase-order landmarks (PO number, supplier,
addresses, totals) plus the whole line-item table, joined with ``---``
separators. The shortened text is used only when it actually saves enough.
"""

import logging
import re
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..core.models import AnchorExtraction, AnchorSnippet

logger = logging.getLogger(__name__)

SNIPPET_SEPARATOR = "\n---\n"


class AnchorPattern(BaseModel):
    """One landmark to look for and how much context to keep around it."""
    id: str
    label: str
    pattern: str
    context_before: Optional[int] = Field(None, ge=0)
    context_after: Optional[int] = Field(None, ge=0)
    max_matches: Optional[int] = Field(None, ge=1)
    terminator_pattern: Optional[str] = Field(
        None,
        description="When set, capture from the match until a line starting with this pattern"
    )


class AnchorOptions(BaseModel):
    """Limits applied to a pattern set."""
    context_before: int = Field(default=60, ge=0)
    context_after: int = Field(default=160, ge=0)
    max_matches_per_pattern: int = Field(default=3, ge=1)
    min_reduction_percent: float = Field(default=10.0, ge=0)
    min_snippets: int = Field(default=1, ge=1)
    global_max_snippets: int = Field(default=50, ge=0, description="0 disables the cap")


DEFAULT_PATTERNS: List[AnchorPattern] = [
    AnchorPattern(
        id="po_number",
        label="Purchase Order",
        pattern=r"\b(?:purchase\s+order|po)\s*(?:number|no\.?|#)\s*[:#-]?\s*",
        context_before=40,
        context_after=140,
    ),
    AnchorPattern(
        id="invoice_number",
        label="Invoice Number",
        pattern=r"\b(?:invoice|inv)\s*(?:number|no\.?|#)\s*[:#-]?\s*",
        context_before=40,
        context_after=120,
    ),
    AnchorPattern(
        id="supplier",
        label="Supplier",
        pattern=r"\b(?:supplier|vendor|from)\s*(?:name|:)\s*",
        context_before=30,
        context_after=160,
    ),
    AnchorPattern(
        id="ship_to",
        label="Ship To",
        pattern=r"\b(?:ship\s*to|deliver\s*to|destination)\s*:?\s*",
        context_before=30,
        context_after=160,
    ),
    AnchorPattern(
        id="bill_to",
        label="Bill To",
        pattern=r"\b(?:bill\s*to|pay\s*to)\s*:?\s*",
        context_before=30,
        context_after=160,
    ),
    AnchorPattern(
        id="totals",
        label="Totals",
        pattern=r"\b(?:subtotal|tax|shipping|grand\s*total|total\s*(?:amount)?)\s*:?\s*",
        context_before=60,
        context_after=160,
    ),
    AnchorPattern(
        id="line_items",
        label="Line Items",
        pattern=r"\b(?:qty|quantity|description|unit\s*price|extended\s*price|item|product)\b",
        context_before=80,
        max_matches=1,
        terminator_pattern=(
            r"(?:subtotal|sub-total|sub\s+total|grand\s*total|total\s*(?:amount)?|"
            r"payment\s*terms|notes|comments|thank\s*you|signature)"
        ),
    ),
]


class AnchorExtractor:
    """Extracts landmark snippets; pattern sets are registered per instance."""

    def __init__(self, options: Optional[AnchorOptions] = None):
        self.options = options or AnchorOptions()
        self._pattern_sets: Dict[str, List[AnchorPattern]] = {}
        self._pattern_set_options: Dict[str, AnchorOptions] = {}

    def register_pattern_set(
        self,
        identifier: str,
        patterns: List[AnchorPattern],
        options: Optional[AnchorOptions] = None
    ) -> None:
        """Add patterns under ``identifier`` (usually a merchant id)."""
        if not identifier or not isinstance(identifier, str):
            raise ValueError("Pattern set identifier must be a non-empty string")
        if not patterns:
            raise ValueError("A pattern set needs at least one pattern")

        for pattern in patterns:
            re.compile(pattern.pattern)

        existing = self._pattern_sets.get(identifier, [])
        self._pattern_sets[identifier] = [*existing, *patterns]
        if options is not None:
            self._pattern_set_options[identifier] = options

    def pattern_set(self, identifier: Optional[str]) -> Optional[List[AnchorPattern]]:
        if not identifier:
            return None
        return self._pattern_sets.get(identifier)

    def extract(self, text: str, pattern_set: Optional[str] = None) -> AnchorExtraction:
        """Collect anchor snippets from ``text``.

        Returns an extraction with ``applied=False`` and the original text when
        the snippets would not shorten the prompt enough.
        """
        if not text:
            return AnchorExtraction(applied=False, combined_text=text or "")

        patterns = self.pattern_set(pattern_set) or DEFAULT_PATTERNS
        options = self._pattern_set_options.get(pattern_set or "", self.options)
        max_snippets = options.global_max_snippets or None

        snippets: List[AnchorSnippet] = []
        anchors_matched: Dict[str, int] = {}
        seen_ranges: List[tuple[int, int]] = []

        for pattern in patterns:
            if max_snippets and len(snippets) >= max_snippets:
                break

            regex = re.compile(pattern.pattern, re.IGNORECASE)
            context_before = pattern.context_before if pattern.context_before is not None else options.context_before
            context_after = pattern.context_after if pattern.context_after is not None else options.context_after
            max_matches = pattern.max_matches or options.max_matches_per_pattern

            matches = 0
            for match in regex.finditer(text):
                if matches >= max_matches or (max_snippets and len(snippets) >= max_snippets):
                    break
                matches += 1
                anchors_matched[pattern.id] = anchors_matched.get(pattern.id, 0) + 1

                start = max(0, match.start() - context_before)
                if pattern.terminator_pattern:
                    end = self._find_terminator(text, match.end(), pattern.terminator_pattern)
                else:
                    end = min(len(text), match.end() + context_after)

                # Identical or fully covered windows add nothing
                if any(s <= start and end <= e for s, e in seen_ranges):
                    continue
                seen_ranges.append((start, end))

                snippet = text[start:end].strip()
                if not snippet:
                    continue

                snippets.append(AnchorSnippet(
                    anchor_id=pattern.id,
                    label=pattern.label,
                    start=start,
                    end=end,
                    snippet=snippet,
                ))

        original_length = len(text)
        if not snippets:
            return AnchorExtraction(
                applied=False,
                combined_text=text,
                original_length=original_length,
                reduced_length=original_length,
                anchors_matched=anchors_matched,
            )

        snippets.sort(key=lambda s: s.start)
        combined_text = SNIPPET_SEPARATOR.join(s.snippet for s in snippets)
        reduced_length = len(combined_text)
        reduction_percent = round((1 - reduced_length / original_length) * 100)

        applied = (
            reduction_percent >= options.min_reduction_percent
            and len(snippets) >= options.min_snippets
            and reduced_length < original_length
        )

        logger.debug(
            f"[ANCHOR] {len(snippets)} snippets, {original_length} -> {reduced_length} chars "
            f"({reduction_percent}%), applied={applied}"
        )

        return AnchorExtraction(
            applied=applied,
            combined_text=combined_text if applied else text,
            snippets=snippets,
            original_length=original_length,
            reduced_length=reduced_length if applied else original_length,
            reduction_percent=reduction_percent if applied else 0.0,
            anchors_matched=anchors_matched,
        )

    @staticmethod
    def _find_terminator(text: str, search_from: int, terminator_pattern: str) -> int:
        """Offset of the first line starting with the terminator after the header line."""
        line_end = text.find("\n", search_from)
        if line_end == -1:
            return len(text)

        terminator = re.compile(rf"^[ \t]*{terminator_pattern}", re.IGNORECASE | re.MULTILINE)
        found = terminator.search(text, line_end + 1)
        return found.start() if found else len(text)
