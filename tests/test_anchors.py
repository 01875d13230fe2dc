"""Tests for anchor-based prompt shortening."""

import re

import pytest

from po_pipeline.pipeline.anchors import (
    SNIPPET_SEPARATOR,
    AnchorExtractor,
    AnchorOptions,
    AnchorPattern,
)

FILLER = "Lorem ipsum dolor sit amet, consectetur adipiscing elit.\n" * 40

HEADER = "ACME CORP\nPurchase Order\nPO Number: 4500123\nSupplier: Acme Supplies Ltd\n"

TABLE = (
    "Description    Qty    Unit Price\n"
    "Widget    2    5.00\n"
    "Gadget    1    3.50\n"
    "Subtotal: 13.50\n"
    "Grand Total: 13.50\n"
)

LONG_PO = HEADER + FILLER + TABLE + FILLER


class TestAnchorExtractor:

    def test_long_document_is_shortened_to_landmarks(self):
        extraction = AnchorExtractor().extract(LONG_PO)

        assert extraction.applied
        assert extraction.reduced_length < extraction.original_length
        assert extraction.reduction_percent >= 10
        assert "4500123" in extraction.combined_text
        assert "Acme Supplies Ltd" in extraction.combined_text
        assert "Gadget" in extraction.combined_text
        assert "Grand Total: 13.50" in extraction.combined_text
        assert SNIPPET_SEPARATOR in extraction.combined_text

    def test_snippets_are_in_document_order(self):
        extraction = AnchorExtractor().extract(LONG_PO)
        starts = [snippet.start for snippet in extraction.snippets]
        assert starts == sorted(starts)

    def test_line_item_table_stops_at_terminator(self):
        extraction = AnchorExtractor().extract(LONG_PO)
        table_snippets = [s for s in extraction.snippets if s.anchor_id == "line_items"]

        assert len(table_snippets) == 1
        assert "Widget" in table_snippets[0].snippet
        assert "Gadget" in table_snippets[0].snippet
        assert table_snippets[0].end == LONG_PO.index("Subtotal")

    def test_short_document_is_left_alone(self):
        text = "PO Number: 1\nTotal: 5"
        extraction = AnchorExtractor().extract(text)

        assert not extraction.applied
        assert extraction.combined_text == text
        assert extraction.reduction_percent == 0.0

    def test_no_matches_returns_original(self):
        extraction = AnchorExtractor().extract(FILLER)

        assert not extraction.applied
        assert extraction.snippets == []
        assert extraction.combined_text == FILLER

    def test_empty_text(self):
        extraction = AnchorExtractor().extract("")
        assert not extraction.applied
        assert extraction.combined_text == ""

    def test_global_snippet_cap(self):
        text = ("PO Number: 1\n" + FILLER) * 5
        extractor = AnchorExtractor(AnchorOptions(global_max_snippets=2, min_reduction_percent=0))

        extraction = extractor.extract(text)
        assert len(extraction.snippets) == 2


class TestPatternSets:

    def test_registered_set_replaces_defaults(self):
        extractor = AnchorExtractor()
        extractor.register_pattern_set(
            "merchant-1",
            [AnchorPattern(id="job", label="Job Number", pattern=r"Job\s+No\.?\s*", context_before=0, context_after=20)]
        )
        text = FILLER + "Job No. 778899 for site works\n" + FILLER + "PO Number: 4500123\n"

        extraction = extractor.extract(text, pattern_set="merchant-1")

        assert extraction.applied
        assert extraction.anchors_matched == {"job": 1}
        assert "778899" in extraction.combined_text
        assert "4500123" not in extraction.combined_text

    def test_unknown_set_uses_defaults(self):
        extraction = AnchorExtractor().extract(LONG_PO, pattern_set="nobody")
        assert "po_number" in extraction.anchors_matched

    def test_register_requires_identifier_and_patterns(self):
        extractor = AnchorExtractor()
        pattern = AnchorPattern(id="x", label="X", pattern="x")

        with pytest.raises(ValueError):
            extractor.register_pattern_set("", [pattern])
        with pytest.raises(ValueError):
            extractor.register_pattern_set("merchant-1", [])

    def test_invalid_regex_is_rejected(self):
        with pytest.raises(re.error):
            AnchorExtractor().register_pattern_set("m", [AnchorPattern(id="bad", label="Bad", pattern="(unclosed")])
