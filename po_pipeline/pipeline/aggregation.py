"""Merge per-chunk extraction results into one document result.

``aggregate`` is a pure function. A result whose normalised content repeats an
earlier one is dropped before merging and weighting, whichever chunk it came
from, so aggregating ``[A, A']`` gives the same answer as ``[A]`` when ``A'`` is
a lower-confidence copy of ``A``.
"""

import logging
import re
from typing import Any, Callable, Dict, Hashable, List, Optional, Sequence, Tuple

from ..core.models import (
    UNKNOWN,
    AggregatedResult,
    ExtractedData,
    ExtractionResult,
    LineItem,
    QualityIndicators,
    ReviewStatus,
    SupplierInfo,
)

logger = logging.getLogger(__name__)

AUTO_APPROVE_THRESHOLD = 0.9
REJECT_THRESHOLD = 0.3

_WHITESPACE = re.compile(r"\s+")

# (value, vote key, confidence, chunk index)
Candidate = Tuple[Any, Hashable, float, int]


def normalize_key(value: Optional[str]) -> str:
    """Case-folded, trimmed, whitespace-collapsed form used for matching."""
    if not value:
        return ""
    return _WHITESPACE.sub(" ", value).strip().casefold()


def line_item_key(item: LineItem) -> Optional[str]:
    """SKU when present, else description; None for items with neither."""
    sku = normalize_key(item.sku)
    if sku:
        return f"sku:{sku}"
    description = normalize_key(item.description)
    if description:
        return f"desc:{description}"
    return None


def _vote_key(value: Any) -> Hashable:
    if isinstance(value, str):
        return normalize_key(value)
    if isinstance(value, float):
        return round(value, 2)
    return value


def vote(candidates: Sequence[Candidate]) -> Optional[Any]:
    """Majority vote; ties go to the highest confidence, then the lowest chunk index."""
    if not candidates:
        return None

    groups: Dict[Hashable, List[Candidate]] = {}
    for candidate in candidates:
        groups.setdefault(candidate[1], []).append(candidate)

    def rank(group: List[Candidate]):
        return (len(group), max(c[2] for c in group), -min(c[3] for c in group))

    winner_group = max(groups.values(), key=rank)
    best = min(winner_group, key=lambda c: (-c[2], c[3]))
    return best[0]


def _mapping_signature(values: Dict[str, Any]) -> Tuple:
    present = ((k, _vote_key(v)) for k, v in values.items() if v is not None and v != "")
    return tuple(sorted(present, key=lambda kv: kv[0]))


def content_signature(data: ExtractedData) -> Tuple:
    """Normalised view of extracted data; equal signatures mean the same answer."""
    supplier = data.supplier
    items = sorted(line_item_key(item) or f"item:{item.model_dump_json()}" for item in data.line_items)
    return (
        normalize_key(data.po_number),
        tuple(normalize_key(getattr(supplier, f)) for f in ("name", "address", "email", "phone")),
        tuple(items),
        _mapping_signature(data.dates),
        _mapping_signature(data.totals),
        normalize_key(data.notes),
    )


def _drop_duplicate_deliveries(results: Sequence[ExtractionResult]) -> Tuple[List[ExtractionResult], int]:
    """Keep one result per distinct content, the higher-confidence copy winning.

    Empty results only repeat each other when they belong to the same chunk.
    """
    empty = content_signature(ExtractedData())
    kept: List[Tuple[ExtractionResult, Tuple]] = []
    removed = 0
    for result in results:
        signature = content_signature(result.extracted_data)
        duplicate_of = next(
            (i for i, (k, s) in enumerate(kept)
             if s == signature and (signature != empty or k.chunk_index == result.chunk_index)),
            None
        )
        if duplicate_of is None:
            kept.append((result, signature))
            continue
        removed += 1
        if result.confidence > kept[duplicate_of][0].confidence:
            kept[duplicate_of] = (result, signature)
    return sorted((k for k, _ in kept), key=lambda r: r.chunk_index), removed


def merge_line_items(results: Sequence[ExtractionResult]) -> Tuple[List[LineItem], int]:
    """Deduplicate line items across chunks by SKU, else description.

    The higher-confidence copy wins and takes the first copy's position.
    """
    merged: List[Tuple[LineItem, float]] = []
    positions: Dict[str, int] = {}
    collisions = 0

    for result in results:
        for item in result.extracted_data.line_items:
            confidence = item.confidence if item.confidence is not None else result.confidence
            key = line_item_key(item)
            if key is None:
                merged.append((item, confidence))
                continue
            if key not in positions:
                positions[key] = len(merged)
                merged.append((item, confidence))
                continue
            collisions += 1
            position = positions[key]
            if confidence > merged[position][1]:
                merged[position] = (item, confidence)

    return [item for item, _ in merged], collisions


def _collect(
    results: Sequence[ExtractionResult],
    getter: Callable[[ExtractionResult], Any]
) -> List[Candidate]:
    candidates = []
    for result in results:
        value = getter(result)
        if value is None or value == "" or value == UNKNOWN:
            continue
        candidates.append((value, _vote_key(value), result.confidence, result.chunk_index))
    return candidates


def _merge_supplier(results: Sequence[ExtractionResult]) -> SupplierInfo:
    name = vote(_collect(results, lambda r: r.extracted_data.supplier.name))
    if name is None:
        contact = {
            field: vote(_collect(results, lambda r, f=field: getattr(r.extracted_data.supplier, f)))
            for field in ("address", "email", "phone")
        }
        return SupplierInfo(**contact)

    same_name = [r for r in results if normalize_key(r.extracted_data.supplier.name) == normalize_key(name)]
    same_name.sort(key=lambda r: (-r.confidence, r.chunk_index))
    merged = {"name": name}
    for field in ("address", "email", "phone"):
        merged[field] = vote(_collect(same_name, lambda r, f=field: getattr(r.extracted_data.supplier, f)))
    return SupplierInfo(**merged)


def _merge_mapping(results: Sequence[ExtractionResult], attribute: str) -> Dict[str, Any]:
    keys: List[str] = []
    for result in results:
        for key in getattr(result.extracted_data, attribute):
            if key not in keys:
                keys.append(key)

    merged = {}
    for key in keys:
        value = vote(_collect(results, lambda r, k=key: getattr(r.extracted_data, attribute).get(k)))
        if value is not None:
            merged[key] = value
    return merged


def _weighted_confidence(results: Sequence[ExtractionResult]) -> float:
    if not results:
        return 0.0
    total_weight = sum(r.estimated_tokens for r in results)
    if total_weight == 0:
        return sum(r.confidence for r in results) / len(results)
    return sum(r.confidence * r.estimated_tokens for r in results) / total_weight


def _union(lists: Sequence[List[str]]) -> List[str]:
    seen = []
    for values in lists:
        for value in values:
            if value not in seen:
                seen.append(value)
    return seen


def review_status_for(
    confidence: float,
    confidence_threshold: Optional[float] = None,
    auto_approve_threshold: float = AUTO_APPROVE_THRESHOLD,
    reject_threshold: float = REJECT_THRESHOLD
) -> ReviewStatus:
    """Escalation outcome for a document-level confidence."""
    if confidence < reject_threshold:
        return ReviewStatus.REJECTED
    if confidence >= auto_approve_threshold:
        if confidence_threshold is not None and confidence < confidence_threshold:
            return ReviewStatus.MANUAL_REVIEW
        return ReviewStatus.AUTO_APPROVE
    return ReviewStatus.MANUAL_REVIEW


def aggregate(
    results: Sequence[ExtractionResult],
    confidence_threshold: Optional[float] = None,
    auto_approve_threshold: float = AUTO_APPROVE_THRESHOLD,
    reject_threshold: float = REJECT_THRESHOLD
) -> AggregatedResult:
    """Merge chunk results into one document result."""
    if not results:
        return AggregatedResult(
            confidence=0.0,
            issues=["No extraction results to aggregate"],
            review_status=ReviewStatus.REJECTED,
        )

    ordered = sorted(results, key=lambda r: r.chunk_index)
    kept, redelivered = _drop_duplicate_deliveries(ordered)

    line_items, item_collisions = merge_line_items(kept)
    data = ExtractedData(
        po_number=vote(_collect(kept, lambda r: r.extracted_data.po_number)),
        supplier=_merge_supplier(kept),
        line_items=line_items,
        dates=_merge_mapping(kept, "dates"),
        totals=_merge_mapping(kept, "totals"),
        notes=vote(_collect(kept, lambda r: r.extracted_data.notes)),
    )

    quality = QualityIndicators(
        image_clarity=vote(_collect(kept, lambda r: r.quality_indicators.image_clarity)) or UNKNOWN,
        text_legibility=vote(_collect(kept, lambda r: r.quality_indicators.text_legibility)) or UNKNOWN,
        document_completeness=vote(_collect(kept, lambda r: r.quality_indicators.document_completeness)) or UNKNOWN,
    )

    field_values: Dict[str, List[float]] = {}
    for result in kept:
        for key, value in result.field_confidences.items():
            field_values.setdefault(key, []).append(value)
    field_confidences = {k: sum(v) / len(v) for k, v in field_values.items()}

    confidence = min(1.0, max(0.0, _weighted_confidence(kept)))
    status = review_status_for(confidence, confidence_threshold, auto_approve_threshold, reject_threshold)

    failed_chunks = [r.chunk_index for r in kept if r.is_malformed]
    if redelivered:
        logger.info(f"[AGGREGATE] Dropped {redelivered} repeated chunk results")

    return AggregatedResult(
        confidence=confidence,
        extracted_data=data,
        field_confidences=field_confidences,
        quality_indicators=quality,
        issues=_union([r.issues for r in kept]),
        suggestions=_union([r.suggestions for r in kept]),
        chunk_count=len({r.chunk_index for r in kept}),
        duplicates_removed=item_collisions,
        review_status=status,
        metadata={
            "chunk_confidences": {str(r.chunk_index): r.confidence for r in kept},
            "failed_chunks": failed_chunks,
        },
    )
