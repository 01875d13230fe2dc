"""Chunk planning for documents too large for one extraction call.

Chunks are contiguous slices of the source text. Every chunk after the first
starts with the last ``overlap`` characters of the previous chunk, so
``chunk.text[chunk.overlap:]`` over all chunks reconstructs the input exactly.
"""

import logging
import math
from typing import List, Tuple

from ..core.models import Chunk, ChunkingConfig, ChunkPlan

logger = logging.getLogger(__name__)

# Preferred cut points, best first
BOUNDARIES = ("\n\n", "\n", " ")


def estimate_tokens(text: str) -> int:
    """Rough token count, about four characters per token. Used only for weighting."""
    return math.ceil(len(text) / 4)


def _find_cut(text: str, start: int, budget: int, min_segment: int) -> int:
    """Offset where the segment starting at ``start`` should end."""
    limit = start + budget
    for separator in BOUNDARIES:
        idx = text.rfind(separator, start, limit)
        if idx == -1:
            continue
        cut = idx + len(separator)
        if cut - start >= min_segment:
            return cut
    return limit


def _split(text: str, size: int, config: ChunkingConfig) -> List[Tuple[int, int, int]]:
    """Split into (overlap, start, end) triples for a given chunk size."""
    length = len(text)
    segments: List[Tuple[int, int, int]] = []
    pos = 0
    previous_chunk_len = 0

    while pos < length:
        overlap = min(config.overlap_chars, previous_chunk_len) if segments else 0
        budget = size - overlap

        if length - pos <= budget:
            end = length
        else:
            min_segment = max(1, config.min_chunk_chars - overlap)
            end = _find_cut(text, pos, budget, min_segment)

        segments.append((overlap, pos, end))
        previous_chunk_len = overlap + (end - pos)
        pos = end

    return segments


def plan(text: str, config: ChunkingConfig | None = None) -> ChunkPlan:
    """Plan the chunks for ``text``.

    Text that fits in one chunk yields a single chunk with no overlap. Otherwise
    the effective chunk size grows as needed to respect ``max_chunks``; trailing
    text is never dropped.
    """
    config = config or ChunkingConfig()
    length = len(text)

    if length <= config.max_chunk_chars:
        chunk = Chunk(
            index=0,
            text=text,
            length=length,
            overlap=0,
            start=0,
            end=length,
            estimated_tokens=estimate_tokens(text),
        )
        return ChunkPlan(
            chunks=(chunk,),
            config=config,
            effective_chunk_chars=config.max_chunk_chars,
            original_length=length,
        )

    size = config.max_chunk_chars
    segments = _split(text, size, config)
    while len(segments) > config.max_chunks:
        needed = math.ceil((length - config.overlap_chars) / config.max_chunks) + config.overlap_chars
        size = max(needed, math.ceil(size * 1.1), size + 1)
        segments = _split(text, size, config)

    if size != config.max_chunk_chars:
        logger.info(
            f"[CHUNK] Grew chunk size {config.max_chunk_chars} -> {size} to stay within "
            f"{config.max_chunks} chunks"
        )

    chunks = []
    for index, (overlap, start, end) in enumerate(segments):
        chunk_text = text[start - overlap:end]
        chunks.append(Chunk(
            index=index,
            text=chunk_text,
            length=len(chunk_text),
            overlap=overlap,
            start=start,
            end=end,
            estimated_tokens=estimate_tokens(chunk_text),
        ))

    logger.debug(f"[CHUNK] {length} chars -> {len(chunks)} chunks (size {size}, overlap {config.overlap_chars})")

    return ChunkPlan(
        chunks=tuple(chunks),
        config=config,
        effective_chunk_chars=size,
        original_length=length,
    )


def reconstruct(chunk_plan: ChunkPlan) -> str:
    """Rebuild the planned text by dropping each chunk's overlap prefix."""
    return "".join(chunk.text[chunk.overlap:] for chunk in chunk_plan.chunks)
