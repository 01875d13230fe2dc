"""Document parsing: preprocess, plan, extract and aggregate one document."""

import asyncio
import logging
from typing import Awaitable, List, Optional

from ..config import Settings
from ..core.exceptions import ExtractionError, PreprocessingError
from ..core.models import (
    AggregatedResult,
    AISettings,
    ChunkPlan,
    DocumentContent,
    ExtractionResult,
    PreprocessOptions,
    SchemaName,
)
from ..core.rate_limit import CapacityLimiter
from . import chunking
from .aggregation import aggregate
from .extraction import IMAGE_TOKEN_WEIGHT, ExtractionClient
from .preprocessor import PREPROCESSING_FAILED_ISSUE, TextPreprocessor
from .progress import ProgressReporter, ProgressSink

logger = logging.getLogger(__name__)


class DocumentParser:
    """Runs the extraction pipeline for a single document per call.

    The parser holds no per-call state; each ``parse_document`` call gets its
    own progress reporter and chunk limiter.
    """

    def __init__(
        self,
        extraction_client: ExtractionClient,
        settings: Settings,
        preprocessor: Optional[TextPreprocessor] = None
    ):
        self.extraction_client = extraction_client
        self.settings = settings
        self.preprocessor = preprocessor or TextPreprocessor()

    async def parse_document(
        self,
        content: DocumentContent,
        ai_settings: AISettings,
        progress_sink: Optional[ProgressSink] = None,
        workflow_id: Optional[str] = None,
        merchant_id: Optional[str] = None
    ) -> AggregatedResult:
        """Extract and aggregate one document.

        Progress events for this call are flushed before returning, also on error.
        """
        reporter = ProgressReporter(progress_sink, workflow_id, merchant_id or ai_settings.merchant_id)
        label = workflow_id or content.source
        client = self.extraction_client.for_merchant(ai_settings)

        try:
            reporter.publish_sub_stage_progress(
                "start", 0, 1, {"source": content.source, "kind": content.kind.value},
                message="Parsing started"
            )

            if content.is_image:
                result = await self._parse_image(content, ai_settings, client, reporter)
            else:
                result = await self._parse_text(content, ai_settings, client, reporter)

            reporter.publish_sub_stage_progress(
                "complete", 1, 1,
                {"confidence": result.confidence, "review_status": result.review_status.value},
                message="Parsing complete"
            )
            logger.info(
                f"[PARSE] {label} - {result.line_item_count} line items, confidence {result.confidence:.2f}, "
                f"{result.review_status.value}"
            )
            return result
        finally:
            await reporter.flush()

    async def _parse_image(
        self,
        content: DocumentContent,
        ai_settings: AISettings,
        client: ExtractionClient,
        reporter: ProgressReporter
    ) -> AggregatedResult:
        reporter.publish_sub_stage_progress("preprocess", 1, 1, {"skipped": True})
        reporter.publish_sub_stage_progress(
            "plan", 1, 1, {"chunk_count": 1, "file_name": content.source}
        )

        extraction = await self._extract(
            client.extract_image(content.image_bytes, content.mime_type),
            SchemaName.PURCHASE_ORDER, 0, IMAGE_TOKEN_WEIGHT
        )

        reporter.publish_sub_stage_progress("finalize", 1, 1, {"results": 1})
        return self._aggregate([extraction], ai_settings)

    async def _parse_text(
        self,
        content: DocumentContent,
        ai_settings: AISettings,
        client: ExtractionClient,
        reporter: ProgressReporter
    ) -> AggregatedResult:
        raw_text = content.text or ""
        text = raw_text
        preprocessing_meta = {}
        extra_issues: List[str] = []

        options = PreprocessOptions(
            use_anchor_extraction=ai_settings.use_anchor_extraction or self.settings.use_anchor_extraction,
            vendor_key=ai_settings.merchant_id,
            pattern_set=ai_settings.merchant_id,
        )
        try:
            preprocessed = self.preprocessor.preprocess(raw_text, options)
            text = preprocessed.text
            preprocessing_meta = {
                "failed": False,
                "original_length": preprocessed.original_length,
                "optimized_length": preprocessed.optimized_length,
                "reduction_percent": preprocessed.reduction_percent,
                "fallback_applied": preprocessed.fallback_applied,
                "anchors_applied": bool(preprocessed.anchor_extraction and preprocessed.anchor_extraction.applied),
            }
        except PreprocessingError as e:
            logger.warning(f"[PARSE] {content.source} - {e.message}; using raw text")
            preprocessing_meta = {"failed": True, "error": e.message}
            extra_issues.append(PREPROCESSING_FAILED_ISSUE)

        reporter.publish_sub_stage_progress("preprocess", 1, 1, preprocessing_meta)

        plan: ChunkPlan = chunking.plan(text, self.settings.chunking_config(ai_settings))
        total = len(plan)
        reporter.publish_sub_stage_progress(
            "plan", 1, 1,
            {"chunk_count": total, "effective_chunk_chars": plan.effective_chunk_chars, "file_name": content.source}
        )

        if plan.is_single_pass:
            only = plan.chunks[0]
            results = [await self._extract(
                client.extract_document(only.text), SchemaName.PURCHASE_ORDER, 0, only.estimated_tokens
            )]
        else:
            results = await self._extract_chunks(plan, client, reporter)

        reporter.publish_sub_stage_progress("finalize", 1, 1, {"results": len(results)})

        aggregated = self._aggregate(results, ai_settings)
        aggregated.metadata["preprocessing"] = preprocessing_meta
        aggregated.metadata["chunking"] = {
            "chunk_count": total,
            "effective_chunk_chars": plan.effective_chunk_chars,
            "original_length": plan.original_length,
        }
        if extra_issues:
            aggregated.issues = [*extra_issues, *aggregated.issues]
        return aggregated

    async def _extract_chunks(
        self,
        plan: ChunkPlan,
        client: ExtractionClient,
        reporter: ProgressReporter
    ) -> List[ExtractionResult]:
        limiter = CapacityLimiter(self.settings.chunk_concurrency)
        total = len(plan)
        completed = 0

        async def run(chunk) -> ExtractionResult:
            nonlocal completed
            async with limiter:
                if chunk.index > 0:
                    reporter.publish_sub_stage_progress(
                        "chunk_start", completed, total, {"chunk_index": chunk.index},
                        message=f"Chunk {chunk.index + 1}/{total} started"
                    )
                schema_name = SchemaName.PURCHASE_ORDER if chunk.index == 0 else SchemaName.LINE_ITEMS
                result = await self._extract(
                    client.extract_chunk(chunk.text, chunk.index, total),
                    schema_name, chunk.index, chunk.estimated_tokens
                )
                completed += 1
                if chunk.index > 0:
                    reporter.publish_sub_stage_progress(
                        "chunk_done", completed, total,
                        {"chunk_index": chunk.index, "line_items": len(result.extracted_data.line_items)},
                        message=f"Chunk {chunk.index + 1}/{total} done"
                    )
                return result

        outcomes = await asyncio.gather(*(run(chunk) for chunk in plan.chunks), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)

    @staticmethod
    async def _extract(
        call: Awaitable[ExtractionResult],
        schema_name: SchemaName,
        chunk_index: int,
        estimated_tokens: int
    ) -> ExtractionResult:
        """Await one extraction call; a rejected request becomes a failed chunk.

        Transient and configuration errors still propagate.
        """
        try:
            return await call
        except ExtractionError as e:
            logger.warning(f"[PARSE] Chunk {chunk_index + 1} failed: {e.message}; continuing without it")
            return ExtractionResult.failed(
                schema_name.value,
                e.message,
                chunk_index=chunk_index,
                estimated_tokens=estimated_tokens,
                suggestions=["Re-run extraction or review the document manually"],
            )

    def _aggregate(self, results: List[ExtractionResult], ai_settings: AISettings) -> AggregatedResult:
        return aggregate(
            results,
            confidence_threshold=ai_settings.confidence_threshold,
            auto_approve_threshold=self.settings.auto_approve_threshold,
            reject_threshold=self.settings.reject_threshold,
        )
