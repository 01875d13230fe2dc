"""Workflow orchestration for AI parsing of one upload.

Stages run in order and every transition is persisted before the next stage
starts, so a crash leaves an inspectable record. Retries belong to the queue;
each call here is one attempt ("run") and always overwrites its stage result.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from ..config import Settings
from ..core.documents import DocumentReader
from ..core.exceptions import (
    ConfigurationMissingError,
    DocumentError,
    ExtractionTimeoutError,
    StageTransitionError,
    wrap_exception,
)
from ..core.models import (
    AggregatedResult,
    ExtractionJob,
    UploadRecord,
    UploadStatus,
    WorkflowExecution,
    WorkflowStage,
    WorkflowStatus,
)
from ..pipeline.parser import DocumentParser
from ..pipeline.progress import ProgressSink
from .collaborators import FileDownloader, SettingsProvider
from .store import SQLiteStateStore, stage_result_key, upload_key, workflow_key

logger = logging.getLogger(__name__)

STAGE_PROGRESS = {
    WorkflowStage.QUEUED: 0,
    WorkflowStage.DOWNLOADING_FILE: 10,
    WorkflowStage.PREPARING_WORKFLOW: 20,
    WorkflowStage.ANALYZING: 25,
    WorkflowStage.PARSING_FILE: 30,
    WorkflowStage.COMPLETED: 100,
}


class WorkflowOrchestrator:
    """Drives an upload from queued to completed or failed."""

    def __init__(
        self,
        store: SQLiteStateStore,
        downloader: FileDownloader,
        settings_provider: SettingsProvider,
        parser: DocumentParser,
        settings: Settings,
        reader: Optional[DocumentReader] = None,
        progress_sink: Optional[ProgressSink] = None
    ):
        self.store = store
        self.downloader = downloader
        self.settings_provider = settings_provider
        self.parser = parser
        self.settings = settings
        self.reader = reader or DocumentReader(settings.pdf_fd_semaphore_limit, settings.max_document_size_mb)
        self.progress_sink = progress_sink

    async def register_upload(self, upload: UploadRecord) -> WorkflowExecution:
        """Persist a new upload and its queued workflow record."""
        workflow = WorkflowExecution(workflow_id=upload.workflow_id, upload_id=upload.id)
        await self.store.set(upload_key(upload.id), upload.model_dump(mode="json"))
        await self.store.set(workflow_key(upload.workflow_id), workflow.model_dump(mode="json"))
        logger.info(f"[WORKFLOW] Registered upload {upload.id} ({upload.file_name}) as {upload.workflow_id}")
        return workflow

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowExecution]:
        record = await self.store.get(workflow_key(workflow_id))
        return WorkflowExecution.model_validate(record) if record else None

    async def get_result(self, workflow_id: str) -> Optional[AggregatedResult]:
        record = await self.store.get(stage_result_key(workflow_id, WorkflowStage.PARSING_FILE.value))
        return AggregatedResult.model_validate(record) if record else None

    async def process_ai_parsing(self, job: ExtractionJob) -> AggregatedResult:
        """Run one attempt of the parsing workflow for ``job.upload_id``.

        Raises:
            POPipelineError: Whatever failed the attempt, mapped into the pipeline
                hierarchy after the failure has been recorded
            asyncio.CancelledError: If the worker is cancelled mid-run; the run is
                recorded as failed first
        """
        record = await self.store.get(upload_key(job.upload_id))
        if record is None:
            raise DocumentError(job.upload_id, "Upload record not found")
        upload = UploadRecord.model_validate(record)
        workflow_id = upload.workflow_id

        workflow = await self.get_workflow(workflow_id) or WorkflowExecution(
            workflow_id=workflow_id, upload_id=upload.id
        )

        if workflow.status == WorkflowStatus.COMPLETED:
            stored = await self.get_result(workflow_id)
            if stored is not None:
                logger.info(f"[WORKFLOW] {workflow_id} already completed; duplicate delivery ignored")
                return stored
            logger.warning(f"[WORKFLOW] {workflow_id} marked completed without a result; reprocessing")

        workflow = await self._start_run(workflow)
        await self.store.patch(upload_key(upload.id), {"status": UploadStatus.PROCESSING.value, "error": None})

        try:
            await self.advance_stage(workflow, WorkflowStage.DOWNLOADING_FILE)
            content = await self.downloader.download(upload.file_url)

            await self.advance_stage(workflow, WorkflowStage.PREPARING_WORKFLOW)
            ai_settings = await self.settings_provider.get(upload.merchant_id)
            if ai_settings is None:
                raise ConfigurationMissingError(upload.merchant_id, "ai_settings", "no AI settings configured")

            await self.advance_stage(workflow, WorkflowStage.ANALYZING)
            document = await self.reader.read(content, upload.file_name, upload.mime_type)

            await self.advance_stage(workflow, WorkflowStage.PARSING_FILE)
            try:
                result = await asyncio.wait_for(
                    self.parser.parse_document(
                        document,
                        ai_settings,
                        self.progress_sink,
                        workflow_id=workflow_id,
                        merchant_id=upload.merchant_id,
                    ),
                    timeout=self.settings.parse_timeout_seconds
                )
            except asyncio.TimeoutError:
                raise ExtractionTimeoutError(workflow_id, self.settings.parse_timeout_seconds)

            await self.store.set(
                stage_result_key(workflow_id, WorkflowStage.PARSING_FILE.value),
                result.model_dump(mode="json")
            )

            now = datetime.now()
            await self.advance_stage(workflow, WorkflowStage.COMPLETED, status=WorkflowStatus.COMPLETED, end_time=now)
            await self.store.patch(upload_key(upload.id), {
                "status": UploadStatus.PROCESSED.value,
                "processed_at": now.isoformat(),
                "error": None,
            })

            logger.info(
                f"[WORKFLOW] {workflow_id} completed (attempt {workflow.attempt}): "
                f"{result.line_item_count} line items, {result.review_status.value}"
            )
            return result

        except asyncio.CancelledError:
            stage = workflow.current_stage.value
            logger.warning(f"[WORKFLOW] {workflow_id} cancelled at {stage}")
            await self._record_failure(workflow, upload, f"Processing cancelled at stage {stage}")
            raise

        except Exception as e:
            error = wrap_exception(workflow.current_stage.value, e, upload.file_name)
            logger.error(f"[WORKFLOW] {workflow_id} failed at {workflow.current_stage.value}: {error}")
            await self._record_failure(workflow, upload, str(error) or type(error).__name__)
            if error is e:
                raise
            raise error from e

    async def _start_run(self, workflow: WorkflowExecution) -> WorkflowExecution:
        workflow = workflow.model_copy(update={
            "attempt": workflow.attempt + 1,
            "status": WorkflowStatus.PROCESSING,
            "current_stage": WorkflowStage.QUEUED,
            "progress_percent": 0,
            "start_time": datetime.now(),
            "end_time": None,
            "error": None,
        })
        workflow.stage_history = [
            *workflow.stage_history,
            {"stage": WorkflowStage.QUEUED.value, "progress": 0, "attempt": workflow.attempt,
             "timestamp": datetime.now().isoformat()},
        ]
        await self.store.set(workflow_key(workflow.workflow_id), workflow.model_dump(mode="json"))
        logger.info(f"[WORKFLOW] {workflow.workflow_id} attempt {workflow.attempt} started")
        return workflow

    async def advance_stage(
        self,
        workflow: WorkflowExecution,
        stage: WorkflowStage,
        progress_percent: Optional[int] = None,
        status: Optional[WorkflowStatus] = None,
        end_time: Optional[datetime] = None
    ) -> WorkflowExecution:
        """Move ``workflow`` forward to ``stage`` and persist it.

        Stages may be skipped but never re-entered within a run; progress never
        decreases.

        Raises:
            StageTransitionError: If ``stage`` is behind the current stage
        """
        current = workflow.current_stage
        if current.is_terminal or stage == WorkflowStage.FAILED or stage.rank <= current.rank:
            raise StageTransitionError(workflow.workflow_id, current.value, stage.value)

        percent = STAGE_PROGRESS[stage] if progress_percent is None else progress_percent
        workflow.current_stage = stage
        workflow.progress_percent = max(workflow.progress_percent, min(100, percent))
        if status is not None:
            workflow.status = status
        if end_time is not None:
            workflow.end_time = end_time
        workflow.stage_history.append({
            "stage": stage.value,
            "progress": workflow.progress_percent,
            "attempt": workflow.attempt,
            "timestamp": datetime.now().isoformat(),
        })

        await self.store.set(workflow_key(workflow.workflow_id), workflow.model_dump(mode="json"))
        logger.debug(f"[WORKFLOW] {workflow.workflow_id} -> {stage.value} ({workflow.progress_percent}%)")
        return workflow

    async def _record_failure(self, workflow: WorkflowExecution, upload: UploadRecord, message: str) -> None:
        """Best-effort failure writes; never raises."""
        now = datetime.now()

        try:
            workflow.status = WorkflowStatus.FAILED
            workflow.current_stage = WorkflowStage.FAILED
            workflow.error = message
            workflow.end_time = now
            workflow.stage_history.append({
                "stage": WorkflowStage.FAILED.value,
                "progress": workflow.progress_percent,
                "attempt": workflow.attempt,
                "timestamp": now.isoformat(),
                "error": message,
            })
            await self.store.set(workflow_key(workflow.workflow_id), workflow.model_dump(mode="json"))
        except Exception as write_error:
            logger.error(f"[WORKFLOW] Could not record failure for {workflow.workflow_id}: {write_error}")

        try:
            await self.store.patch(upload_key(upload.id), {"status": UploadStatus.FAILED.value, "error": message})
        except Exception as write_error:
            logger.error(f"[WORKFLOW] Could not record failure for upload {upload.id}: {write_error}")
