"""Command-line entry point: parse local purchase-order files through the workflow."""

import argparse
import asyncio
import logging
import mimetypes
import time
import uuid
from pathlib import Path
from typing import List, Optional

import aiohttp
from dotenv import load_dotenv
from google import genai
from google.genai import types
from rich import box
from rich.console import Console
from rich.table import Table

from .config import Settings
from .core.documents import DocumentReader
from .core.models import AISettings, ExtractionJob, UploadRecord
from .core.rate_limit import create_extraction_executor
from .logging_config import setup_logging
from .pipeline.extraction import ExtractionClient
from .pipeline.parser import DocumentParser
from .pipeline.progress import TqdmProgressSink
from .workflow.collaborators import LocalFileDownloader, StoreSettingsProvider
from .workflow.orchestrator import WorkflowOrchestrator
from .workflow.queue import JobQueue, RetryPolicy
from .workflow.store import init_store

LOGS_FOLDER = "logs"

logger = logging.getLogger(__name__)


def build_client(settings: Settings) -> "genai.Client":
    """Create the genai client with aiohttp transport; call inside a running loop."""
    http_options = types.HttpOptions(
        async_client_args={
            "connector": aiohttp.TCPConnector(limit=50, limit_per_host=10),
        }
    )
    if settings.use_vertex_ai:
        logger.info(
            f"Using Vertex AI - Project: {settings.google_cloud_project}, "
            f"Location: {settings.google_cloud_location}"
        )
    else:
        logger.info("Using Gemini API with API key")
    return genai.Client(**settings.api_client_kwargs, http_options=http_options)


def make_upload(path: Path, merchant_id: str) -> UploadRecord:
    upload_id = uuid.uuid4().hex[:12]
    mime_type, _ = mimetypes.guess_type(path.name)
    return UploadRecord(
        id=upload_id,
        file_name=path.name,
        mime_type=mime_type,
        file_size=path.stat().st_size,
        merchant_id=merchant_id,
        workflow_id=f"wf_{upload_id}",
        file_url=path.resolve().as_uri(),
    )


async def run(
    files: List[Path],
    merchant_id: str,
    settings: Settings,
    use_anchors: bool = False
) -> None:
    store = init_store(settings.state_db_path)
    settings_provider = StoreSettingsProvider(store)

    if await settings_provider.get(merchant_id) is None:
        await settings_provider.put(AISettings(merchant_id=merchant_id, use_anchor_extraction=use_anchors))
        logger.info(f"Created default AI settings for merchant {merchant_id}")

    executor = create_extraction_executor(
        quota_limit=settings.quota_limit,
        max_retries=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
        jitter_range=settings.retry_jitter_range,
    )
    extraction_client = ExtractionClient(
        build_client(settings),
        model=settings.extraction_model,
        executor=executor,
        debug_responses=settings.debug_responses,
    )
    progress_sink = TqdmProgressSink()
    orchestrator = WorkflowOrchestrator(
        store=store,
        downloader=LocalFileDownloader(),
        settings_provider=settings_provider,
        parser=DocumentParser(extraction_client, settings),
        settings=settings,
        reader=DocumentReader(settings.pdf_fd_semaphore_limit, settings.max_document_size_mb),
        progress_sink=progress_sink,
    )
    queue = JobQueue(
        orchestrator.process_ai_parsing,
        store,
        RetryPolicy(
            max_attempts=settings.queue_max_attempts,
            base_delay=settings.queue_base_delay,
            max_delay=settings.queue_max_delay,
        ),
        worker_concurrency=settings.worker_concurrency,
    )

    uploads = []
    for path in files:
        upload = make_upload(path, merchant_id)
        await orchestrator.register_upload(upload)
        await queue.enqueue(ExtractionJob(upload_id=upload.id, merchant_id=merchant_id))
        uploads.append(upload)

    start_time = time.time()
    try:
        results = await queue.run_until_empty()
    finally:
        progress_sink.close()
    elapsed = time.time() - start_time

    print_summary(uploads, results, queue, elapsed)
    store.close()


def print_summary(uploads: List[UploadRecord], results: dict, queue: JobQueue, elapsed: float) -> None:
    console = Console()
    table = Table(title="Purchase order extraction", box=box.ROUNDED)
    table.add_column("File", style="cyan", no_wrap=True)
    table.add_column("PO number", style="magenta")
    table.add_column("Line items", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Review")

    failures = {record.job.upload_id: record for record in queue.dead_letters}
    for upload in uploads:
        result = results.get(f"job_{upload.id}")
        if result is None:
            failure = failures.get(upload.id)
            reason = failure.error_type if failure else "not processed"
            table.add_row(upload.file_name, "-", "-", "-", f"[red]failed ({reason})[/red]")
            continue

        color = {"auto_approve": "green", "manual_review": "yellow"}.get(result.review_status.value, "red")
        table.add_row(
            upload.file_name,
            result.extracted_data.po_number or "-",
            f"{result.line_item_count}",
            f"{result.confidence:.2f}",
            f"[{color}]{result.review_status.value}[/{color}]",
        )

    console.print(table)
    console.print(
        f"{len(results)}/{len(uploads)} succeeded, {len(failures)} dead-lettered "
        f"in {elapsed:.2f}s ({queue.deliveries} deliveries)"
    )


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Extract structured purchase orders from PDF, image and text files")
    parser.add_argument("files", nargs="+", type=Path, help="Purchase-order files to process")
    parser.add_argument("--merchant", required=True, help="Merchant id whose AI settings apply")
    parser.add_argument("--db", type=Path, help="SQLite state store path (default: from settings)")
    parser.add_argument("--anchors", action="store_true",
                        help="Enable anchor extraction when creating default merchant settings")
    parser.add_argument("--logs", default=LOGS_FOLDER, help=f"Logs folder (default: {LOGS_FOLDER})")
    args = parser.parse_args(argv)

    load_dotenv()
    setup_logging(Path(args.logs))

    settings = Settings()
    if args.db:
        settings = settings.model_copy(update={"state_db_path": args.db})

    missing = [path for path in args.files if not path.is_file()]
    if missing:
        parser.error(f"File(s) not found: {', '.join(str(path) for path in missing)}")

    logger.info(f"Processing {len(args.files)} file(s) for merchant {args.merchant}")
    asyncio.run(run(args.files, args.merchant, settings, args.anchors))


if __name__ == "__main__":
    main()
