"""Tests for downloaders, the settings provider, progress sinks and CLI helpers."""

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from po_pipeline.cli import make_upload, print_summary
from po_pipeline.core.exceptions import DocumentError, TransientIOError
from po_pipeline.core.models import (
    AggregatedResult,
    AISettings,
    DeadLetterRecord,
    ExtractedData,
    ExtractionJob,
    ProgressEvent,
    ReviewStatus,
)
from po_pipeline.pipeline.progress import TqdmProgressSink
from po_pipeline.workflow.collaborators import (
    FileDownloader,
    HttpFileDownloader,
    LocalFileDownloader,
    SettingsProvider,
    StoreSettingsProvider,
)
from po_pipeline.workflow.queue import JobQueue


@pytest_asyncio.fixture
async def file_server():
    async def po_file(request):
        return web.Response(body=b"PO Number: 4500123")

    async def unavailable(request):
        return web.Response(status=503)

    async def missing(request):
        return web.Response(status=404)

    async def throttled(request):
        return web.Response(status=429)

    app = web.Application()
    app.router.add_get("/po.txt", po_file)
    app.router.add_get("/busy", unavailable)
    app.router.add_get("/missing", missing)
    app.router.add_get("/throttled", throttled)

    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


def event(stage, call_id="call-1", **meta):
    return ProgressEvent(sequence=1, call_id=call_id, stage=stage, current=1, total=1, percent=100, meta=meta)


class TestHttpFileDownloader:

    @pytest.mark.asyncio
    async def test_download(self, file_server):
        content = await HttpFileDownloader(timeout=5).download(str(file_server.make_url("/po.txt")))
        assert content == b"PO Number: 4500123"

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, file_server):
        with pytest.raises(TransientIOError) as exc_info:
            await HttpFileDownloader(timeout=5).download(str(file_server.make_url("/busy")))

        assert "HTTP 503" in str(exc_info.value)
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_missing_file_is_not_retryable(self, file_server):
        with pytest.raises(DocumentError) as exc_info:
            await HttpFileDownloader(timeout=5).download(str(file_server.make_url("/missing")))

        assert "HTTP 404" in str(exc_info.value)
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_throttling_is_transient(self, file_server):
        with pytest.raises(TransientIOError) as exc_info:
            await HttpFileDownloader(timeout=5).download(str(file_server.make_url("/throttled")))

        assert "HTTP 429" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connection_failure_is_transient(self, unused_tcp_port):
        with pytest.raises(TransientIOError):
            await HttpFileDownloader(timeout=5).download(f"http://127.0.0.1:{unused_tcp_port}/po.txt")

    def test_implements_protocol(self):
        assert isinstance(HttpFileDownloader(), FileDownloader)
        assert isinstance(LocalFileDownloader(), FileDownloader)


class TestStoreSettingsProvider:

    @pytest.mark.asyncio
    async def test_round_trip(self, store):
        provider = StoreSettingsProvider(store)

        assert await provider.get("m-1") is None

        await provider.put(AISettings(merchant_id="m-1", confidence_threshold=0.8, custom_rules=["Dates are day-first"]))
        loaded = await provider.get("m-1")

        assert loaded.confidence_threshold == 0.8
        assert loaded.custom_rules == ["Dates are day-first"]
        assert isinstance(provider, SettingsProvider)

    @pytest.mark.asyncio
    async def test_merchant_id_comes_from_key(self, store):
        await store.set("settings:m-2", {"confidence_threshold": 0.5})

        loaded = await StoreSettingsProvider(store).get("m-2")

        assert loaded.merchant_id == "m-2"


class TestTqdmProgressSink:

    def test_bar_lifecycle(self):
        sink = TqdmProgressSink()

        sink.publish(event("start"))
        assert sink._bars == {}

        sink.publish(event("plan", chunk_count=3, file_name="po.pdf"))
        bar = sink._bars["call-1"]
        assert bar.total == 3

        sink.publish(event("chunk_done"))
        assert bar.n == 1
        sink.publish(event("finalize"))
        assert bar.n == 3

        sink.publish(event("complete"))
        assert sink._bars == {}

    def test_bars_are_per_call(self):
        sink = TqdmProgressSink()

        sink.publish(event("plan", call_id="a", chunk_count=2))
        sink.publish(event("plan", call_id="b", chunk_count=5))
        sink.publish(event("chunk_done", call_id="b"))

        assert sink._bars["a"].n == 0
        assert sink._bars["b"].n == 1
        sink.close()
        assert sink._bars == {}


class TestCliHelpers:

    def test_make_upload(self, tmp_path):
        path = tmp_path / "po 17.pdf"
        path.write_bytes(b"%PDF-1.4")

        upload = make_upload(path, "m-1")

        assert upload.file_name == "po 17.pdf"
        assert upload.mime_type == "application/pdf"
        assert upload.file_size == 8
        assert upload.workflow_id == f"wf_{upload.id}"
        assert LocalFileDownloader.resolve(upload.file_url) == path.resolve()

    def test_print_summary(self, tmp_path, store, capsys, monkeypatch):
        monkeypatch.setenv("COLUMNS", "200")
        ok_path = tmp_path / "ok.txt"
        bad_path = tmp_path / "bad.txt"
        ok_path.write_text("PO Number: 1")
        bad_path.write_text("PO Number: 2")
        ok, bad = make_upload(ok_path, "m-1"), make_upload(bad_path, "m-1")

        queue = JobQueue(lambda job: None, store)
        queue.dead_letters.append(DeadLetterRecord(
            job=ExtractionJob(upload_id=bad.id, merchant_id="m-1", attempts_made=1),
            error="Configuration 'ai_settings' missing for merchant m-1",
            error_type="ConfigurationMissingError",
            attempts=1,
            retryable=False,
        ))
        results = {f"job_{ok.id}": AggregatedResult(
            confidence=0.95,
            extracted_data=ExtractedData(po_number="PO-1001"),
            review_status=ReviewStatus.AUTO_APPROVE,
        )}

        print_summary([ok, bad], results, queue, elapsed=1.5)

        output = capsys.readouterr().out
        assert "PO-1001" in output
        assert "ConfigurationMissingError" in output
        assert "1/2 succeeded, 1 dead-lettered" in output
