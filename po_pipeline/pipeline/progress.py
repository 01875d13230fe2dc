"""Call-scoped progress reporting.

A ``ProgressReporter`` belongs to exactly one ``parse_document`` call. Events
are emitted fire-and-forget: each emit is a task chained on the previous one,
so sinks see events in publish order without the caller waiting on them.
"""

import asyncio
import inspect
import logging
import uuid
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from tqdm import tqdm

from ..core.models import ProgressEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class ProgressSink(Protocol):
    """Receives progress events; may be sync or async."""

    def publish(self, event: ProgressEvent) -> Any:
        ...


class ProgressReporter:
    """Progress publisher with its own call id and sequence counter."""

    def __init__(
        self,
        sink: Optional[ProgressSink] = None,
        workflow_id: Optional[str] = None,
        merchant_id: Optional[str] = None,
        call_id: Optional[str] = None
    ):
        self.sink = sink
        self.workflow_id = workflow_id
        self.merchant_id = merchant_id
        self.call_id = call_id or uuid.uuid4().hex[:12]
        self._sequence = 0
        self._tail: Optional[asyncio.Task] = None

    @property
    def events_published(self) -> int:
        return self._sequence

    def publish_sub_stage_progress(
        self,
        stage: str,
        current: int,
        total: int,
        meta: Optional[Dict[str, Any]] = None,
        message: str = ""
    ) -> ProgressEvent:
        """Schedule one event; never blocks and never raises on sink errors."""
        total = max(total, 1)
        current = min(max(current, 0), total)
        self._sequence += 1

        event = ProgressEvent(
            sequence=self._sequence,
            call_id=self.call_id,
            workflow_id=self.workflow_id,
            merchant_id=self.merchant_id,
            stage=stage,
            current=current,
            total=total,
            percent=round(current * 100 / total),
            message=message,
            meta=meta or {},
        )

        if self.sink is not None:
            self._tail = asyncio.ensure_future(self._emit(event, self._tail))
        return event

    async def _emit(self, event: ProgressEvent, previous: Optional[asyncio.Task]) -> None:
        if previous is not None:
            await previous
        try:
            outcome = self.sink.publish(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(
                f"[PROGRESS] Sink failed for {event.stage} (call {self.call_id}, seq {event.sequence}): {e}"
            )

    async def flush(self) -> None:
        """Wait until every scheduled event has reached the sink."""
        if self._tail is not None:
            await self._tail


class LoggingProgressSink:
    """Writes progress events to the module logger."""

    def __init__(self, level: int = logging.DEBUG):
        self.level = level

    def publish(self, event: ProgressEvent) -> None:
        logger.log(
            self.level,
            f"[PROGRESS] {event.workflow_id or event.call_id} #{event.sequence} {event.stage} "
            f"{event.current}/{event.total} ({event.percent}%) {event.message}".rstrip()
        )


class TqdmProgressSink:
    """Shows one chunk progress bar per parse call."""

    def __init__(self, position_offset: int = 0, leave: bool = False):
        self.position_offset = position_offset
        self.leave = leave
        self._bars: Dict[str, tqdm] = {}

    def publish(self, event: ProgressEvent) -> None:
        bar = self._bars.get(event.call_id)

        if event.stage == "plan":
            chunk_count = int(event.meta.get("chunk_count", 1))
            bar = tqdm(
                total=chunk_count,
                desc=f"{event.meta.get('file_name') or event.workflow_id or event.call_id}",
                unit="chunk",
                position=self.position_offset + len(self._bars),
                leave=self.leave,
            )
            self._bars[event.call_id] = bar
            return

        if bar is None:
            return

        if event.stage == "finalize":
            bar.n = bar.total
            bar.refresh()
        elif event.stage == "chunk_done":
            bar.n = min(bar.total, bar.n + 1)
            bar.refresh()
        elif event.stage == "complete":
            bar.close()
            del self._bars[event.call_id]

    def close(self) -> None:
        for bar in self._bars.values():
            bar.close()
        self._bars.clear()
