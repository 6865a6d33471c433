"""The per-record processing state machine.

    uploaded -> transcribing -> analyzing -> complete
         \\            \\             \\
          `------------`-------------`--> failed

Every run consumes one attempt before any external call, so a record
is never sent to the external services more than ``max_attempts``
times. Each transition is persisted before the next step starts, which
lets a later run resume from whatever the previous one left behind.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import PurePosixPath
from typing import Any
from uuid import UUID

from dreamflow.constants import DEFAULT_MAX_ATTEMPTS
from dreamflow.logging import get_logger, log_context
from dreamflow.pipeline.analysis import AnalysisParseError, DreamAnalysis, parse_analysis
from dreamflow.pipeline.context import ContextSelector
from dreamflow.pipeline.embeddings import EmbeddingsClient
from dreamflow.pipeline.generation import AnalysisGenerator
from dreamflow.pipeline.motifs import MotifTracker
from dreamflow.pipeline.prompts import SYSTEM_PROMPT, build_analysis_prompt
from dreamflow.pipeline.transcription import Transcriber, TranscriptionError
from dreamflow.records.blobs import BlobStore
from dreamflow.records.models import Record, RecordStatus
from dreamflow.records.storage import RecordStorage
from dreamflow.utils import timed_operation, truncate, utcnow

log = get_logger("dreamflow.pipeline.processor")

MAX_ATTEMPTS_MESSAGE = "Maximum processing attempts exceeded"


class RecordNotFound(Exception):
    """Raised when processing is requested for an unknown record."""


class _StepFailed(Exception):
    """Internal: a step failed and the record has been marked failed."""


@dataclass
class ProcessOutcome:
    """Result of one ``process`` invocation."""

    record_id: UUID
    status: str
    message: str = ""

    @property
    def success(self) -> bool:
        return self.status in ("complete", "skipped")

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": str(self.record_id),
            "status": self.status,
            "success": self.success,
            "message": self.message,
        }


def _describe(exc: BaseException, timeout: float) -> str:
    if isinstance(exc, TimeoutError):
        return f"timed out after {timeout:g}s"
    return str(exc) or exc.__class__.__name__


class ProcessingPipeline:
    """Drives a record from ``uploaded`` to ``complete`` or ``failed``."""

    def __init__(
        self,
        records: RecordStorage,
        blobs: BlobStore,
        transcriber: Transcriber,
        generator: AnalysisGenerator,
        selector: ContextSelector,
        motifs: MotifTracker,
        embeddings: EmbeddingsClient | None = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float = 120.0,
        sweep_grace: timedelta = timedelta(minutes=30),
    ) -> None:
        self._records = records
        self._blobs = blobs
        self._transcriber = transcriber
        self._generator = generator
        self._selector = selector
        self._motifs = motifs
        self._embeddings = embeddings
        self._max_attempts = max_attempts
        self._timeout = timeout
        self._sweep_grace = sweep_grace

    async def process(self, record_id: UUID) -> ProcessOutcome:
        """Run (or resume) processing for one record.

        Safe to call repeatedly: complete records are left alone and
        exhausted records are failed without touching external services.

        Raises:
            RecordNotFound: No record has this id.
        """
        record = await self._records.get(record_id)
        if record is None:
            raise RecordNotFound(f"Record not found: {record_id}")

        if record.status == RecordStatus.COMPLETE:
            log.info("processing_skipped_complete", record_id=str(record_id))
            return ProcessOutcome(record_id, "skipped", "Record already complete")

        if record.attempts >= self._max_attempts:
            return await self._exhausted(record)

        claimed = await self._records.begin_attempt(record_id, self._max_attempts)
        if claimed is None:
            # Lost a race with a concurrent run
            current = await self._records.get(record_id)
            if current is not None and current.status == RecordStatus.COMPLETE:
                return ProcessOutcome(record_id, "skipped", "Record already complete")
            return await self._exhausted(current or record)

        log.info("processing_started", record_id=str(record_id), attempt=claimed.attempts)
        with log_context(record_id=str(record_id), user_id=claimed.user_id):
            async with timed_operation("processing_finished", log=log):
                try:
                    await self._run(claimed)
                except _StepFailed as e:
                    return ProcessOutcome(record_id, "failed", str(e))

        return ProcessOutcome(record_id, "complete")

    async def _exhausted(self, record: Record) -> ProcessOutcome:
        await self._records.mark_failed(record.id, MAX_ATTEMPTS_MESSAGE)
        log.warning(
            "processing_attempts_exhausted",
            record_id=str(record.id),
            attempts=record.attempts,
            max_attempts=self._max_attempts,
        )
        return ProcessOutcome(record.id, "exhausted", MAX_ATTEMPTS_MESSAGE)

    async def _fail(self, record: Record, message: str) -> _StepFailed:
        message = truncate(message)
        await self._records.mark_failed(record.id, message)
        return _StepFailed(message)

    async def _run(self, record: Record) -> None:
        transcript = record.transcript
        if not transcript:
            transcript = await self._transcribe(record)
        elif record.status != RecordStatus.ANALYZING:
            await self._records.set_status(record.id, RecordStatus.ANALYZING)

        analysis = await self._analyze(record, transcript)
        embedding = await self._embed(record, transcript)

        await self._records.complete(record.id, analysis.to_document(), embedding)
        log.info(
            "record_completed",
            record_id=str(record.id),
            themes=len(analysis.themes),
            symbols=len(analysis.symbols),
            has_embedding=embedding is not None,
        )

        try:
            await self._motifs.record(record.user_id, analysis)
        except Exception as e:
            log.error("motif_tracking_error", record_id=str(record.id), error=str(e))

    async def _transcribe(self, record: Record) -> str:
        await self._records.set_status(record.id, RecordStatus.TRANSCRIBING)
        filename = PurePosixPath(record.external_path or record.blob_path).name

        try:
            audio = await self._blobs.get(record.blob_path)
            async with asyncio.timeout(self._timeout):
                transcript = await self._transcriber.transcribe(filename, audio)
            if not transcript or not transcript.strip():
                raise TranscriptionError("No transcription text received")
        except Exception as e:
            log.error("transcription_failed", record_id=str(record.id), error=str(e))
            raise await self._fail(
                record, f"Transcription failed: {_describe(e, self._timeout)}"
            ) from e

        await self._records.save_transcript(record.id, transcript)
        log.info("transcription_saved", record_id=str(record.id), characters=len(transcript))
        return transcript

    async def _analyze(self, record: Record, transcript: str) -> DreamAnalysis:
        try:
            context = await self._selector.select(
                record.user_id, transcript, exclude_id=record.id
            )
            prompt = build_analysis_prompt(transcript, context, self._generator.model_name)
            async with asyncio.timeout(self._timeout):
                raw = await self._generator.generate(SYSTEM_PROMPT, prompt)
            return parse_analysis(raw)
        except AnalysisParseError as e:
            log.warning("analysis_contract_violation", record_id=str(record.id), error=str(e))
            raise await self._fail(record, f"Analysis failed: {e}") from e
        except Exception as e:
            log.error("analysis_failed", record_id=str(record.id), error=str(e))
            raise await self._fail(
                record, f"Analysis failed: {_describe(e, self._timeout)}"
            ) from e

    async def _embed(self, record: Record, transcript: str) -> list[float] | None:
        if self._embeddings is None:
            return None
        try:
            async with asyncio.timeout(self._timeout):
                return await self._embeddings.embed_text(transcript)
        except Exception as e:
            log.warning("embedding_failed", record_id=str(record.id), error=str(e))
            return None

    async def sweep(
        self,
        *,
        limit: int = 20,
        older_than: datetime | None = None,
    ) -> list[ProcessOutcome]:
        """Re-run records stuck in a non-terminal state.

        Picks up records whose trigger was lost or whose run was cut
        short, as long as they still have attempts left.
        """
        cutoff = older_than or (utcnow() - self._sweep_grace)
        stalled = await self._records.list_stalled(
            older_than=cutoff, max_attempts=self._max_attempts, limit=limit
        )
        outcomes: list[ProcessOutcome] = []
        for record in stalled:
            try:
                outcomes.append(await self.process(record.id))
            except RecordNotFound:
                continue

        if stalled:
            log.info(
                "sweep_completed",
                found=len(stalled),
                completed=sum(1 for o in outcomes if o.status == "complete"),
            )
        return outcomes


class TaskTrigger:
    """Runs the pipeline for new records as background asyncio tasks."""

    def __init__(self, pipeline: ProcessingPipeline, *, timeout: float = 600.0) -> None:
        self._pipeline = pipeline
        self._timeout = timeout
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def trigger(self, record_id: UUID) -> None:
        task = asyncio.create_task(self._run(record_id), name=f"process-{record_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, record_id: UUID) -> None:
        try:
            async with asyncio.timeout(self._timeout):
                await self._pipeline.process(record_id)
        except TimeoutError:
            log.error("pipeline_run_timed_out", record_id=str(record_id), timeout=self._timeout)
        except RecordNotFound:
            log.warning("pipeline_record_missing", record_id=str(record_id))
        except Exception as e:
            log.exception("pipeline_run_crashed", record_id=str(record_id), error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight runs to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel in-flight runs; the sweep picks them up later."""
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
