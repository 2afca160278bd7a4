"""Job poller: pick up due processing jobs and pending transcriptions."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, List

from sqlalchemy.orm import Session, sessionmaker

from ..config import BufferSettings, get_settings
from ..handlers.audio import TranscriptionAttempt, TranscriptionService
from . import store
from .backoff import should_retry
from .processor import BufferProcessor
from .types import ProcessingOutcome, summarize

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobPoller:
    """Drive :class:`BufferProcessor` from persisted ``scheduled_for`` rows.

    The poller holds no locks. Any number of instances may poll the same
    database; the processor's conditional claim decides who runs a job.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        processor: BufferProcessor,
        *,
        transcriptions: TranscriptionService | None = None,
        settings: BufferSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.processor = processor
        self.transcriptions = transcriptions
        self.settings = settings or get_settings()
        self.clock = clock

    def poll_due_jobs(self, now: datetime | None = None) -> List[ProcessingOutcome]:
        """Process every due job in one batch, isolating failures per job.

        Jobs created by the manager start with no attempts, and failed jobs
        stay failed, so the backoff gate only holds back rows that were put
        back to ``scheduled`` by hand with their attempt count kept.
        """

        now = now or self.clock()
        with self.session_factory() as session:
            jobs = store.list_due_jobs(
                session,
                now,
                limit=self.settings.poll_batch_size,
                max_attempts=self.settings.max_job_attempts,
            )

        outcomes: List[ProcessingOutcome] = []
        for job in jobs:
            decision = should_retry(
                job.attempts,
                job.processed_at,
                now=now,
                table=self.settings.retry_backoff_minutes,
                max_attempts=self.settings.max_job_attempts,
            )
            if not decision.retry:
                outcomes.append(
                    ProcessingOutcome(
                        buffer_id=job.buffer_id,
                        job_id=job.id,
                        status="skipped",
                        action="skipped",
                        reason="exhausted" if decision.exhausted else "backoff",
                    )
                )
                continue
            try:
                outcome = self.processor.process_buffer(job.buffer_id, job_id=job.id)
            except Exception as exc:
                logger.exception("Job %s for buffer %s crashed", job.id, job.buffer_id)
                outcome = ProcessingOutcome(
                    buffer_id=job.buffer_id,
                    job_id=job.id,
                    status="failed",
                    action="failed",
                    reason="worker_error",
                    error=str(exc),
                )
            outcomes.append(outcome)

        if outcomes:
            summary = summarize(outcomes)
            logger.info(
                "Polled %s due job(s): %s processed, %s failed, %s skipped",
                len(outcomes),
                summary.processed,
                summary.failed,
                summary.skipped,
            )
        return outcomes

    def retry_transcriptions(self) -> List[TranscriptionAttempt]:
        """Re-attempt pending transcriptions that are due under the backoff policy."""

        if self.transcriptions is None:
            return []
        attempts = self.transcriptions.retry_pending(limit=self.settings.poll_batch_size)
        if attempts:
            logger.info("Retried %s pending transcription(s)", len(attempts))
        return attempts

    def run_once(self) -> List[ProcessingOutcome]:
        outcomes = self.poll_due_jobs()
        self.retry_transcriptions()
        return outcomes

    def run_forever(
        self,
        interval_seconds: float | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Poll at a fixed interval until ``stop_event`` is set."""

        interval = interval_seconds or self.settings.poll_interval_seconds
        stop = stop_event or threading.Event()
        logger.info("Poller started (interval %ss)", interval)
        while not stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Polling pass failed")
            stop.wait(interval)
        logger.info("Poller stopped")


__all__ = ["JobPoller"]
