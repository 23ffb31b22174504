"""
Status Poller.

Reads the authority's processing stage for a submission and maps it onto the
internal taxonomy:

    submitted < validating < under_review < {accepted, rejected}

The stored stage only ever moves forward. Unknown raw stages, regressions
and conflicting terminal stages are logged and returned in the snapshot but
never persisted. Timer-driven and on-demand polls share this code.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from .authority import AuthorityStatus, FilingAuthority
from .models import (
    ClaimState,
    Clock,
    ExternalStage,
    ExternalStatusSnapshot,
    SubmissionRecord,
    utcnow,
)
from .repository import FilingRepository

logger = logging.getLogger(__name__)


RAW_STAGE_MAP: Dict[str, ExternalStage] = {
    # Received, not yet validated
    "UPLOADED": ExternalStage.SUBMITTED,
    "RECEIVED": ExternalStage.SUBMITTED,
    "SUBMITTED": ExternalStage.SUBMITTED,
    "SUBMITTED_AND_PENDING_FOR_E_VERIFICATION": ExternalStage.SUBMITTED,
    # Validation
    "VALIDATING": ExternalStage.VALIDATING,
    "VALIDATION_IN_PROGRESS": ExternalStage.VALIDATING,
    "PENDING_VALIDATION": ExternalStage.VALIDATING,
    "E_VERIFIED": ExternalStage.VALIDATING,
    # Processing
    "UNDER_PROCESSING": ExternalStage.UNDER_REVIEW,
    "UNDER_REVIEW": ExternalStage.UNDER_REVIEW,
    "PENDING_FOR_PROCESSING": ExternalStage.UNDER_REVIEW,
    "PROCESSING": ExternalStage.UNDER_REVIEW,
    # Terminal
    "PROCESSED": ExternalStage.ACCEPTED,
    "ACCEPTED": ExternalStage.ACCEPTED,
    "PROCESSED_WITH_REFUND": ExternalStage.ACCEPTED,
    "PROCESSED_WITH_DEMAND": ExternalStage.ACCEPTED,
    "PROCESSED_NO_DEMAND_NO_REFUND": ExternalStage.ACCEPTED,
    "REJECTED": ExternalStage.REJECTED,
    "DEFECTIVE": ExternalStage.REJECTED,
    "INVALID": ExternalStage.REJECTED,
    "RETURN_INVALIDATED": ExternalStage.REJECTED,
}


def map_stage(raw_stage: Optional[str]) -> Optional[ExternalStage]:
    """Map a raw authority stage (case-insensitive) to the internal taxonomy."""
    if not raw_stage:
        return None
    key = raw_stage.strip().upper().replace(" ", "_").replace("-", "_")
    return RAW_STAGE_MAP.get(key)


class StatusPoller:
    """Polls the authority and advances the stored stage monotonically."""

    def __init__(
        self,
        repository: FilingRepository,
        authority: FilingAuthority,
        clock: Clock = utcnow,
    ):
        self.repository = repository
        self.authority = authority
        self._clock = clock

    async def poll(self, record: SubmissionRecord) -> ExternalStatusSnapshot:
        """
        Fetch and apply the authority's current stage for a confirmed record.

        Raises:
            AuthorityUnavailableError: authority unreachable (retried upstream)
        """
        status = await self.authority.get_status(record.ack_number)
        return await self.apply_status(record, status)

    async def poll_filing(self, filing_id: str) -> Optional[ExternalStatusSnapshot]:
        """Poll by filing; a filing without a confirmed submission is a no-op."""
        record = await self.repository.get_submission_for_filing(filing_id)
        if record is None or record.claim_state != ClaimState.CONFIRMED or not record.ack_number:
            logger.debug(f"[POLL] Nothing to poll | filing={filing_id}")
            return None
        return await self.poll(record)

    async def reconcile(self, filing_id: str) -> Optional[AuthorityStatus]:
        """Ask the authority whether it holds a submission for this filing."""
        status = await self.authority.lookup(filing_id)
        logger.info(
            f"[POLL] Reconciled claim | filing={filing_id} | "
            f"received={'yes' if status else 'no'}"
            + (f" | ack={status.ack_number}" if status else "")
        )
        return status

    async def apply_status(
        self,
        record: SubmissionRecord,
        status: AuthorityStatus,
    ) -> ExternalStatusSnapshot:
        """Map a status read and persist it only if it moves the stage forward."""
        now = self._clock()
        mapped = map_stage(status.raw_stage)
        snapshot = ExternalStatusSnapshot(
            filing_id=record.filing_id,
            ack_number=status.ack_number,
            raw_stage=status.raw_stage,
            mapped_stage=mapped,
            errors=status.errors,
            warnings=status.warnings,
            observed_at=now,
        )

        if mapped is None:
            logger.warning(
                f"[POLL] Unknown authority stage ignored | filing={record.filing_id} | "
                f"raw_stage={status.raw_stage}"
            )
            snapshot.anomaly = "unknown_stage"
            await self.repository.mark_polled(record.record_id, now)
            return snapshot

        current = record.last_known_stage
        if current is not None:
            if mapped == current:
                await self.repository.mark_polled(record.record_id, now)
                return snapshot
            if mapped.rank <= current.rank:
                snapshot.anomaly = (
                    "conflicting_terminal" if mapped.is_terminal and current.is_terminal
                    else "regression"
                )
                logger.warning(
                    f"[POLL] Stage anomaly ({snapshot.anomaly}) not persisted | "
                    f"filing={record.filing_id} | stored={current.value} | "
                    f"reported={mapped.value} | raw_stage={status.raw_stage}"
                )
                await self.repository.mark_polled(record.record_id, now)
                return snapshot

        advanced = await self.repository.advance_stage(
            record.record_id, mapped, status.raw_stage, now
        )
        if advanced:
            record.last_known_stage = mapped
            record.last_raw_stage = status.raw_stage
            record.last_polled_at = now
            snapshot.persisted = True
            logger.info(
                f"[POLL] Stage advanced | filing={record.filing_id} | "
                f"from={current.value if current else None} | to={mapped.value}"
            )
        else:
            # Another poller stored a later stage between our read and write.
            snapshot.anomaly = "stale_read"
        return snapshot


class StatusPollingLoop:
    """
    Periodic in-process polling.

    `poll_once` is typically FilingWorkflow.refresh_submitted and returns the
    number of filings polled.
    """

    def __init__(
        self,
        poll_once: Callable[[], Awaitable[int]],
        interval_seconds: float = 900.0,
    ):
        self.poll_once = poll_once
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="status-polling-loop")
        logger.info(f"[POLL] Polling loop started | interval={self.interval_seconds}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("[POLL] Polling loop stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                polled = await self.poll_once()
                logger.debug(f"[POLL] Cycle complete | filings={polled}")
            except Exception:
                logger.exception("[POLL] Polling cycle failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
