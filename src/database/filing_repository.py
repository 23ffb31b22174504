"""Async Filing Repository Implementation.

Implements efiling.repository.FilingRepository on SQLAlchemy async sessions.
Each call runs in its own short transaction so that the storage-level
guarantees hold across processes sharing one database:

- filings are updated with `WHERE version = :expected` (optimistic lock)
- submission_records.filing_id is UNIQUE (one claim per filing)
- a claim is taken over with `WHERE claim_state = :s AND attempts = :n`
- the stored stage rank only increases (`WHERE last_stage_rank < :rank`)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from efiling.errors import AlreadySubmittedError, ConcurrentUpdateError, NotFoundError
from efiling.models import (
    ClaimState,
    Clock,
    ExternalStage,
    Filing,
    FilingGroup,
    FilingState,
    SessionState,
    SubmissionRecord,
    TransitionRecord,
    VerificationSession,
    utcnow,
)
from efiling.repository import FilingRepository

from .models import (
    FilingGroupRow,
    FilingRow,
    FilingTransitionRow,
    SubmissionRecordRow,
    VerificationSessionRow,
)

logger = logging.getLogger(__name__)

ACTIVE_SESSION_STATES = [SessionState.INITIATED.value, SessionState.CHALLENGE_ISSUED.value]


class SqlFilingRepository(FilingRepository):
    """
    SQLAlchemy implementation of FilingRepository.

    Args:
        session_factory: async_sessionmaker bound to the filing database
        clock: source of updated_at timestamps
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Clock = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    # =========================================================================
    # ROW MAPPING
    # =========================================================================

    @staticmethod
    def _filing_values(filing: Filing) -> Dict[str, Any]:
        return {
            "account_id": filing.account_id,
            "subject": filing.subject.model_dump(mode="json"),
            "form_type": filing.form_type,
            "assessment_period": filing.assessment_period,
            "state": filing.state.value,
            "accepted_declaration_ids": list(filing.accepted_declaration_ids),
            "verification_method": filing.verification_method.value if filing.verification_method else None,
            "verification_session_id": filing.verification_session_id,
            "submission_record_id": filing.submission_record_id,
            "computed_liability": filing.computed_liability,
            "supersedes_id": filing.supersedes_id,
            "group_id": filing.group_id,
            "integrity_hold": filing.integrity_hold,
            "integrity_hold_reason": filing.integrity_hold_reason,
        }

    @staticmethod
    def _row_to_filing(row: FilingRow) -> Filing:
        return Filing(
            filing_id=row.filing_id,
            account_id=row.account_id,
            subject=row.subject,
            form_type=row.form_type,
            assessment_period=row.assessment_period,
            state=FilingState(row.state),
            accepted_declaration_ids=list(row.accepted_declaration_ids or []),
            verification_method=row.verification_method,
            verification_session_id=row.verification_session_id,
            submission_record_id=row.submission_record_id,
            computed_liability=row.computed_liability,
            supersedes_id=row.supersedes_id,
            group_id=row.group_id,
            integrity_hold=bool(row.integrity_hold),
            integrity_hold_reason=row.integrity_hold_reason,
            created_at=row.created_at,
            updated_at=row.updated_at,
            version=row.version,
        )

    @staticmethod
    def _session_values(session: VerificationSession) -> Dict[str, Any]:
        return {
            "filing_id": session.filing_id,
            "method": session.method.value,
            "state": session.state.value,
            "issued_at": session.issued_at,
            "expires_at": session.expires_at,
            "attempt_count": session.attempt_count,
            "resend_count": session.resend_count,
            "last_resent_at": session.last_resent_at,
            "completed_at": session.completed_at,
            "failure_reason": session.failure_reason,
            "proof_token": session.proof_token,
            "payload": dict(session.payload),
        }

    @staticmethod
    def _row_to_session(row: VerificationSessionRow) -> VerificationSession:
        return VerificationSession(
            session_id=row.session_id,
            filing_id=row.filing_id,
            method=row.method,
            state=SessionState(row.state),
            issued_at=row.issued_at,
            expires_at=row.expires_at,
            attempt_count=row.attempt_count,
            resend_count=row.resend_count,
            last_resent_at=row.last_resent_at,
            completed_at=row.completed_at,
            failure_reason=row.failure_reason,
            proof_token=row.proof_token,
            payload=dict(row.payload or {}),
        )

    @staticmethod
    def _row_to_submission(row: SubmissionRecordRow) -> SubmissionRecord:
        return SubmissionRecord(
            record_id=row.record_id,
            filing_id=row.filing_id,
            verification_session_id=row.verification_session_id,
            claim_state=row.claim_state,
            ack_number=row.ack_number,
            claimed_at=row.claimed_at,
            submitted_at=row.submitted_at,
            attempts=row.attempts,
            last_known_stage=row.last_known_stage,
            last_raw_stage=row.last_raw_stage,
            last_polled_at=row.last_polled_at,
        )

    # =========================================================================
    # FILINGS
    # =========================================================================

    async def add_filing(self, filing: Filing) -> Filing:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    FilingRow(
                        filing_id=filing.filing_id,
                        created_at=filing.created_at,
                        updated_at=filing.updated_at,
                        version=filing.version,
                        **self._filing_values(filing),
                    )
                )
        return filing

    async def get_filing(self, filing_id: str) -> Optional[Filing]:
        async with self._session_factory() as session:
            row = await session.get(FilingRow, filing_id)
            return self._row_to_filing(row) if row else None

    async def save_filing(self, filing: Filing) -> Filing:
        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(FilingRow)
                    .where(
                        FilingRow.filing_id == filing.filing_id,
                        FilingRow.version == filing.version,
                    )
                    .values(
                        version=filing.version + 1,
                        updated_at=now,
                        **self._filing_values(filing),
                    )
                )
                if result.rowcount == 0:
                    stored = await session.get(FilingRow, filing.filing_id)
                    if stored is None:
                        raise NotFoundError(f"Filing {filing.filing_id} not found")
                    logger.warning(
                        f"[WORKFLOW] Version conflict | filing={filing.filing_id} | "
                        f"expected={filing.version} | stored={stored.version}"
                    )
                    raise ConcurrentUpdateError(
                        f"Filing {filing.filing_id} was modified concurrently",
                        details={"expected_version": filing.version, "stored_version": stored.version},
                    )
        filing.version += 1
        filing.updated_at = now
        return filing

    async def list_filings(
        self,
        state: Optional[FilingState] = None,
        limit: Optional[int] = None,
    ) -> List[Filing]:
        query = select(FilingRow).order_by(FilingRow.created_at)
        if state is not None:
            query = query.where(FilingRow.state == FilingState(state).value)
        if limit:
            query = query.limit(limit)
        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [self._row_to_filing(row) for row in rows]

    # =========================================================================
    # VERIFICATION SESSIONS
    # =========================================================================

    async def add_session(self, session: VerificationSession) -> VerificationSession:
        async with self._session_factory() as db:
            async with db.begin():
                db.add(VerificationSessionRow(session_id=session.session_id, **self._session_values(session)))
        return session

    async def get_session(self, session_id: str) -> Optional[VerificationSession]:
        async with self._session_factory() as db:
            row = await db.get(VerificationSessionRow, session_id)
            return self._row_to_session(row) if row else None

    async def save_session(self, session: VerificationSession) -> VerificationSession:
        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(VerificationSessionRow)
                    .where(VerificationSessionRow.session_id == session.session_id)
                    .values(**self._session_values(session))
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"Session {session.session_id} not found")
        return session

    async def list_sessions(self, filing_id: str) -> List[VerificationSession]:
        query = (
            select(VerificationSessionRow)
            .where(VerificationSessionRow.filing_id == filing_id)
            .order_by(VerificationSessionRow.issued_at)
        )
        async with self._session_factory() as db:
            rows = (await db.execute(query)).scalars().all()
            return [self._row_to_session(row) for row in rows]

    async def find_active_session(self, filing_id: str) -> Optional[VerificationSession]:
        query = (
            select(VerificationSessionRow)
            .where(
                VerificationSessionRow.filing_id == filing_id,
                VerificationSessionRow.state.in_(ACTIVE_SESSION_STATES),
            )
            .order_by(VerificationSessionRow.issued_at.desc())
            .limit(1)
        )
        async with self._session_factory() as db:
            row = (await db.execute(query)).scalars().first()
            return self._row_to_session(row) if row else None

    # =========================================================================
    # SUBMISSION RECORDS
    # =========================================================================

    async def insert_submission(self, record: SubmissionRecord) -> SubmissionRecord:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        SubmissionRecordRow(
                            record_id=record.record_id,
                            filing_id=record.filing_id,
                            verification_session_id=record.verification_session_id,
                            claim_state=record.claim_state.value,
                            ack_number=record.ack_number,
                            claimed_at=record.claimed_at,
                            submitted_at=record.submitted_at,
                            attempts=record.attempts,
                        )
                    )
        except IntegrityError as e:
            logger.info(f"[SUBMIT] Claim refused by unique constraint | filing={record.filing_id}")
            raise AlreadySubmittedError(
                f"Filing {record.filing_id} already has a submission record",
                details={"filing_id": record.filing_id},
            ) from e
        return record

    async def get_submission(self, record_id: str) -> Optional[SubmissionRecord]:
        async with self._session_factory() as session:
            row = await session.get(SubmissionRecordRow, record_id)
            return self._row_to_submission(row) if row else None

    async def get_submission_for_filing(self, filing_id: str) -> Optional[SubmissionRecord]:
        query = select(SubmissionRecordRow).where(SubmissionRecordRow.filing_id == filing_id)
        async with self._session_factory() as session:
            row = (await session.execute(query)).scalars().first()
            return self._row_to_submission(row) if row else None

    async def save_submission(self, record: SubmissionRecord) -> SubmissionRecord:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(SubmissionRecordRow)
                    .where(SubmissionRecordRow.record_id == record.record_id)
                    .values(
                        claim_state=record.claim_state.value,
                        ack_number=record.ack_number,
                        claimed_at=record.claimed_at,
                        submitted_at=record.submitted_at,
                        attempts=record.attempts,
                    )
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"Submission {record.record_id} not found")
        return record

    async def take_over_claim(
        self,
        record_id: str,
        expected_state: ClaimState,
        expected_attempts: int,
        claimed_at: datetime,
    ) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(SubmissionRecordRow)
                    .where(
                        SubmissionRecordRow.record_id == record_id,
                        SubmissionRecordRow.claim_state == expected_state.value,
                        SubmissionRecordRow.attempts == expected_attempts,
                    )
                    .values(
                        claim_state=ClaimState.IN_FLIGHT.value,
                        claimed_at=claimed_at,
                        attempts=SubmissionRecordRow.attempts + 1,
                    )
                )
                if result.rowcount:
                    return True
                if await session.get(SubmissionRecordRow, record_id) is None:
                    raise NotFoundError(f"Submission {record_id} not found")
                logger.info(f"[SUBMIT] Claim takeover lost to another worker | record={record_id}")
                return False

    async def delete_submission(self, record_id: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(SubmissionRecordRow).where(SubmissionRecordRow.record_id == record_id)
                )

    async def advance_stage(
        self,
        record_id: str,
        stage: ExternalStage,
        raw_stage: str,
        observed_at: datetime,
    ) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(SubmissionRecordRow)
                    .where(
                        SubmissionRecordRow.record_id == record_id,
                        or_(
                            SubmissionRecordRow.last_stage_rank.is_(None),
                            SubmissionRecordRow.last_stage_rank < stage.rank,
                        ),
                    )
                    .values(
                        last_known_stage=stage.value,
                        last_stage_rank=stage.rank,
                        last_raw_stage=raw_stage,
                        last_polled_at=observed_at,
                    )
                )
                if result.rowcount:
                    return True
                if await session.get(SubmissionRecordRow, record_id) is None:
                    raise NotFoundError(f"Submission {record_id} not found")
                return False

    async def mark_polled(self, record_id: str, observed_at: datetime) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(SubmissionRecordRow)
                    .where(SubmissionRecordRow.record_id == record_id)
                    .values(last_polled_at=observed_at)
                )

    # =========================================================================
    # AUDIT AND GROUPS
    # =========================================================================

    async def append_transition(self, record: TransitionRecord) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    FilingTransitionRow(
                        filing_id=record.filing_id,
                        from_state=record.from_state.value,
                        to_state=record.to_state.value,
                        event=record.event,
                        verification_session_id=record.verification_session_id,
                        session_state=record.session_state.value if record.session_state else None,
                        at=record.at,
                    )
                )

    async def list_transitions(self, filing_id: str) -> List[TransitionRecord]:
        query = (
            select(FilingTransitionRow)
            .where(FilingTransitionRow.filing_id == filing_id)
            .order_by(FilingTransitionRow.id)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [
                TransitionRecord(
                    filing_id=row.filing_id,
                    from_state=row.from_state,
                    to_state=row.to_state,
                    event=row.event,
                    verification_session_id=row.verification_session_id,
                    session_state=row.session_state,
                    at=row.at,
                )
                for row in rows
            ]

    async def add_group(self, group: FilingGroup) -> FilingGroup:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    FilingGroupRow(
                        group_id=group.group_id,
                        account_id=group.account_id,
                        filing_ids=list(group.filing_ids),
                        created_at=group.created_at,
                    )
                )
        return group

    async def get_group(self, group_id: str) -> Optional[FilingGroup]:
        async with self._session_factory() as session:
            row = await session.get(FilingGroupRow, group_id)
            if row is None:
                return None
            return FilingGroup(
                group_id=row.group_id,
                account_id=row.account_id,
                filing_ids=list(row.filing_ids or []),
                created_at=row.created_at,
            )
