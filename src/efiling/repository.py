"""
Filing persistence.

FilingRepository is the storage contract the workflow depends on. Two
implementations exist:
- InMemoryFilingRepository (this module): process-local, used by the
  sandbox and by tests
- SqlFilingRepository (database.filing_repository): SQLAlchemy, used when
  APP_STORAGE_BACKEND=database

Storage-level guarantees both must provide:
- save_filing is a conditional update on `version` (CONCURRENT_UPDATE on mismatch)
- at most one SubmissionRecord per filing (ALREADY_SUBMITTED on a second insert)
- take_over_claim is a conditional update on (claim_state, attempts)
- advance_stage never moves last_known_stage backwards
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from .errors import AlreadySubmittedError, ConcurrentUpdateError, NotFoundError
from .models import (
    ClaimState,
    Clock,
    ExternalStage,
    Filing,
    FilingGroup,
    FilingState,
    SubmissionRecord,
    TransitionRecord,
    VerificationSession,
    utcnow,
)


class FilingRepository(ABC):
    """Storage contract for filings and everything hanging off them."""

    # ------------------------------------------------------------------
    # Filings
    # ------------------------------------------------------------------

    @abstractmethod
    async def add_filing(self, filing: Filing) -> Filing:
        ...

    @abstractmethod
    async def get_filing(self, filing_id: str) -> Optional[Filing]:
        ...

    @abstractmethod
    async def save_filing(self, filing: Filing) -> Filing:
        """
        Persist a filing if nobody saved it since it was read.

        On success the passed object's version is bumped in place.

        Raises:
            ConcurrentUpdateError: stored version differs from filing.version
        """
        ...

    @abstractmethod
    async def list_filings(
        self,
        state: Optional[FilingState] = None,
        limit: Optional[int] = None,
    ) -> List[Filing]:
        ...

    async def require_filing(self, filing_id: str) -> Filing:
        filing = await self.get_filing(filing_id)
        if filing is None:
            raise NotFoundError(f"Filing {filing_id} not found", details={"filing_id": filing_id})
        return filing

    # ------------------------------------------------------------------
    # Verification sessions
    # ------------------------------------------------------------------

    @abstractmethod
    async def add_session(self, session: VerificationSession) -> VerificationSession:
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[VerificationSession]:
        ...

    @abstractmethod
    async def save_session(self, session: VerificationSession) -> VerificationSession:
        ...

    @abstractmethod
    async def list_sessions(self, filing_id: str) -> List[VerificationSession]:
        """All sessions of a filing, oldest first."""
        ...

    async def find_active_session(self, filing_id: str) -> Optional[VerificationSession]:
        for session in reversed(await self.list_sessions(filing_id)):
            if session.is_active:
                return session
        return None

    # ------------------------------------------------------------------
    # Submission records
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_submission(self, record: SubmissionRecord) -> SubmissionRecord:
        """
        Insert a claim row.

        Raises:
            AlreadySubmittedError: a record for the filing already exists
        """
        ...

    @abstractmethod
    async def get_submission(self, record_id: str) -> Optional[SubmissionRecord]:
        ...

    @abstractmethod
    async def get_submission_for_filing(self, filing_id: str) -> Optional[SubmissionRecord]:
        ...

    @abstractmethod
    async def save_submission(self, record: SubmissionRecord) -> SubmissionRecord:
        """Persist claim fields; stage fields are left to advance_stage."""
        ...

    @abstractmethod
    async def take_over_claim(
        self,
        record_id: str,
        expected_state: ClaimState,
        expected_attempts: int,
        claimed_at: datetime,
    ) -> bool:
        """
        Re-open an indeterminate or stale claim for a re-send.

        The stored claim moves to in_flight (attempts + 1, claimed_at reset)
        only while it still has `expected_state` and `expected_attempts`, so
        exactly one of several competing callers wins.

        Returns:
            True if this caller now owns the claim
        """
        ...

    @abstractmethod
    async def delete_submission(self, record_id: str) -> None:
        """Release a claim that never reached the authority."""
        ...

    @abstractmethod
    async def advance_stage(
        self,
        record_id: str,
        stage: ExternalStage,
        raw_stage: str,
        observed_at: datetime,
    ) -> bool:
        """
        Conditionally move last_known_stage forward.

        Returns:
            True if the stored stage changed, False if it is already at or
            beyond `stage`
        """
        ...

    @abstractmethod
    async def mark_polled(self, record_id: str, observed_at: datetime) -> None:
        ...

    # ------------------------------------------------------------------
    # Audit and groups
    # ------------------------------------------------------------------

    @abstractmethod
    async def append_transition(self, record: TransitionRecord) -> None:
        ...

    @abstractmethod
    async def list_transitions(self, filing_id: str) -> List[TransitionRecord]:
        ...

    @abstractmethod
    async def add_group(self, group: FilingGroup) -> FilingGroup:
        ...

    @abstractmethod
    async def get_group(self, group_id: str) -> Optional[FilingGroup]:
        ...


class InMemoryFilingRepository(FilingRepository):
    """
    Process-local repository.

    Stores deep copies so callers cannot mutate stored state without going
    through save_*, which keeps the version check meaningful.
    """

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._filings: Dict[str, Filing] = {}
        self._sessions: Dict[str, VerificationSession] = {}
        self._submissions: Dict[str, SubmissionRecord] = {}
        self._submission_by_filing: Dict[str, str] = {}
        self._transitions: Dict[str, List[TransitionRecord]] = {}
        self._groups: Dict[str, FilingGroup] = {}

    async def add_filing(self, filing: Filing) -> Filing:
        self._filings[filing.filing_id] = filing.model_copy(deep=True)
        return filing

    async def get_filing(self, filing_id: str) -> Optional[Filing]:
        stored = self._filings.get(filing_id)
        return stored.model_copy(deep=True) if stored else None

    async def save_filing(self, filing: Filing) -> Filing:
        stored = self._filings.get(filing.filing_id)
        if stored is None:
            raise NotFoundError(f"Filing {filing.filing_id} not found")
        if stored.version != filing.version:
            raise ConcurrentUpdateError(
                f"Filing {filing.filing_id} was modified concurrently",
                details={"expected_version": filing.version, "stored_version": stored.version},
            )
        filing.version += 1
        filing.updated_at = self._clock()
        self._filings[filing.filing_id] = filing.model_copy(deep=True)
        return filing

    async def list_filings(
        self,
        state: Optional[FilingState] = None,
        limit: Optional[int] = None,
    ) -> List[Filing]:
        result = [
            f.model_copy(deep=True)
            for f in sorted(self._filings.values(), key=lambda f: f.created_at)
            if state is None or f.state == state
        ]
        return result[:limit] if limit else result

    async def add_session(self, session: VerificationSession) -> VerificationSession:
        self._sessions[session.session_id] = session.model_copy(deep=True)
        return session

    async def get_session(self, session_id: str) -> Optional[VerificationSession]:
        stored = self._sessions.get(session_id)
        return stored.model_copy(deep=True) if stored else None

    async def save_session(self, session: VerificationSession) -> VerificationSession:
        if session.session_id not in self._sessions:
            raise NotFoundError(f"Session {session.session_id} not found")
        self._sessions[session.session_id] = session.model_copy(deep=True)
        return session

    async def list_sessions(self, filing_id: str) -> List[VerificationSession]:
        return [
            s.model_copy(deep=True)
            for s in sorted(self._sessions.values(), key=lambda s: s.issued_at)
            if s.filing_id == filing_id
        ]

    async def insert_submission(self, record: SubmissionRecord) -> SubmissionRecord:
        if record.filing_id in self._submission_by_filing:
            raise AlreadySubmittedError(
                f"Filing {record.filing_id} already has a submission record",
                details={"filing_id": record.filing_id},
            )
        self._submissions[record.record_id] = record.model_copy(deep=True)
        self._submission_by_filing[record.filing_id] = record.record_id
        return record

    async def get_submission(self, record_id: str) -> Optional[SubmissionRecord]:
        stored = self._submissions.get(record_id)
        return stored.model_copy(deep=True) if stored else None

    async def get_submission_for_filing(self, filing_id: str) -> Optional[SubmissionRecord]:
        record_id = self._submission_by_filing.get(filing_id)
        return await self.get_submission(record_id) if record_id else None

    async def save_submission(self, record: SubmissionRecord) -> SubmissionRecord:
        stored = self._submissions.get(record.record_id)
        if stored is None:
            raise NotFoundError(f"Submission {record.record_id} not found")
        updated = record.model_copy(deep=True)
        # Stage fields only move through advance_stage / mark_polled
        updated.last_known_stage = stored.last_known_stage
        updated.last_raw_stage = stored.last_raw_stage
        updated.last_polled_at = stored.last_polled_at
        self._submissions[record.record_id] = updated
        return record

    async def take_over_claim(
        self,
        record_id: str,
        expected_state: ClaimState,
        expected_attempts: int,
        claimed_at: datetime,
    ) -> bool:
        stored = self._submissions.get(record_id)
        if stored is None:
            raise NotFoundError(f"Submission {record_id} not found")
        if stored.claim_state != expected_state or stored.attempts != expected_attempts:
            return False
        stored.claim_state = ClaimState.IN_FLIGHT
        stored.claimed_at = claimed_at
        stored.attempts += 1
        return True

    async def delete_submission(self, record_id: str) -> None:
        record = self._submissions.pop(record_id, None)
        if record is not None:
            self._submission_by_filing.pop(record.filing_id, None)

    async def advance_stage(
        self,
        record_id: str,
        stage: ExternalStage,
        raw_stage: str,
        observed_at: datetime,
    ) -> bool:
        stored = self._submissions.get(record_id)
        if stored is None:
            raise NotFoundError(f"Submission {record_id} not found")
        current = stored.last_known_stage
        if current is not None and current.rank >= stage.rank:
            return False
        stored.last_known_stage = stage
        stored.last_raw_stage = raw_stage
        stored.last_polled_at = observed_at
        return True

    async def mark_polled(self, record_id: str, observed_at: datetime) -> None:
        stored = self._submissions.get(record_id)
        if stored is not None:
            stored.last_polled_at = observed_at

    async def append_transition(self, record: TransitionRecord) -> None:
        self._transitions.setdefault(record.filing_id, []).append(record.model_copy())

    async def list_transitions(self, filing_id: str) -> List[TransitionRecord]:
        return [t.model_copy() for t in self._transitions.get(filing_id, [])]

    async def add_group(self, group: FilingGroup) -> FilingGroup:
        self._groups[group.group_id] = group.model_copy(deep=True)
        return group

    async def get_group(self, group_id: str) -> Optional[FilingGroup]:
        stored = self._groups.get(group_id)
        return stored.model_copy(deep=True) if stored else None
