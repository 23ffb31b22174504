"""
Filing Workflow.

State machine that takes a filing from "ready to submit" to an authority
decision:

    DRAFT_READY -> DECLARED -> VERIFYING -> VERIFIED -> SUBMITTED -> ACCEPTED | REJECTED

VERIFYING may re-enter itself (a new method after the previous session
expired) and falls back to DECLARED when a session fails or is cancelled.

Every mutating operation:
- runs under the filing's lock (FILING_BUSY when it cannot be taken in time)
- re-checks the filing's integrity first (a submission without a completed
  verification puts the filing on hold)
- validates the transition against VALID_TRANSITIONS (INVALID_STATE otherwise)
- saves with an optimistic version check and appends a TransitionRecord
"""

import logging
import secrets
from enum import Enum
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from services.logging_config import filing_context, log_performance

from .coordinator import VerificationCoordinator
from .declarations import DeclarationGate
from .errors import (
    AlreadySubmittedError,
    FilingOnHoldError,
    FilingError,
    IntegrityViolationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from .locks import FilingLockManager
from .models import (
    ChallengeOutcome,
    ClaimState,
    Clock,
    Declaration,
    ExternalStage,
    ExternalStatusSnapshot,
    Filing,
    FilingGroup,
    FilingState,
    SessionHandle,
    SessionState,
    SubjectIdentity,
    SubmissionRecord,
    TransitionRecord,
    VerificationMethod,
    VerificationSession,
    utcnow,
)
from .repository import FilingRepository
from .status import StatusPoller
from .submission import SubmissionClient

logger = logging.getLogger(__name__)


class FilingEvent(str, Enum):
    """Events that move a filing between states."""
    DECLARATIONS_ACCEPTED = "declarations_accepted"
    METHOD_SELECTED = "method_selected"
    CHALLENGE_COMPLETED = "challenge_completed"
    VERIFICATION_FAILED = "verification_failed"
    VERIFICATION_CANCELLED = "verification_cancelled"
    SUBMITTED = "submitted"
    AUTHORITY_ACCEPTED = "authority_accepted"
    AUTHORITY_REJECTED = "authority_rejected"


# Valid transitions: state -> {event: next state}
VALID_TRANSITIONS: Dict[FilingState, Dict[FilingEvent, FilingState]] = {
    FilingState.DRAFT_READY: {
        FilingEvent.DECLARATIONS_ACCEPTED: FilingState.DECLARED,
    },
    FilingState.DECLARED: {
        FilingEvent.METHOD_SELECTED: FilingState.VERIFYING,
    },
    FilingState.VERIFYING: {
        FilingEvent.METHOD_SELECTED: FilingState.VERIFYING,
        FilingEvent.CHALLENGE_COMPLETED: FilingState.VERIFIED,
        FilingEvent.VERIFICATION_FAILED: FilingState.DECLARED,
        FilingEvent.VERIFICATION_CANCELLED: FilingState.DECLARED,
    },
    FilingState.VERIFIED: {
        FilingEvent.SUBMITTED: FilingState.SUBMITTED,
    },
    FilingState.SUBMITTED: {
        FilingEvent.AUTHORITY_ACCEPTED: FilingState.ACCEPTED,
        FilingEvent.AUTHORITY_REJECTED: FilingState.REJECTED,
    },
    FilingState.ACCEPTED: {},
    FilingState.REJECTED: {},
}

NEXT_ACTION: Dict[FilingState, Optional[str]] = {
    FilingState.DRAFT_READY: "accept_declarations",
    FilingState.DECLARED: "select_method",
    FilingState.VERIFYING: "submit_challenge",
    FilingState.VERIFIED: "submit",
    FilingState.SUBMITTED: "await_processing",
    FilingState.ACCEPTED: None,
    FilingState.REJECTED: None,
}


# =============================================================================
# REPORTS
# =============================================================================

class ReadinessReport(BaseModel):
    """What stands between a filing and its next step."""
    filing_id: str
    state: FilingState
    form_type: str
    form_type_supported: bool
    computed_liability_present: bool
    catalog_available: bool
    missing_declarations: List[str] = Field(default_factory=list)
    active_session_id: Optional[str] = None
    allowed_events: List[FilingEvent] = Field(default_factory=list)
    next_action: Optional[str] = None
    ready_to_submit: bool = False
    integrity_hold: bool = False
    issues: List[str] = Field(default_factory=list)


class FilingSummary(BaseModel):
    filing_id: str
    taxpayer_id: str
    relationship: str
    state: FilingState
    next_action: Optional[str] = None


class GroupProgress(BaseModel):
    """Per-filing progress of a multi-subject session."""
    group_id: str
    account_id: str
    filings: List[FilingSummary]
    next_filing_id: Optional[str] = None
    complete: bool = False


class StoredStatus(BaseModel):
    """Last known submission status without contacting the authority."""
    filing_id: str
    state: FilingState
    ack_number: Optional[str] = None
    claim_state: Optional[ClaimState] = None
    last_known_stage: Optional[ExternalStage] = None
    last_raw_stage: Optional[str] = None
    last_polled_at: Optional[datetime] = None


# =============================================================================
# WORKFLOW
# =============================================================================

class FilingWorkflow:
    """
    Orchestrates declaration, verification, submission and status tracking.

    All external-facing filing operations go through this class; the API
    layer only renders its results.
    """

    def __init__(
        self,
        repository: FilingRepository,
        gate: DeclarationGate,
        coordinator: VerificationCoordinator,
        submission_client: SubmissionClient,
        poller: StatusPoller,
        locks: Optional[FilingLockManager] = None,
        clock: Clock = utcnow,
    ):
        self.repository = repository
        self.gate = gate
        self.coordinator = coordinator
        self.submission_client = submission_client
        self.poller = poller
        self.locks = locks or FilingLockManager()
        self._clock = clock

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _require_event(self, filing: Filing, event: FilingEvent) -> FilingState:
        target = VALID_TRANSITIONS.get(filing.state, {}).get(event)
        if target is None:
            logger.warning(
                f"[WORKFLOW] Illegal transition refused | filing={filing.filing_id} | "
                f"state={filing.state.value} | event={event.value}"
            )
            raise InvalidStateError(
                f"Cannot apply '{event.value}' to a filing in state {filing.state.value}",
                current_state=filing.state.value,
                event=event.value,
            )
        return target

    async def _transition(
        self,
        filing: Filing,
        event: FilingEvent,
        session: Optional[VerificationSession] = None,
    ) -> Filing:
        target = self._require_event(filing, event)
        from_state = filing.state
        filing.state = target
        await self.repository.save_filing(filing)
        await self.repository.append_transition(
            TransitionRecord(
                filing_id=filing.filing_id,
                from_state=from_state,
                to_state=target,
                event=event.value,
                verification_session_id=session.session_id if session else filing.verification_session_id,
                session_state=session.state if session else None,
                at=self._clock(),
            )
        )
        logger.info(
            f"[WORKFLOW] {from_state.value} -> {target.value} | filing={filing.filing_id} | "
            f"event={event.value}"
        )
        return filing

    async def _load_for_mutation(self, filing_id: str) -> Filing:
        filing = await self.repository.require_filing(filing_id)
        await self._assert_integrity(filing)
        return filing

    async def _assert_integrity(self, filing: Filing) -> None:
        """
        A filing that reached the authority must trace back to a completed
        verification session of its own. Anything else is corrupt data.
        """
        if filing.integrity_hold:
            raise FilingOnHoldError(
                "Filing is on hold pending manual review",
                details={"filing_id": filing.filing_id, "reason": filing.integrity_hold_reason},
            )

        record = await self.repository.get_submission_for_filing(filing.filing_id)
        submitted_states = (FilingState.SUBMITTED, FilingState.ACCEPTED, FilingState.REJECTED)
        needs_check = (
            filing.submission_record_id is not None
            or filing.state in submitted_states
            or (record is not None and record.claim_state == ClaimState.CONFIRMED)
        )
        if not needs_check:
            return

        problem = None
        session = None
        if filing.verification_session_id:
            session = await self.repository.get_session(filing.verification_session_id)

        if session is None or session.filing_id != filing.filing_id:
            problem = "submission without a verification session of this filing"
        elif session.state != SessionState.COMPLETED:
            problem = f"submission with a {session.state.value} verification session"
        elif filing.state in submitted_states and filing.submission_record_id is None:
            problem = f"filing in {filing.state.value} without a submission record"
        elif record is not None and filing.submission_record_id not in (None, record.record_id):
            problem = "filing references a different submission record"
        elif record is not None and record.verification_session_id != session.session_id:
            problem = "submission record was made under a different session"

        if problem is None:
            return

        filing.integrity_hold = True
        filing.integrity_hold_reason = problem
        await self.repository.save_filing(filing)
        logger.critical(
            f"[WORKFLOW] Integrity violation, filing placed on hold | "
            f"filing={filing.filing_id} | problem={problem}"
        )
        raise IntegrityViolationError(
            f"Filing data is inconsistent: {problem}",
            details={"filing_id": filing.filing_id},
        )

    def _next_action(self, filing: Filing) -> Optional[str]:
        return NEXT_ACTION[filing.state]

    # -------------------------------------------------------------------------
    # Opening filings
    # -------------------------------------------------------------------------

    async def open_filing(
        self,
        account_id: str,
        subject: SubjectIdentity,
        form_type: str,
        assessment_period: str,
        computed_liability: Optional[Dict[str, Any]] = None,
        group_id: Optional[str] = None,
        supersedes_id: Optional[str] = None,
    ) -> Filing:
        """Create a DRAFT_READY filing once intake and computation are complete."""
        form_type = form_type.upper()
        if not self.gate.supports(form_type):
            raise ValidationError(
                f"Form type {form_type} is not supported",
                code="UNSUPPORTED_FORM_TYPE",
                details={"form_type": form_type},
            )

        filing = Filing(
            account_id=account_id,
            subject=subject,
            form_type=form_type,
            assessment_period=assessment_period,
            computed_liability=computed_liability,
            group_id=group_id,
            supersedes_id=supersedes_id,
            created_at=self._clock(),
            updated_at=self._clock(),
        )
        await self.repository.add_filing(filing)
        logger.info(
            f"[WORKFLOW] Filing opened | filing={filing.filing_id} | form={form_type} | "
            f"period={assessment_period} | subject={subject.masked_taxpayer_id} | "
            f"relationship={subject.relationship.value}"
        )
        return filing

    async def open_group(
        self,
        account_id: str,
        subjects: List[SubjectIdentity],
        form_type: str,
        assessment_period: str,
        computed_liabilities: Optional[List[Optional[Dict[str, Any]]]] = None,
    ) -> FilingGroup:
        """
        Open one filing per subject (self, spouse, dependents) under one group.

        Each filing then proceeds independently.
        """
        if not subjects:
            raise ValidationError("At least one subject is required", code="EMPTY_GROUP")
        taxpayer_ids = [s.taxpayer_id for s in subjects]
        if len(set(taxpayer_ids)) != len(taxpayer_ids):
            raise ValidationError(
                "Each subject may appear only once in a group",
                code="DUPLICATE_SUBJECT",
            )
        if computed_liabilities is not None and len(computed_liabilities) != len(subjects):
            raise ValidationError(
                "One computed liability per subject is required",
                code="LIABILITY_COUNT_MISMATCH",
            )

        group = FilingGroup(account_id=account_id, created_at=self._clock())
        for index, subject in enumerate(subjects):
            filing = await self.open_filing(
                account_id,
                subject,
                form_type,
                assessment_period,
                computed_liability=computed_liabilities[index] if computed_liabilities else None,
                group_id=group.group_id,
            )
            group.filing_ids.append(filing.filing_id)
        await self.repository.add_group(group)
        logger.info(
            f"[WORKFLOW] Group opened | group={group.group_id} | filings={len(group.filing_ids)}"
        )
        return group

    async def group_progress(self, group_id: str) -> GroupProgress:
        group = await self.repository.get_group(group_id)
        if group is None:
            raise NotFoundError(f"Group {group_id} not found", details={"group_id": group_id})

        summaries = []
        next_filing_id = None
        for filing_id in group.filing_ids:
            filing = await self.repository.require_filing(filing_id)
            action = self._next_action(filing)
            summaries.append(
                FilingSummary(
                    filing_id=filing.filing_id,
                    taxpayer_id=filing.subject.masked_taxpayer_id,
                    relationship=filing.subject.relationship.value,
                    state=filing.state,
                    next_action=action,
                )
            )
            if next_filing_id is None and action not in (None, "await_processing"):
                next_filing_id = filing.filing_id

        return GroupProgress(
            group_id=group.group_id,
            account_id=group.account_id,
            filings=summaries,
            next_filing_id=next_filing_id,
            complete=all(s.state.is_terminal for s in summaries),
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_filing(self, filing_id: str) -> Filing:
        return await self.repository.require_filing(filing_id)

    async def history(self, filing_id: str) -> List[TransitionRecord]:
        await self.repository.require_filing(filing_id)
        return await self.repository.list_transitions(filing_id)

    async def declaration_for(self, filing_id: str) -> List[Declaration]:
        filing = await self.repository.require_filing(filing_id)
        return self.gate.required_declarations(filing.form_type)

    async def validate(self, filing_id: str) -> ReadinessReport:
        """Readiness report; never mutates."""
        filing = await self.repository.require_filing(filing_id)
        gate_result = self.gate.check_accepted(filing, filing.accepted_declaration_ids)
        active = await self.coordinator.get_active_session(filing.filing_id) \
            if filing.state == FilingState.VERIFYING else None

        issues = []
        supported = self.gate.supports(filing.form_type)
        if not supported:
            issues.append(f"form type {filing.form_type} is not supported")
        if filing.computed_liability is None:
            issues.append("computed liability is missing")
        if not gate_result.catalog_available:
            issues.append("declaration catalog is unavailable")
        if gate_result.missing_ids:
            issues.append(f"{len(gate_result.missing_ids)} required declaration(s) not accepted")
        if filing.state == FilingState.VERIFYING and active is None:
            issues.append("verification session expired; select a method again")
        if filing.integrity_hold:
            issues.append(f"on hold: {filing.integrity_hold_reason}")

        next_action = self._next_action(filing)
        if filing.state == FilingState.VERIFYING and active is None:
            next_action = "select_method"

        return ReadinessReport(
            filing_id=filing.filing_id,
            state=filing.state,
            form_type=filing.form_type,
            form_type_supported=supported,
            computed_liability_present=filing.computed_liability is not None,
            catalog_available=gate_result.catalog_available,
            missing_declarations=gate_result.missing_ids,
            active_session_id=active.session_id if active else None,
            allowed_events=list(VALID_TRANSITIONS[filing.state].keys()),
            next_action=None if filing.integrity_hold else next_action,
            ready_to_submit=filing.state == FilingState.VERIFIED and not filing.integrity_hold,
            integrity_hold=filing.integrity_hold,
            issues=issues,
        )

    async def get_status(self, filing_id: str) -> StoredStatus:
        filing = await self.repository.require_filing(filing_id)
        record = await self.repository.get_submission_for_filing(filing_id)
        return StoredStatus(
            filing_id=filing.filing_id,
            state=filing.state,
            ack_number=record.ack_number if record else None,
            claim_state=record.claim_state if record else None,
            last_known_stage=record.last_known_stage if record else None,
            last_raw_stage=record.last_raw_stage if record else None,
            last_polled_at=record.last_polled_at if record else None,
        )

    # -------------------------------------------------------------------------
    # Declarations
    # -------------------------------------------------------------------------

    async def accept_declarations(self, filing_id: str, declaration_ids: Iterable[str]) -> Filing:
        """
        Record accepted declarations; moves DRAFT_READY to DECLARED once every
        required one is accepted.
        """
        declaration_ids = list(dict.fromkeys(declaration_ids))
        async with self.locks.hold(filing_id):
            with filing_context(filing_id):
                filing = await self._load_for_mutation(filing_id)
                if filing.state not in (FilingState.DRAFT_READY, FilingState.DECLARED):
                    self._require_event(filing, FilingEvent.DECLARATIONS_ACCEPTED)

                # Raises DECLARATIONS_UNAVAILABLE when the catalog cannot be read
                self.gate.required_declarations(filing.form_type)
                unknown = self.gate.unknown_ids(filing, declaration_ids)
                if unknown:
                    raise ValidationError(
                        "Unknown declaration ids for this form type",
                        code="UNKNOWN_DECLARATION",
                        details={"unknown_ids": unknown, "form_type": filing.form_type},
                    )

                filing.accepted_declaration_ids = list(
                    dict.fromkeys(filing.accepted_declaration_ids + declaration_ids)
                )
                gate_result = self.gate.check_accepted(filing, filing.accepted_declaration_ids)

                if filing.state == FilingState.DRAFT_READY and gate_result.ok:
                    return await self._transition(filing, FilingEvent.DECLARATIONS_ACCEPTED)

                await self.repository.save_filing(filing)
                if not gate_result.ok:
                    logger.info(
                        f"[WORKFLOW] Declarations recorded, still missing "
                        f"{len(gate_result.missing_ids)} | filing={filing_id}"
                    )
                return filing

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    async def select_method(
        self,
        filing_id: str,
        method: VerificationMethod,
        identity: Optional[SubjectIdentity] = None,
    ) -> SessionHandle:
        """
        Choose a verification method and issue its first challenge.

        Returns the active session's handle unchanged when the same method is
        selected again.
        """
        async with self.locks.hold(filing_id):
            with filing_context(filing_id):
                filing = await self._load_for_mutation(filing_id)
                self._require_event(filing, FilingEvent.METHOD_SELECTED)

                if identity is not None and identity.taxpayer_id != filing.subject.taxpayer_id:
                    raise ValidationError(
                        "Identity does not match the filing's subject",
                        code="IDENTITY_MISMATCH",
                        details={"filing_id": filing_id},
                    )

                handle = await self.coordinator.select(filing, method, identity or filing.subject)
                if handle.session_id == filing.verification_session_id:
                    return handle

                session = await self.coordinator.get_session(handle.session_id)
                filing.verification_method = handle.method
                filing.verification_session_id = handle.session_id
                await self._transition(filing, FilingEvent.METHOD_SELECTED, session)
                return handle

    async def _filing_id_for_session(self, session_id: str) -> str:
        session = await self.repository.get_session(session_id)
        if session is None:
            raise NotFoundError(
                f"Verification session {session_id} not found",
                details={"session_id": session_id},
            )
        return session.filing_id

    async def submit_challenge(self, session_id: str, user_input: Any) -> ChallengeOutcome:
        """Submit OTP / signature / callback token for a session."""
        filing_id = await self._filing_id_for_session(session_id)
        async with self.locks.hold(filing_id):
            with filing_context(filing_id):
                filing = await self._load_for_mutation(filing_id)
                outcome = await self.coordinator.submit_challenge(session_id, user_input)

                current = (
                    filing.state == FilingState.VERIFYING
                    and filing.verification_session_id == session_id
                )
                if not current:
                    return outcome

                session = outcome.session
                if session.state == SessionState.COMPLETED:
                    await self._transition(filing, FilingEvent.CHALLENGE_COMPLETED, session)
                elif session.state == SessionState.FAILED:
                    await self._transition(filing, FilingEvent.VERIFICATION_FAILED, session)
                return outcome

    async def complete_bank_callback(self, session_id: str, state: str, token: str) -> ChallengeOutcome:
        """
        Bank redirect callback. The returned state must be the one issued with
        the redirect URL; a mismatch is rejected before the provider is asked
        and is not counted as an attempt.
        """
        session = await self.repository.get_session(session_id)
        if session is None:
            raise NotFoundError(
                f"Verification session {session_id} not found",
                details={"session_id": session_id},
            )
        expected = session.payload.get("state_token") or ""
        if not expected or not secrets.compare_digest(expected.encode(), (state or "").encode()):
            logger.warning(
                f"[VERIFY] Bank callback state mismatch | session={session_id} | "
                f"filing={session.filing_id}"
            )
            raise ValidationError(
                "Callback state does not match the verification session",
                code="MALFORMED_CHALLENGE",
                details={"session_id": session_id},
            )
        return await self.submit_challenge(session_id, {"token": token})

    async def resend(self, session_id: str) -> SessionHandle:
        filing_id = await self._filing_id_for_session(session_id)
        async with self.locks.hold(filing_id):
            with filing_context(filing_id):
                await self._load_for_mutation(filing_id)
                return await self.coordinator.resend(session_id)

    async def cancel_verification(self, filing_id: str) -> VerificationSession:
        """Abandon the current verification; the filing returns to DECLARED."""
        async with self.locks.hold(filing_id):
            with filing_context(filing_id):
                filing = await self._load_for_mutation(filing_id)
                self._require_event(filing, FilingEvent.VERIFICATION_CANCELLED)

                active = await self.coordinator.get_active_session(filing_id)
                if active is not None:
                    session = await self.coordinator.cancel(active.session_id)
                else:
                    session = await self.coordinator.get_session(filing.verification_session_id)

                await self._transition(filing, FilingEvent.VERIFICATION_CANCELLED, session)
                return session

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    @log_performance("filing.submit")
    async def submit(
        self,
        filing_id: str,
        verification_method: Optional[VerificationMethod] = None,
    ) -> SubmissionRecord:
        """
        Submit a verified filing; returns the record carrying the ack number.

        When `verification_method` is given it must match the method the
        filing was verified with.
        """
        async with self.locks.hold(filing_id):
            with filing_context(filing_id):
                filing = await self._load_for_mutation(filing_id)
                if filing.state in (FilingState.SUBMITTED, FilingState.ACCEPTED, FilingState.REJECTED):
                    record = await self.repository.get_submission_for_filing(filing_id)
                    raise AlreadySubmittedError(
                        "Filing has already been submitted",
                        details={
                            "filing_id": filing_id,
                            "ack_number": record.ack_number if record else None,
                        },
                    )
                self._require_event(filing, FilingEvent.SUBMITTED)
                if verification_method is not None and VerificationMethod(verification_method) != filing.verification_method:
                    raise ValidationError(
                        "Filing was verified with a different method",
                        code="METHOD_MISMATCH",
                        details={
                            "requested": VerificationMethod(verification_method).value,
                            "verified_with": filing.verification_method.value if filing.verification_method else None,
                        },
                    )

                record = await self.repository.get_submission_for_filing(filing_id)
                if record is not None and record.claim_state == ClaimState.CONFIRMED:
                    # Confirmed earlier but the filing update never landed.
                    logger.warning(
                        f"[WORKFLOW] Finalising previously confirmed submission | "
                        f"filing={filing_id} | ack={record.ack_number}"
                    )
                else:
                    record = await self.submission_client.submit(filing)
                session = await self.repository.get_session(record.verification_session_id)
                if session is None or session.state != SessionState.COMPLETED:
                    filing.integrity_hold = True
                    filing.integrity_hold_reason = "submission made without a completed session"
                    await self.repository.save_filing(filing)
                    logger.critical(
                        f"[WORKFLOW] Integrity violation at submission | filing={filing_id}"
                    )
                    raise IntegrityViolationError(
                        "Submission is not backed by a completed verification",
                        details={"filing_id": filing_id},
                    )

                filing.set_submission_record(record.record_id)
                await self._transition(filing, FilingEvent.SUBMITTED, session)
                return record

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @log_performance("filing.refresh_status")
    async def refresh_status(self, filing_id: str) -> Optional[ExternalStatusSnapshot]:
        """
        Poll the authority and apply a terminal decision to the filing.

        Returns None when the filing has no confirmed submission.
        """
        async with self.locks.hold(filing_id):
            with filing_context(filing_id):
                filing = await self._load_for_mutation(filing_id)
                snapshot = await self.poller.poll_filing(filing_id)
                if snapshot is None:
                    return None

                if filing.state == FilingState.SUBMITTED:
                    record = await self.repository.get_submission_for_filing(filing_id)
                    stage = record.last_known_stage if record else None
                    if stage == ExternalStage.ACCEPTED:
                        await self._transition(filing, FilingEvent.AUTHORITY_ACCEPTED)
                    elif stage == ExternalStage.REJECTED:
                        await self._transition(filing, FilingEvent.AUTHORITY_REJECTED)
                return snapshot

    async def refresh_submitted(self, limit: Optional[int] = None) -> int:
        """Poll every SUBMITTED filing; used by the periodic pollers."""
        filings = await self.repository.list_filings(state=FilingState.SUBMITTED, limit=limit)
        polled = 0
        for filing in filings:
            try:
                await self.refresh_status(filing.filing_id)
                polled += 1
            except FilingError as e:
                logger.warning(
                    f"[POLL] Refresh failed | filing={filing.filing_id} | "
                    f"kind={e.kind.value} | code={e.code}"
                )
        return polled

    # -------------------------------------------------------------------------
    # Revisions and holds
    # -------------------------------------------------------------------------

    async def supersede(self, filing_id: str) -> Filing:
        """
        Open a revised filing for a filing the authority has decided on.

        The original is never reopened; the revision points back at it.
        """
        async with self.locks.hold(filing_id):
            with filing_context(filing_id):
                filing = await self._load_for_mutation(filing_id)
                if not filing.state.is_terminal:
                    raise InvalidStateError(
                        f"Only accepted or rejected filings can be superseded, not {filing.state.value}",
                        current_state=filing.state.value,
                        event="supersede",
                    )
                revised = await self.open_filing(
                    filing.account_id,
                    filing.subject,
                    filing.form_type,
                    filing.assessment_period,
                    computed_liability=filing.computed_liability,
                    group_id=filing.group_id,
                    supersedes_id=filing.filing_id,
                )
                logger.info(
                    f"[WORKFLOW] Filing superseded | original={filing_id} | revised={revised.filing_id}"
                )
                return revised

    async def release_hold(self, filing_id: str) -> Filing:
        """Clear an integrity hold after manual review."""
        async with self.locks.hold(filing_id):
            filing = await self.repository.require_filing(filing_id)
            if not filing.integrity_hold:
                return filing
            logger.warning(
                f"[WORKFLOW] Integrity hold released | filing={filing_id} | "
                f"reason was: {filing.integrity_hold_reason}"
            )
            filing.integrity_hold = False
            filing.integrity_hold_reason = None
            await self.repository.save_filing(filing)
            return filing
