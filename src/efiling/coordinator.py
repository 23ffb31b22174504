"""
Verification Coordinator.

Owns the VerificationSession lifecycle for every filing:

    select -> initiate via adapter -> challenge* / resend* -> completed | failed | expired

Rules enforced here, uniformly for every method:
- at most one active session per filing
- the declaration gate must pass before a session is created
- expiry is applied lazily whenever a session is read
- failed challenges are counted; the cap-th failure fails the session and
  later challenges never reach the provider

Filing state changes are the workflow's job; the coordinator only persists
sessions.
"""

import logging
from datetime import timedelta
from typing import Any, Optional

from config.settings import VerificationSettings

from .adapters import AdapterRegistry, VerificationProtocolAdapter
from .declarations import DeclarationGate
from .errors import (
    DeclarationsIncompleteError,
    NotFoundError,
    ProviderRejectedError,
    SessionAlreadyActiveError,
    SessionClosedError,
    SessionExpiredError,
)
from .models import (
    ChallengeOutcome,
    ChallengeStatus,
    Clock,
    Filing,
    SessionHandle,
    SessionState,
    SubjectIdentity,
    VerificationMethod,
    VerificationSession,
    utcnow,
)
from .repository import FilingRepository

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_REASON = "max_attempts_exceeded"
CANCELLED_REASON = "cancelled"


class VerificationCoordinator:
    """Creates, advances and expires verification sessions."""

    def __init__(
        self,
        repository: FilingRepository,
        gate: DeclarationGate,
        registry: AdapterRegistry,
        settings: Optional[VerificationSettings] = None,
        clock: Clock = utcnow,
    ):
        self.repository = repository
        self.gate = gate
        self.registry = registry
        self.settings = settings or VerificationSettings()
        self._clock = clock

    def adapter_for(self, method: VerificationMethod) -> VerificationProtocolAdapter:
        return self.registry.get(method)

    # =========================================================================
    # READS (expiry applied on access)
    # =========================================================================

    async def _apply_expiry(self, session: VerificationSession) -> VerificationSession:
        if session.is_active and session.is_past_expiry(self._clock()):
            session.state = SessionState.EXPIRED
            session.failure_reason = "expired"
            await self.repository.save_session(session)
            logger.info(
                f"[VERIFY] Session expired | session={session.session_id} | "
                f"filing={session.filing_id} | method={session.method.value}"
            )
        return session

    async def get_session(self, session_id: str) -> VerificationSession:
        session = await self.repository.get_session(session_id)
        if session is None:
            raise NotFoundError(
                f"Verification session {session_id} not found",
                details={"session_id": session_id},
            )
        return await self._apply_expiry(session)

    async def get_active_session(self, filing_id: str) -> Optional[VerificationSession]:
        session = await self.repository.find_active_session(filing_id)
        if session is None:
            return None
        session = await self._apply_expiry(session)
        return session if session.is_active else None

    def handle_for(self, session: VerificationSession) -> SessionHandle:
        return self.adapter_for(session.method).handle(session)

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def select(
        self,
        filing: Filing,
        method: VerificationMethod,
        subject: Optional[SubjectIdentity] = None,
    ) -> SessionHandle:
        """
        Start verification with a method, or return the active session.

        Args:
            filing: Filing to verify
            method: Chosen verification method
            subject: Identity to verify (defaults to the filing's subject)

        Returns:
            SessionHandle of the new or already active session

        Raises:
            DeclarationsIncompleteError: required declarations not accepted
            SessionAlreadyActiveError: another method has an active session
            InvalidIdentityError / ProviderUnavailableError: from the adapter
        """
        gate_result = self.gate.check_accepted(filing, filing.accepted_declaration_ids)
        if not gate_result.ok:
            raise DeclarationsIncompleteError(
                "All required declarations must be accepted before verification",
                details={
                    "missing_ids": gate_result.missing_ids,
                    "catalog_available": gate_result.catalog_available,
                },
            )

        method = VerificationMethod(method)
        adapter = self.adapter_for(method)
        subject = subject or filing.subject

        active = await self.get_active_session(filing.filing_id)
        if active is not None and active.method != method:
            raise SessionAlreadyActiveError(
                f"A {active.method.value} verification is already in progress",
                details={"session_id": active.session_id, "method": active.method.value},
            )

        now = self._clock()
        session = VerificationSession(
            filing_id=filing.filing_id,
            method=method,
            issued_at=now,
            expires_at=now + timedelta(seconds=adapter.ttl_seconds),
        )
        try:
            handle = await adapter.initiate(filing, subject, session, existing=active)
        except SessionExpiredError:
            if active is not None:
                await self.repository.save_session(active)
            raise

        if active is not None and handle.session_id == active.session_id:
            await self.repository.save_session(active)
            return handle
        await self.repository.add_session(session)
        return handle

    async def submit_challenge(self, session_id: str, user_input: Any) -> ChallengeOutcome:
        """
        Pass user proof to the session's adapter and apply attempt limits.

        Malformed input raises ValidationError and is not counted. Provider
        timeouts raise ProviderUnavailableError and leave the session as is.
        """
        session = await self.get_session(session_id)
        cap = self.settings.max_attempts

        if session.state.is_terminal:
            return self._terminal_outcome(session)

        adapter = self.adapter_for(session.method)
        try:
            result = await adapter.challenge(session, user_input)
        except SessionExpiredError:
            await self.repository.save_session(session)
            return self._terminal_outcome(session)
        except ProviderRejectedError as e:
            result_status, reason, proof = ChallengeStatus.FAILED, e.code.lower(), None
        else:
            result_status, reason, proof = result.status, result.reason, result.proof_token

        if result_status == ChallengeStatus.PENDING:
            await self.repository.save_session(session)
            return ChallengeOutcome(
                session=session,
                status=ChallengeStatus.PENDING,
                attempts_remaining=max(cap - session.attempt_count, 0),
            )

        session.attempt_count += 1

        if result_status == ChallengeStatus.COMPLETE:
            session.state = SessionState.COMPLETED
            session.completed_at = self._clock()
            session.proof_token = proof
            await self.repository.save_session(session)
            logger.info(
                f"[VERIFY] Session completed | session={session.session_id} | "
                f"filing={session.filing_id} | method={session.method.value} | "
                f"attempts={session.attempt_count}"
            )
            return ChallengeOutcome(
                session=session,
                status=ChallengeStatus.COMPLETE,
                attempts_remaining=max(cap - session.attempt_count, 0),
            )

        if session.attempt_count >= cap:
            session.state = SessionState.FAILED
            session.failure_reason = MAX_ATTEMPTS_REASON
            reason = MAX_ATTEMPTS_REASON
            logger.warning(
                f"[VERIFY] Session failed after {session.attempt_count} attempts | "
                f"session={session.session_id} | filing={session.filing_id}"
            )
        else:
            logger.info(
                f"[VERIFY] Challenge rejected | session={session.session_id} | "
                f"attempt={session.attempt_count}/{cap}"
            )
        await self.repository.save_session(session)
        return ChallengeOutcome(
            session=session,
            status=ChallengeStatus.FAILED,
            reason=reason,
            attempts_remaining=max(cap - session.attempt_count, 0),
        )

    def _terminal_outcome(self, session: VerificationSession) -> ChallengeOutcome:
        if session.state == SessionState.COMPLETED:
            return ChallengeOutcome(session=session, status=ChallengeStatus.COMPLETE)
        return ChallengeOutcome(
            session=session,
            status=ChallengeStatus.FAILED,
            reason=session.failure_reason or session.state.value,
            attempts_remaining=0,
        )

    async def resend(self, session_id: str) -> SessionHandle:
        """
        Resend the challenge for an OTP-family session.

        Raises:
            SessionExpiredError: session window closed
            SessionClosedError: session already completed or failed
            RateLimitedError: resend cap or interval
            ValidationError(RESEND_NOT_SUPPORTED): method has no resend
        """
        session = await self.get_session(session_id)
        if session.state == SessionState.EXPIRED:
            raise SessionExpiredError(
                "Verification session has expired",
                details={"session_id": session_id},
            )
        if session.state.is_terminal:
            raise SessionClosedError(
                f"Session is {session.state.value}",
                details={"session_id": session_id, "state": session.state.value},
            )

        adapter = self.adapter_for(session.method)
        try:
            handle = await adapter.resend(session)
        except SessionExpiredError:
            await self.repository.save_session(session)
            raise
        await self.repository.save_session(session)
        return handle

    async def cancel(self, session_id: str, reason: str = CANCELLED_REASON) -> VerificationSession:
        """Abandon a non-terminal session; it becomes failed."""
        session = await self.get_session(session_id)
        if session.state.is_terminal:
            raise SessionClosedError(
                f"Session is {session.state.value}",
                details={"session_id": session_id, "state": session.state.value},
            )
        session.state = SessionState.FAILED
        session.failure_reason = reason
        await self.repository.save_session(session)
        logger.info(
            f"[VERIFY] Session cancelled | session={session_id} | filing={session.filing_id} | "
            f"reason={reason}"
        )
        return session
