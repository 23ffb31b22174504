"""
Common contract for e-verification protocols.

Each VerificationMethod has one adapter. The coordinator only ever talks to
this interface:

    handle = await adapter.initiate(filing, subject, session, existing=active)
    result = await adapter.challenge(session, user_input)
    handle = await adapter.resend(session)

Adapters mutate the VerificationSession they are given (state, expiry,
payload) and leave persistence to the caller. Attempt caps are enforced by
the coordinator, not here.
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar

from config.settings import VerificationSettings

from ..errors import (
    ProviderUnavailableError,
    SessionClosedError,
    SessionExpiredError,
    ValidationError,
)
from ..models import (
    ChallengeResult,
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
from ..providers import IdentityProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")


class VerificationProtocolAdapter(ABC):
    """Base class for one verification method."""

    method: VerificationMethod
    family: str = ""
    requires_challenge: bool = True
    supports_resend: bool = False
    failure_reason: str = "challenge_rejected"

    def __init__(
        self,
        provider: IdentityProvider,
        settings: Optional[VerificationSettings] = None,
        clock: Clock = utcnow,
    ):
        self.provider = provider
        self.settings = settings or VerificationSettings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Method-specific hooks
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def ttl_seconds(self) -> int:
        """Length of the session window for this method."""
        ...

    @abstractmethod
    def validate_identity(self, subject: SubjectIdentity) -> None:
        """Local checks on the credentials this method needs; raises InvalidIdentityError."""
        ...

    @abstractmethod
    async def start(self, session: VerificationSession, subject: SubjectIdentity) -> None:
        """Provider call that issues the challenge; fills session.payload."""
        ...

    @abstractmethod
    def parse_input(self, user_input: Any) -> str:
        """Normalize user proof; raises ValidationError(MALFORMED_CHALLENGE)."""
        ...

    @abstractmethod
    async def verify(self, session: VerificationSession, proof: str) -> bool:
        ...

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def initiate(
        self,
        filing: Filing,
        subject: SubjectIdentity,
        session: VerificationSession,
        existing: Optional[VerificationSession] = None,
    ) -> SessionHandle:
        """
        Issue the first challenge for a new session.

        Args:
            filing: Filing being verified
            subject: Identity of the filing's subject
            session: Freshly created session to fill in
            existing: Active session of the same filing, if any

        Returns:
            SessionHandle for `session`. When `existing` is a live session of
            this method, its handle instead: unchanged inside the
            duplicate-initiate window, after reissue() once the window passed.
        """
        now = self._clock()
        if (
            existing is not None
            and existing.method == self.method
            and existing.is_active
            and not existing.is_past_expiry(now)
        ):
            last_sent = existing.last_resent_at or existing.issued_at
            window = timedelta(seconds=self.settings.duplicate_initiate_window_seconds)
            if now - last_sent <= window:
                logger.info(
                    f"[VERIFY] Duplicate initiate collapsed | filing={filing.filing_id} | "
                    f"session={existing.session_id}"
                )
                return self.handle(existing)
            return await self.reissue(existing)

        self.validate_identity(subject)

        session.issued_at = now
        session.expires_at = now + timedelta(seconds=self.ttl_seconds)
        await self._bounded(session, lambda: self.start(session, subject))
        session.state = SessionState.CHALLENGE_ISSUED

        logger.info(
            f"[VERIFY] Challenge issued | filing={filing.filing_id} | method={self.method.value} | "
            f"session={session.session_id} | expires_at={session.expires_at.isoformat()}"
        )
        return self.handle(session)

    async def challenge(self, session: VerificationSession, user_input: Any) -> ChallengeResult:
        """Check one piece of user-supplied proof against the provider."""
        self._ensure_open(session)
        proof = self.parse_input(user_input)

        verified = await self._bounded(session, lambda: self.verify(session, proof))
        if not verified:
            return ChallengeResult(status=ChallengeStatus.FAILED, reason=self.failure_reason)

        return ChallengeResult(
            status=ChallengeStatus.COMPLETE,
            proof_token=f"{self.method.value.lower()}.{secrets.token_urlsafe(24)}",
        )

    async def reissue(self, session: VerificationSession) -> SessionHandle:
        """Repeated initiate for a live session past the duplicate window."""
        return self.handle(session)

    async def resend(self, session: VerificationSession) -> SessionHandle:
        raise ValidationError(
            f"{self.method.value} does not support resending the challenge",
            code="RESEND_NOT_SUPPORTED",
            details={"method": self.method.value},
        )

    def handle(self, session: VerificationSession) -> SessionHandle:
        resends_remaining = None
        if self.supports_resend:
            resends_remaining = max(self.settings.max_resends - session.resend_count, 0)
        return SessionHandle(
            session_id=session.session_id,
            filing_id=session.filing_id,
            method=session.method,
            state=session.state,
            expires_at=session.expires_at,
            requires_challenge=self.requires_challenge,
            redirect_url=session.payload.get("redirect_url"),
            masked_destination=session.payload.get("masked_destination"),
            resends_remaining=resends_remaining,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _malformed(self, message: str) -> ValidationError:
        return ValidationError(
            message,
            code="MALFORMED_CHALLENGE",
            details={"method": self.method.value},
        )

    def _ensure_open(self, session: VerificationSession) -> None:
        if session.state.is_terminal:
            raise SessionClosedError(
                f"Session is {session.state.value}",
                details={"session_id": session.session_id, "state": session.state.value},
            )
        if session.is_past_expiry(self._clock()):
            self._expire(session)
            raise SessionExpiredError(
                "Verification session has expired",
                details={"session_id": session.session_id},
            )

    def _expire(self, session: VerificationSession) -> None:
        session.state = SessionState.EXPIRED
        session.failure_reason = "expired"

    async def _bounded(
        self,
        session: VerificationSession,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run a provider call bounded by min(provider timeout, session window).

        Running out of window expires the session; a provider timeout with
        window left is transient and leaves the session untouched.
        """
        remaining = session.remaining(self._clock()).total_seconds()
        if remaining <= 0:
            self._expire(session)
            raise SessionExpiredError(
                "Verification session has expired",
                details={"session_id": session.session_id},
            )

        budget = min(self.settings.provider_timeout_seconds, remaining)
        try:
            return await asyncio.wait_for(call(), timeout=budget)
        except asyncio.TimeoutError:
            if budget >= remaining:
                self._expire(session)
                logger.warning(
                    f"[VERIFY] Session window ran out waiting for provider | "
                    f"session={session.session_id} | method={self.method.value}"
                )
                raise SessionExpiredError(
                    "Verification session expired while waiting for the provider",
                    details={"session_id": session.session_id},
                )
            logger.warning(
                f"[VERIFY] Provider timed out | session={session.session_id} | "
                f"method={self.method.value} | timeout={budget:.1f}s"
            )
            raise ProviderUnavailableError(
                "Identity provider did not respond in time",
                details={"session_id": session.session_id, "method": self.method.value},
            )
