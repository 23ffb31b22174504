"""
One-time-code protocols: Aadhaar OTP, bank EVC and demat EVC.

Each delivers a six-digit code through the identity provider and complete
with a single matching challenge. Codes can be resent a limited number of
times, no sooner than the configured interval after the previous send; each
resend opens a fresh challenge window.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Optional

from services.logging_config import mask_value

from ..errors import InvalidIdentityError, RateLimitedError, SessionExpiredError
from ..models import (
    SessionHandle,
    SubjectIdentity,
    VerificationMethod,
    VerificationSession,
)
from ..providers import OTP_LENGTH, OtpChannel
from .base import VerificationProtocolAdapter

logger = logging.getLogger(__name__)

OTP_PATTERN = re.compile(rf"^\d{{{OTP_LENGTH}}}$")
AADHAAR_PATTERN = re.compile(r"^\d{12}$")
IFSC_PATTERN = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
ACCOUNT_PATTERN = re.compile(r"^\d{9,18}$")
# NSDL participants are IN + 6 digits, CDSL participants 8 digits
DP_ID_PATTERN = re.compile(r"^(IN\d{6}|\d{8})$")
CLIENT_ID_PATTERN = re.compile(r"^\d{8}$")


class OtpAdapter(VerificationProtocolAdapter):
    """Shared behaviour of the OTP family."""

    family = "otp"
    channel: str = ""
    supports_resend = True
    failure_reason = "incorrect_code"

    @property
    def ttl_seconds(self) -> int:
        return self.settings.otp_ttl_seconds

    async def start(self, session: VerificationSession, subject: SubjectIdentity) -> None:
        ticket = await self.provider.send_otp(self.channel, subject)
        session.payload["reference"] = ticket.reference
        session.payload["masked_destination"] = ticket.masked_destination

    def parse_input(self, user_input: Any) -> str:
        otp = str(user_input or "").strip()
        if not OTP_PATTERN.match(otp):
            raise self._malformed(f"Code must be exactly {OTP_LENGTH} digits")
        return otp

    async def verify(self, session: VerificationSession, proof: str) -> bool:
        return await self.provider.verify_otp(session.payload["reference"], proof)

    def _resend_refusal(self, session: VerificationSession, now: datetime) -> Optional[RateLimitedError]:
        if session.resend_count >= self.settings.max_resends:
            return RateLimitedError(
                "Maximum number of resends reached",
                details={"session_id": session.session_id, "max_resends": self.settings.max_resends},
            )

        last_sent = session.last_resent_at or session.issued_at
        next_allowed = last_sent + timedelta(seconds=self.settings.resend_interval_seconds)
        if now < next_allowed:
            return RateLimitedError(
                "Please wait before requesting another code",
                details={
                    "session_id": session.session_id,
                    "retry_after": int((next_allowed - now).total_seconds()) + 1,
                },
            )
        return None

    async def reissue(self, session: VerificationSession) -> SessionHandle:
        """Selecting the method again sends a fresh code when a resend is allowed."""
        if self._resend_refusal(session, self._clock()) is not None:
            return self.handle(session)
        return await self.resend(session)

    async def resend(self, session: VerificationSession) -> SessionHandle:
        """
        Send a new code and reopen the challenge window.

        Raises:
            SessionExpiredError: window already closed (expiry is terminal)
            RateLimitedError: resend cap reached or interval not yet elapsed
        """
        self._ensure_open(session)
        now = self._clock()

        refusal = self._resend_refusal(session, now)
        if refusal is not None:
            raise refusal

        ticket = await self._bounded(
            session, lambda: self.provider.resend_otp(session.payload["reference"])
        )
        session.resend_count += 1
        session.last_resent_at = now
        session.expires_at = now + timedelta(seconds=self.settings.otp_ttl_seconds)
        if ticket.masked_destination:
            session.payload["masked_destination"] = ticket.masked_destination

        logger.info(
            f"[VERIFY] Code resent | session={session.session_id} | "
            f"resend={session.resend_count}/{self.settings.max_resends}"
        )
        return self.handle(session)


class AadhaarOtpAdapter(OtpAdapter):
    """OTP sent to the mobile number linked with the subject's Aadhaar."""

    method = VerificationMethod.AADHAAR_OTP
    channel = OtpChannel.AADHAAR

    def validate_identity(self, subject: SubjectIdentity) -> None:
        aadhaar = (subject.aadhaar_number or "").replace(" ", "")
        if not AADHAAR_PATTERN.match(aadhaar):
            raise InvalidIdentityError(
                "A 12-digit Aadhaar number is required for Aadhaar OTP",
                details={"aadhaar_number": mask_value(aadhaar)},
            )


class BankEvcAdapter(OtpAdapter):
    """Electronic verification code through a pre-validated bank account."""

    method = VerificationMethod.BANK_EVC
    channel = OtpChannel.BANK

    def validate_identity(self, subject: SubjectIdentity) -> None:
        account = (subject.bank_account_number or "").strip()
        ifsc = (subject.ifsc or "").strip().upper()
        problems = []
        if not ACCOUNT_PATTERN.match(account):
            problems.append("bank_account_number")
        if not IFSC_PATTERN.match(ifsc):
            problems.append("ifsc")
        if problems:
            raise InvalidIdentityError(
                "Bank EVC needs a pre-validated account number and IFSC",
                details={"invalid_fields": problems},
            )


class DematEvcAdapter(OtpAdapter):
    """Electronic verification code through a depository (demat) account."""

    method = VerificationMethod.DEMAT_EVC
    channel = OtpChannel.DEMAT

    def validate_identity(self, subject: SubjectIdentity) -> None:
        dp_id = (subject.demat_dp_id or "").strip().upper()
        client_id = (subject.demat_client_id or "").strip()
        problems = []
        if not DP_ID_PATTERN.match(dp_id):
            problems.append("demat_dp_id")
        if not CLIENT_ID_PATTERN.match(client_id):
            problems.append("demat_client_id")
        if problems:
            raise InvalidIdentityError(
                "Demat EVC needs the depository participant ID and client ID",
                details={"invalid_fields": problems},
            )
