"""Net banking verification: redirect to the bank, complete on callback."""

import logging
import secrets
from typing import Any

import httpx

from ..errors import InvalidIdentityError
from ..models import SubjectIdentity, VerificationMethod, VerificationSession
from .base import VerificationProtocolAdapter

logger = logging.getLogger(__name__)


class BankRedirectAdapter(VerificationProtocolAdapter):
    """
    Initiate returns a redirect URL carrying a state token. The user logs in
    at the bank; the bank's callback token is the challenge input. No code is
    typed by the user, so requires_challenge is False.
    """

    method = VerificationMethod.NET_BANKING
    family = "bank_redirect"
    requires_challenge = False
    failure_reason = "callback_rejected"

    @property
    def ttl_seconds(self) -> int:
        return self.settings.redirect_ttl_seconds

    def validate_identity(self, subject: SubjectIdentity) -> None:
        if not (subject.bank_code or subject.ifsc):
            raise InvalidIdentityError("A bank code or IFSC is required for net banking")

    async def start(self, session: VerificationSession, subject: SubjectIdentity) -> None:
        state_token = secrets.token_urlsafe(16)
        return_url = str(
            httpx.URL(self.settings.netbanking_return_url, params={"session_id": session.session_id})
        )
        ticket = await self.provider.start_bank_login(subject, state_token, return_url)
        session.payload["reference"] = ticket.reference
        session.payload["state_token"] = state_token
        session.payload["redirect_url"] = ticket.redirect_url

    def parse_input(self, user_input: Any) -> str:
        if isinstance(user_input, dict):
            user_input = user_input.get("token")
        token = str(user_input or "").strip()
        if not token:
            raise self._malformed("Callback token is required")
        return token

    async def verify(self, session: VerificationSession, proof: str) -> bool:
        return await self.provider.verify_bank_callback(session.payload["reference"], proof)
