"""
Identity provider clients.

The identity provider is the external collaborator that delivers one-time
codes, validates signing certificates and runs the bank login for net
banking. Two implementations share the IdentityProvider contract:

- SandboxIdentityProvider: in-process, deterministic, with hooks for tests
  (read issued codes, inject outages and latency, reject identities)
- HttpIdentityProvider: httpx client for the live provider

Both raise only FilingError subclasses: ProviderUnavailableError for
timeouts and outages, InvalidIdentityError when the provider refuses the
subject.
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set

import httpx
from pydantic import BaseModel

from services.logging_config import mask_value, request_id_var

from .errors import InvalidIdentityError, ProviderUnavailableError
from .models import CertificateDetails, SubjectIdentity, new_id

logger = logging.getLogger(__name__)

OTP_LENGTH = 6


class OtpChannel:
    AADHAAR = "aadhaar"
    BANK = "bank"
    DEMAT = "demat"


class OtpTicket(BaseModel):
    """Provider acknowledgment that a code was sent."""
    reference: str
    masked_destination: Optional[str] = None


class BankLoginTicket(BaseModel):
    reference: str
    redirect_url: str


class IdentityProvider(ABC):
    """Contract for the identity provider."""

    @abstractmethod
    async def send_otp(self, channel: str, subject: SubjectIdentity) -> OtpTicket:
        """Deliver a fresh one-time code to the subject's registered destination."""
        ...

    @abstractmethod
    async def resend_otp(self, reference: str) -> OtpTicket:
        """Deliver a new code for an existing reference; earlier codes stop working."""
        ...

    @abstractmethod
    async def verify_otp(self, reference: str, otp: str) -> bool:
        ...

    @abstractmethod
    async def register_certificate(
        self, subject: SubjectIdentity, certificate: CertificateDetails
    ) -> str:
        """Accept certificate metadata for offline validation; returns a reference."""
        ...

    @abstractmethod
    async def verify_signature(self, reference: str, signature: str) -> bool:
        ...

    @abstractmethod
    async def start_bank_login(
        self, subject: SubjectIdentity, state_token: str, return_url: str
    ) -> BankLoginTicket:
        ...

    @abstractmethod
    async def verify_bank_callback(self, reference: str, callback_token: str) -> bool:
        ...


# =============================================================================
# SANDBOX
# =============================================================================

class SandboxIdentityProvider(IdentityProvider):
    """
    In-process identity provider.

    Test hooks:
        issued_otp(reference): the code currently valid for a reference
        callback_token_for(state_token): what the bank would post back
        unavailable: every call raises ProviderUnavailableError
        latency_seconds: every call sleeps first (drives timeout tests)
        rejected_taxpayer_ids: subjects the provider refuses
        invalid_signatures: signatures that fail verification
    """

    def __init__(self, bank_login_url: str = "https://netbanking.sandbox.local/login"):
        self.bank_login_url = bank_login_url
        self.unavailable = False
        self.latency_seconds = 0.0
        self.rejected_taxpayer_ids: Set[str] = set()
        self.invalid_signatures: Set[str] = {"invalid"}

        self._otps: Dict[str, str] = {}
        self._destinations: Dict[str, str] = {}
        self._certificates: Dict[str, CertificateDetails] = {}
        self._bank_tokens: Dict[str, str] = {}
        self.calls: Dict[str, int] = {}

    async def _enter(self, operation: str) -> None:
        self.calls[operation] = self.calls.get(operation, 0) + 1
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        if self.unavailable:
            raise ProviderUnavailableError(
                "Identity provider is unavailable",
                details={"operation": operation},
            )

    def _check_subject(self, subject: SubjectIdentity) -> None:
        if subject.taxpayer_id in self.rejected_taxpayer_ids:
            raise InvalidIdentityError(
                "Identity provider could not match the subject",
                details={"taxpayer_id": subject.masked_taxpayer_id},
            )

    def _new_code(self) -> str:
        return f"{secrets.randbelow(10 ** OTP_LENGTH):0{OTP_LENGTH}d}"

    def issued_otp(self, reference: str) -> Optional[str]:
        return self._otps.get(reference)

    def callback_token_for(self, state_token: str) -> Optional[str]:
        return self._bank_tokens.get(state_token)

    async def send_otp(self, channel: str, subject: SubjectIdentity) -> OtpTicket:
        await self._enter("send_otp")
        self._check_subject(subject)
        destination = {
            OtpChannel.AADHAAR: subject.aadhaar_number,
            OtpChannel.DEMAT: subject.demat_client_id,
        }.get(channel, subject.bank_account_number)
        reference = new_id("otp")
        self._otps[reference] = self._new_code()
        self._destinations[reference] = mask_value(destination)
        logger.debug(f"[SANDBOX] OTP issued | channel={channel} | reference={reference}")
        return OtpTicket(reference=reference, masked_destination=self._destinations[reference])

    async def resend_otp(self, reference: str) -> OtpTicket:
        await self._enter("resend_otp")
        if reference not in self._otps:
            raise InvalidIdentityError("Unknown OTP reference", details={"reference": reference})
        self._otps[reference] = self._new_code()
        return OtpTicket(reference=reference, masked_destination=self._destinations.get(reference))

    async def verify_otp(self, reference: str, otp: str) -> bool:
        await self._enter("verify_otp")
        expected = self._otps.get(reference)
        return expected is not None and secrets.compare_digest(expected, otp)

    async def register_certificate(
        self, subject: SubjectIdentity, certificate: CertificateDetails
    ) -> str:
        await self._enter("register_certificate")
        self._check_subject(subject)
        reference = new_id("dsc")
        self._certificates[reference] = certificate
        return reference

    async def verify_signature(self, reference: str, signature: str) -> bool:
        await self._enter("verify_signature")
        return (
            reference in self._certificates
            and bool(signature)
            and signature not in self.invalid_signatures
        )

    async def start_bank_login(
        self, subject: SubjectIdentity, state_token: str, return_url: str
    ) -> BankLoginTicket:
        await self._enter("start_bank_login")
        self._check_subject(subject)
        self._bank_tokens[state_token] = secrets.token_urlsafe(16)
        redirect = str(
            httpx.URL(
                self.bank_login_url,
                params={"state": state_token, "return_url": return_url, "bank": subject.bank_code or ""},
            )
        )
        return BankLoginTicket(reference=state_token, redirect_url=redirect)

    async def verify_bank_callback(self, reference: str, callback_token: str) -> bool:
        await self._enter("verify_bank_callback")
        expected = self._bank_tokens.get(reference)
        return expected is not None and secrets.compare_digest(expected, callback_token)


# =============================================================================
# LIVE (HTTP)
# =============================================================================

class HttpIdentityProvider(IdentityProvider):
    """
    httpx client for the live identity provider.

    Timeouts, connection failures, 429 and 5xx become ProviderUnavailableError;
    400/404/422 become InvalidIdentityError carrying the provider's message.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0)),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        request_id = request_id_var.get()
        if request_id:
            headers["X-Request-ID"] = request_id
        return headers

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=body, headers=self._headers())
        except httpx.TimeoutException:
            logger.warning(f"[IDENTITY] Request timed out | path={path}")
            raise ProviderUnavailableError(
                "Identity provider timed out", details={"path": path}
            )
        except httpx.TransportError as e:
            logger.warning(f"[IDENTITY] Connection error | path={path} | error={e}")
            raise ProviderUnavailableError(
                "Identity provider is unreachable", details={"path": path}
            )

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(
                f"[IDENTITY] Provider unavailable | path={path} | status={response.status_code}"
            )
            raise ProviderUnavailableError(
                "Identity provider is unavailable",
                details={"path": path, "status": response.status_code},
            )
        if response.status_code >= 400:
            try:
                message = response.json().get("message", "")
            except ValueError:
                message = response.text
            raise InvalidIdentityError(
                message or "Identity provider rejected the request",
                details={"path": path, "status": response.status_code},
            )
        return response.json()

    async def send_otp(self, channel: str, subject: SubjectIdentity) -> OtpTicket:
        body = {"channel": channel, "taxpayer_id": subject.taxpayer_id}
        if channel == OtpChannel.AADHAAR:
            body["aadhaar_number"] = subject.aadhaar_number
        elif channel == OtpChannel.DEMAT:
            body["dp_id"] = subject.demat_dp_id
            body["client_id"] = subject.demat_client_id
        else:
            body["bank_account_number"] = subject.bank_account_number
            body["ifsc"] = subject.ifsc
        return OtpTicket(**await self._post("/otp/send", body))

    async def resend_otp(self, reference: str) -> OtpTicket:
        return OtpTicket(**await self._post("/otp/resend", {"reference": reference}))

    async def verify_otp(self, reference: str, otp: str) -> bool:
        data = await self._post("/otp/verify", {"reference": reference, "otp": otp})
        return bool(data.get("verified"))

    async def register_certificate(
        self, subject: SubjectIdentity, certificate: CertificateDetails
    ) -> str:
        data = await self._post(
            "/dsc/register",
            {
                "taxpayer_id": subject.taxpayer_id,
                "certificate": certificate.model_dump(mode="json"),
            },
        )
        return data["reference"]

    async def verify_signature(self, reference: str, signature: str) -> bool:
        data = await self._post("/dsc/verify", {"reference": reference, "signature": signature})
        return bool(data.get("verified"))

    async def start_bank_login(
        self, subject: SubjectIdentity, state_token: str, return_url: str
    ) -> BankLoginTicket:
        data = await self._post(
            "/netbanking/start",
            {
                "taxpayer_id": subject.taxpayer_id,
                "bank_code": subject.bank_code,
                "state": state_token,
                "return_url": return_url,
            },
        )
        return BankLoginTicket(**data)

    async def verify_bank_callback(self, reference: str, callback_token: str) -> bool:
        data = await self._post(
            "/netbanking/verify", {"reference": reference, "token": callback_token}
        )
        return bool(data.get("verified"))
