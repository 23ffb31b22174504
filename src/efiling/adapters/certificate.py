"""Digital signature certificate (DSC) verification."""

import logging
from typing import Any

from ..errors import InvalidIdentityError
from ..models import SubjectIdentity, VerificationMethod, VerificationSession
from .base import VerificationProtocolAdapter

logger = logging.getLogger(__name__)


class CertificateAdapter(VerificationProtocolAdapter):
    """
    Initiate registers the certificate metadata for offline validation; a
    single challenge carrying the signature completes the session.
    """

    method = VerificationMethod.DSC
    family = "certificate"
    failure_reason = "signature_rejected"

    @property
    def ttl_seconds(self) -> int:
        return self.settings.dsc_ttl_seconds

    def validate_identity(self, subject: SubjectIdentity) -> None:
        certificate = subject.certificate
        if certificate is None:
            raise InvalidIdentityError("Certificate details are required for DSC verification")

        missing = [
            name for name in ("serial_number", "subject_name")
            if not getattr(certificate, name, "").strip()
        ]
        if missing:
            raise InvalidIdentityError(
                "Certificate details are incomplete",
                details={"missing_fields": missing},
            )

        now = self._clock()
        if not certificate.is_valid_at(now):
            raise InvalidIdentityError(
                "Certificate is not within its validity period",
                details={
                    "serial_number": certificate.serial_number,
                    "valid_from": certificate.valid_from.isoformat(),
                    "valid_to": certificate.valid_to.isoformat(),
                },
            )

    async def start(self, session: VerificationSession, subject: SubjectIdentity) -> None:
        reference = await self.provider.register_certificate(subject, subject.certificate)
        session.payload["reference"] = reference
        session.payload["serial_number"] = subject.certificate.serial_number

    def parse_input(self, user_input: Any) -> str:
        signature = str(user_input or "").strip()
        if not signature:
            raise self._malformed("A signature is required")
        return signature

    async def verify(self, session: VerificationSession, proof: str) -> bool:
        return await self.provider.verify_signature(session.payload["reference"], proof)
