"""Shared test doubles and shortcuts for driving filings through the workflow."""

from datetime import datetime, timedelta
from typing import Optional

from efiling.models import VerificationMethod

ITR1_DECLARATIONS = [
    "itr.truth-and-correctness.2025-1",
    "itr.representative-capacity.2025-1",
]


class FakeClock:
    """Manually advanced naive-UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 7, 15, 10, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


async def issued_otp(workflow, provider, session_id: str) -> str:
    """Code the sandbox provider sent for a session."""
    session = await workflow.repository.get_session(session_id)
    return provider.issued_otp(session.payload["reference"])


async def open_declared(workflow, subject, liability, form_type: str = "ITR-1"):
    filing = await workflow.open_filing("acct_1", subject, form_type, "2025-26", liability)
    return await workflow.accept_declarations(filing.filing_id, ITR1_DECLARATIONS)


async def open_verified(workflow, provider, subject, liability):
    """Filing verified through Aadhaar OTP."""
    filing = await open_declared(workflow, subject, liability)
    handle = await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP)
    otp = await issued_otp(workflow, provider, handle.session_id)
    await workflow.submit_challenge(handle.session_id, otp)
    return await workflow.get_filing(filing.filing_id)


async def open_submitted(workflow, provider, subject, liability):
    filing = await open_verified(workflow, provider, subject, liability)
    record = await workflow.submit(filing.filing_id)
    return await workflow.get_filing(filing.filing_id), record
