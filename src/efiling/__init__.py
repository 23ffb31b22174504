"""
E-filing submission and e-verification workflow.

Takes a computed tax return from "ready to submit" to an authority decision:
declarations, identity verification (Aadhaar OTP, bank EVC, DSC, net
banking), at-most-once submission and status tracking.

Entry point: efiling.factory.build_workflow(settings) -> FilingWorkflow
"""

from .errors import ErrorKind, FilingError
from .models import (
    ExternalStage,
    Filing,
    FilingState,
    SessionState,
    SubjectIdentity,
    VerificationMethod,
)

__all__ = [
    "ErrorKind",
    "ExternalStage",
    "Filing",
    "FilingError",
    "FilingState",
    "SessionState",
    "SubjectIdentity",
    "VerificationMethod",
]
