"""
Domain models for the filing submission workflow.

Aggregates and value objects:
- Filing: root aggregate, one tax return's submission lifecycle
- VerificationSession: one identity-verification attempt for a filing
- SubmissionRecord: proof the filing was handed to the authority (at most one)
- ExternalStatusSnapshot: point-in-time read of the authority's view
- TransitionRecord: append-only audit of filing state changes
- FilingGroup: multi-subject session (self, spouse, dependents)

All timestamps are naive UTC.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .errors import IntegrityViolationError


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


# =============================================================================
# ENUMERATIONS
# =============================================================================

class FilingState(str, Enum):
    """Lifecycle states of a filing."""
    DRAFT_READY = "DRAFT_READY"
    DECLARED = "DECLARED"
    VERIFYING = "VERIFYING"
    VERIFIED = "VERIFIED"
    SUBMITTED = "SUBMITTED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in (FilingState.ACCEPTED, FilingState.REJECTED)


class VerificationMethod(str, Enum):
    """Government-recognized e-verification methods."""
    AADHAAR_OTP = "AADHAAR_OTP"  # OTP to Aadhaar-linked mobile
    BANK_EVC = "BANK_EVC"  # EVC through a pre-validated bank account
    DEMAT_EVC = "DEMAT_EVC"  # EVC through a depository account
    DSC = "DSC"  # Digital signature certificate
    NET_BANKING = "NET_BANKING"  # Redirect through the bank's login


class SessionState(str, Enum):
    """States of a verification session."""
    INITIATED = "initiated"
    CHALLENGE_ISSUED = "challenge_issued"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED, SessionState.EXPIRED)


class ChallengeStatus(str, Enum):
    """Result of submitting user proof to an adapter."""
    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class ExternalStage(str, Enum):
    """Internal taxonomy of the authority's processing stages."""
    SUBMITTED = "submitted"
    VALIDATING = "validating"
    UNDER_REVIEW = "under_review"
    ACCEPTED = "accepted"
    REJECTED = "rejected"

    @property
    def rank(self) -> int:
        return _STAGE_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (ExternalStage.ACCEPTED, ExternalStage.REJECTED)


_STAGE_RANK = {
    ExternalStage.SUBMITTED: 0,
    ExternalStage.VALIDATING: 1,
    ExternalStage.UNDER_REVIEW: 2,
    ExternalStage.ACCEPTED: 3,
    ExternalStage.REJECTED: 3,
}


class ClaimState(str, Enum):
    """State of the submission claim row guarding the authority call."""
    IN_FLIGHT = "in_flight"  # authority call in progress
    INDETERMINATE = "indeterminate"  # call timed out, outcome unknown
    CONFIRMED = "confirmed"  # authority issued an acknowledgment


class SubjectRelationship(str, Enum):
    """Relationship of the filing subject to the initiating account."""
    SELF = "self"
    SPOUSE = "spouse"
    DEPENDENT = "dependent"
    CLIENT = "client"


# =============================================================================
# IDENTITY
# =============================================================================

class CertificateDetails(BaseModel):
    """Digital signature certificate metadata supplied for offline validation."""
    serial_number: str
    subject_name: str
    issuer: Optional[str] = None
    valid_from: datetime
    valid_to: datetime
    certificate_pem: Optional[str] = None

    def is_valid_at(self, moment: datetime) -> bool:
        return self.valid_from <= moment <= self.valid_to


class SubjectIdentity(BaseModel):
    """
    Identity of the person a filing is for.

    Method-specific credentials are optional; each adapter checks the ones
    it needs when a session is initiated.
    """
    taxpayer_id: str = Field(description="Permanent account number of the subject")
    name: str
    relationship: SubjectRelationship = SubjectRelationship.SELF
    aadhaar_number: Optional[str] = None
    bank_account_number: Optional[str] = None
    ifsc: Optional[str] = None
    bank_code: Optional[str] = None
    demat_dp_id: Optional[str] = None
    demat_client_id: Optional[str] = None
    certificate: Optional[CertificateDetails] = None

    @property
    def masked_taxpayer_id(self) -> str:
        tid = self.taxpayer_id or ""
        return f"{'X' * max(len(tid) - 4, 0)}{tid[-4:]}"


# =============================================================================
# REFERENCE DATA
# =============================================================================

class Declaration(BaseModel):
    """One legally required statement for a form type."""
    model_config = ConfigDict(frozen=True)

    declaration_id: str
    version: str
    title: str
    text: str
    required: bool = True


# =============================================================================
# FILING AGGREGATE
# =============================================================================

class Filing(BaseModel):
    """
    Filing Aggregate Root.

    Mutated only by FilingWorkflow. Never deleted; a revised filing points
    back at the one it supersedes.

    Invariants:
    - submission_record_id is set at most once and never cleared
    - verification_session_id points at the filing's most recent session
    """
    filing_id: str = Field(default_factory=lambda: new_id("fil"))
    account_id: str
    subject: SubjectIdentity
    form_type: str
    assessment_period: str
    state: FilingState = FilingState.DRAFT_READY

    accepted_declaration_ids: List[str] = Field(default_factory=list)
    verification_method: Optional[VerificationMethod] = None
    verification_session_id: Optional[str] = None
    submission_record_id: Optional[str] = None

    computed_liability: Optional[Dict[str, Any]] = None
    supersedes_id: Optional[str] = None
    group_id: Optional[str] = None

    integrity_hold: bool = False
    integrity_hold_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=1, description="Optimistic locking version")

    def set_submission_record(self, record_id: str) -> None:
        if self.submission_record_id is not None and self.submission_record_id != record_id:
            raise IntegrityViolationError(
                f"Filing {self.filing_id} already references submission "
                f"{self.submission_record_id}",
                details={"filing_id": self.filing_id},
            )
        self.submission_record_id = record_id


# =============================================================================
# VERIFICATION
# =============================================================================

class VerificationSession(BaseModel):
    """One identity-verification attempt for a filing."""
    session_id: str = Field(default_factory=lambda: new_id("ver"))
    filing_id: str
    method: VerificationMethod
    state: SessionState = SessionState.INITIATED

    issued_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    attempt_count: int = 0
    resend_count: int = 0
    last_resent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    failure_reason: Optional[str] = None
    proof_token: Optional[str] = None
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque method-specific data (provider reference, redirect state)"
    )

    @property
    def is_active(self) -> bool:
        return not self.state.is_terminal

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now

    def is_past_expiry(self, now: datetime) -> bool:
        return now >= self.expires_at


class SessionHandle(BaseModel):
    """What the caller needs to continue a verification session."""
    session_id: str
    filing_id: str
    method: VerificationMethod
    state: SessionState
    expires_at: datetime
    requires_challenge: bool
    redirect_url: Optional[str] = None
    masked_destination: Optional[str] = None
    resends_remaining: Optional[int] = None


class ChallengeResult(BaseModel):
    """Adapter verdict on one piece of user-supplied proof."""
    status: ChallengeStatus
    reason: Optional[str] = None
    proof_token: Optional[str] = None


class ChallengeOutcome(BaseModel):
    """Coordinator result of a challenge, after attempt limits are applied."""
    session: VerificationSession
    status: ChallengeStatus
    reason: Optional[str] = None
    attempts_remaining: int = 0


# =============================================================================
# SUBMISSION & STATUS
# =============================================================================

class SubmissionRecord(BaseModel):
    """Proof that a filing was handed to the external authority."""
    record_id: str = Field(default_factory=lambda: new_id("sub"))
    filing_id: str
    verification_session_id: str
    claim_state: ClaimState = ClaimState.IN_FLIGHT
    ack_number: Optional[str] = None

    claimed_at: datetime = Field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    attempts: int = 1

    last_known_stage: Optional[ExternalStage] = None
    last_raw_stage: Optional[str] = None
    last_polled_at: Optional[datetime] = None


class ExternalStatusSnapshot(BaseModel):
    """Point-in-time read of the authority's view of a submission."""
    filing_id: str
    ack_number: Optional[str] = None
    raw_stage: str
    mapped_stage: Optional[ExternalStage] = None
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    observed_at: datetime = Field(default_factory=utcnow)
    persisted: bool = False
    anomaly: Optional[str] = None


class TransitionRecord(BaseModel):
    """Audit entry for one filing state change."""
    filing_id: str
    from_state: FilingState
    to_state: FilingState
    event: str
    verification_session_id: Optional[str] = None
    session_state: Optional[SessionState] = None
    at: datetime = Field(default_factory=utcnow)


class FilingGroup(BaseModel):
    """Several related filings driven by one account (self and dependents)."""
    group_id: str = Field(default_factory=lambda: new_id("grp"))
    account_id: str
    filing_ids: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
