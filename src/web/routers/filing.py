"""
Filing Routes - declaration, e-verification, submission and status.

Routes:
- POST /filing - Open a filing that is ready to submit
- POST /filing/group - Open one filing per subject (self, spouse, dependents)
- GET  /filing/group/{group_id} - Group progress
- GET  /filing/netbanking/callback - Bank redirect target for net banking
- POST /filing/verify-otp - Submit an OTP / EVC
- POST /filing/verify-challenge - Submit a DSC signature or net banking token
- POST /filing/verify-resend - Resend an OTP
- GET  /filing/{filing_id} - Filing
- GET  /filing/{filing_id}/history - State transition audit
- GET  /filing/{filing_id}/declaration - Required declaration texts
- POST /filing/{filing_id}/declaration - Accept declarations
- GET  /filing/{filing_id}/validate - Readiness report
- POST /filing/{filing_id}/verify - Select a verification method
- POST /filing/{filing_id}/verify/cancel - Abandon verification
- POST /filing/{filing_id}/submit - Submit to the authority
- GET  /filing/{filing_id}/status - Stored or freshly polled status
- POST /filing/{filing_id}/supersede - Open a revised filing

Every transition rule lives in FilingWorkflow; handlers only translate
requests and render results. FilingError is rendered by the app-level
exception handler.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from efiling.models import (
    ChallengeOutcome,
    ClaimState,
    Declaration,
    ExternalStage,
    ExternalStatusSnapshot,
    Filing,
    FilingState,
    SessionHandle,
    SessionState,
    SubjectIdentity,
    TransitionRecord,
    VerificationMethod,
    VerificationSession,
)
from efiling.workflow import FilingWorkflow, GroupProgress, ReadinessReport

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/filing", tags=["Filing"])


def get_workflow(request: Request) -> FilingWorkflow:
    """Workflow assembled by the app lifespan."""
    return request.app.state.workflow


# =============================================================================
# REQUEST / RESPONSE SCHEMAS
# =============================================================================

class OpenFilingRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    subject: SubjectIdentity
    form_type: str = Field(..., min_length=1)
    assessment_period: str = Field(..., min_length=4)
    computed_liability: Optional[Dict[str, Any]] = None


class OpenGroupRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    subjects: List[SubjectIdentity] = Field(..., min_length=1)
    form_type: str = Field(..., min_length=1)
    assessment_period: str = Field(..., min_length=4)
    computed_liabilities: Optional[List[Optional[Dict[str, Any]]]] = None


class AcceptDeclarationsRequest(BaseModel):
    declaration_ids: List[str] = Field(..., min_length=1)


class SelectMethodRequest(BaseModel):
    method: VerificationMethod
    identity: Optional[SubjectIdentity] = None


class VerifyOtpRequest(BaseModel):
    session_id: str
    otp: str


class VerifyChallengeRequest(BaseModel):
    session_id: str
    input: Any = None


class ResendRequest(BaseModel):
    session_id: str


class SubmitRequest(BaseModel):
    verification_method: Optional[VerificationMethod] = None


class FilingView(BaseModel):
    """Filing as shown to clients; the subject's taxpayer id is masked."""
    filing_id: str
    account_id: str
    taxpayer_id: str
    subject_name: str
    relationship: str
    form_type: str
    assessment_period: str
    state: FilingState
    accepted_declaration_ids: List[str]
    verification_method: Optional[VerificationMethod] = None
    verification_session_id: Optional[str] = None
    submission_record_id: Optional[str] = None
    supersedes_id: Optional[str] = None
    group_id: Optional[str] = None
    integrity_hold: bool = False
    updated_at: datetime

    @classmethod
    def from_filing(cls, filing: Filing) -> "FilingView":
        return cls(
            filing_id=filing.filing_id,
            account_id=filing.account_id,
            taxpayer_id=filing.subject.masked_taxpayer_id,
            subject_name=filing.subject.name,
            relationship=filing.subject.relationship.value,
            form_type=filing.form_type,
            assessment_period=filing.assessment_period,
            state=filing.state,
            accepted_declaration_ids=filing.accepted_declaration_ids,
            verification_method=filing.verification_method,
            verification_session_id=filing.verification_session_id,
            submission_record_id=filing.submission_record_id,
            supersedes_id=filing.supersedes_id,
            group_id=filing.group_id,
            integrity_hold=filing.integrity_hold,
            updated_at=filing.updated_at,
        )


class SessionStatusView(BaseModel):
    session_id: str
    filing_id: str
    method: VerificationMethod
    state: SessionState
    expires_at: datetime
    attempt_count: int
    failure_reason: Optional[str] = None
    result: Optional[str] = None
    attempts_remaining: Optional[int] = None

    @classmethod
    def from_session(
        cls,
        session: VerificationSession,
        outcome: Optional[ChallengeOutcome] = None,
    ) -> "SessionStatusView":
        return cls(
            session_id=session.session_id,
            filing_id=session.filing_id,
            method=session.method,
            state=session.state,
            expires_at=session.expires_at,
            attempt_count=session.attempt_count,
            failure_reason=session.failure_reason,
            result=outcome.status.value if outcome else None,
            attempts_remaining=outcome.attempts_remaining if outcome else None,
        )


class DeclarationsView(BaseModel):
    filing_id: str
    form_type: str
    declarations: List[Declaration]


class SubmitResponse(BaseModel):
    filing_id: str
    record_id: str
    ack_number: Optional[str]
    submitted_at: Optional[datetime]
    claim_state: ClaimState


class StatusView(BaseModel):
    filing_id: str
    state: FilingState
    ack_number: Optional[str] = None
    claim_state: Optional[ClaimState] = None
    last_known_stage: Optional[ExternalStage] = None
    last_raw_stage: Optional[str] = None
    last_polled_at: Optional[datetime] = None
    snapshot: Optional[ExternalStatusSnapshot] = None


# =============================================================================
# FILINGS AND GROUPS
# =============================================================================

@router.post("", response_model=FilingView, status_code=status.HTTP_201_CREATED)
async def open_filing(body: OpenFilingRequest, workflow: FilingWorkflow = Depends(get_workflow)):
    filing = await workflow.open_filing(
        body.account_id,
        body.subject,
        body.form_type,
        body.assessment_period,
        computed_liability=body.computed_liability,
    )
    return FilingView.from_filing(filing)


@router.post("/group", response_model=GroupProgress, status_code=status.HTTP_201_CREATED)
async def open_group(body: OpenGroupRequest, workflow: FilingWorkflow = Depends(get_workflow)):
    group = await workflow.open_group(
        body.account_id,
        body.subjects,
        body.form_type,
        body.assessment_period,
        computed_liabilities=body.computed_liabilities,
    )
    return await workflow.group_progress(group.group_id)


@router.get("/group/{group_id}", response_model=GroupProgress)
async def group_progress(group_id: str, workflow: FilingWorkflow = Depends(get_workflow)):
    return await workflow.group_progress(group_id)


# =============================================================================
# VERIFICATION (session scoped)
# =============================================================================

@router.post("/verify-otp", response_model=SessionStatusView)
async def verify_otp(body: VerifyOtpRequest, workflow: FilingWorkflow = Depends(get_workflow)):
    """Submit an Aadhaar OTP, bank EVC or demat EVC."""
    outcome = await workflow.submit_challenge(body.session_id, body.otp)
    return SessionStatusView.from_session(outcome.session, outcome)


@router.post("/verify-challenge", response_model=SessionStatusView)
async def verify_challenge(body: VerifyChallengeRequest, workflow: FilingWorkflow = Depends(get_workflow)):
    """Submit a DSC signature or a net banking callback token."""
    outcome = await workflow.submit_challenge(body.session_id, body.input)
    return SessionStatusView.from_session(outcome.session, outcome)


@router.post("/verify-resend", response_model=SessionHandle)
async def verify_resend(body: ResendRequest, workflow: FilingWorkflow = Depends(get_workflow)):
    return await workflow.resend(body.session_id)


@router.get("/netbanking/callback", response_model=SessionStatusView)
async def netbanking_callback(
    session_id: str = Query(...),
    token: str = Query(...),
    state: str = Query(""),
    workflow: FilingWorkflow = Depends(get_workflow),
):
    """Where the bank sends the user back after login, echoing the state it was given."""
    outcome = await workflow.complete_bank_callback(session_id, state, token)
    return SessionStatusView.from_session(outcome.session, outcome)


# =============================================================================
# FILING SCOPED
# =============================================================================

@router.get("/{filing_id}", response_model=FilingView)
async def get_filing(filing_id: str, workflow: FilingWorkflow = Depends(get_workflow)):
    return FilingView.from_filing(await workflow.get_filing(filing_id))


@router.get("/{filing_id}/history", response_model=List[TransitionRecord])
async def filing_history(filing_id: str, workflow: FilingWorkflow = Depends(get_workflow)):
    return await workflow.history(filing_id)


@router.get("/{filing_id}/declaration", response_model=DeclarationsView)
async def get_declarations(filing_id: str, workflow: FilingWorkflow = Depends(get_workflow)):
    filing = await workflow.get_filing(filing_id)
    declarations = await workflow.declaration_for(filing_id)
    return DeclarationsView(filing_id=filing_id, form_type=filing.form_type, declarations=declarations)


@router.post("/{filing_id}/declaration", response_model=FilingView)
async def accept_declarations(
    filing_id: str,
    body: AcceptDeclarationsRequest,
    workflow: FilingWorkflow = Depends(get_workflow),
):
    filing = await workflow.accept_declarations(filing_id, body.declaration_ids)
    return FilingView.from_filing(filing)


@router.get("/{filing_id}/validate", response_model=ReadinessReport)
async def validate_filing(filing_id: str, workflow: FilingWorkflow = Depends(get_workflow)):
    return await workflow.validate(filing_id)


@router.post("/{filing_id}/verify", response_model=SessionHandle)
async def select_method(
    filing_id: str,
    body: SelectMethodRequest,
    workflow: FilingWorkflow = Depends(get_workflow),
):
    """Select a verification method; returns what the client needs next."""
    return await workflow.select_method(filing_id, body.method, body.identity)


@router.post("/{filing_id}/verify/cancel", response_model=SessionStatusView)
async def cancel_verification(filing_id: str, workflow: FilingWorkflow = Depends(get_workflow)):
    session = await workflow.cancel_verification(filing_id)
    return SessionStatusView.from_session(session)


@router.post("/{filing_id}/submit", response_model=SubmitResponse)
async def submit_filing(
    filing_id: str,
    body: Optional[SubmitRequest] = None,
    workflow: FilingWorkflow = Depends(get_workflow),
):
    record = await workflow.submit(
        filing_id,
        verification_method=body.verification_method if body else None,
    )
    return SubmitResponse(
        filing_id=filing_id,
        record_id=record.record_id,
        ack_number=record.ack_number,
        submitted_at=record.submitted_at,
        claim_state=record.claim_state,
    )


@router.get("/{filing_id}/status", response_model=StatusView)
async def filing_status(
    filing_id: str,
    refresh: bool = Query(False, description="Poll the authority before answering"),
    workflow: FilingWorkflow = Depends(get_workflow),
):
    snapshot = await workflow.refresh_status(filing_id) if refresh else None
    stored = await workflow.get_status(filing_id)
    return StatusView(**stored.model_dump(), snapshot=snapshot)


@router.post("/{filing_id}/supersede", response_model=FilingView, status_code=status.HTTP_201_CREATED)
async def supersede_filing(filing_id: str, workflow: FilingWorkflow = Depends(get_workflow)):
    revised = await workflow.supersede(filing_id)
    return FilingView.from_filing(revised)
