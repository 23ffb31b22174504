"""
Submission Client.

Hands a verified filing to the authority at most once. The only
non-idempotent side effect in the workflow, the upload, is guarded by a
claim row that is inserted before the call:

    in_flight --ack--> confirmed
    in_flight --rejected / never sent--> (released)
    in_flight --timeout--> indeterminate --reconcile--> confirmed | in_flight (resend)

A later submit on an indeterminate or stale claim reconciles with the
authority first and only re-sends on a confirmed "not received".
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from config.settings import AuthoritySettings

from .authority import AuthorityStatus, FilingAuthority
from .errors import (
    AlreadySubmittedError,
    AuthorityRejectedError,
    AuthorityUnavailableError,
    NotVerifiedError,
)
from .models import (
    ClaimState,
    Clock,
    Filing,
    SessionState,
    SubmissionRecord,
    VerificationSession,
    utcnow,
)
from .repository import FilingRepository
from .status import StatusPoller

logger = logging.getLogger(__name__)


class SubmissionClient:
    """Submits verified filings to the authority."""

    def __init__(
        self,
        repository: FilingRepository,
        authority: FilingAuthority,
        poller: StatusPoller,
        settings: Optional[AuthoritySettings] = None,
        clock: Clock = utcnow,
    ):
        self.repository = repository
        self.authority = authority
        self.poller = poller
        self.settings = settings or AuthoritySettings()
        self._clock = clock

    async def submit(self, filing: Filing) -> SubmissionRecord:
        """
        Submit a filing and return its confirmed SubmissionRecord.

        Raises:
            NotVerifiedError: filing has no completed verification session
            AlreadySubmittedError: confirmed or live claim already exists
            AuthorityRejectedError: upload refused, claim released
            AuthorityUnavailableError: outcome unknown, claim left indeterminate
        """
        session = await self._completed_session(filing)

        existing = await self.repository.get_submission_for_filing(filing.filing_id)
        if existing is not None:
            record = await self._resolve_existing_claim(filing, existing)
            if record.claim_state == ClaimState.CONFIRMED:
                return record
        else:
            record = SubmissionRecord(
                filing_id=filing.filing_id,
                verification_session_id=session.session_id,
                claimed_at=self._clock(),
            )
            await self.repository.insert_submission(record)

        return await self._send(filing, session, record)

    async def _completed_session(self, filing: Filing) -> VerificationSession:
        session = None
        if filing.verification_session_id:
            session = await self.repository.get_session(filing.verification_session_id)
        if (
            session is None
            or session.filing_id != filing.filing_id
            or session.state != SessionState.COMPLETED
        ):
            raise NotVerifiedError(
                "Filing has not been verified",
                details={"filing_id": filing.filing_id},
            )
        return session

    async def _resolve_existing_claim(
        self,
        filing: Filing,
        record: SubmissionRecord,
    ) -> SubmissionRecord:
        """Decide what an existing claim allows: nothing, a finalisation, or a resend."""
        if record.claim_state == ClaimState.CONFIRMED:
            raise AlreadySubmittedError(
                "Filing has already been submitted",
                details={"filing_id": filing.filing_id, "ack_number": record.ack_number},
            )

        stale_after = timedelta(seconds=self.settings.stale_claim_seconds)
        if (
            record.claim_state == ClaimState.IN_FLIGHT
            and self._clock() - record.claimed_at < stale_after
        ):
            raise AlreadySubmittedError(
                "A submission for this filing is already in progress",
                details={"filing_id": filing.filing_id, "record_id": record.record_id},
            )

        logger.info(
            f"[SUBMIT] Reconciling {record.claim_state.value} claim | filing={filing.filing_id} | "
            f"record={record.record_id}"
        )
        status = await self.poller.reconcile(filing.filing_id)
        if status is not None:
            record.ack_number = status.ack_number
            record.claim_state = ClaimState.CONFIRMED
            record.submitted_at = self._clock()
            await self.repository.save_submission(record)
            await self.poller.apply_status(record, status)
            logger.info(
                f"[SUBMIT] Authority already holds the filing, claim confirmed | "
                f"filing={filing.filing_id} | ack={record.ack_number}"
            )
            return record

        claimed_at = self._clock()
        taken = await self.repository.take_over_claim(
            record.record_id, record.claim_state, record.attempts, claimed_at
        )
        if not taken:
            logger.info(
                f"[SUBMIT] Claim taken over by another attempt | filing={filing.filing_id} | "
                f"record={record.record_id}"
            )
            raise AlreadySubmittedError(
                "A submission for this filing is already in progress",
                details={"filing_id": filing.filing_id, "record_id": record.record_id},
            )
        record.claim_state = ClaimState.IN_FLIGHT
        record.claimed_at = claimed_at
        record.attempts += 1
        return record

    def build_payload(self, filing: Filing, session: VerificationSession) -> Dict[str, Any]:
        return {
            "filing_reference": filing.filing_id,
            "form_type": filing.form_type,
            "assessment_period": filing.assessment_period,
            "taxpayer_id": filing.subject.taxpayer_id,
            "taxpayer_name": filing.subject.name,
            "filed_by_account": filing.account_id,
            "relationship": filing.subject.relationship.value,
            "supersedes_reference": filing.supersedes_id,
            "computed_liability": filing.computed_liability,
            "verification": {
                "method": session.method.value,
                "session_id": session.session_id,
                "proof_token": session.proof_token,
                "verified_at": session.completed_at.isoformat() if session.completed_at else None,
            },
        }

    async def _send(
        self,
        filing: Filing,
        session: VerificationSession,
        record: SubmissionRecord,
    ) -> SubmissionRecord:
        payload = self.build_payload(filing, session)
        try:
            receipt = await self.authority.upload(payload)
        except AuthorityRejectedError as e:
            await self.repository.delete_submission(record.record_id)
            logger.warning(
                f"[SUBMIT] Upload rejected, claim released | filing={filing.filing_id} | "
                f"errors={e.details.get('errors')}"
            )
            raise
        except AuthorityUnavailableError as e:
            if e.details.get("not_sent"):
                await self.repository.delete_submission(record.record_id)
                logger.warning(
                    f"[SUBMIT] Authority unreachable, claim released | filing={filing.filing_id}"
                )
            else:
                record.claim_state = ClaimState.INDETERMINATE
                await self.repository.save_submission(record)
                logger.error(
                    f"[SUBMIT] Upload outcome unknown, claim indeterminate | "
                    f"filing={filing.filing_id} | record={record.record_id}"
                )
            raise

        record.ack_number = receipt.ack_number
        record.claim_state = ClaimState.CONFIRMED
        record.submitted_at = self._clock()
        await self.repository.save_submission(record)
        await self.poller.apply_status(
            record, AuthorityStatus(ack_number=receipt.ack_number, raw_stage=receipt.raw_stage)
        )
        logger.info(
            f"[SUBMIT] Filing submitted | filing={filing.filing_id} | ack={receipt.ack_number} | "
            f"attempts={record.attempts}"
        )
        return record
