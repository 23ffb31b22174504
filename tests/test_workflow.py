"""End-to-end tests for the filing workflow state machine."""

from datetime import timedelta

import pytest

from efiling.declarations import DeclarationGate
from efiling.errors import (
    AlreadySubmittedError,
    ErrorKind,
    FilingBusyError,
    FilingError,
    FilingOnHoldError,
    IntegrityViolationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from efiling.locks import FilingLockManager
from efiling.models import ChallengeStatus, FilingState, SessionState, VerificationMethod
from efiling.workflow import VALID_TRANSITIONS, FilingEvent
from tests.helpers.filing_flow import (
    ITR1_DECLARATIONS,
    issued_otp,
    open_declared,
    open_submitted,
    open_verified,
)


def _wrong(code):
    return "000000" if code != "000000" else "111111"


class TestTransitionTable:
    """Tests for the transition table itself."""

    def test_terminal_states_have_no_events(self):
        assert VALID_TRANSITIONS[FilingState.ACCEPTED] == {}
        assert VALID_TRANSITIONS[FilingState.REJECTED] == {}

    def test_every_state_listed(self):
        assert set(VALID_TRANSITIONS) == set(FilingState)

    def test_verification_failure_returns_to_declared(self):
        verifying = VALID_TRANSITIONS[FilingState.VERIFYING]
        assert verifying[FilingEvent.VERIFICATION_FAILED] == FilingState.DECLARED
        assert verifying[FilingEvent.METHOD_SELECTED] == FilingState.VERIFYING


class TestHappyPath:
    """Full runs from DRAFT_READY to an authority decision."""

    @pytest.mark.asyncio
    async def test_failed_otp_then_certificate(self, workflow, provider, subject, liability):
        filing = await workflow.open_filing("acct_1", subject, "ITR-1", "2025-26", liability)
        assert filing.state == FilingState.DRAFT_READY

        filing = await workflow.accept_declarations(filing.filing_id, ITR1_DECLARATIONS)
        assert filing.state == FilingState.DECLARED

        otp_handle = await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP)
        assert otp_handle.requires_challenge is True
        assert (await workflow.get_filing(filing.filing_id)).state == FilingState.VERIFYING

        wrong = _wrong(await issued_otp(workflow, provider, otp_handle.session_id))
        for _ in range(3):
            outcome = await workflow.submit_challenge(otp_handle.session_id, wrong)
        assert outcome.session.state == SessionState.FAILED
        assert (await workflow.get_filing(filing.filing_id)).state == FilingState.DECLARED

        dsc_handle = await workflow.select_method(filing.filing_id, VerificationMethod.DSC)
        outcome = await workflow.submit_challenge(dsc_handle.session_id, "MEUCIQDsigned")
        assert outcome.status == ChallengeStatus.COMPLETE
        assert (await workflow.get_filing(filing.filing_id)).state == FilingState.VERIFIED

        record = await workflow.submit(filing.filing_id)
        assert record.ack_number
        stored = await workflow.get_filing(filing.filing_id)
        assert stored.state == FilingState.SUBMITTED
        assert stored.verification_method == VerificationMethod.DSC

        with pytest.raises(AlreadySubmittedError) as exc_info:
            await workflow.submit(filing.filing_id)
        assert exc_info.value.kind == ErrorKind.CONFLICT
        assert exc_info.value.code == "ALREADY_SUBMITTED"

    @pytest.mark.asyncio
    async def test_history_records_each_transition(self, workflow, provider, subject, liability):
        filing, _ = await open_submitted(workflow, provider, subject, liability)

        history = await workflow.history(filing.filing_id)

        assert [(t.from_state, t.to_state) for t in history] == [
            (FilingState.DRAFT_READY, FilingState.DECLARED),
            (FilingState.DECLARED, FilingState.VERIFYING),
            (FilingState.VERIFYING, FilingState.VERIFIED),
            (FilingState.VERIFIED, FilingState.SUBMITTED),
        ]
        assert history[2].event == FilingEvent.CHALLENGE_COMPLETED.value
        assert history[2].session_state == SessionState.COMPLETED
        assert history[3].verification_session_id == filing.verification_session_id

    @pytest.mark.asyncio
    async def test_net_banking_callback(self, workflow, provider, subject, liability):
        filing = await open_declared(workflow, subject, liability)
        handle = await workflow.select_method(filing.filing_id, VerificationMethod.NET_BANKING)
        assert handle.requires_challenge is False
        assert handle.redirect_url

        session = await workflow.repository.get_session(handle.session_id)
        token = provider.callback_token_for(session.payload["state_token"])
        await workflow.submit_challenge(handle.session_id, {"token": token})

        assert (await workflow.get_filing(filing.filing_id)).state == FilingState.VERIFIED

    @pytest.mark.asyncio
    async def test_bank_callback_checks_state(self, workflow, provider, subject, liability):
        filing = await open_declared(workflow, subject, liability)
        handle = await workflow.select_method(filing.filing_id, VerificationMethod.NET_BANKING)
        session = await workflow.repository.get_session(handle.session_id)
        state_token = session.payload["state_token"]
        token = provider.callback_token_for(state_token)

        with pytest.raises(ValidationError) as exc_info:
            await workflow.complete_bank_callback(handle.session_id, "forged-state", token)
        assert exc_info.value.code == "MALFORMED_CHALLENGE"
        assert (await workflow.get_filing(filing.filing_id)).state == FilingState.VERIFYING

        outcome = await workflow.complete_bank_callback(handle.session_id, state_token, token)
        assert outcome.status == ChallengeStatus.COMPLETE
        assert outcome.session.attempt_count == 1
        assert (await workflow.get_filing(filing.filing_id)).state == FilingState.VERIFIED


class TestExpiry:
    """An expired session leaves the filing in VERIFYING."""

    @pytest.mark.asyncio
    async def test_expired_session_then_reselect(self, workflow, provider, clock, subject, liability):
        filing = await open_declared(workflow, subject, liability)
        handle = await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP)
        assert handle.expires_at == clock() + timedelta(minutes=5)

        clock.advance(301)

        report = await workflow.validate(filing.filing_id)
        assert report.state == FilingState.VERIFYING
        assert report.active_session_id is None
        assert report.next_action == "select_method"

        session = await workflow.coordinator.get_session(handle.session_id)
        assert session.state == SessionState.EXPIRED
        assert (await workflow.get_filing(filing.filing_id)).state == FilingState.VERIFYING

        new_handle = await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP)
        assert new_handle.session_id != handle.session_id
        otp = await issued_otp(workflow, provider, new_handle.session_id)
        await workflow.submit_challenge(new_handle.session_id, otp)
        assert (await workflow.get_filing(filing.filing_id)).state == FilingState.VERIFIED

    @pytest.mark.asyncio
    async def test_correct_code_after_expiry_is_not_accepted(self, workflow, provider, clock, subject, liability):
        filing = await open_declared(workflow, subject, liability)
        handle = await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP)
        otp = await issued_otp(workflow, provider, handle.session_id)

        clock.advance(301)
        outcome = await workflow.submit_challenge(handle.session_id, otp)

        assert outcome.status == ChallengeStatus.FAILED
        assert outcome.session.state == SessionState.EXPIRED
        assert (await workflow.get_filing(filing.filing_id)).state == FilingState.VERIFYING

    @pytest.mark.asyncio
    async def test_cancel_expired_verification(self, workflow, clock, subject, liability):
        filing = await open_declared(workflow, subject, liability)
        await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP)
        clock.advance(301)

        session = await workflow.cancel_verification(filing.filing_id)

        assert session.state == SessionState.EXPIRED
        assert (await workflow.get_filing(filing.filing_id)).state == FilingState.DECLARED


class TestDeclarations:
    """Tests for accepting declarations."""

    @pytest.mark.asyncio
    async def test_partial_acceptance_keeps_draft(self, workflow, subject, liability):
        filing = await workflow.open_filing("acct_1", subject, "ITR-1", "2025-26", liability)

        filing = await workflow.accept_declarations(filing.filing_id, ITR1_DECLARATIONS[:1])
        assert filing.state == FilingState.DRAFT_READY

        filing = await workflow.accept_declarations(filing.filing_id, ITR1_DECLARATIONS[1:])
        assert filing.state == FilingState.DECLARED
        assert filing.accepted_declaration_ids == ITR1_DECLARATIONS

    @pytest.mark.asyncio
    async def test_unknown_declaration(self, workflow, subject, liability):
        filing = await workflow.open_filing("acct_1", subject, "ITR-1", "2025-26", liability)
        with pytest.raises(ValidationError) as exc_info:
            await workflow.accept_declarations(filing.filing_id, ["itr.books-of-account.2025-1"])
        assert exc_info.value.code == "UNKNOWN_DECLARATION"

    @pytest.mark.asyncio
    async def test_catalog_outage(self, workflow, subject, liability, tmp_path):
        filing = await workflow.open_filing("acct_1", subject, "ITR-1", "2025-26", liability)
        workflow.gate = DeclarationGate(catalog_path=tmp_path / "missing.yaml")

        with pytest.raises(FilingError) as exc_info:
            await workflow.accept_declarations(filing.filing_id, ITR1_DECLARATIONS)
        assert exc_info.value.code == "DECLARATIONS_UNAVAILABLE"
        assert (await workflow.get_filing(filing.filing_id)).state == FilingState.DRAFT_READY

    @pytest.mark.asyncio
    async def test_declaration_texts(self, workflow, subject, liability):
        filing = await workflow.open_filing("acct_1", subject, "itr-2", "2025-26", liability)
        declarations = await workflow.declaration_for(filing.filing_id)
        assert filing.form_type == "ITR-2"
        assert [d.required for d in declarations] == [True, True, False]

    @pytest.mark.asyncio
    async def test_not_accepted_after_verification(self, workflow, provider, subject, liability):
        filing = await open_verified(workflow, provider, subject, liability)
        with pytest.raises(InvalidStateError):
            await workflow.accept_declarations(filing.filing_id, ITR1_DECLARATIONS)


class TestIllegalOperations:
    """Operations refused from the wrong state."""

    @pytest.mark.asyncio
    async def test_select_before_declarations(self, workflow, subject, liability):
        filing = await workflow.open_filing("acct_1", subject, "ITR-1", "2025-26", liability)
        with pytest.raises(InvalidStateError) as exc_info:
            await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP)
        assert exc_info.value.details == {
            "current_state": "DRAFT_READY",
            "event": "method_selected",
        }

    @pytest.mark.asyncio
    async def test_submit_before_verification(self, workflow, authority, subject, liability):
        filing = await open_declared(workflow, subject, liability)
        with pytest.raises(InvalidStateError) as exc_info:
            await workflow.submit(filing.filing_id)
        assert exc_info.value.code == "INVALID_STATE"
        assert exc_info.value.details == {"current_state": "DECLARED", "event": "submitted"}
        assert authority.upload_count == 0

    @pytest.mark.asyncio
    async def test_submit_while_verifying(self, workflow, authority, subject, liability):
        filing = await open_declared(workflow, subject, liability)
        await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP)

        with pytest.raises(InvalidStateError):
            await workflow.submit(filing.filing_id)
        assert authority.upload_count == 0

    @pytest.mark.asyncio
    async def test_unsupported_form_type(self, workflow, subject):
        with pytest.raises(ValidationError) as exc_info:
            await workflow.open_filing("acct_1", subject, "ITR-9", "2025-26")
        assert exc_info.value.code == "UNSUPPORTED_FORM_TYPE"

    @pytest.mark.asyncio
    async def test_identity_mismatch(self, workflow, subject, spouse, liability):
        filing = await open_declared(workflow, subject, liability)
        with pytest.raises(ValidationError) as exc_info:
            await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP, spouse)
        assert exc_info.value.code == "IDENTITY_MISMATCH"

    @pytest.mark.asyncio
    async def test_method_mismatch_at_submit(self, workflow, provider, subject, liability):
        filing = await open_verified(workflow, provider, subject, liability)
        with pytest.raises(ValidationError) as exc_info:
            await workflow.submit(filing.filing_id, verification_method=VerificationMethod.DSC)
        assert exc_info.value.code == "METHOD_MISMATCH"

        record = await workflow.submit(filing.filing_id, verification_method=VerificationMethod.AADHAAR_OTP)
        assert record.ack_number

    @pytest.mark.asyncio
    async def test_unknown_filing(self, workflow):
        with pytest.raises(NotFoundError):
            await workflow.get_filing("fil_missing")

    @pytest.mark.asyncio
    async def test_busy_filing(self, workflow, subject, liability):
        workflow.locks = FilingLockManager(timeout_seconds=0.05)
        filing = await workflow.open_filing("acct_1", subject, "ITR-1", "2025-26", liability)

        async with workflow.locks.hold(filing.filing_id):
            with pytest.raises(FilingBusyError):
                await workflow.accept_declarations(filing.filing_id, ITR1_DECLARATIONS)


class TestVerificationSelection:
    """Re-selecting and cancelling methods."""

    @pytest.mark.asyncio
    async def test_reselect_same_method_is_idempotent(self, workflow, provider, subject, liability):
        filing = await open_declared(workflow, subject, liability)
        first = await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP)
        second = await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP)

        assert first.session_id == second.session_id
        assert provider.calls["send_otp"] == 1
        assert len(await workflow.history(filing.filing_id)) == 2

    @pytest.mark.asyncio
    async def test_cancel_returns_to_declared(self, workflow, subject, liability):
        filing = await open_declared(workflow, subject, liability)
        handle = await workflow.select_method(filing.filing_id, VerificationMethod.DSC)

        session = await workflow.cancel_verification(filing.filing_id)

        assert session.session_id == handle.session_id
        assert session.state == SessionState.FAILED
        assert (await workflow.get_filing(filing.filing_id)).state == FilingState.DECLARED

        other = await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP)
        assert other.session_id != handle.session_id

    @pytest.mark.asyncio
    async def test_resend_through_workflow(self, workflow, clock, subject, liability):
        filing = await open_declared(workflow, subject, liability)
        handle = await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP)
        clock.advance(61)

        resent = await workflow.resend(handle.session_id)

        assert resent.session_id == handle.session_id
        assert resent.resends_remaining == 2


class TestReadiness:
    """Tests for validate()."""

    @pytest.mark.asyncio
    async def test_draft_report(self, workflow, subject):
        filing = await workflow.open_filing("acct_1", subject, "ITR-1", "2025-26")

        report = await workflow.validate(filing.filing_id)

        assert report.missing_declarations == ITR1_DECLARATIONS
        assert report.computed_liability_present is False
        assert report.next_action == "accept_declarations"
        assert report.allowed_events == [FilingEvent.DECLARATIONS_ACCEPTED]
        assert not report.ready_to_submit
        assert (await workflow.get_filing(filing.filing_id)).version == filing.version

    @pytest.mark.asyncio
    async def test_verified_report(self, workflow, provider, subject, liability):
        filing = await open_verified(workflow, provider, subject, liability)
        report = await workflow.validate(filing.filing_id)
        assert report.ready_to_submit
        assert report.next_action == "submit"
        assert report.issues == []


class TestIntegrityHold:
    """Corrupt data puts a filing on hold."""

    @pytest.mark.asyncio
    async def test_submitted_without_verification_is_held(self, workflow, repository, subject, liability):
        filing = await open_declared(workflow, subject, liability)
        filing.state = FilingState.SUBMITTED
        await repository.save_filing(filing)

        with pytest.raises(IntegrityViolationError):
            await workflow.refresh_status(filing.filing_id)

        held = await workflow.get_filing(filing.filing_id)
        assert held.integrity_hold
        assert "verification session" in held.integrity_hold_reason

        with pytest.raises(FilingOnHoldError):
            await workflow.submit(filing.filing_id)
        report = await workflow.validate(filing.filing_id)
        assert report.integrity_hold and report.next_action is None

    @pytest.mark.asyncio
    async def test_record_from_other_session_is_held(self, workflow, provider, repository, subject, liability):
        filing, record = await open_submitted(workflow, provider, subject, liability)
        record.verification_session_id = "ver_someone_else"
        await repository.delete_submission(record.record_id)
        await repository.insert_submission(record)

        with pytest.raises(IntegrityViolationError):
            await workflow.refresh_status(filing.filing_id)
        assert (await workflow.get_filing(filing.filing_id)).integrity_hold

    @pytest.mark.asyncio
    async def test_release_hold(self, workflow, repository, subject, liability):
        filing = await open_declared(workflow, subject, liability)
        filing.integrity_hold = True
        filing.integrity_hold_reason = "manual test"
        await repository.save_filing(filing)

        with pytest.raises(FilingOnHoldError):
            await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP)

        released = await workflow.release_hold(filing.filing_id)
        assert not released.integrity_hold
        handle = await workflow.select_method(filing.filing_id, VerificationMethod.AADHAAR_OTP)
        assert handle.session_id


class TestRevisionsAndGroups:
    """Superseding filings and multi-subject groups."""

    @pytest.mark.asyncio
    async def test_supersede_accepted_filing(self, workflow, provider, authority, subject, liability):
        filing, record = await open_submitted(workflow, provider, subject, liability)
        authority.set_stage(record.ack_number, "PROCESSED")
        await workflow.refresh_status(filing.filing_id)

        revised = await workflow.supersede(filing.filing_id)

        assert revised.state == FilingState.DRAFT_READY
        assert revised.supersedes_id == filing.filing_id
        assert revised.computed_liability == liability
        assert (await workflow.get_filing(filing.filing_id)).state == FilingState.ACCEPTED

    @pytest.mark.asyncio
    async def test_supersede_requires_decision(self, workflow, provider, subject, liability):
        filing, _ = await open_submitted(workflow, provider, subject, liability)
        with pytest.raises(InvalidStateError) as exc_info:
            await workflow.supersede(filing.filing_id)
        assert exc_info.value.event == "supersede"

    @pytest.mark.asyncio
    async def test_group_progress(self, workflow, provider, subject, spouse, liability):
        group = await workflow.open_group("acct_1", [subject, spouse], "ITR-1", "2025-26")
        first_id, second_id = group.filing_ids

        progress = await workflow.group_progress(group.group_id)
        assert [f.relationship for f in progress.filings] == ["self", "spouse"]
        assert progress.next_filing_id == first_id
        assert progress.filings[0].taxpayer_id.endswith("234F")
        assert "ABCPK" not in progress.filings[0].taxpayer_id

        await workflow.accept_declarations(first_id, ITR1_DECLARATIONS)
        handle = await workflow.select_method(first_id, VerificationMethod.AADHAAR_OTP)
        await workflow.submit_challenge(handle.session_id, await issued_otp(workflow, provider, handle.session_id))
        await workflow.submit(first_id)

        progress = await workflow.group_progress(group.group_id)
        assert progress.next_filing_id == second_id
        assert not progress.complete
        assert (await workflow.get_filing(second_id)).state == FilingState.DRAFT_READY

    @pytest.mark.asyncio
    async def test_group_rejects_duplicate_subject(self, workflow, subject):
        with pytest.raises(ValidationError) as exc_info:
            await workflow.open_group("acct_1", [subject, subject], "ITR-1", "2025-26")
        assert exc_info.value.code == "DUPLICATE_SUBJECT"

    @pytest.mark.asyncio
    async def test_unknown_group(self, workflow):
        with pytest.raises(NotFoundError):
            await workflow.group_progress("grp_missing")
