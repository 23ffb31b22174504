"""Tests for the SQLAlchemy-backed filing repository (SQLite)."""

from datetime import timedelta

import pytest
import pytest_asyncio

from config.database import DatabaseSettings
from database import SqlFilingRepository, create_engine, create_tables, get_session_factory
from efiling.errors import AlreadySubmittedError, ConcurrentUpdateError, NotFoundError
from efiling.factory import build_workflow
from efiling.models import (
    ClaimState,
    ExternalStage,
    Filing,
    FilingGroup,
    FilingState,
    SessionState,
    SubmissionRecord,
    TransitionRecord,
    VerificationMethod,
    VerificationSession,
)
from tests.helpers.filing_flow import open_submitted


@pytest_asyncio.fixture
async def sql_repository(tmp_path, clock):
    engine = create_engine(DatabaseSettings(sqlite_path=tmp_path / "efiling.db"))
    await create_tables(engine)
    yield SqlFilingRepository(get_session_factory(engine), clock=clock)
    await engine.dispose()


@pytest.fixture
def filing(subject, liability, clock):
    return Filing(
        account_id="acct_1",
        subject=subject,
        form_type="ITR-1",
        assessment_period="2025-26",
        computed_liability=liability,
        created_at=clock(),
        updated_at=clock(),
    )


def _session(filing, clock, **kwargs):
    return VerificationSession(
        filing_id=filing.filing_id,
        method=VerificationMethod.AADHAAR_OTP,
        state=SessionState.CHALLENGE_ISSUED,
        issued_at=clock(),
        expires_at=clock() + timedelta(minutes=5),
        **kwargs,
    )


class TestFilings:
    """Tests for filing persistence and optimistic versioning."""

    @pytest.mark.asyncio
    async def test_round_trip(self, sql_repository, filing, subject, liability):
        await sql_repository.add_filing(filing)

        loaded = await sql_repository.get_filing(filing.filing_id)

        assert loaded.subject == subject
        assert loaded.computed_liability == liability
        assert loaded.state == FilingState.DRAFT_READY
        assert loaded.version == 1

    @pytest.mark.asyncio
    async def test_missing_filing(self, sql_repository):
        assert await sql_repository.get_filing("fil_missing") is None
        with pytest.raises(NotFoundError):
            await sql_repository.require_filing("fil_missing")

    @pytest.mark.asyncio
    async def test_save_bumps_version(self, sql_repository, filing):
        await sql_repository.add_filing(filing)
        filing.accepted_declaration_ids = ["itr.truth-and-correctness.2025-1"]

        await sql_repository.save_filing(filing)

        assert filing.version == 2
        loaded = await sql_repository.get_filing(filing.filing_id)
        assert loaded.version == 2
        assert loaded.accepted_declaration_ids == ["itr.truth-and-correctness.2025-1"]

    @pytest.mark.asyncio
    async def test_stale_write_refused(self, sql_repository, filing):
        await sql_repository.add_filing(filing)
        first = await sql_repository.get_filing(filing.filing_id)
        second = await sql_repository.get_filing(filing.filing_id)

        first.state = FilingState.DECLARED
        await sql_repository.save_filing(first)

        second.integrity_hold = True
        with pytest.raises(ConcurrentUpdateError) as exc_info:
            await sql_repository.save_filing(second)
        assert exc_info.value.details == {"expected_version": 1, "stored_version": 2}

    @pytest.mark.asyncio
    async def test_list_by_state(self, sql_repository, filing, subject, clock):
        other = Filing(
            account_id="acct_1",
            subject=subject,
            form_type="ITR-1",
            assessment_period="2024-25",
            state=FilingState.SUBMITTED,
            created_at=clock() + timedelta(seconds=1),
            updated_at=clock(),
        )
        await sql_repository.add_filing(filing)
        await sql_repository.add_filing(other)

        submitted = await sql_repository.list_filings(state=FilingState.SUBMITTED)

        assert [f.filing_id for f in submitted] == [other.filing_id]
        assert len(await sql_repository.list_filings(limit=1)) == 1


class TestSessions:
    """Tests for verification session persistence."""

    @pytest.mark.asyncio
    async def test_find_active_session(self, sql_repository, filing, clock):
        await sql_repository.add_filing(filing)
        old = _session(filing, clock, payload={"reference": "otp_1"})
        old.state = SessionState.EXPIRED
        await sql_repository.add_session(old)
        clock.advance(10)
        current = _session(filing, clock, payload={"reference": "otp_2"})
        await sql_repository.add_session(current)

        active = await sql_repository.find_active_session(filing.filing_id)

        assert active.session_id == current.session_id
        assert active.payload == {"reference": "otp_2"}
        assert len(await sql_repository.list_sessions(filing.filing_id)) == 2

    @pytest.mark.asyncio
    async def test_save_session(self, sql_repository, filing, clock):
        await sql_repository.add_filing(filing)
        session = _session(filing, clock)
        await sql_repository.add_session(session)

        session.attempt_count = 2
        session.state = SessionState.FAILED
        session.failure_reason = "max_attempts_exceeded"
        await sql_repository.save_session(session)

        loaded = await sql_repository.get_session(session.session_id)
        assert loaded.attempt_count == 2
        assert loaded.state == SessionState.FAILED
        assert await sql_repository.find_active_session(filing.filing_id) is None


class TestSubmissions:
    """Tests for the submission claim row."""

    @pytest_asyncio.fixture
    async def claimed(self, sql_repository, filing, clock):
        await sql_repository.add_filing(filing)
        session = _session(filing, clock)
        session.state = SessionState.COMPLETED
        await sql_repository.add_session(session)
        record = SubmissionRecord(
            filing_id=filing.filing_id,
            verification_session_id=session.session_id,
            claimed_at=clock(),
        )
        await sql_repository.insert_submission(record)
        return record

    @pytest.mark.asyncio
    async def test_second_claim_refused(self, sql_repository, claimed):
        duplicate = SubmissionRecord(
            filing_id=claimed.filing_id,
            verification_session_id=claimed.verification_session_id,
        )
        with pytest.raises(AlreadySubmittedError):
            await sql_repository.insert_submission(duplicate)

    @pytest.mark.asyncio
    async def test_released_claim_can_be_retaken(self, sql_repository, claimed):
        await sql_repository.delete_submission(claimed.record_id)
        assert await sql_repository.get_submission_for_filing(claimed.filing_id) is None

        retry = SubmissionRecord(
            filing_id=claimed.filing_id,
            verification_session_id=claimed.verification_session_id,
        )
        await sql_repository.insert_submission(retry)
        assert (await sql_repository.get_submission(retry.record_id)).filing_id == claimed.filing_id

    @pytest.mark.asyncio
    async def test_stage_only_moves_forward(self, sql_repository, claimed, clock):
        assert await sql_repository.advance_stage(
            claimed.record_id, ExternalStage.UNDER_REVIEW, "UNDER_PROCESSING", clock()
        )
        assert not await sql_repository.advance_stage(
            claimed.record_id, ExternalStage.VALIDATING, "E_VERIFIED", clock()
        )
        assert not await sql_repository.advance_stage(
            claimed.record_id, ExternalStage.UNDER_REVIEW, "UNDER_PROCESSING", clock()
        )

        stored = await sql_repository.get_submission(claimed.record_id)
        assert stored.last_known_stage == ExternalStage.UNDER_REVIEW
        assert stored.last_raw_stage == "UNDER_PROCESSING"

    @pytest.mark.asyncio
    async def test_advance_unknown_record(self, sql_repository, clock):
        with pytest.raises(NotFoundError):
            await sql_repository.advance_stage("sub_missing", ExternalStage.SUBMITTED, "UPLOADED", clock())

    @pytest.mark.asyncio
    async def test_mark_polled(self, sql_repository, claimed, clock):
        clock.advance(30)
        await sql_repository.mark_polled(claimed.record_id, clock())

        stored = await sql_repository.get_submission(claimed.record_id)
        assert stored.last_polled_at == clock()
        assert stored.last_known_stage is None

    @pytest.mark.asyncio
    async def test_claim_takeover_single_winner(self, sql_repository, claimed, clock):
        claimed.claim_state = ClaimState.INDETERMINATE
        await sql_repository.save_submission(claimed)
        clock.advance(300)

        first = await sql_repository.take_over_claim(
            claimed.record_id, ClaimState.INDETERMINATE, 1, clock()
        )
        second = await sql_repository.take_over_claim(
            claimed.record_id, ClaimState.INDETERMINATE, 1, clock()
        )

        assert first is True
        assert second is False
        stored = await sql_repository.get_submission(claimed.record_id)
        assert stored.claim_state == ClaimState.IN_FLIGHT
        assert stored.attempts == 2

    @pytest.mark.asyncio
    async def test_takeover_of_unknown_claim(self, sql_repository, clock):
        with pytest.raises(NotFoundError):
            await sql_repository.take_over_claim("sub_missing", ClaimState.INDETERMINATE, 1, clock())


class TestAuditAndGroups:
    """Tests for transitions and groups."""

    @pytest.mark.asyncio
    async def test_transitions_in_order(self, sql_repository, filing, clock):
        await sql_repository.add_filing(filing)
        await sql_repository.append_transition(
            TransitionRecord(
                filing_id=filing.filing_id,
                from_state=FilingState.DRAFT_READY,
                to_state=FilingState.DECLARED,
                event="declarations_accepted",
                at=clock(),
            )
        )
        await sql_repository.append_transition(
            TransitionRecord(
                filing_id=filing.filing_id,
                from_state=FilingState.DECLARED,
                to_state=FilingState.VERIFYING,
                event="method_selected",
                verification_session_id="ver_1",
                session_state=SessionState.CHALLENGE_ISSUED,
                at=clock(),
            )
        )

        history = await sql_repository.list_transitions(filing.filing_id)

        assert [t.to_state for t in history] == [FilingState.DECLARED, FilingState.VERIFYING]
        assert history[1].session_state == SessionState.CHALLENGE_ISSUED

    @pytest.mark.asyncio
    async def test_group_round_trip(self, sql_repository, clock):
        group = FilingGroup(account_id="acct_1", filing_ids=["fil_a", "fil_b"], created_at=clock())
        await sql_repository.add_group(group)

        loaded = await sql_repository.get_group(group.group_id)

        assert loaded.filing_ids == ["fil_a", "fil_b"]
        assert await sql_repository.get_group("grp_missing") is None


class TestWorkflowOnSql:
    """The workflow runs unchanged against SQL storage."""

    @pytest.mark.asyncio
    async def test_submit_and_accept(self, sql_repository, settings, provider, authority, clock, subject, liability):
        workflow = build_workflow(
            settings,
            repository=sql_repository,
            provider=provider,
            authority=authority,
            clock=clock,
        )

        filing, record = await open_submitted(workflow, provider, subject, liability)
        authority.set_stage(record.ack_number, "PROCESSED")
        await workflow.refresh_status(filing.filing_id)

        stored = await workflow.get_filing(filing.filing_id)
        assert stored.state == FilingState.ACCEPTED
        assert stored.submission_record_id == record.record_id
        assert len(await workflow.history(filing.filing_id)) == 5
        with pytest.raises(AlreadySubmittedError):
            await workflow.submit(filing.filing_id)
