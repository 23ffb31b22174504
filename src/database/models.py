"""
SQLAlchemy ORM Models for filing workflow storage.

Tables:
- filings: Filing aggregate (one row per tax return submission lifecycle)
- verification_sessions: e-verification attempts, many per filing
- submission_records: claim/receipt of the authority upload, at most one per filing
- filing_transitions: append-only audit of state changes
- filing_groups: multi-subject sessions

Architecture:
- Primary Keys: prefixed string ids generated by the domain layer
- Concurrency: filings.version is checked on every update (optimistic lock)
- Uniqueness: submission_records.filing_id is UNIQUE, so a second claim for
  the same filing fails at the database
- Timestamps: naive UTC
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    JSON,
)
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator


# Cross-database compatible JSON type
# Uses JSONB on PostgreSQL, JSON on SQLite/others
class JSONB(TypeDecorator):
    """A portable JSONB type that works with both PostgreSQL and SQLite."""
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_JSONB())
        else:
            return dialect.type_descriptor(JSON())


Base = declarative_base()


# =============================================================================
# FILINGS
# =============================================================================

class FilingRow(Base):
    """
    Filing aggregate root.

    The subject identity and computed liability are stored as JSON; the
    workflow never queries inside them.
    """
    __tablename__ = "filings"

    filing_id = Column(String(64), primary_key=True)
    account_id = Column(String(128), nullable=False, index=True)
    subject = Column(JSONB, nullable=False)
    form_type = Column(String(16), nullable=False)
    assessment_period = Column(String(16), nullable=False)
    state = Column(String(16), nullable=False, index=True)

    accepted_declaration_ids = Column(JSONB, nullable=False, default=list)
    verification_method = Column(String(32), nullable=True)
    verification_session_id = Column(String(64), nullable=True)
    submission_record_id = Column(String(64), nullable=True)

    computed_liability = Column(JSONB, nullable=True)
    supersedes_id = Column(String(64), ForeignKey("filings.filing_id"), nullable=True)
    group_id = Column(String(64), nullable=True, index=True)

    integrity_hold = Column(Boolean, nullable=False, default=False)
    integrity_hold_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_filings_account_period", "account_id", "assessment_period"),
    )

    def __repr__(self):
        return f"<FilingRow(filing_id={self.filing_id}, state={self.state}, version={self.version})>"


class VerificationSessionRow(Base):
    """One e-verification attempt."""
    __tablename__ = "verification_sessions"

    session_id = Column(String(64), primary_key=True)
    filing_id = Column(String(64), ForeignKey("filings.filing_id"), nullable=False, index=True)
    method = Column(String(32), nullable=False)
    state = Column(String(32), nullable=False)

    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    attempt_count = Column(Integer, nullable=False, default=0)
    resend_count = Column(Integer, nullable=False, default=0)
    last_resent_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    failure_reason = Column(String(64), nullable=True)
    proof_token = Column(String(128), nullable=True)
    payload = Column(JSONB, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_verification_sessions_filing_state", "filing_id", "state"),
    )


class SubmissionRecordRow(Base):
    """Claim row for the authority upload, turned into a receipt on acknowledgment."""
    __tablename__ = "submission_records"

    record_id = Column(String(64), primary_key=True)
    filing_id = Column(String(64), ForeignKey("filings.filing_id"), nullable=False)
    verification_session_id = Column(
        String(64), ForeignKey("verification_sessions.session_id"), nullable=False
    )
    claim_state = Column(String(16), nullable=False)
    ack_number = Column(String(32), nullable=True, index=True)

    claimed_at = Column(DateTime, nullable=False)
    submitted_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)

    last_known_stage = Column(String(16), nullable=True)
    last_stage_rank = Column(Integer, nullable=True)
    last_raw_stage = Column(String(64), nullable=True)
    last_polled_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("filing_id", name="uq_submission_records_filing"),
    )


class FilingTransitionRow(Base):
    """Audit trail of filing state changes (append only)."""
    __tablename__ = "filing_transitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    filing_id = Column(String(64), ForeignKey("filings.filing_id"), nullable=False, index=True)
    from_state = Column(String(16), nullable=False)
    to_state = Column(String(16), nullable=False)
    event = Column(String(32), nullable=False)
    verification_session_id = Column(String(64), nullable=True)
    session_state = Column(String(32), nullable=True)
    at = Column(DateTime, nullable=False)


class FilingGroupRow(Base):
    """Multi-subject session."""
    __tablename__ = "filing_groups"

    group_id = Column(String(64), primary_key=True)
    account_id = Column(String(128), nullable=False, index=True)
    filing_ids = Column(JSONB, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False)
