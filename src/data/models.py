"""
Database models for the survey link gate.
Defines SQLAlchemy models for projects, vendors, quotas, single-use links,
qualification questions, answers, consents and audit flags.
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.orm import declarative_base, relationship, validates
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the timezone-less DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Database-agnostic JSON column type
class JSONColumn(TypeDecorator):
    """JSON column that uses JSONB for PostgreSQL and JSON for other databases."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        else:
            return dialect.type_descriptor(JSON())


class ProjectStatus(str, Enum):
    """Survey campaign lifecycle."""

    DRAFT = "DRAFT"
    LIVE = "LIVE"
    COMPLETE = "COMPLETE"


class LinkStatus(str, Enum):
    """Single-use link lifecycle status exposed to callers."""

    UNUSED = "UNUSED"
    CLICKED = "CLICKED"
    QUALIFYING = "QUALIFYING"
    QUALIFIED = "QUALIFIED"
    DISQUALIFIED = "DISQUALIFIED"
    QUOTA_FULL = "QUOTA_FULL"
    GEO_BLOCKED = "GEO_BLOCKED"
    COMPLETED = "COMPLETED"


class LinkVariant(str, Enum):
    """TEST relaxes enforcement (QA); LIVE enforces every check."""

    TEST = "TEST"
    LIVE = "LIVE"


class FlowAction(str, Enum):
    """What selecting an option does to the qualification flow."""

    NEXT = "NEXT"
    SKIP_TO = "SKIP_TO"
    END_SUCCESS = "END_SUCCESS"
    END_DISQUALIFY = "END_DISQUALIFY"


class AnswerSource(str, Enum):
    """Whether an answer was given during the original pass or a re-challenge."""

    ORIGINAL = "ORIGINAL"
    CHALLENGE = "CHALLENGE"


class ReservationState(str, Enum):
    """Quota reservation lifecycle."""

    RESERVED = "RESERVED"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"


class FlagSeverity(str, Enum):
    """Flag severity levels."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class FlagReason(str, Enum):
    """Well-known flag reason codes. Callers may append other free-form codes."""

    ANONYMIZER_DETECTED = "anonymizer_detected"
    GEO_VIOLATION = "geo_violation"
    VALIDATION_MISMATCH = "validation_mismatch"
    VALIDATION_TIMEOUT = "validation_timeout"
    FLOW_CONFIGURATION_ERROR = "flow_configuration_error"
    IP_CHANGED = "ip_changed"
    LOW_CONSISTENCY_SCORE = "low_consistency_score"


class Project(Base):
    """Survey campaign with a completion target."""

    __tablename__ = "projects"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    survey_url = Column(String(2048), nullable=False)
    status = Column(String(20), nullable=False, default=ProjectStatus.DRAFT.value)
    target_completions = Column(Integer, nullable=False, default=100)
    current_completions = Column(Integer, nullable=False, default=0)
    settings = Column(JSONColumn, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    questions = relationship(
        "Question", back_populates="project", cascade="all, delete-orphan", order_by="Question.sequence"
    )
    vendor_quotas = relationship("VendorQuota", back_populates="project", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("current_completions >= 0", name="ck_project_current_nonnegative"),
        CheckConstraint("current_completions <= target_completions", name="ck_project_within_target"),
    )

    @validates("status")
    def validate_status(self, key, status):
        """Validate project status."""
        if status not in [s.value for s in ProjectStatus]:
            raise ValueError(f"Invalid project status: {status}")
        return status

    @property
    def allowed_countries(self) -> list[str]:
        """Project-level geo allow-list (empty means unrestricted)."""
        settings = self.settings or {}
        countries = settings.get("geoRestrictions") or settings.get("allowedCountries") or []
        return [c.upper() for c in countries]

    def __repr__(self):
        return f"<Project(id={self.id}, name={self.name}, status={self.status})>"


class Vendor(Base):
    """Third-party sample supplier distributing links."""

    __tablename__ = "vendors"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    code = Column(String(32), unique=True, nullable=True)
    contact_email = Column(String(255), nullable=True)
    settings = Column(JSONColumn, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Vendor(id={self.id}, name={self.name}, code={self.code})>"


class VendorQuota(Base):
    """Per (project, vendor) capacity record."""

    __tablename__ = "project_vendors"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(PostgresUUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    vendor_id = Column(PostgresUUID(as_uuid=True), ForeignKey("vendors.id"), nullable=False)
    quota = Column(Integer, nullable=False, default=0)
    current_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    project = relationship("Project", back_populates="vendor_quotas")
    vendor = relationship("Vendor")

    __table_args__ = (
        UniqueConstraint("project_id", "vendor_id", name="uq_project_vendor"),
        CheckConstraint("current_count >= 0", name="ck_vendor_count_nonnegative"),
        CheckConstraint("current_count <= quota", name="ck_vendor_count_within_quota"),
    )

    def __repr__(self):
        return f"<VendorQuota(project={self.project_id}, vendor={self.vendor_id}, {self.current_count}/{self.quota})>"


class SurveyLink(Base):
    """Single-use participation link issued to one respondent."""

    __tablename__ = "survey_links"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    uid = Column(String(64), unique=True, nullable=False, index=True)
    project_id = Column(PostgresUUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    vendor_id = Column(PostgresUUID(as_uuid=True), ForeignKey("vendors.id"), nullable=True)
    status = Column(String(20), nullable=False, default=LinkStatus.UNUSED.value)
    variant = Column(String(10), nullable=False, default=LinkVariant.LIVE.value)
    version = Column(Integer, nullable=False, default=1)

    issued_at = Column(DateTime, nullable=False, default=utcnow)
    clicked_at = Column(DateTime, nullable=True)
    last_seen_at = Column(DateTime, nullable=True)
    qualified_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    terminated_at = Column(DateTime, nullable=True)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    geo_data = Column(JSONColumn, nullable=True)
    client_metadata = Column(JSONColumn, nullable=True)
    allowed_countries = Column(JSONColumn, nullable=True)

    current_question_key = Column(String(100), nullable=True)
    traversal_count = Column(Integer, nullable=False, default=0)
    disqualification_reason = Column(String(255), nullable=True)
    reservation_id = Column(PostgresUUID(as_uuid=True), nullable=True)

    # Relationships
    project = relationship("Project")
    vendor = relationship("Vendor")
    answers = relationship(
        "AnswerRecord", back_populates="link", cascade="all, delete-orphan", order_by="AnswerRecord.answered_at"
    )
    flags = relationship("Flag", back_populates="link", cascade="all, delete-orphan")
    consents = relationship("ConsentRecord", back_populates="link", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_link_project_status", "project_id", "status"),
        Index("idx_link_vendor", "vendor_id"),
    )

    @validates("status")
    def validate_status(self, key, status):
        """Validate link status."""
        if status not in [s.value for s in LinkStatus]:
            raise ValueError(f"Invalid link status: {status}")
        return status

    @validates("variant")
    def validate_variant(self, key, variant):
        """Validate link variant."""
        if variant not in [v.value for v in LinkVariant]:
            raise ValueError(f"Invalid link variant: {variant}")
        return variant

    @property
    def is_test(self) -> bool:
        return self.variant == LinkVariant.TEST.value

    def __repr__(self):
        return f"<SurveyLink(uid={self.uid}, status={self.status}, variant={self.variant})>"


class QuotaReservation(Base):
    """A slot held against project (and vendor) capacity for one link."""

    __tablename__ = "quota_reservations"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(PostgresUUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    vendor_id = Column(PostgresUUID(as_uuid=True), ForeignKey("vendors.id"), nullable=True)
    link_id = Column(PostgresUUID(as_uuid=True), ForeignKey("survey_links.id"), nullable=True)
    state = Column(String(20), nullable=False, default=ReservationState.RESERVED.value)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("idx_reservation_project_state", "project_id", "state"),)

    def __repr__(self):
        return f"<QuotaReservation(id={self.id}, project={self.project_id}, state={self.state})>"


class Question(Base):
    """Node in the pre-survey qualification graph."""

    __tablename__ = "questions"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(PostgresUUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    key = Column(String(100), nullable=False)
    sequence = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)
    is_required = Column(Boolean, nullable=False, default=True)
    # [{"text", "value", "action", "target", "disqualifying"}]
    options = Column(JSONColumn, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="questions")

    __table_args__ = (
        UniqueConstraint("project_id", "key", name="uq_question_project_key"),
        Index("idx_question_project_sequence", "project_id", "sequence"),
    )

    def __repr__(self):
        return f"<Question(key={self.key}, sequence={self.sequence})>"


class AnswerRecord(Base):
    """Answer given for one question on one link."""

    __tablename__ = "answer_records"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    link_id = Column(PostgresUUID(as_uuid=True), ForeignKey("survey_links.id"), nullable=False)
    question_key = Column(String(100), nullable=False)
    value = Column(Text, nullable=False)
    source = Column(String(20), nullable=False, default=AnswerSource.ORIGINAL.value)
    answered_at = Column(DateTime, nullable=False, default=utcnow)

    link = relationship("SurveyLink", back_populates="answers")

    __table_args__ = (Index("idx_answer_link_question", "link_id", "question_key", "source"),)

    @validates("source")
    def validate_source(self, key, source):
        """Validate answer source."""
        if source not in [s.value for s in AnswerSource]:
            raise ValueError(f"Invalid answer source: {source}")
        return source

    def __repr__(self):
        return f"<AnswerRecord(link={self.link_id}, question={self.question_key}, source={self.source})>"


class ConsentRecord(Base):
    """Consent acknowledgement captured at the admission gate."""

    __tablename__ = "consent_records"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    link_id = Column(PostgresUUID(as_uuid=True), ForeignKey("survey_links.id"), nullable=False)
    consent_key = Column(String(100), nullable=False)
    granted = Column(Boolean, nullable=False)
    required = Column(Boolean, nullable=False, default=False)
    recorded_at = Column(DateTime, nullable=False, default=utcnow)

    link = relationship("SurveyLink", back_populates="consents")

    __table_args__ = (UniqueConstraint("link_id", "consent_key", name="uq_consent_link_key"),)

    def __repr__(self):
        return f"<ConsentRecord(link={self.link_id}, key={self.consent_key}, granted={self.granted})>"


class Flag(Base):
    """Immutable audit note attached to a link."""

    __tablename__ = "flags"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    link_id = Column(PostgresUUID(as_uuid=True), ForeignKey("survey_links.id"), nullable=False)
    project_id = Column(PostgresUUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    reason = Column(String(100), nullable=False)
    severity = Column(String(20), nullable=False, default=FlagSeverity.LOW.value)
    message = Column(Text, nullable=True)
    flag_metadata = Column(JSONColumn, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    link = relationship("SurveyLink", back_populates="flags")

    __table_args__ = (
        Index("idx_flag_link", "link_id"),
        Index("idx_flag_project_reason", "project_id", "reason"),
    )

    @validates("severity")
    def validate_severity(self, key, severity):
        """Validate flag severity."""
        if severity not in [s.value for s in FlagSeverity]:
            raise ValueError(f"Invalid flag severity: {severity}")
        return severity

    def __repr__(self):
        return f"<Flag(link={self.link_id}, reason={self.reason}, severity={self.severity})>"
