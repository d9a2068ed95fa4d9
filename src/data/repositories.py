"""
Repository classes for data access layer.
Implements the record-store operations (get, list, create, update, delete) for
every entity the admission pipeline touches. Store errors propagate to the
calling boundary, which owns retry policy.
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from src.exceptions import ImmutableRecordError

from .models import (
    AnswerRecord,
    AnswerSource,
    ConsentRecord,
    Flag,
    LinkStatus,
    Project,
    Question,
    QuotaReservation,
    ReservationState,
    SurveyLink,
    Vendor,
    VendorQuota,
    utcnow,
)

logger = logging.getLogger(__name__)


class BaseRepository:
    """Base repository with common CRUD operations."""

    def __init__(self, session: Session, model_class):
        self.session = session
        self.model_class = model_class

    def get_by_id(self, id: UUID) -> Any | None:
        """Get entity by ID."""
        return self.session.get(self.model_class, id)

    def list(self, limit: int | None = None, offset: int | None = None, **filters: Any) -> list[Any]:
        """List entities matching equality filters with optional pagination."""
        query = select(self.model_class)
        for field_name, value in filters.items():
            query = query.where(getattr(self.model_class, field_name) == value)
        if offset:
            query = query.offset(offset)
        if limit:
            query = query.limit(limit)
        return list(self.session.scalars(query).all())

    def create(self, **fields: Any) -> Any:
        """Create and flush a new entity."""
        entity = self.model_class(**fields)
        self.session.add(entity)
        self.session.flush()
        return entity

    def update(self, id: UUID, **fields: Any) -> Any | None:
        """Update entity fields by ID."""
        entity = self.get_by_id(id)
        if entity is None:
            return None
        for field_name, value in fields.items():
            setattr(entity, field_name, value)
        self.session.flush()
        return entity

    def delete(self, id: UUID) -> bool:
        """Delete entity by ID."""
        entity = self.get_by_id(id)
        if entity is None:
            return False
        self.session.delete(entity)
        self.session.flush()
        return True

    def count(self, **filters: Any) -> int:
        """Count entities matching equality filters."""
        query = select(func.count()).select_from(self.model_class)
        for field_name, value in filters.items():
            query = query.where(getattr(self.model_class, field_name) == value)
        return self.session.scalar(query) or 0


class ProjectRepository(BaseRepository):
    """Repository for Project entities."""

    def __init__(self, session: Session):
        super().__init__(session, Project)


class VendorRepository(BaseRepository):
    """Repository for Vendor entities."""

    def __init__(self, session: Session):
        super().__init__(session, Vendor)

    def get_by_code(self, code: str) -> Vendor | None:
        """Get vendor by its short code."""
        return self.session.scalars(select(Vendor).where(Vendor.code == code)).first()


class VendorQuotaRepository(BaseRepository):
    """Repository for VendorQuota (project/vendor pairing) entities."""

    def __init__(self, session: Session):
        super().__init__(session, VendorQuota)

    def get_for_pair(self, project_id: UUID, vendor_id: UUID) -> VendorQuota | None:
        """Get the capacity record for a project/vendor pairing."""
        return self.session.scalars(
            select(VendorQuota).where(
                and_(VendorQuota.project_id == project_id, VendorQuota.vendor_id == vendor_id)
            )
        ).first()


class SurveyLinkRepository(BaseRepository):
    """Repository for SurveyLink entities."""

    def __init__(self, session: Session):
        super().__init__(session, SurveyLink)

    def get_by_uid(self, uid: str) -> SurveyLink | None:
        """Get link by its public token."""
        return self.session.scalars(select(SurveyLink).where(SurveyLink.uid == uid)).first()

    def uid_exists(self, uid: str) -> bool:
        """Check whether a token is already taken."""
        return self.session.scalar(select(func.count()).where(SurveyLink.uid == uid)) > 0

    def list_by_project(self, project_id: UUID) -> list[SurveyLink]:
        """All links issued for a project."""
        return list(
            self.session.scalars(
                select(SurveyLink).where(SurveyLink.project_id == project_id).order_by(SurveyLink.issued_at)
            ).all()
        )

    def count_by_status(self, project_id: UUID) -> dict[str, int]:
        """Link counts per status for a project."""
        rows = self.session.execute(
            select(SurveyLink.status, func.count())
            .where(SurveyLink.project_id == project_id)
            .group_by(SurveyLink.status)
        ).all()
        counts = {status.value: 0 for status in LinkStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def count_by_variant(self, project_id: UUID) -> dict[str, int]:
        """Link counts per variant (LIVE/TEST) for a project."""
        rows = self.session.execute(
            select(SurveyLink.variant, func.count())
            .where(SurveyLink.project_id == project_id)
            .group_by(SurveyLink.variant)
        ).all()
        return {variant: count for variant, count in rows}

    def count_by_vendor(self, project_id: UUID) -> dict[str, int]:
        """Link counts per vendor, keyed by vendor code or name when no code is set."""
        rows = self.session.execute(
            select(Vendor.code, Vendor.name, func.count(SurveyLink.id))
            .join(Vendor, SurveyLink.vendor_id == Vendor.id)
            .where(SurveyLink.project_id == project_id)
            .group_by(Vendor.id, Vendor.code, Vendor.name)
        ).all()
        counts: dict[str, int] = {}
        for code, name, count in rows:
            label = code or name
            counts[label] = counts.get(label, 0) + count
        return counts


class QuotaReservationRepository(BaseRepository):
    """Repository for QuotaReservation entities."""

    def __init__(self, session: Session):
        super().__init__(session, QuotaReservation)

    def count_in_state(self, project_id: UUID, state: ReservationState) -> int:
        """Reservations of a project currently in `state`."""
        return self.session.scalar(
            select(func.count())
            .select_from(QuotaReservation)
            .where(QuotaReservation.project_id == project_id)
            .where(QuotaReservation.state == state.value)
        )


class QuestionRepository(BaseRepository):
    """Repository for Question entities."""

    def __init__(self, session: Session):
        super().__init__(session, Question)

    def list_for_project(self, project_id: UUID) -> list[Question]:
        """Questions of a project's flow ordered by sequence."""
        return list(
            self.session.scalars(
                select(Question).where(Question.project_id == project_id).order_by(Question.sequence, Question.key)
            ).all()
        )


class AnswerRecordRepository(BaseRepository):
    """Repository for AnswerRecord entities."""

    def __init__(self, session: Session):
        super().__init__(session, AnswerRecord)

    def get_original(self, link_id: UUID, question_key: str) -> AnswerRecord | None:
        """The original-pass answer for one question on one link."""
        return self.session.scalars(
            select(AnswerRecord).where(
                and_(
                    AnswerRecord.link_id == link_id,
                    AnswerRecord.question_key == question_key,
                    AnswerRecord.source == AnswerSource.ORIGINAL.value,
                )
            )
        ).first()

    def list_original(self, link_id: UUID) -> list[AnswerRecord]:
        """All original-pass answers for a link in answer order."""
        return list(
            self.session.scalars(
                select(AnswerRecord)
                .where(
                    and_(AnswerRecord.link_id == link_id, AnswerRecord.source == AnswerSource.ORIGINAL.value)
                )
                .order_by(AnswerRecord.answered_at, AnswerRecord.question_key)
            ).all()
        )

    def record_original(self, link_id: UUID, question_key: str, value: str) -> AnswerRecord:
        """Store the original answer; a revisited question keeps one record with the latest value."""
        existing = self.get_original(link_id, question_key)
        if existing is not None:
            existing.value = value
            existing.answered_at = utcnow()
            self.session.flush()
            logger.debug(f"Updated original answer for link {link_id}, question {question_key}")
            return existing
        return self.create(
            link_id=link_id,
            question_key=question_key,
            value=value,
            source=AnswerSource.ORIGINAL.value,
        )

    def record_challenge(self, link_id: UUID, question_key: str, value: str) -> AnswerRecord:
        """Store a re-challenge answer."""
        return self.create(
            link_id=link_id,
            question_key=question_key,
            value=value,
            source=AnswerSource.CHALLENGE.value,
        )


class ConsentRecordRepository(BaseRepository):
    """Repository for ConsentRecord entities."""

    def __init__(self, session: Session):
        super().__init__(session, ConsentRecord)

    def upsert(self, link_id: UUID, consent_key: str, granted: bool, required: bool) -> ConsentRecord:
        """Create or update the consent record for a key (repeated clicks are idempotent)."""
        existing = self.session.scalars(
            select(ConsentRecord).where(
                and_(ConsentRecord.link_id == link_id, ConsentRecord.consent_key == consent_key)
            )
        ).first()
        if existing is not None:
            if existing.granted != granted:
                existing.granted = granted
                existing.recorded_at = utcnow()
                self.session.flush()
            return existing
        return self.create(link_id=link_id, consent_key=consent_key, granted=granted, required=required)


class FlagRepository(BaseRepository):
    """Repository for Flag entities. Flags are append-only."""

    def __init__(self, session: Session):
        super().__init__(session, Flag)

    def update(self, id: UUID, **fields: Any):
        raise ImmutableRecordError("Flag", id, "update")

    def delete(self, id: UUID) -> bool:
        raise ImmutableRecordError("Flag", id, "delete")

    def list_for_link(self, link_id: UUID) -> list[Flag]:
        """Flags recorded against a link, oldest first."""
        return list(
            self.session.scalars(select(Flag).where(Flag.link_id == link_id).order_by(Flag.created_at)).all()
        )
