"""
Quota ledger for project and vendor completion capacity.

Every counter change is a single conditional UPDATE whose rowcount decides the
outcome, so concurrent reservations against the same counter can never push
it past its ceiling. The ledger works inside the caller's transaction; transient
store errors propagate so the caller can retry the whole unit of work.
"""

import logging
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from src.data.models import Project, ProjectStatus, QuotaReservation, ReservationState, VendorQuota, utcnow
from src.data.repositories import QuotaReservationRepository
from src.exceptions import InvalidTransition, QuotaExceeded

logger = logging.getLogger(__name__)


class QuotaLedger:
    """Reserve, commit and release completion slots."""

    def __init__(self, session: Session):
        self.session = session
        self.reservations = QuotaReservationRepository(session)

    # ------------------------------------------------------------------
    # Counter primitives
    # ------------------------------------------------------------------
    def _expire_loaded(self, model, **criteria) -> None:
        """Expire in-session instances touched by a bulk UPDATE so the next access reloads them."""
        for obj in list(self.session.identity_map.values()):
            if isinstance(obj, model) and all(getattr(obj, k) == v for k, v in criteria.items()):
                self.session.expire(obj)

    def _increment_project(self, project_id: UUID) -> bool:
        result = self.session.execute(
            update(Project)
            .where(Project.id == project_id)
            .where(Project.current_completions < Project.target_completions)
            .values(current_completions=Project.current_completions + 1)
            .execution_options(synchronize_session=False)
        )
        self._expire_loaded(Project, id=project_id)
        return result.rowcount > 0

    def _decrement_project(self, project_id: UUID) -> bool:
        result = self.session.execute(
            update(Project)
            .where(Project.id == project_id)
            .where(Project.current_completions > 0)
            .values(current_completions=Project.current_completions - 1)
            .execution_options(synchronize_session=False)
        )
        self._expire_loaded(Project, id=project_id)
        return result.rowcount > 0

    def _increment_vendor(self, project_id: UUID, vendor_id: UUID) -> bool:
        result = self.session.execute(
            update(VendorQuota)
            .where(VendorQuota.project_id == project_id)
            .where(VendorQuota.vendor_id == vendor_id)
            .where(VendorQuota.current_count < VendorQuota.quota)
            .values(current_count=VendorQuota.current_count + 1)
            .execution_options(synchronize_session=False)
        )
        self._expire_loaded(VendorQuota, project_id=project_id, vendor_id=vendor_id)
        return result.rowcount > 0

    def _decrement_vendor(self, project_id: UUID, vendor_id: UUID) -> bool:
        result = self.session.execute(
            update(VendorQuota)
            .where(VendorQuota.project_id == project_id)
            .where(VendorQuota.vendor_id == vendor_id)
            .where(VendorQuota.current_count > 0)
            .values(current_count=VendorQuota.current_count - 1)
            .execution_options(synchronize_session=False)
        )
        self._expire_loaded(VendorQuota, project_id=project_id, vendor_id=vendor_id)
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    def reserve(self, project_id: UUID, vendor_id: UUID | None = None, link_id: UUID | None = None) -> QuotaReservation:
        """
        Hold one slot against the project ceiling and, when a vendor is given,
        against that vendor's ceiling.

        Raises:
            QuotaExceeded: either counter is at its ceiling. No counter is left
                incremented in that case.
        """
        if not self._increment_project(project_id):
            logger.info(f"Project quota exhausted for project {project_id}")
            raise QuotaExceeded(project_id, vendor_id, scope="project")

        if vendor_id is not None and not self._increment_vendor(project_id, vendor_id):
            self._decrement_project(project_id)
            logger.info(f"Vendor quota exhausted for project {project_id}, vendor {vendor_id}")
            raise QuotaExceeded(project_id, vendor_id, scope="vendor")

        reservation = QuotaReservation(
            project_id=project_id,
            vendor_id=vendor_id,
            link_id=link_id,
            state=ReservationState.RESERVED.value,
        )
        self.session.add(reservation)
        self.session.flush()
        logger.info(f"Reserved quota slot {reservation.id} for project {project_id}, vendor {vendor_id}")
        return reservation

    def commit(self, reservation: QuotaReservation) -> QuotaReservation:
        """Make a reservation permanent. Committing twice is a no-op."""
        if reservation.state == ReservationState.COMMITTED.value:
            return reservation
        if reservation.state == ReservationState.RELEASED.value:
            raise InvalidTransition(
                str(reservation.id), reservation.state, ReservationState.COMMITTED.value, "reservation released"
            )

        result = self._set_state(reservation.id, ReservationState.RESERVED, ReservationState.COMMITTED)
        if not result:
            # Lost a race with a concurrent resolution; report what actually happened.
            self.session.refresh(reservation)
            if reservation.state != ReservationState.COMMITTED.value:
                raise InvalidTransition(
                    str(reservation.id), reservation.state, ReservationState.COMMITTED.value
                )
            return reservation

        self.session.refresh(reservation)
        self._mark_project_complete_if_full(reservation.project_id)
        logger.info(f"Committed quota slot {reservation.id} for project {reservation.project_id}")
        return reservation

    def release(self, reservation: QuotaReservation) -> QuotaReservation:
        """Return the slot to both counters. Releasing twice is a no-op."""
        if reservation.state == ReservationState.RELEASED.value:
            return reservation
        if reservation.state == ReservationState.COMMITTED.value:
            raise InvalidTransition(
                str(reservation.id), reservation.state, ReservationState.RELEASED.value, "reservation committed"
            )

        if not self._set_state(reservation.id, ReservationState.RESERVED, ReservationState.RELEASED):
            self.session.refresh(reservation)
            if reservation.state != ReservationState.RELEASED.value:
                raise InvalidTransition(
                    str(reservation.id), reservation.state, ReservationState.RELEASED.value
                )
            return reservation

        self._decrement_project(reservation.project_id)
        if reservation.vendor_id is not None:
            self._decrement_vendor(reservation.project_id, reservation.vendor_id)
        self.session.refresh(reservation)
        logger.info(f"Released quota slot {reservation.id} for project {reservation.project_id}")
        return reservation

    def get(self, reservation_id: UUID) -> QuotaReservation | None:
        return self.reservations.get_by_id(reservation_id)

    def remaining(self, project_id: UUID, vendor_id: UUID | None = None) -> int:
        """Free slots, the tighter of project and vendor capacity."""
        project = self.session.get(Project, project_id)
        if project is None:
            return 0
        free = project.target_completions - project.current_completions
        if vendor_id is not None:
            pairing = self.session.scalars(
                select(VendorQuota).where(VendorQuota.project_id == project_id, VendorQuota.vendor_id == vendor_id)
            ).first()
            free = min(free, pairing.quota - pairing.current_count) if pairing else 0
        return max(0, free)

    def _set_state(self, reservation_id: UUID, expected: ReservationState, new: ReservationState) -> bool:
        result = self.session.execute(
            update(QuotaReservation)
            .where(QuotaReservation.id == reservation_id)
            .where(QuotaReservation.state == expected.value)
            .values(state=new.value, resolved_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def _mark_project_complete_if_full(self, project_id: UUID) -> None:
        committed = self.reservations.count_in_state(project_id, ReservationState.COMMITTED)
        project = self.session.get(Project, project_id)
        if project is not None and committed >= project.target_completions and project.status != ProjectStatus.COMPLETE.value:
            project.status = ProjectStatus.COMPLETE.value
            self.session.flush()
            logger.info(f"Project {project_id} reached its target of {project.target_completions} completions")
