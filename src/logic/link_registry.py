"""
Link registry: owner of the single-use link record and its lifecycle.

All status changes go through `LinkRegistry.transition`, which checks the
canonical TRANSITIONS table and applies the change as a compare-and-swap on
(status, version). Entering a terminal status notifies terminal listeners once
the surrounding transaction commits; a rollback discards the notification.
"""

import logging
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import event, update
from sqlalchemy.orm import Session

from src.data.models import LinkStatus, QuotaReservation, SurveyLink, utcnow
from src.data.repositories import SurveyLinkRepository
from src.exceptions import InvalidTransition, QuotaExceeded, UnknownLink
from src.logic.quota_ledger import QuotaLedger
from src.utils.logging import link_context

logger = logging.getLogger(__name__)


TRANSITIONS: dict[LinkStatus, frozenset[LinkStatus]] = {
    LinkStatus.UNUSED: frozenset({LinkStatus.CLICKED, LinkStatus.GEO_BLOCKED}),
    LinkStatus.CLICKED: frozenset({LinkStatus.QUALIFYING, LinkStatus.GEO_BLOCKED, LinkStatus.DISQUALIFIED}),
    LinkStatus.QUALIFYING: frozenset({LinkStatus.QUALIFIED, LinkStatus.DISQUALIFIED, LinkStatus.QUOTA_FULL}),
    LinkStatus.QUALIFIED: frozenset({LinkStatus.COMPLETED, LinkStatus.DISQUALIFIED}),
    LinkStatus.DISQUALIFIED: frozenset(),
    LinkStatus.QUOTA_FULL: frozenset(),
    LinkStatus.GEO_BLOCKED: frozenset(),
    LinkStatus.COMPLETED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)
ACTIVE_STATUSES = frozenset(TRANSITIONS) - TERMINAL_STATUSES


def is_terminal(status: str | LinkStatus) -> bool:
    return LinkStatus(status) in TERMINAL_STATUSES


def can_transition(from_status: str | LinkStatus, to_status: str | LinkStatus) -> bool:
    return LinkStatus(to_status) in TRANSITIONS[LinkStatus(from_status)]


TerminalListener = Callable[[SurveyLink], None]

_PENDING = "linkgate.terminal_pending"
_HOOKED = "linkgate.terminal_hooked"


def _fire_pending(session: Session) -> None:
    for link, listeners in session.info.pop(_PENDING, []):
        for listener in listeners:
            try:
                listener(link)
            except Exception as e:
                logger.error(f"Terminal listener failed for link {link.uid}: {e}")


def _discard_pending(session: Session) -> None:
    for link, _ in session.info.pop(_PENDING, []):
        logger.debug(f"Dropped terminal notification for {link.uid} after rollback", extra=link_context(link.uid))


class LinkRegistry:
    """Status state machine for survey links."""

    def __init__(self, session: Session, ledger: QuotaLedger | None = None):
        self.session = session
        self.links = SurveyLinkRepository(session)
        self.ledger = ledger or QuotaLedger(session)
        self._terminal_listeners: list[TerminalListener] = []

    def add_terminal_listener(self, listener: TerminalListener) -> None:
        """Register a callback invoked once the transaction moving a link into a terminal status commits."""
        self._terminal_listeners.append(listener)

    def get(self, uid: str) -> SurveyLink:
        link = self.links.get_by_uid(uid)
        if link is None:
            raise UnknownLink(uid)
        return link

    def transition(self, link: SurveyLink, to_status: LinkStatus, **fields: Any) -> SurveyLink:
        """
        Move `link` to `to_status`, writing `fields` in the same statement.

        Raises:
            InvalidTransition: the move is not in the table, or another writer
                changed the link since it was loaded.
        """
        from_status = LinkStatus(link.status)
        if not can_transition(from_status, to_status):
            raise InvalidTransition(link.uid, from_status.value, to_status.value)

        now = utcnow()
        values = {"status": to_status.value, "version": SurveyLink.version + 1, "last_seen_at": now, **fields}
        if to_status in TERMINAL_STATUSES:
            values.setdefault("terminated_at", now)

        self.session.flush()
        result = self.session.execute(
            update(SurveyLink)
            .where(SurveyLink.id == link.id)
            .where(SurveyLink.status == from_status.value)
            .where(SurveyLink.version == link.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(link)
        if result.rowcount == 0:
            raise InvalidTransition(
                link.uid, from_status.value, to_status.value, f"concurrent update, now {link.status}"
            )

        logger.info(
            f"Link {link.uid}: {from_status.value} -> {to_status.value}",
            extra=link_context(link.uid, to_status.value),
        )
        if to_status in TERMINAL_STATUSES:
            self._notify_terminal(link)
        return link

    def _notify_terminal(self, link: SurveyLink) -> None:
        if not self._terminal_listeners:
            return
        info = self.session.info
        if not info.get(_HOOKED):
            event.listen(self.session, "after_commit", _fire_pending)
            event.listen(self.session, "after_rollback", _discard_pending)
            info[_HOOKED] = True
        info.setdefault(_PENDING, []).append((link, list(self._terminal_listeners)))

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------
    def mark_clicked(self, link: SurveyLink, **metadata: Any) -> SurveyLink:
        """
        First click moves UNUSED -> CLICKED and records click metadata. Later
        clicks on an active link only refresh last-seen metadata.
        """
        if link.status == LinkStatus.UNUSED.value:
            return self.transition(link, LinkStatus.CLICKED, clicked_at=utcnow(), **metadata)
        if is_terminal(link.status):
            raise InvalidTransition(link.uid, link.status, LinkStatus.CLICKED.value, "link already finished")
        link.last_seen_at = utcnow()
        self.session.flush()
        logger.debug(f"Link {link.uid} re-clicked in {link.status}", extra=link_context(link.uid, link.status))
        return link

    def block(self, link: SurveyLink, reason: str, **metadata: Any) -> SurveyLink:
        """Geo or anonymizer block at the gate."""
        if link.status == LinkStatus.UNUSED.value:
            metadata.setdefault("clicked_at", utcnow())
        return self.transition(link, LinkStatus.GEO_BLOCKED, disqualification_reason=reason, **metadata)

    def start_qualifying(self, link: SurveyLink, first_question_key: str | None) -> SurveyLink:
        if link.status == LinkStatus.QUALIFYING.value:
            return link
        return self.transition(
            link, LinkStatus.QUALIFYING, current_question_key=first_question_key, traversal_count=1
        )

    def qualify(self, link: SurveyLink) -> SurveyLink:
        """
        QUALIFYING -> QUALIFIED with a quota reservation, or QUOTA_FULL when no
        capacity is left. TEST links never touch quota.
        """
        if link.is_test:
            return self.transition(link, LinkStatus.QUALIFIED, qualified_at=utcnow(), current_question_key=None)

        if link.status != LinkStatus.QUALIFYING.value:
            raise InvalidTransition(link.uid, link.status, LinkStatus.QUALIFIED.value)

        try:
            reservation = self.ledger.reserve(link.project_id, link.vendor_id, link_id=link.id)
        except QuotaExceeded as e:
            logger.info(f"Link {link.uid} hit {e.scope} quota", extra=link_context(link.uid, link.status))
            return self.transition(
                link, LinkStatus.QUOTA_FULL, current_question_key=None, disqualification_reason=f"quota_full:{e.scope}"
            )

        try:
            return self.transition(
                link,
                LinkStatus.QUALIFIED,
                qualified_at=utcnow(),
                current_question_key=None,
                reservation_id=reservation.id,
            )
        except InvalidTransition:
            self.ledger.release(reservation)
            raise

    def complete(self, link: SurveyLink, **fields: Any) -> SurveyLink:
        """QUALIFIED -> COMPLETED, committing the quota reservation."""
        reservation = self._reservation(link)
        fields.setdefault("completed_at", utcnow())
        self.transition(link, LinkStatus.COMPLETED, **fields)
        if reservation is not None:
            self.ledger.commit(reservation)
        return link

    def disqualify(self, link: SurveyLink, reason: str) -> SurveyLink:
        """Move to DISQUALIFIED and give any held slot back to the pool."""
        reservation = self._reservation(link)
        self.transition(link, LinkStatus.DISQUALIFIED, disqualification_reason=reason[:255], current_question_key=None)
        if reservation is not None:
            self.ledger.release(reservation)
        return link

    def _reservation(self, link: SurveyLink) -> QuotaReservation | None:
        if link.reservation_id is None:
            return None
        return self.ledger.get(link.reservation_id)

    def get_by_id(self, link_id: UUID) -> SurveyLink | None:
        return self.links.get_by_id(link_id)
