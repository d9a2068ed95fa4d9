"""
Tests for the link lifecycle state machine.
"""

from unittest.mock import Mock

import pytest
from sqlalchemy import update

from src.data.models import LinkStatus, LinkVariant, ReservationState, SurveyLink
from src.exceptions import InvalidTransition, TerminalPage, UnknownLink
from src.logic.link_registry import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    LinkRegistry,
    can_transition,
    is_terminal,
)
from tests.factories.link_factories import make_link, make_project, make_vendor


class TestTransitionTable:
    """Test the canonical transition table."""

    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {
            LinkStatus.DISQUALIFIED,
            LinkStatus.QUOTA_FULL,
            LinkStatus.GEO_BLOCKED,
            LinkStatus.COMPLETED,
        }

    def test_every_status_has_an_entry(self):
        assert set(TRANSITIONS) == set(LinkStatus)

    def test_no_transition_back_to_unused(self):
        assert not any(LinkStatus.UNUSED in targets for targets in TRANSITIONS.values())

    def test_completion_only_from_qualified(self):
        sources = [s for s, targets in TRANSITIONS.items() if LinkStatus.COMPLETED in targets]
        assert sources == [LinkStatus.QUALIFIED]

    def test_helpers_accept_strings(self):
        assert is_terminal("COMPLETED")
        assert not is_terminal("QUALIFYING")
        assert can_transition("UNUSED", "CLICKED")
        assert not can_transition("COMPLETED", "DISQUALIFIED")


class TestLinkRegistry:
    """Test LinkRegistry operations."""

    def setup_method(self):
        self.listener = Mock()

    def _registry(self, session):
        registry = LinkRegistry(session)
        registry.add_terminal_listener(self.listener)
        return registry

    def test_get_unknown_uid_raises(self, db_session):
        with pytest.raises(UnknownLink) as exc_info:
            self._registry(db_session).get("nope")
        assert exc_info.value.terminal_page == TerminalPage.INVALID_LINK

    def test_transition_bumps_version(self, db_session):
        project = make_project(db_session)
        link = make_link(db_session, project)
        registry = self._registry(db_session)

        registry.transition(link, LinkStatus.CLICKED)

        assert link.status == LinkStatus.CLICKED.value
        assert link.version == 2
        self.listener.assert_not_called()

    def test_illegal_transition_raises(self, db_session):
        project = make_project(db_session)
        link = make_link(db_session, project)

        with pytest.raises(InvalidTransition):
            self._registry(db_session).transition(link, LinkStatus.COMPLETED)
        assert link.status == LinkStatus.UNUSED.value

    def test_stale_version_is_rejected(self, db_session):
        project = make_project(db_session)
        link = make_link(db_session, project)
        registry = self._registry(db_session)

        # Another writer moved the link behind our back.
        db_session.execute(
            update(SurveyLink)
            .where(SurveyLink.id == link.id)
            .values(status=LinkStatus.CLICKED.value, version=SurveyLink.version + 1)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(InvalidTransition) as exc_info:
            registry.transition(link, LinkStatus.CLICKED)
        assert "concurrent update" in exc_info.value.message
        assert link.status == LinkStatus.CLICKED.value

    def test_mark_clicked_is_idempotent(self, db_session):
        project = make_project(db_session)
        link = make_link(db_session, project)
        registry = self._registry(db_session)

        registry.mark_clicked(link, ip_address="203.0.113.10")
        first_click = link.clicked_at
        version = link.version
        registry.mark_clicked(link)

        assert link.status == LinkStatus.CLICKED.value
        assert link.clicked_at == first_click
        assert link.version == version
        assert link.ip_address == "203.0.113.10"

    def test_mark_clicked_on_terminal_link_raises(self, db_session):
        project = make_project(db_session)
        link = make_link(db_session, project, status=LinkStatus.COMPLETED)

        with pytest.raises(InvalidTransition) as exc_info:
            self._registry(db_session).mark_clicked(link)
        assert exc_info.value.terminal_page == TerminalPage.COMPLETED

    def test_block_from_unused_goes_to_geo_blocked(self, db_session):
        project = make_project(db_session)
        link = make_link(db_session, project)

        self._registry(db_session).block(link, "geo_violation")

        assert link.status == LinkStatus.GEO_BLOCKED.value
        assert link.clicked_at is not None
        assert link.terminated_at is not None
        self.listener.assert_not_called()
        db_session.commit()
        self.listener.assert_called_once_with(link)

    def test_qualify_reserves_quota(self, db_session):
        project = make_project(db_session, target=1)
        link = make_link(db_session, project, status=LinkStatus.QUALIFYING)
        registry = self._registry(db_session)

        registry.qualify(link)

        assert link.status == LinkStatus.QUALIFIED.value
        assert link.reservation_id is not None
        db_session.refresh(project)
        assert project.current_completions == 1

    def test_qualify_without_capacity_goes_to_quota_full(self, db_session):
        project = make_project(db_session, target=0)
        link = make_link(db_session, project, status=LinkStatus.QUALIFYING)

        self._registry(db_session).qualify(link)

        assert link.status == LinkStatus.QUOTA_FULL.value
        assert link.reservation_id is None
        db_session.commit()
        self.listener.assert_called_once_with(link)

    def test_test_link_never_touches_quota(self, db_session):
        project = make_project(db_session, target=0)
        link = make_link(db_session, project, variant=LinkVariant.TEST, status=LinkStatus.QUALIFYING)
        registry = self._registry(db_session)

        registry.qualify(link)
        registry.complete(link)

        assert link.status == LinkStatus.COMPLETED.value
        assert link.reservation_id is None
        db_session.refresh(project)
        assert project.current_completions == 0

    def test_complete_commits_reservation(self, db_session):
        project = make_project(db_session, target=2)
        vendor = make_vendor(db_session, project, quota=2)
        link = make_link(db_session, project, vendor, status=LinkStatus.QUALIFYING)
        registry = self._registry(db_session)
        registry.qualify(link)

        registry.complete(link)

        assert link.status == LinkStatus.COMPLETED.value
        assert link.completed_at is not None
        assert registry.ledger.get(link.reservation_id).state == ReservationState.COMMITTED.value

    def test_double_completion_raises(self, db_session):
        project = make_project(db_session, target=2)
        link = make_link(db_session, project, status=LinkStatus.QUALIFYING)
        registry = self._registry(db_session)
        registry.qualify(link)
        registry.complete(link)

        with pytest.raises(InvalidTransition):
            registry.complete(link)
        db_session.refresh(project)
        assert project.current_completions == 1

    def test_disqualify_releases_reservation(self, db_session):
        project = make_project(db_session, target=1)
        link = make_link(db_session, project, status=LinkStatus.QUALIFYING)
        registry = self._registry(db_session)
        registry.qualify(link)

        registry.disqualify(link, "validation_mismatch")

        assert link.status == LinkStatus.DISQUALIFIED.value
        assert link.disqualification_reason == "validation_mismatch"
        assert registry.ledger.get(link.reservation_id).state == ReservationState.RELEASED.value
        db_session.refresh(project)
        assert project.current_completions == 0

    def test_failing_listener_does_not_undo_transition(self, db_session):
        project = make_project(db_session)
        link = make_link(db_session, project, status=LinkStatus.CLICKED)
        registry = LinkRegistry(db_session)
        registry.add_terminal_listener(Mock(side_effect=RuntimeError("boom")))

        registry.disqualify(link, "manual")

        assert link.status == LinkStatus.DISQUALIFIED.value
        db_session.commit()
        db_session.refresh(link)
        assert link.status == LinkStatus.DISQUALIFIED.value

    def test_rollback_discards_terminal_notification(self, db_session):
        project = make_project(db_session)
        link = make_link(db_session, project, status=LinkStatus.CLICKED)
        db_session.commit()

        self._registry(db_session).disqualify(link, "manual")
        db_session.rollback()
        db_session.commit()

        self.listener.assert_not_called()
        db_session.refresh(link)
        assert link.status == LinkStatus.CLICKED.value

    def test_each_commit_notifies_once(self, db_session):
        project = make_project(db_session)
        first = make_link(db_session, project, status=LinkStatus.CLICKED)
        second = make_link(db_session, project, status=LinkStatus.CLICKED)
        registry = self._registry(db_session)

        registry.disqualify(first, "manual")
        db_session.commit()
        registry.disqualify(second, "manual")
        db_session.commit()

        assert [c.args[0] for c in self.listener.call_args_list] == [first, second]
