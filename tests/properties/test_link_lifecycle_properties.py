"""
Property-based tests for the link lifecycle and quota accounting.
Tests invariants that must hold for any interleaving of lifecycle operations.
"""

import re
import threading

from hypothesis import given, settings, strategies as st
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.data.models import Base, FlowAction, LinkStatus, Project, QuotaReservation, ReservationState
from src.exceptions import InvalidTransition, QuotaExceeded
from src.logic.link_registry import TERMINAL_STATUSES, TRANSITIONS, LinkRegistry, can_transition
from src.logic.qualification_flow import (
    Decision,
    FlowOption,
    FlowQuestion,
    QuestionFlow,
    evaluate,
    sanitize_answer,
)
from src.logic.quota_ledger import QuotaLedger
from src.utils.retry import RetryConfig, retry_call
from tests.factories.link_factories import make_link, make_project, make_vendor

statuses = st.sampled_from(list(LinkStatus))
operations = st.sampled_from(["click", "block", "start", "qualify", "complete", "disqualify"])


def _fresh_session():
    engine = create_engine(
        "sqlite:///:memory:", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)(), engine


def _apply(registry, link, op):
    if op == "click":
        registry.mark_clicked(link)
    elif op == "block":
        registry.block(link, "geo_violation")
    elif op == "start":
        registry.start_qualifying(link, "Q1")
    elif op == "qualify":
        registry.qualify(link)
    elif op == "complete":
        registry.complete(link)
    else:
        registry.disqualify(link, "manual")


def _held_slots(session, project_id):
    return session.scalar(
        select(func.count())
        .select_from(QuotaReservation)
        .where(QuotaReservation.project_id == project_id)
        .where(QuotaReservation.state.in_([ReservationState.RESERVED.value, ReservationState.COMMITTED.value]))
    )


class TestTransitionTableProperties:
    """Properties of the canonical transition table."""

    @given(statuses, statuses)
    def test_terminal_statuses_have_no_exits(self, source, target):
        if source in TERMINAL_STATUSES:
            assert not can_transition(source, target)

    @given(statuses)
    def test_nothing_returns_to_unused(self, source):
        assert not can_transition(source, LinkStatus.UNUSED)

    def test_every_active_status_can_reach_a_terminal(self):
        for status in TRANSITIONS:
            frontier, seen = [status], set()
            while frontier:
                current = frontier.pop()
                seen.add(current)
                frontier.extend(t for t in TRANSITIONS[current] if t not in seen)
            assert seen & TERMINAL_STATUSES


class TestLifecycleProperties:
    """Random operation sequences against a single link."""

    @settings(max_examples=40, deadline=None)
    @given(st.lists(operations, min_size=1, max_size=12))
    def test_status_path_follows_table_and_terminal_is_final(self, ops):
        session, engine = _fresh_session()
        try:
            project = make_project(session, target=2)
            link = make_link(session, project)
            registry = LinkRegistry(session)

            history = [LinkStatus(link.status)]
            for op in ops:
                before = LinkStatus(link.status)
                try:
                    _apply(registry, link, op)
                except InvalidTransition:
                    assert LinkStatus(link.status) == before
                    continue
                after = LinkStatus(link.status)
                if after != before:
                    assert can_transition(before, after)
                    history.append(after)

            terminal_at = [i for i, s in enumerate(history) if s in TERMINAL_STATUSES]
            if terminal_at:
                assert terminal_at[0] == len(history) - 1

            session.refresh(project)
            assert project.current_completions == _held_slots(session, project.id)
            assert project.current_completions <= project.target_completions
        finally:
            session.close()
            engine.dispose()

    @settings(max_examples=30, deadline=None)
    @given(
        target=st.integers(min_value=0, max_value=3),
        vendor_quota=st.integers(min_value=0, max_value=3),
        plan=st.lists(st.tuples(st.integers(min_value=0, max_value=5), operations), min_size=1, max_size=30),
    )
    def test_counters_never_exceed_ceilings(self, target, vendor_quota, plan):
        session, engine = _fresh_session()
        try:
            project = make_project(session, target=target)
            vendor = make_vendor(session, project, quota=vendor_quota)
            links = [make_link(session, project, vendor) for _ in range(6)]
            registry = LinkRegistry(session)

            for index, op in plan:
                try:
                    _apply(registry, links[index], op)
                except InvalidTransition:
                    pass

            session.refresh(project)
            completed = sum(1 for link in links if link.status == LinkStatus.COMPLETED.value)
            qualified = sum(1 for link in links if link.status == LinkStatus.QUALIFIED.value)
            assert completed + qualified == project.current_completions == _held_slots(session, project.id)
            assert project.current_completions <= min(target, vendor_quota)
        finally:
            session.close()
            engine.dispose()


class TestQuotaConcurrency:
    """Concurrent reservations against a shared store."""

    def test_parallel_reserves_respect_ceiling(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'quota.db'}", connect_args={"check_same_thread": False, "timeout": 30}
        )
        Base.metadata.create_all(bind=engine)
        Session = sessionmaker(bind=engine, expire_on_commit=False)
        with Session() as setup:
            project = make_project(setup, target=3)
            setup.commit()
            project_id = project.id

        barrier = threading.Barrier(8)
        outcomes: list[str] = []
        lock = threading.Lock()

        def reserve_once():
            with Session() as session:
                try:
                    QuotaLedger(session).reserve(project_id)
                    session.commit()
                    return "reserved"
                except QuotaExceeded:
                    session.rollback()
                    return "full"

        def worker():
            barrier.wait()
            retries = RetryConfig(max_retries=5, initial_backoff=0.01, retry_on=(OperationalError,))
            result = retry_call(reserve_once, cfg=retries)
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert outcomes.count("reserved") == 3
        assert outcomes.count("full") == 5
        with Session() as check:
            assert check.get(Project, project_id).current_completions == 3
        engine.dispose()


@st.composite
def linear_flows(draw):
    """Flows whose options only move forward, so every path terminates."""
    size = draw(st.integers(min_value=1, max_value=5))
    questions = []
    for i in range(size):
        options = []
        for j in range(draw(st.integers(min_value=1, max_value=3))):
            action = draw(st.sampled_from(list(FlowAction)))
            target = None
            if action == FlowAction.SKIP_TO:
                if i + 1 >= size:
                    action = FlowAction.NEXT
                else:
                    target = f"Q{draw(st.integers(min_value=i + 1, max_value=size - 1))}"
            options.append(FlowOption(text=f"o{j}", value=f"o{j}", action=action, target=target))
        questions.append(FlowQuestion(key=f"Q{i}", sequence=i, options=tuple(options)))
    return QuestionFlow(questions)


class TestFlowProperties:
    """Properties of the pure qualification evaluator."""

    @given(data=st.data())
    def test_forward_flows_always_decide(self, data):
        flow = data.draw(linear_flows())
        answers = {
            q.key: data.draw(st.sampled_from([o.value for o in q.options])) for q in flow.questions
        }

        result = evaluate(flow, answers)

        assert result.decision in (Decision.QUALIFIED, Decision.DISQUALIFIED)
        assert len(result.visited) <= len(flow)
        assert len(set(result.visited)) == len(result.visited)
        assert [k for k, _ in result.recorded] == result.visited

    @given(st.text(max_size=300), st.integers(min_value=1, max_value=100))
    def test_sanitized_answers_are_bounded(self, raw, limit):
        cleaned = sanitize_answer(raw, max_length=limit)

        assert len(cleaned) <= limit
        assert not re.search(r"<script\b[^>]*>.*?</script\s*>", cleaned, re.IGNORECASE | re.DOTALL)
        assert not re.search(r"javascript\s*:", cleaned, re.IGNORECASE)
