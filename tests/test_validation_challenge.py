"""
Tests for the mid-session validation challenge scheduler.

Timers are replaced by FakeTimer instances that fire only when a test asks,
so every schedule/present/expire path runs deterministically.
"""

import random
import threading
from contextlib import contextmanager

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config.config import ChallengeConfig
from src.data.models import AnswerRecord, Base, Flag, LinkStatus, LinkVariant, Project
from src.data.repositories import AnswerRecordRepository
from src.exceptions import InvalidAnswerError, NoActiveChallengeError
from src.logic.link_registry import LinkRegistry
from src.logic.validation_challenge import ChallengeScheduler
from src.services.geo_provider import HeaderMetadataCollector
from src.services.link_admission_service import LinkAdmissionService
from tests.factories.link_factories import make_link, make_project, make_standard_flow

ORIGINAL = {"Q1": "18-34", "Q2": "NA"}


def _qualified_link(scope, uid="LIVE_chal0001", variant=LinkVariant.LIVE, answers=ORIGINAL):
    with scope() as session:
        project = make_project(session, target=3)
        make_standard_flow(session, project)
        link = make_link(session, project, variant=variant, status=LinkStatus.QUALIFYING, uid=uid)
        repo = AnswerRecordRepository(session)
        for key, value in answers.items():
            repo.record_original(link.id, key, value)
        LinkRegistry(session).qualify(link)
        return link


def _reload(scope, uid):
    with scope() as session:
        return LinkRegistry(session).get(uid)


class TestArming:
    """Test challenge scheduling."""

    def test_arm_schedules_delay_within_window(self, scheduler, session_scope, timer_factory):
        link = _qualified_link(session_scope)

        assert scheduler.arm(link) is True

        timer = timer_factory.last()
        assert timer.started
        assert 30 <= timer.interval <= 120
        assert scheduler.current(link.uid) is None

    def test_arm_is_idempotent(self, scheduler, session_scope, timer_factory):
        link = _qualified_link(session_scope)

        scheduler.arm(link)
        assert scheduler.arm(link) is False
        assert len(timer_factory.timers) == 1

    def test_test_links_are_never_challenged(self, scheduler, session_scope, timer_factory):
        link = _qualified_link(session_scope, uid="TEST_chal0001", variant=LinkVariant.TEST)

        assert scheduler.arm(link) is False
        assert timer_factory.timers == []

    def test_only_qualified_links_are_armed(self, scheduler, session_scope):
        with session_scope() as session:
            project = make_project(session)
            link = make_link(session, project, status=LinkStatus.CLICKED)

        assert scheduler.arm(link) is False

    def test_disabled_challenges(self, session_scope, timer_factory):
        sched = ChallengeScheduler(session_scope, ChallengeConfig(enabled=False), timer_factory=timer_factory)
        link = _qualified_link(session_scope)

        assert sched.arm(link) is False


class TestPresentAndResolve:
    """Test challenge presentation and answer comparison."""

    @pytest.fixture
    def presented(self, scheduler, session_scope, timer_factory):
        link = _qualified_link(session_scope)
        scheduler.arm(link)
        challenge = timer_factory.last().fire()
        return link, challenge

    def test_fired_delay_presents_previous_question(self, presented, scheduler, timer_factory):
        link, challenge = presented

        assert challenge.question_key in ORIGINAL
        assert scheduler.current(link.uid) is challenge
        assert scheduler.outstanding() == [link.uid]
        countdown = timer_factory.last()
        assert countdown.interval == 60
        assert countdown.started
        assert {o["value"] for o in challenge.options} >= {ORIGINAL[challenge.question_key]}
        assert challenge.to_dict()["question_key"] == challenge.question_key

    def test_matching_answer_passes_and_rearms(self, presented, scheduler, session_scope, timer_factory):
        link, challenge = presented
        countdown = timer_factory.last()

        resolution = scheduler.resolve(link.uid, challenge.question_key, ORIGINAL[challenge.question_key].lower())

        assert resolution.passed
        assert resolution.status == LinkStatus.QUALIFIED.value
        assert countdown.cancelled
        assert scheduler.current(link.uid) is None
        # A fresh delay timer is waiting for the next cycle.
        assert timer_factory.live == [timer_factory.last()]
        assert 30 <= timer_factory.last().interval <= 120
        with session_scope() as session:
            challenge_rows = session.query(AnswerRecord).filter_by(link_id=link.id, source="CHALLENGE").all()
            assert [(r.question_key, r.value) for r in challenge_rows] == [
                (challenge.question_key, ORIGINAL[challenge.question_key])
            ]

    def test_mismatch_disqualifies_and_releases_quota(self, presented, scheduler, session_scope, timer_factory):
        link, challenge = presented
        wrong = "65+" if challenge.question_key == "Q1" else "Other"

        resolution = scheduler.resolve(link.uid, challenge.question_key, wrong)

        assert not resolution.passed
        assert resolution.reason == "validation_mismatch"
        assert timer_factory.live == []
        assert scheduler.outstanding() == []
        reloaded = _reload(session_scope, link.uid)
        assert reloaded.status == LinkStatus.DISQUALIFIED.value
        assert reloaded.disqualification_reason == "validation_mismatch"
        with session_scope() as session:
            flag = session.query(Flag).filter_by(link_id=link.id).one()
            assert (flag.reason, flag.severity) == ("validation_mismatch", "HIGH")
            assert session.get(Project, link.project_id).current_completions == 0

    def test_countdown_expiry_disqualifies(self, presented, scheduler, session_scope, timer_factory):
        link, _ = presented

        timer_factory.last().fire()

        reloaded = _reload(session_scope, link.uid)
        assert reloaded.status == LinkStatus.DISQUALIFIED.value
        assert reloaded.disqualification_reason == "validation_timeout"
        assert scheduler.current(link.uid) is None

    def test_stale_countdown_is_ignored(self, presented, scheduler, session_scope):
        link, challenge = presented
        scheduler.resolve(link.uid, challenge.question_key, ORIGINAL[challenge.question_key])

        scheduler._expire(link.uid, challenge.challenge_id)

        assert _reload(session_scope, link.uid).status == LinkStatus.QUALIFIED.value

    def test_answer_for_other_question_is_rejected(self, presented, scheduler):
        link, challenge = presented
        other = "Q2" if challenge.question_key == "Q1" else "Q1"

        with pytest.raises(InvalidAnswerError):
            scheduler.resolve(link.uid, other, ORIGINAL[other])
        assert scheduler.current(link.uid) is challenge

    def test_answer_without_challenge_raises(self, scheduler, session_scope):
        link = _qualified_link(session_scope)
        scheduler.arm(link)

        with pytest.raises(NoActiveChallengeError):
            scheduler.resolve(link.uid, "Q1", "18-34")


class TestCancellation:
    """Test timer cleanup."""

    def test_cancel_stops_all_timers(self, scheduler, session_scope, timer_factory):
        link = _qualified_link(session_scope)
        scheduler.arm(link)
        timer_factory.last().fire()

        scheduler.cancel(link.uid)

        assert all(t.cancelled for t in timer_factory.timers if t.started and t.interval == 60)
        assert timer_factory.live == []
        assert scheduler.current(link.uid) is None

    def test_terminal_link_is_not_presented(self, scheduler, session_scope, timer_factory):
        link = _qualified_link(session_scope)
        scheduler.arm(link)
        with session_scope() as session:
            LinkRegistry(session).complete(LinkRegistry(session).get(link.uid))

        assert timer_factory.last().fire() is None
        assert scheduler.outstanding() == []
        assert len(timer_factory.timers) == 1

    def test_link_without_answers_rearms(self, session_scope, test_config, timer_factory):
        sched = ChallengeScheduler(session_scope, test_config.challenge, timer_factory, rng=random.Random(1))
        link = _qualified_link(session_scope, answers={})
        sched.arm(link)

        assert timer_factory.last().fire() is None

        assert len(timer_factory.timers) == 2
        assert timer_factory.live == [timer_factory.timers[1]]
        sched.shutdown()
        assert timer_factory.live == []

    def test_terminal_transition_cancels_after_commit(self, scheduler, session_scope, timer_factory):
        link = _qualified_link(session_scope)
        scheduler.arm(link)
        timer_factory.last().fire()

        with session_scope() as session:
            registry = LinkRegistry(session)
            registry.add_terminal_listener(scheduler.on_terminal)
            registry.complete(registry.get(link.uid))
            assert scheduler.outstanding() == [link.uid]

        assert scheduler.outstanding() == []
        assert timer_factory.live == []

    def test_rolled_back_terminal_transition_keeps_timers(self, scheduler, session_scope, timer_factory):
        link = _qualified_link(session_scope)
        scheduler.arm(link)
        timer_factory.last().fire()

        with pytest.raises(RuntimeError):
            with session_scope() as session:
                registry = LinkRegistry(session)
                registry.add_terminal_listener(scheduler.on_terminal)
                registry.complete(registry.get(link.uid))
                raise RuntimeError("abort")

        assert scheduler.outstanding() == [link.uid]
        assert _reload(session_scope, link.uid).status == LinkStatus.QUALIFIED.value

    def test_superseded_delay_timer_is_ignored(self, scheduler, session_scope, timer_factory):
        link = _qualified_link(session_scope)
        scheduler.arm(link)
        first = timer_factory.last()
        scheduler.cancel(link.uid)
        scheduler.arm(link)

        assert scheduler._present(*first.args) is None
        assert scheduler.current(link.uid) is None
        assert timer_factory.live == [timer_factory.last()]


def _lock_free_elsewhere(lock) -> bool:
    """True when another thread could take `lock` right now."""
    outcome = []

    def attempt():
        acquired = lock.acquire(blocking=False)
        if acquired:
            lock.release()
        outcome.append(acquired)

    worker = threading.Thread(target=attempt)
    worker.start()
    worker.join()
    return outcome[0]


class TestLockDiscipline:
    """The slot lock is never held while a unit of work is open."""

    def test_store_work_runs_outside_slot_lock(self, session_scope, test_config, timer_factory):
        observed = []
        sched = ChallengeScheduler(session_scope, test_config.challenge, timer_factory=timer_factory, rng=random.Random(7))

        @contextmanager
        def watching_scope():
            observed.append(_lock_free_elsewhere(sched._lock))
            with session_scope() as session:
                yield session

        sched.session_scope = watching_scope
        link = _qualified_link(session_scope)
        sched.arm(link)

        challenge = timer_factory.last().fire()
        sched.resolve(link.uid, challenge.question_key, ORIGINAL[challenge.question_key])
        timer_factory.last().fire()
        timer_factory.last().fire()

        assert observed == [True, True, True, True]
        assert _reload(session_scope, link.uid).status == LinkStatus.DISQUALIFIED.value
        sched.shutdown()


class TestConcurrentCompletion:
    """A completion committing while a countdown expiry is in flight."""

    @pytest.fixture
    def file_scope(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'links.db'}", connect_args={"check_same_thread": False, "timeout": 5}
        )
        Base.metadata.create_all(bind=engine)
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        @contextmanager
        def scope():
            session = factory()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

        yield scope
        engine.dispose()

    def test_completion_is_not_blocked_by_expiry(self, file_scope, test_config, timer_factory, verdicts, policy):
        expiry_waiting = threading.Event()
        completion_done = threading.Event()

        @contextmanager
        def expiry_scope():
            if threading.current_thread().name == "countdown":
                expiry_waiting.set()
                completion_done.wait(5)
            with file_scope() as session:
                yield session

        sched = ChallengeScheduler(expiry_scope, test_config.challenge, timer_factory=timer_factory, rng=random.Random(7))
        service = LinkAdmissionService(
            session_scope=file_scope,
            verdict_provider=verdicts,
            metadata_collector=HeaderMetadataCollector(),
            policy=policy,
            scheduler=sched,
            app_config=test_config,
        )
        link = _qualified_link(file_scope)
        sched.arm(link)
        timer_factory.last().fire()
        countdown = timer_factory.last()

        errors, results = [], []

        def expire():
            try:
                countdown.fire()
            except Exception as e:
                errors.append(e)

        expiry = threading.Thread(target=expire, name="countdown", daemon=True)
        expiry.start()
        assert expiry_waiting.wait(2)

        completion = threading.Thread(
            target=lambda: results.append(service.report_external_completion(link.uid)), daemon=True
        )
        completion.start()
        completion.join(timeout=3)
        completed_in_time = not completion.is_alive()
        completion_done.set()
        expiry.join(timeout=10)

        assert completed_in_time
        assert [r.status for r in results] == [LinkStatus.COMPLETED.value]
        assert not expiry.is_alive()
        assert errors == []
        assert sched.outstanding() == []
        with file_scope() as session:
            assert _reload(file_scope, link.uid).status == LinkStatus.COMPLETED.value
            reasons = [f.reason for f in session.query(Flag).filter_by(link_id=link.id)]
            assert reasons == ["validation_timeout"]
            assert session.get(Project, link.project_id).current_completions == 1
        service.shutdown()
