"""
Mid-session validation challenge.

After the external hand-off a single-shot timer fires at a random delay and
re-asks one previously answered question. A second, fixed countdown bounds the
answer. Matching answers re-arm the cycle; a mismatch or an expired countdown
flags the link and disqualifies it. At most one challenge is outstanding per
link, and every timer for a link is cancelled when the link reaches a
terminal status.
"""

import logging
import random
import threading
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeVar
from uuid import uuid4

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from config.config import ChallengeConfig, config
from src.data.models import LinkStatus, SurveyLink, utcnow
from src.data.repositories import AnswerRecordRepository, QuestionRepository
from src.exceptions import (
    InvalidAnswerError,
    InvalidTransition,
    NoActiveChallengeError,
    UnknownLink,
    ValidationMismatch,
    ValidationTimeout,
)
from src.logic.flagging import FlagRecorder
from src.logic.link_registry import LinkRegistry, is_terminal
from src.logic.qualification_flow import FlowOption, FlowQuestion, sanitize_answer
from src.utils.logging import link_context
from src.utils.retry import RetryConfig, retry_call

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractContextManager[Session]]
TimerFactory = Callable[..., Any]
T = TypeVar("T")


@dataclass
class ActiveChallenge:
    """A re-asked question waiting for the respondent."""
    challenge_id: str
    uid: str
    question_key: str
    question_text: str
    options: list[dict[str, Any]]
    issued_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "challenge_id": self.challenge_id,
            "question_key": self.question_key,
            "question_text": self.question_text,
            "options": self.options,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class ChallengeResolution:
    passed: bool
    status: str
    reason: str | None = None


@dataclass
class _Slot:
    delay_timer: Any = None
    delay_id: str | None = None
    countdown_timer: Any = None
    challenge: ActiveChallenge | None = None
    cycles: int = field(default=0)


class ChallengeScheduler:
    """
    Cancellable per-link challenge timers.

    `_lock` guards the slot table only. Store work runs outside it, so a
    terminal listener fired from another thread's commit can always cancel.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        challenge_config: ChallengeConfig | None = None,
        timer_factory: TimerFactory = threading.Timer,
        rng: random.Random | None = None,
        retry: RetryConfig | None = None,
    ):
        self.session_scope = session_scope
        self.config = challenge_config or config.challenge
        self.timer_factory = timer_factory
        self.rng = rng or random.Random()
        self.retry = retry or RetryConfig(
            max_retries=config.persistence.write_retry_limit, retry_on=(OperationalError,)
        )
        self._slots: dict[str, _Slot] = {}
        self._lock = threading.RLock()

    def _in_session(self, work: Callable[[Session], T]) -> T:
        """Run `work` in its own unit of work, replaying it on transient store errors."""

        def unit_of_work() -> T:
            with self.session_scope() as session:
                return work(session)

        return retry_call(unit_of_work, cfg=self.retry)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def arm(self, link: SurveyLink) -> bool:
        """
        Schedule the next challenge for a handed-off link. TEST links and
        links outside QUALIFIED are never challenged. Arming an already armed
        link is a no-op.
        """
        if not self.config.enabled or link.is_test or link.status != LinkStatus.QUALIFIED.value:
            return False
        with self._lock:
            slot = self._slots.get(link.uid)
            if slot is not None and (slot.delay_timer is not None or slot.challenge is not None):
                return False
            self._schedule(link.uid, slot or self._slots.setdefault(link.uid, _Slot()))
        return True

    def _schedule(self, uid: str, slot: _Slot) -> None:
        delay = self.rng.uniform(self.config.min_delay_seconds, self.config.max_delay_seconds)
        slot.delay_id = str(uuid4())
        timer = self.timer_factory(delay, self._present, args=(uid, slot.delay_id))
        timer.daemon = True
        slot.delay_timer = timer
        timer.start()
        logger.debug(f"Armed validation challenge for {uid} in {delay:.1f}s", extra=link_context(uid))

    def _present(self, uid: str, delay_id: str) -> ActiveChallenge | None:
        """Timer callback: pick a previously answered question and open the countdown."""
        with self._lock:
            slot = self._slots.get(uid)
            if slot is None or slot.delay_id != delay_id:
                return None
            slot.delay_timer = None
            slot.delay_id = None

        def pick(session: Session) -> tuple[str | None, str | None, FlowQuestion | None]:
            link = self._load(session, uid)
            if link is None or link.status != LinkStatus.QUALIFIED.value:
                return (link.status if link else None), None, None
            originals = AnswerRecordRepository(session).list_original(link.id)
            if not originals:
                return link.status, None, None
            key = self.rng.choice(originals).question_key
            return link.status, key, self._question(session, link, key)

        status, question_key, question = self._in_session(pick)

        with self._lock:
            if self._slots.get(uid) is not slot:
                return None
            if status != LinkStatus.QUALIFIED.value:
                self._drop(uid)
                return None
            if question_key is None:
                logger.debug(f"No answers to re-ask for {uid}; re-arming", extra=link_context(uid, status))
                self._schedule(uid, slot)
                return None

            now = utcnow()
            challenge = ActiveChallenge(
                challenge_id=str(uuid4()),
                uid=uid,
                question_key=question_key,
                question_text=question.text if question else question_key,
                options=[{"text": o.text, "value": o.value} for o in (question.options if question else ())],
                issued_at=now,
                expires_at=now + timedelta(seconds=self.config.countdown_seconds),
            )
            slot.challenge = challenge
            slot.cycles += 1
            countdown = self.timer_factory(self.config.countdown_seconds, self._expire, args=(uid, challenge.challenge_id))
            countdown.daemon = True
            slot.countdown_timer = countdown
            countdown.start()
        logger.info(
            f"Presented validation challenge for {uid} on '{challenge.question_key}'",
            extra=link_context(uid, LinkStatus.QUALIFIED.value),
        )
        return challenge

    def current(self, uid: str) -> ActiveChallenge | None:
        with self._lock:
            slot = self._slots.get(uid)
            return slot.challenge if slot else None

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    def resolve(self, uid: str, question_key: str, value: Any) -> ChallengeResolution:
        """
        Compare a challenge answer with the original answer to the same question.

        Raises:
            NoActiveChallengeError: nothing is outstanding for this link
            InvalidAnswerError: the answer is for a different question
            UnknownLink: the link no longer exists
        """
        with self._lock:
            slot = self._slots.get(uid)
            challenge = slot.challenge if slot else None
            if challenge is None:
                raise NoActiveChallengeError(uid)
            if question_key != challenge.question_key:
                raise InvalidAnswerError(question_key, value, f"expected an answer for '{challenge.question_key}'")

            self._cancel_timer(slot.countdown_timer)
            slot.countdown_timer = None
            slot.challenge = None

        def judge(session: Session) -> ChallengeResolution | None:
            link = self._load(session, uid)
            if link is None:
                return None
            answers = AnswerRecordRepository(session)
            given = self._canonical(self._question(session, link, question_key), value)
            answers.record_challenge(link.id, question_key, given)
            original = answers.get_original(link.id, question_key)
            if original is not None and original.value == given:
                logger.info(f"Validation challenge passed for {uid}", extra=link_context(uid, link.status))
                return ChallengeResolution(True, link.status)

            failure = ValidationMismatch(uid, question_key)
            self._fail(session, link, failure, {"question_key": question_key, "expected_present": original is not None})
            return ChallengeResolution(False, link.status, failure.reason_code)

        resolution = self._in_session(judge)
        if resolution is None:
            self.cancel(uid)
            raise UnknownLink(uid)

        if is_terminal(resolution.status) or not resolution.passed:
            self.cancel(uid)
        else:
            with self._lock:
                if self._slots.get(uid) is slot and slot.delay_timer is None and slot.challenge is None:
                    self._schedule(uid, slot)
        return resolution

    def _expire(self, uid: str, challenge_id: str) -> None:
        """Countdown callback: the respondent did not answer in time."""
        with self._lock:
            slot = self._slots.get(uid)
            if slot is None or slot.challenge is None or slot.challenge.challenge_id != challenge_id:
                return
            question_key = slot.challenge.question_key
            slot.challenge = None
            slot.countdown_timer = None

        def time_out(session: Session) -> None:
            link = self._load(session, uid)
            if link is not None:
                self._fail(session, link, ValidationTimeout(uid, question_key), {"question_key": question_key})

        self._in_session(time_out)
        self.cancel(uid)

    def _fail(self, session: Session, link: SurveyLink, failure, metadata: dict[str, Any]) -> None:
        """Flag the link and disqualify it. The caller cancels its timers once the unit commits."""
        FlagRecorder(session).record(link, failure.reason_code, failure.message, metadata)
        try:
            LinkRegistry(session).disqualify(link, failure.reason_code)
        except InvalidTransition as e:
            logger.info(f"Challenge failure for {link.uid} arrived after {e.from_status}", extra=link_context(link.uid))
        logger.warning(f"Validation challenge failed for {link.uid}: {failure.reason_code}",
                       extra=link_context(link.uid, link.status))

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def cancel(self, uid: str) -> None:
        """Cancel every timer for a link and forget its slot."""
        with self._lock:
            if self._drop(uid):
                logger.debug(f"Cancelled validation timers for {uid}", extra=link_context(uid))

    def on_terminal(self, link: SurveyLink) -> None:
        """Terminal listener for LinkRegistry; runs after the owning transaction commits."""
        self.cancel(link.uid)

    def shutdown(self) -> None:
        with self._lock:
            for uid in list(self._slots):
                self._drop(uid)

    def outstanding(self) -> list[str]:
        with self._lock:
            return [uid for uid, slot in self._slots.items() if slot.challenge is not None]

    def _drop(self, uid: str) -> bool:
        slot = self._slots.pop(uid, None)
        if slot is None:
            return False
        self._cancel_timer(slot.delay_timer)
        self._cancel_timer(slot.countdown_timer)
        return True

    @staticmethod
    def _cancel_timer(timer) -> None:
        if timer is not None:
            timer.cancel()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _load(session: Session, uid: str) -> SurveyLink | None:
        return LinkRegistry(session).links.get_by_uid(uid)

    @staticmethod
    def _question(session: Session, link: SurveyLink, key: str) -> FlowQuestion | None:
        for row in QuestionRepository(session).list_for_project(link.project_id):
            if row.key == key:
                return FlowQuestion(
                    key=row.key,
                    sequence=row.sequence,
                    text=row.text,
                    is_required=row.is_required,
                    options=tuple(FlowOption.from_dict(o) for o in (row.options or [])),
                )
        return None

    @staticmethod
    def _canonical(question: FlowQuestion | None, value: Any) -> str:
        answer = sanitize_answer(value)
        if question is not None and question.options:
            option = question.option_for(answer)
            if option is not None:
                return option.value
        return answer
