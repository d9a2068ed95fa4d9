"""
Qualification Flow Engine for pre-survey screening.

A flow is a single-pass directed graph over a project's fixed question set.
`step` and `evaluate` are pure; `QualificationEngine` records answers and
drives link status through the registry.
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from config.config import config
from src.data.models import FlagReason, FlowAction, LinkStatus, Question, SurveyLink
from src.data.repositories import AnswerRecordRepository, QuestionRepository
from src.exceptions import (
    FlowConfigurationError,
    InvalidAnswerError,
    InvalidTransition,
    MissingRequiredAnswerError,
)
from src.logic.flagging import FlagRecorder
from src.logic.link_registry import LinkRegistry
from src.utils.logging import link_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlowOption:
    """One selectable answer."""
    text: str
    value: str
    action: FlowAction = FlowAction.NEXT
    target: str | None = None
    disqualifying: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FlowOption":
        value = str(data.get("value", data.get("text", "")))
        return cls(
            text=str(data.get("text", value)),
            value=value,
            action=FlowAction(data.get("action") or FlowAction.NEXT.value),
            target=data.get("target"),
            disqualifying=bool(data.get("disqualifying", False)),
        )


@dataclass(frozen=True)
class FlowQuestion:
    """A node in the qualification graph."""
    key: str
    sequence: int
    text: str = ""
    is_required: bool = True
    options: tuple[FlowOption, ...] = ()

    def option_for(self, value: str) -> FlowOption | None:
        """Resolve an option by canonical value, falling back to a case-insensitive match."""
        for option in self.options:
            if option.value == value:
                return option
        folded = value.casefold()
        for option in self.options:
            if option.value.casefold() == folded:
                return option
        return None


@dataclass
class QuestionFlow:
    """Questions of one project in sequence order."""
    questions: list[FlowQuestion]

    def __post_init__(self):
        self.questions = sorted(self.questions, key=lambda q: (q.sequence, q.key))
        self._by_key = {q.key: q for q in self.questions}

    @classmethod
    def from_questions(cls, rows: list[Question]) -> "QuestionFlow":
        return cls([
            FlowQuestion(
                key=row.key,
                sequence=row.sequence,
                text=row.text,
                is_required=row.is_required,
                options=tuple(FlowOption.from_dict(o) for o in (row.options or [])),
            )
            for row in rows
        ])

    def __len__(self) -> int:
        return len(self.questions)

    @property
    def first_key(self) -> str | None:
        return self.questions[0].key if self.questions else None

    def get(self, key: str | None) -> FlowQuestion | None:
        return self._by_key.get(key) if key is not None else None

    def next_after(self, key: str) -> FlowQuestion | None:
        keys = [q.key for q in self.questions]
        index = keys.index(key)
        return self.questions[index + 1] if index + 1 < len(keys) else None

    def traversal_cap(self, multiplier: int | None = None) -> int:
        multiplier = multiplier if multiplier is not None else config.qualification.traversal_cap_multiplier
        return max(1, multiplier * len(self.questions))


def validate_flow(flow: QuestionFlow) -> list[str]:
    """Return configuration problems in a flow (empty when valid)."""
    errors = []
    seen = set()
    for question in flow.questions:
        if question.key in seen:
            errors.append(f"duplicate question key '{question.key}'")
        seen.add(question.key)
        values = [o.value for o in question.options]
        if len(values) != len(set(values)):
            errors.append(f"question '{question.key}' has duplicate option values")
        for option in question.options:
            if option.action == FlowAction.SKIP_TO:
                if not option.target:
                    errors.append(f"option '{option.value}' of '{question.key}' uses SKIP_TO without a target")
                elif flow.get(option.target) is None:
                    errors.append(
                        f"option '{option.value}' of '{question.key}' targets missing question '{option.target}'"
                    )
    return errors


class Decision(str, Enum):
    CONTINUE = "CONTINUE"
    QUALIFIED = "QUALIFIED"
    DISQUALIFIED = "DISQUALIFIED"


@dataclass
class StepResult:
    """Outcome of answering one question."""
    decision: Decision
    question_key: str
    recorded_value: str
    next_question_key: str | None = None
    visits: int = 0
    reason: str | None = None


@dataclass
class QualificationResult:
    """Outcome of evaluating a whole answer set."""
    decision: Decision
    reason: str | None = None
    visited: list[str] = field(default_factory=list)
    recorded: list[tuple[str, str]] = field(default_factory=list)
    pending_question_key: str | None = None


_SCRIPT_TAG = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)
_JS_SCHEME = re.compile(r"javascript\s*:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"\bon\w+\s*=", re.IGNORECASE)


def sanitize_answer(value: Any, max_length: int | None = None) -> str:
    """Strip script content and inline handlers, trim, and truncate."""
    max_length = max_length or config.qualification.max_answer_length
    text = "" if value is None else str(value)
    # Removing one pattern can splice together another, so repeat until stable.
    previous = None
    while text != previous:
        previous = text
        text = _SCRIPT_TAG.sub("", text)
        text = _JS_SCHEME.sub("", text)
        text = _EVENT_HANDLER.sub("", text)
    return text.strip()[:max_length]


def step(flow: QuestionFlow, question_key: str, value: Any, visits: int = 1, cap: int | None = None) -> StepResult:
    """
    Apply one answer to the current question.

    `visits` counts questions entered so far, including the current one.

    Raises:
        MissingRequiredAnswerError: empty answer for a required question
        InvalidAnswerError: unknown question or option value
        FlowConfigurationError: missing SKIP_TO target or traversal cap exceeded
    """
    question = flow.get(question_key)
    if question is None:
        raise InvalidAnswerError(question_key, value, "unknown question")
    cap = cap if cap is not None else flow.traversal_cap()
    answer = "" if value is None else str(value).strip()

    option = None
    if not answer:
        if question.is_required:
            raise MissingRequiredAnswerError(question_key)
    elif question.options:
        option = question.option_for(answer)
        if option is None:
            raise InvalidAnswerError(question_key, answer, "not one of the available options")
        answer = option.value

    if option is not None and (option.disqualifying or option.action == FlowAction.END_DISQUALIFY):
        return StepResult(
            Decision.DISQUALIFIED, question_key, answer, visits=visits, reason=f"disqualified_by:{question_key}={answer}"
        )
    if option is not None and option.action == FlowAction.END_SUCCESS:
        return StepResult(Decision.QUALIFIED, question_key, answer, visits=visits)

    if option is not None and option.action == FlowAction.SKIP_TO:
        if flow.get(option.target) is None:
            raise FlowConfigurationError(
                f"Question '{question_key}' option '{answer}' skips to missing question '{option.target}'",
                question_key=question_key,
                target=option.target,
            )
        next_key = option.target
    else:
        following = flow.next_after(question_key)
        if following is None:
            return StepResult(Decision.QUALIFIED, question_key, answer, visits=visits)
        next_key = following.key

    visits += 1
    if visits > cap:
        raise FlowConfigurationError(
            f"Traversal cap of {cap} exceeded at question '{next_key}'",
            question_key=next_key,
            cap=cap,
        )
    return StepResult(Decision.CONTINUE, question_key, answer, next_question_key=next_key, visits=visits)


def evaluate(flow: QuestionFlow, answers: Mapping[str, Any], cap: int | None = None) -> QualificationResult:
    """
    Walk the flow from its first question using `answers` keyed by question key.

    Stops at the first question without an answer (CONTINUE with
    `pending_question_key`). Raises FlowConfigurationError on a bad flow.
    """
    result = QualificationResult(decision=Decision.CONTINUE)
    current = flow.first_key
    if current is None:
        result.decision = Decision.QUALIFIED
        return result

    visits = 1
    while True:
        result.visited.append(current)
        if current not in answers:
            result.pending_question_key = current
            return result
        outcome = step(flow, current, answers[current], visits=visits, cap=cap)
        result.recorded = [(k, v) for k, v in result.recorded if k != current] + [(current, outcome.recorded_value)]
        if outcome.decision != Decision.CONTINUE:
            result.decision = outcome.decision
            result.reason = outcome.reason
            return result
        current = outcome.next_question_key
        visits = outcome.visits


@dataclass
class AnswerOutcome:
    """What the respondent shell needs after an answer."""
    status: str
    next_question_key: str | None = None
    reason: str | None = None

    @property
    def terminal(self) -> bool:
        return self.next_question_key is None and self.status != LinkStatus.QUALIFYING.value


class QualificationEngine:
    """Runs a link through its project's qualification flow."""

    def __init__(self, session: Session, registry: LinkRegistry, sanitize: bool | None = None):
        self.registry = registry
        self.questions = QuestionRepository(session)
        self.answers = AnswerRecordRepository(session)
        self.flags = FlagRecorder(session)
        self.sanitize = config.feature_flags.enable_answer_sanitization if sanitize is None else sanitize

    def load_flow(self, project_id) -> QuestionFlow:
        flow = QuestionFlow.from_questions(self.questions.list_for_project(project_id))
        errors = validate_flow(flow)
        if errors:
            logger.error(f"Invalid qualification flow for project {project_id}: {errors}")
            raise FlowConfigurationError(f"Invalid qualification flow: {'; '.join(errors)}", errors=errors)
        return flow

    def begin(self, link: SurveyLink) -> AnswerOutcome:
        """Enter qualification; a project without questions qualifies immediately."""
        try:
            flow = self.load_flow(link.project_id)
        except FlowConfigurationError as e:
            return self._configuration_failure(link, e)

        if link.status == LinkStatus.QUALIFYING.value:
            return AnswerOutcome(link.status, link.current_question_key)
        self.registry.start_qualifying(link, flow.first_key)
        if flow.first_key is None:
            self.registry.qualify(link)
            return AnswerOutcome(link.status, reason=link.disqualification_reason)
        return AnswerOutcome(link.status, flow.first_key)

    def submit(self, link: SurveyLink, question_key: str, value: Any) -> AnswerOutcome:
        """
        Record an answer for the link's current question and advance.

        Raises:
            InvalidAnswerError / MissingRequiredAnswerError: nothing is recorded
            InvalidTransition: the link is not in qualification
        """
        if link.status == LinkStatus.CLICKED.value:
            started = self.begin(link)
            if started.terminal:
                return started
        if link.status != LinkStatus.QUALIFYING.value:
            raise InvalidTransition(link.uid, link.status, LinkStatus.QUALIFYING.value, "not in qualification")

        if question_key != link.current_question_key:
            raise InvalidAnswerError(
                question_key, value, f"expected an answer for '{link.current_question_key}'"
            )

        try:
            flow = self.load_flow(link.project_id)
            if self.sanitize:
                value = sanitize_answer(value)
            outcome = step(flow, question_key, value, visits=link.traversal_count or 1, cap=flow.traversal_cap())
        except FlowConfigurationError as e:
            return self._configuration_failure(link, e)

        self.answers.record_original(link.id, question_key, outcome.recorded_value)

        if outcome.decision == Decision.DISQUALIFIED:
            self.registry.disqualify(link, outcome.reason)
            return AnswerOutcome(link.status, reason=outcome.reason)
        if outcome.decision == Decision.QUALIFIED:
            self.registry.qualify(link)
            return AnswerOutcome(link.status, reason=link.disqualification_reason)

        link.current_question_key = outcome.next_question_key
        link.traversal_count = outcome.visits
        self.registry.session.flush()
        logger.debug(
            f"Link {link.uid} advanced {question_key} -> {outcome.next_question_key}",
            extra=link_context(link.uid, link.status),
        )
        return AnswerOutcome(link.status, outcome.next_question_key)

    def _configuration_failure(self, link: SurveyLink, error: FlowConfigurationError) -> AnswerOutcome:
        logger.error(f"Flow configuration error for link {link.uid}: {error}", extra=link_context(link.uid, link.status))
        self.flags.record(link, FlagReason.FLOW_CONFIGURATION_ERROR.value, str(error), error.details)
        self.registry.disqualify(link, FlagReason.FLOW_CONFIGURATION_ERROR.value)
        return AnswerOutcome(link.status, reason=FlagReason.FLOW_CONFIGURATION_ERROR.value)
