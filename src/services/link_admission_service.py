"""
Link Admission Service
Single entry point for the admin UI and the respondent flow shell: link
issuance, admission, qualification answers, external hand-off and completion,
mid-session challenges, flags and link statistics.
"""

import logging
import secrets
import string
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar
from urllib.parse import urlencode, urlparse, urlunparse, parse_qsl
from uuid import UUID

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from config.config import TERMINAL_PAGES, Config, config as default_config
from src.data.database_factory import get_session
from src.data.models import FlagReason, LinkStatus, LinkVariant, SurveyLink, Vendor, utcnow
from src.data.repositories import (
    ProjectRepository,
    SurveyLinkRepository,
    VendorQuotaRepository,
    VendorRepository,
)
from src.data.schemas import (
    ClientContext,
    CompletionMetadata,
    FlagCreate,
    FlagResponse,
    LinkIssueRequest,
    LinkStats,
    SurveyLinkResponse,
)
from src.exceptions import (
    ConfigurationError,
    DatabaseError,
    InvalidTransition,
    RecordNotFoundError,
)
from src.logic.admission_gate import AdmissionGate, AdmissionPolicy, AdmissionResult
from src.logic.flagging import FlagRecorder
from src.logic.link_registry import ACTIVE_STATUSES, LinkRegistry
from src.logic.qualification_flow import AnswerOutcome, QualificationEngine
from src.logic.quota_ledger import QuotaLedger
from src.logic.validation_challenge import ChallengeResolution, ChallengeScheduler, SessionScope
from src.services.geo_provider import (
    ClientMetadataCollector,
    GeoVerdictProvider,
    HeaderMetadataCollector,
    IPInfoVerdictProvider,
)
from src.utils.logging import link_context
from src.utils.retry import RetryConfig, retry_call

logger = logging.getLogger(__name__)

_TOKEN_ALPHABET = string.ascii_letters + string.digits

T = TypeVar("T")


@dataclass
class CompletionResult:
    """Outcome of an external completion signal."""
    status: str
    already_completed: bool = False
    flags: list[str] = field(default_factory=list)


@dataclass
class _Unit:
    """Collaborators bound to one session."""
    session: Session
    registry: LinkRegistry
    gate: AdmissionGate
    engine: QualificationEngine
    flags: FlagRecorder


class LinkAdmissionService:
    """Admission and anti-fraud pipeline for single-use survey links."""

    def __init__(
        self,
        session_scope: SessionScope = get_session,
        verdict_provider: GeoVerdictProvider | None = None,
        metadata_collector: ClientMetadataCollector | None = None,
        policy: AdmissionPolicy | None = None,
        scheduler: ChallengeScheduler | None = None,
        app_config: Config | None = None,
    ):
        self.config = app_config or default_config
        self.session_scope = session_scope
        self.verdict_provider = verdict_provider or IPInfoVerdictProvider()
        self.metadata_collector = metadata_collector or HeaderMetadataCollector()
        self.policy = policy or AdmissionPolicy.from_config(self.config)
        self.scheduler = scheduler or ChallengeScheduler(session_scope, self.config.challenge)

    def _unit(self, session: Session) -> _Unit:
        registry = LinkRegistry(session, QuotaLedger(session))
        registry.add_terminal_listener(self.scheduler.on_terminal)
        return _Unit(
            session=session,
            registry=registry,
            gate=AdmissionGate(session, registry, self.verdict_provider, self.metadata_collector, self.policy),
            engine=QualificationEngine(
                session, registry, sanitize=self.config.feature_flags.enable_answer_sanitization
            ),
            flags=FlagRecorder(session),
        )

    def _run(self, action: str, work: Callable[[_Unit], T], *, writes: bool = True) -> T:
        """
        Run `work` in a fresh unit of work. A transient store error anywhere in
        the unit, the commit included, rolls it back and replays it from the
        start on a new session.

        Raises:
            DatabaseError: the retry budget ran out
        """
        persistence = self.config.persistence
        cfg = RetryConfig(
            max_retries=persistence.write_retry_limit if writes else persistence.read_retry_limit,
            retry_on=(OperationalError,),
        )

        def unit_of_work() -> T:
            with self.session_scope() as session:
                return work(self._unit(session))

        try:
            return retry_call(unit_of_work, cfg=cfg)
        except OperationalError as e:
            raise DatabaseError(f"Could not {action}", cause=str(e)) from e

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------
    def issue_links(
        self,
        project_id: UUID,
        vendor_id: UUID | None = None,
        count: int = 1,
        variant: LinkVariant | str = LinkVariant.LIVE,
    ) -> list[SurveyLinkResponse]:
        """
        Bulk-issue single-use links. Quota is not reserved at issuance.

        Raises:
            RecordNotFoundError: unknown project or vendor, or vendor not assigned to the project
            ConfigurationError: batch larger than the configured maximum
        """
        request = LinkIssueRequest(project_id=project_id, vendor_id=vendor_id, count=count, variant=variant)
        if request.count > self.config.issuance.max_batch_size:
            raise ConfigurationError("issuance.max_batch_size", f"requested {request.count} links")

        def work(unit: _Unit) -> list[SurveyLinkResponse]:
            project = ProjectRepository(unit.session).get_by_id(request.project_id)
            if project is None:
                raise RecordNotFoundError("Project", request.project_id)

            vendor = None
            if request.vendor_id is not None:
                vendor = VendorRepository(unit.session).get_by_id(request.vendor_id)
                if vendor is None:
                    raise RecordNotFoundError("Vendor", request.vendor_id)
                if VendorQuotaRepository(unit.session).get_for_pair(project.id, vendor.id) is None:
                    raise RecordNotFoundError("VendorQuota", f"{project.id}/{vendor.id}")

            links_repo = SurveyLinkRepository(unit.session)
            issued = []
            taken: set[str] = set()
            for _ in range(request.count):
                uid = self._new_uid(links_repo, vendor, request.variant, taken)
                taken.add(uid)
                link = links_repo.create(
                    uid=uid,
                    project_id=project.id,
                    vendor_id=vendor.id if vendor else None,
                    variant=request.variant,
                    status=LinkStatus.UNUSED.value,
                )
                issued.append(SurveyLinkResponse.model_validate(link))

            logger.info(
                f"Issued {len(issued)} {request.variant} links for project {project.id}"
                + (f", vendor {vendor.code or vendor.id}" if vendor else "")
            )
            return issued

        return self._run("issue links", work)

    def _new_uid(self, links_repo: SurveyLinkRepository, vendor: Vendor | None, variant: str, taken: set[str]) -> str:
        """`{VENDORCODE}_{VARIANT}_{token}`, or `{VARIANT}_{token}` without a vendor."""
        prefix = f"{vendor.code.upper()}_{variant}" if vendor is not None and vendor.code else variant
        for _ in range(self.config.issuance.collision_retries):
            token = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(self.config.issuance.token_length))
            uid = f"{prefix}_{token}"
            if uid not in taken and not links_repo.uid_exists(uid):
                return uid
            logger.warning(f"Link token collision for {uid}; regenerating")
        raise DatabaseError("Could not generate a unique link token", attempts=self.config.issuance.collision_retries)

    # ------------------------------------------------------------------
    # Respondent flow
    # ------------------------------------------------------------------
    def admit(self, token: str, context: ClientContext | dict[str, Any]) -> AdmissionResult:
        """Run the admission gate for an inbound click."""
        if not isinstance(context, ClientContext):
            context = ClientContext.model_validate(context)
        return self._run(f"admit link {token}", lambda unit: unit.gate.admit(unit.registry.get(token), context))

    def start_qualification(self, token: str) -> AnswerOutcome:
        """Enter the qualification flow and return the first question key."""
        return self._run(f"start qualification for {token}", lambda unit: unit.engine.begin(unit.registry.get(token)))

    def submit_answer(self, token: str, question_key: str, value: Any) -> AnswerOutcome:
        """Answer the current qualification question; returns the next question or a terminal status."""
        return self._run(
            f"record answer for {token}",
            lambda unit: unit.engine.submit(unit.registry.get(token), question_key, value),
        )

    def handoff_url(self, token: str) -> str:
        """External survey destination for a qualified link, carrying the link uid."""

        def work(unit: _Unit) -> str:
            link = unit.registry.get(token)
            if link.status != LinkStatus.QUALIFIED.value:
                raise InvalidTransition(link.uid, link.status, LinkStatus.QUALIFIED.value, "not handed off")
            parts = urlparse(link.project.survey_url)
            query = dict(parse_qsl(parts.query))
            query["uid"] = link.uid
            return urlunparse(parts._replace(query=urlencode(query)))

        return self._run(f"build hand-off for {token}", work, writes=False)

    def record_external_handoff(self, token: str) -> bool:
        """First content load of the external survey; arms the validation challenge."""

        def work(unit: _Unit) -> SurveyLink:
            link = unit.registry.get(token)
            if link.status != LinkStatus.QUALIFIED.value:
                raise InvalidTransition(link.uid, link.status, LinkStatus.QUALIFIED.value, "not handed off")
            return link

        link = self._run(f"load link {token}", work, writes=False)
        if not self.config.feature_flags.enable_validation_challenge:
            return False
        return self.scheduler.arm(link)

    def pending_challenge(self, token: str) -> dict[str, Any] | None:
        challenge = self.scheduler.current(token)
        return challenge.to_dict() if challenge else None

    def answer_challenge(self, token: str, question_key: str, value: Any) -> ChallengeResolution:
        return self.scheduler.resolve(token, question_key, value)

    def report_external_completion(
        self,
        token: str,
        context: ClientContext | dict[str, Any] | None = None,
        metadata: CompletionMetadata | dict[str, Any] | None = None,
    ) -> CompletionResult:
        """
        QUALIFIED -> COMPLETED, committing the quota reservation. Idempotent:
        repeated calls after completion succeed without side effects.

        Reported client metadata is stored on the link under `completion`
        together with the completion timestamp and any consistency flags.
        """
        if context is not None and not isinstance(context, ClientContext):
            context = ClientContext.model_validate(context)
        if metadata is not None and not isinstance(metadata, CompletionMetadata):
            metadata = CompletionMetadata.model_validate(metadata)
        checks = self.config.feature_flags.enable_completion_consistency_check
        min_score = self.config.admission.min_consistency_score

        def work(unit: _Unit) -> CompletionResult:
            link = unit.registry.get(token)
            if link.status == LinkStatus.COMPLETED.value:
                logger.info(f"Duplicate completion for {link.uid} ignored", extra=link_context(link.uid, link.status))
                return CompletionResult(link.status, already_completed=True)

            raised = []
            if (
                checks
                and context is not None
                and context.ip_address
                and link.ip_address
                and context.ip_address != link.ip_address
            ):
                unit.flags.record(
                    link,
                    FlagReason.IP_CHANGED.value,
                    "Completion came from a different address than admission",
                    {"admission_ip": link.ip_address, "completion_ip": context.ip_address},
                )
                raised.append(FlagReason.IP_CHANGED.value)

            score = metadata.consistency_score if metadata is not None else None
            if checks and score is not None and score < min_score:
                unit.flags.record(
                    link,
                    FlagReason.LOW_CONSISTENCY_SCORE.value,
                    f"Low metadata consistency score: {score:g}/100",
                    {"consistency_score": score, "threshold": min_score},
                )
                raised.append(FlagReason.LOW_CONSISTENCY_SCORE.value)

            completed_at = utcnow()
            record = metadata.model_dump(by_alias=True, exclude_none=True) if metadata is not None else {}
            record["completion_timestamp"] = completed_at.isoformat()
            if raised:
                record["flagged"] = True
                record["flag_reasons"] = raised
            unit.registry.complete(
                link,
                completed_at=completed_at,
                client_metadata={**(link.client_metadata or {}), "completion": record},
            )
            return CompletionResult(link.status, flags=raised)

        return self._run(f"complete link {token}", work)

    def flag(self, token: str, reason: str, metadata: dict[str, Any] | None = None, message: str | None = None) -> FlagResponse:
        """Append an audit flag. Flags never change link status."""
        payload = FlagCreate(reason=reason, message=message, metadata=metadata or {})

        def work(unit: _Unit) -> FlagResponse:
            flag = unit.flags.record(unit.registry.get(token), payload.reason, payload.message, payload.metadata)
            return FlagResponse.model_validate(flag)

        return self._run(f"flag link {token}", work)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def get_link(self, token: str) -> SurveyLinkResponse:
        return self._run(
            f"load link {token}",
            lambda unit: SurveyLinkResponse.model_validate(unit.registry.get(token)),
            writes=False,
        )

    def link_stats(self, project_id: UUID) -> LinkStats:
        """Per-project link counts by status, variant and vendor."""

        def work(unit: _Unit) -> LinkStats:
            if ProjectRepository(unit.session).get_by_id(project_id) is None:
                raise RecordNotFoundError("Project", project_id)
            links = SurveyLinkRepository(unit.session)
            by_status = links.count_by_status(project_id)
            by_variant = links.count_by_variant(project_id)
            return LinkStats(
                total=sum(by_status.values()),
                active=sum(by_status[status.value] for status in ACTIVE_STATUSES),
                completed=by_status[LinkStatus.COMPLETED.value],
                test_links=by_variant.get(LinkVariant.TEST.value, 0),
                live_links=by_variant.get(LinkVariant.LIVE.value, 0),
                by_status=by_status,
                by_vendor=links.count_by_vendor(project_id),
            )

        return self._run(f"compute stats for project {project_id}", work, writes=False)

    def shutdown(self) -> None:
        self.scheduler.shutdown()


def resolve_terminal_page(error: Exception) -> str | None:
    """Map an error reaching the respondent to one of the outcome pages."""
    page = getattr(error, "terminal_page", None)
    return TERMINAL_PAGES.get(page.value) if page is not None else None
