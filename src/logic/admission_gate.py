"""
Admission gate: consent capture, geographic restriction and anonymizing-network
detection before any survey content is reachable.

Policy is passed in explicitly as an `AdmissionPolicy`; the gate reads no
module-level configuration of its own.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from config.config import Config
from src.data.models import FlagReason, LinkStatus, ProjectStatus, SurveyLink
from src.data.repositories import ConsentRecordRepository
from src.data.schemas import ClientContext
from src.exceptions import ConsentRequiredError, TerminalPage, UnknownLink
from src.logic.flagging import FlagRecorder
from src.logic.link_registry import LinkRegistry
from src.services.geo_provider import ClientMetadataCollector, GeoVerdict, GeoVerdictProvider
from src.utils.logging import link_context

logger = logging.getLogger(__name__)


class AdmissionOutcome(str, Enum):
    PASS = "PASS"
    GEO_BLOCKED = "GEO_BLOCKED"
    ANONYMIZER_BLOCKED = "ANONYMIZER_BLOCKED"


@dataclass
class AdmissionPolicy:
    """Gate policy. An empty allow-list means no geographic restriction."""
    allowed_countries: list[str] = field(default_factory=list)
    anonymizer_confidence_threshold: float = 50.0
    required_consents: list[str] = field(default_factory=list)
    optional_consents: list[str] = field(default_factory=list)
    enforce_consent: bool = True
    enforce_geo: bool = True
    enforce_anonymizer: bool = True

    @classmethod
    def from_config(cls, cfg: Config) -> "AdmissionPolicy":
        return cls(
            allowed_countries=list(cfg.admission.allowed_countries),
            anonymizer_confidence_threshold=cfg.admission.anonymizer_confidence_threshold,
            required_consents=list(cfg.admission.required_consents),
            optional_consents=list(cfg.admission.optional_consents),
            enforce_consent=cfg.feature_flags.enable_consent_gate,
            enforce_geo=cfg.feature_flags.enable_geo_restrictions,
            enforce_anonymizer=cfg.feature_flags.enable_anonymizer_detection,
        )


@dataclass
class AdmissionResult:
    """Outcome of one admission attempt."""
    outcome: AdmissionOutcome
    status: str
    flags: list[str] = field(default_factory=list)
    reason: str | None = None
    repeat: bool = False

    @property
    def admitted(self) -> bool:
        return self.outcome == AdmissionOutcome.PASS

    @property
    def terminal_page(self) -> TerminalPage | None:
        return None if self.admitted else TerminalPage.GEO_RESTRICTED


class AdmissionGate:
    """Runs the consent / geography / anonymizer checks for an inbound click."""

    def __init__(
        self,
        session: Session,
        registry: LinkRegistry,
        verdict_provider: GeoVerdictProvider,
        metadata_collector: ClientMetadataCollector,
        policy: AdmissionPolicy,
    ):
        self.registry = registry
        self.verdict_provider = verdict_provider
        self.metadata_collector = metadata_collector
        self.policy = policy
        self.consents = ConsentRecordRepository(session)
        self.flags = FlagRecorder(session)

    def admit(self, link: SurveyLink, context: ClientContext) -> AdmissionResult:
        """
        Decide whether the bearer of `link` may proceed.

        Raises:
            UnknownLink: the owning project is not accepting respondents
            ConsentRequiredError: a required consent is missing (no state change)
            InvalidTransition: the link already reached a terminal status
            ExternalServiceError: the verdict lookup failed
        """
        if link.project is None or link.project.status != ProjectStatus.LIVE.value:
            raise UnknownLink(link.uid, "belongs to a project that is not live")

        if link.status != LinkStatus.UNUSED.value:
            # Re-click: refresh last-seen only, or raise for terminal links.
            self.registry.mark_clicked(link)
            return AdmissionResult(AdmissionOutcome.PASS, link.status, repeat=True)

        self._capture_consent(link, context)

        verdict = self.verdict_provider.resolve(context.ip_address)
        captured = {
            "ip_address": context.ip_address,
            "user_agent": context.user_agent,
            "geo_data": verdict.to_dict(),
            "client_metadata": self.metadata_collector.collect(context),
        }

        anonymizer = self._anonymizer_detected(verdict)
        geo_violation = self._geo_violation(link, verdict)

        raised: list[str] = []
        if anonymizer:
            self.flags.record(
                link,
                FlagReason.ANONYMIZER_DETECTED.value,
                f"Anonymizing network with confidence {verdict.confidence:.0f}",
                {"confidence": verdict.confidence, "ip_address": context.ip_address},
            )
            raised.append(FlagReason.ANONYMIZER_DETECTED.value)
        if geo_violation:
            self.flags.record(
                link,
                FlagReason.GEO_VIOLATION.value,
                f"Country {verdict.country or 'unknown'} outside allow-list",
                {"country": verdict.country, "allowed_countries": self._allowed_countries(link)},
            )
            raised.append(FlagReason.GEO_VIOLATION.value)

        if not link.is_test and (anonymizer or geo_violation):
            outcome = AdmissionOutcome.ANONYMIZER_BLOCKED if anonymizer else AdmissionOutcome.GEO_BLOCKED
            reason = raised[0]
            self.registry.block(link, reason, **captured)
            logger.warning(
                f"Blocked link {link.uid}: {outcome.value}",
                extra=link_context(link.uid, link.status),
            )
            return AdmissionResult(outcome, link.status, flags=raised, reason=reason)

        self.registry.mark_clicked(link, **captured)
        return AdmissionResult(AdmissionOutcome.PASS, link.status, flags=raised)

    def _capture_consent(self, link: SurveyLink, context: ClientContext) -> None:
        if self.policy.enforce_consent:
            missing = [key for key in self.policy.required_consents if not context.consents.get(key)]
            if missing:
                logger.info(f"Link {link.uid} missing consents {missing}", extra=link_context(link.uid, link.status))
                raise ConsentRequiredError(missing)

        for key in self.policy.required_consents:
            if key in context.consents:
                self.consents.upsert(link.id, key, bool(context.consents[key]), required=True)
        for key in self.policy.optional_consents:
            if key in context.consents:
                self.consents.upsert(link.id, key, bool(context.consents[key]), required=False)

    def _anonymizer_detected(self, verdict: GeoVerdict) -> bool:
        if not self.policy.enforce_anonymizer:
            return False
        return verdict.is_anonymizing_network and verdict.confidence >= self.policy.anonymizer_confidence_threshold

    def _allowed_countries(self, link: SurveyLink) -> list[str]:
        """Link allow-list overrides project allow-list, which overrides the policy default."""
        for countries in (link.allowed_countries, link.project.allowed_countries, self.policy.allowed_countries):
            if countries:
                return [c.upper() for c in countries]
        return []

    def _geo_violation(self, link: SurveyLink, verdict: GeoVerdict) -> bool:
        if not self.policy.enforce_geo:
            return False
        allowed = self._allowed_countries(link)
        if not allowed:
            return False
        # An unresolved country cannot be shown to be inside the allow-list.
        return verdict.country is None or verdict.country.upper() not in allowed

    def describe(self, link: SurveyLink) -> dict[str, Any]:
        """Effective policy for a link, for admin diagnostics."""
        return {
            "allowed_countries": self._allowed_countries(link),
            "anonymizer_confidence_threshold": self.policy.anonymizer_confidence_threshold,
            "required_consents": list(self.policy.required_consents),
            "enforced": not link.is_test,
        }
