"""
Append-only audit flags attached to links.
"""

import logging
from typing import Any

from sqlalchemy.orm import Session

from src.data.models import Flag, FlagReason, FlagSeverity, SurveyLink
from src.data.repositories import FlagRepository
from src.utils.logging import link_context

logger = logging.getLogger(__name__)

FLAG_SEVERITY = {
    FlagReason.VALIDATION_MISMATCH.value: FlagSeverity.HIGH,
    FlagReason.VALIDATION_TIMEOUT.value: FlagSeverity.HIGH,
    FlagReason.ANONYMIZER_DETECTED.value: FlagSeverity.HIGH,
    FlagReason.FLOW_CONFIGURATION_ERROR.value: FlagSeverity.HIGH,
    FlagReason.GEO_VIOLATION.value: FlagSeverity.MEDIUM,
    FlagReason.IP_CHANGED.value: FlagSeverity.MEDIUM,
    FlagReason.LOW_CONSISTENCY_SCORE.value: FlagSeverity.MEDIUM,
}


def severity_for(reason: str) -> FlagSeverity:
    return FLAG_SEVERITY.get(reason, FlagSeverity.LOW)


class FlagRecorder:
    """Records flags. Flags never change link status on their own."""

    def __init__(self, session: Session):
        self.flags = FlagRepository(session)

    def record(
        self,
        link: SurveyLink,
        reason: str,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
        severity: FlagSeverity | None = None,
    ) -> Flag:
        severity = severity or severity_for(reason)
        flag = self.flags.create(
            link_id=link.id,
            project_id=link.project_id,
            reason=reason,
            severity=severity.value,
            message=message,
            flag_metadata={"variant": link.variant, **(metadata or {})},
        )
        logger.info(
            f"Flagged link {link.uid}: {reason} ({severity.value})",
            extra=link_context(link.uid, link.status),
        )
        return flag
