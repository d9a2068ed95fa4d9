"""
Custom exception hierarchy for the survey link gate.
Provides structured error handling with respondent-safe messages, categorization
and the terminal page a respondent is routed to when the error reaches them.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(str, Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Error categories for classification."""

    LIFECYCLE = "lifecycle"
    QUOTA = "quota"
    QUALIFICATION = "qualification"
    VALIDATION = "validation"
    CONSENT = "consent"
    CONFIGURATION = "configuration"
    EXTERNAL_SERVICE = "external_service"
    DATABASE = "database"


class TerminalPage(str, Enum):
    """Respondent-facing outcome pages. No internal detail is ever shown on them."""

    INVALID_LINK = "invalid_link"
    QUOTA_FULL = "quota_full"
    GEO_RESTRICTED = "geo_restricted"
    DISQUALIFIED = "disqualified"
    COMPLETED = "completed"


class LinkGateError(Exception):
    """
    Base error: carries a log message, a respondent-safe user message,
    category, severity, free-form details and the terminal page to show.
    """

    default_user_message = "Something went wrong. Please try again later."
    default_terminal_page: Optional[TerminalPage] = None

    def __init__(
        self,
        message: str,
        *,
        user_message: Optional[str] = None,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        details: Optional[Dict[str, Any]] = None,
        terminal_page: Optional[TerminalPage] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message
        self.category = category
        self.severity = severity or ErrorSeverity.MEDIUM
        self.details = details or {}
        self.terminal_page = terminal_page or self.default_terminal_page

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_code": type(self).__name__,
            "message": self.message,
            "user_message": self.user_message,
            "category": self.category.value if self.category else None,
            "severity": self.severity.value,
            "terminal_page": self.terminal_page.value if self.terminal_page else None,
            "details": self.details,
        }


# Outcome page for a link already sitting in a terminal status.
_STATUS_PAGES = {
    "COMPLETED": TerminalPage.COMPLETED,
    "QUOTA_FULL": TerminalPage.QUOTA_FULL,
    "GEO_BLOCKED": TerminalPage.GEO_RESTRICTED,
    "DISQUALIFIED": TerminalPage.DISQUALIFIED,
}


# Lifecycle errors
class InvalidTransition(LinkGateError):
    """Attempted status change is not permitted from the link's current status."""

    def __init__(self, uid: str, from_status: str, to_status: str, reason: str | None = None):
        message = f"Link {uid}: transition {from_status} -> {to_status} not permitted"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message,
            user_message="This survey link is no longer active.",
            category=ErrorCategory.LIFECYCLE,
            severity=ErrorSeverity.MEDIUM,
            details={"uid": uid, "from_status": from_status, "to_status": to_status},
            terminal_page=_STATUS_PAGES.get(from_status),
        )
        self.uid = uid
        self.from_status = from_status
        self.to_status = to_status


class UnknownLink(LinkGateError):
    """Token not found, or the owning project is not accepting respondents."""

    default_terminal_page = TerminalPage.INVALID_LINK

    def __init__(self, uid: str, reason: str = "not found"):
        super().__init__(
            f"Survey link '{uid}' {reason}",
            user_message="This survey link is not valid.",
            category=ErrorCategory.LIFECYCLE,
            severity=ErrorSeverity.LOW,
            details={"uid": uid, "reason": reason},
        )
        self.uid = uid


# Quota errors
class QuotaExceeded(LinkGateError):
    """Capacity race lost; the respondent is routed to the quota-full outcome."""

    default_terminal_page = TerminalPage.QUOTA_FULL

    def __init__(self, project_id: Any, vendor_id: Any = None, scope: str = "project"):
        super().__init__(
            f"Quota exhausted for {scope} (project={project_id}, vendor={vendor_id})",
            user_message="This survey has reached its participant limit.",
            category=ErrorCategory.QUOTA,
            severity=ErrorSeverity.LOW,
            details={"project_id": str(project_id), "vendor_id": str(vendor_id) if vendor_id else None,
                     "scope": scope},
        )
        self.scope = scope


# Qualification errors
class FlowConfigurationError(LinkGateError):
    """Misconfigured qualification flow: missing SKIP_TO target or traversal cap exceeded."""

    default_terminal_page = TerminalPage.DISQUALIFIED

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message,
            user_message="Thank you for your interest, but you do not qualify for this survey.",
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.HIGH,
            details=details,
        )


class InvalidAnswerError(LinkGateError):
    """Submitted answer does not match the current question or its options."""

    def __init__(self, question_key: str, value: Any, reason: str):
        super().__init__(
            f"Invalid answer for question '{question_key}': {reason}",
            user_message="Please choose one of the available answers.",
            category=ErrorCategory.QUALIFICATION,
            severity=ErrorSeverity.LOW,
            details={"question_key": question_key, "value": str(value), "reason": reason},
        )
        self.question_key = question_key


class MissingRequiredAnswerError(InvalidAnswerError):
    """Empty submission for a required question."""

    def __init__(self, question_key: str):
        super().__init__(question_key, "", "an answer is required")
        self.user_message = "This question is required."


# Mid-session validation
class ValidationChallengeError(LinkGateError):
    """Base class for expected respondent-side validation failures."""

    default_terminal_page = TerminalPage.DISQUALIFIED
    reason_code = "validation_failed"

    def __init__(self, uid: str, question_key: str | None, message: str):
        super().__init__(
            message,
            user_message="Thank you for your interest, but you do not qualify for this survey.",
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.HIGH,
            details={"uid": uid, "question_key": question_key, "reason": self.reason_code},
        )
        self.uid = uid
        self.question_key = question_key


class ValidationMismatch(ValidationChallengeError):
    """Re-challenge answer differs from the original answer to the same question."""

    reason_code = "validation_mismatch"

    def __init__(self, uid: str, question_key: str):
        super().__init__(uid, question_key, f"Link {uid}: re-challenge answer for '{question_key}' mismatched")


class ValidationTimeout(ValidationChallengeError):
    """Re-challenge countdown expired without an answer."""

    reason_code = "validation_timeout"

    def __init__(self, uid: str, question_key: str | None):
        super().__init__(uid, question_key, f"Link {uid}: re-challenge for '{question_key}' timed out")


class NoActiveChallengeError(LinkGateError):
    """A challenge answer arrived while no challenge was outstanding."""

    def __init__(self, uid: str):
        super().__init__(
            f"Link {uid} has no outstanding validation challenge",
            user_message="There is no question waiting for your answer.",
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            details={"uid": uid},
        )


# Consent errors
class ConsentRequiredError(LinkGateError):
    """One or more required consents are missing."""

    def __init__(self, missing: list[str] | tuple[str, ...]):
        super().__init__(
            f"Consent required for: {', '.join(missing)}",
            user_message="Please review and accept the required consents to continue.",
            category=ErrorCategory.CONSENT,
            severity=ErrorSeverity.LOW,
            details={"required_consents": list(missing)},
        )
        self.missing = list(missing)


# External service errors
class ExternalServiceError(LinkGateError):
    """Base class for external service errors."""

    def __init__(self, service_name: str, message: str, **details: Any):
        super().__init__(
            f"{service_name}: {message}",
            user_message="An external service is temporarily unavailable. Please try again later.",
            category=ErrorCategory.EXTERNAL_SERVICE,
            severity=ErrorSeverity.HIGH,
            details={"service_name": service_name, **details},
        )
        self.service_name = service_name


# Database errors
class DatabaseError(LinkGateError):
    """Base class for database errors."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message,
            user_message="A database error occurred. Please try again later.",
            category=ErrorCategory.DATABASE,
            severity=ErrorSeverity.HIGH,
            details=details,
        )


class RecordNotFoundError(DatabaseError):
    """Database record not found."""

    def __init__(self, entity_type: str, identifier: Any):
        super().__init__(
            f"{entity_type} with identifier '{identifier}' not found",
            entity_type=entity_type,
            identifier=str(identifier),
        )
        self.severity = ErrorSeverity.LOW
        self.user_message = "The requested item was not found."


class ImmutableRecordError(DatabaseError):
    """Write attempted on an append-only record."""

    def __init__(self, entity_type: str, identifier: Any, operation: str):
        super().__init__(
            f"{entity_type} '{identifier}' is append-only; {operation} refused",
            entity_type=entity_type,
            identifier=str(identifier),
            operation=operation,
        )
        self.severity = ErrorSeverity.MEDIUM


class ConfigurationError(LinkGateError):
    """System configuration error."""

    def __init__(self, setting: str, reason: str = ""):
        message = f"Invalid configuration for setting: {setting}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message,
            user_message="System configuration error. Please contact support.",
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            details={"setting": setting},
        )
