"""
Pydantic schemas for data validation and serialization.
Provides validation models for record creation, respondent client context and
the responses exposed to the admin UI and respondent flow shell.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, conint, constr, field_validator, model_validator

from .models import FlowAction, LinkStatus, LinkVariant, ProjectStatus


# Base schemas
class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        use_enum_values=True,
        validate_assignment=True,
        arbitrary_types_allowed=True,
    )


# Project schemas
class ProjectCreate(BaseSchema):
    """Project creation schema."""

    name: constr(min_length=1, max_length=255)
    survey_url: constr(min_length=1, max_length=2048)
    description: str | None = None
    status: ProjectStatus = ProjectStatus.DRAFT
    target_completions: conint(ge=0) = 100
    allowed_countries: list[str] = Field(default_factory=list)

    @field_validator("allowed_countries")
    @classmethod
    def normalize_countries(cls, v):
        """Country codes are stored upper-case."""
        return [c.strip().upper() for c in v if c and c.strip()]


class VendorCreate(BaseSchema):
    """Vendor creation schema."""

    name: constr(min_length=1, max_length=255)
    code: constr(pattern=r"^[A-Za-z0-9]{1,32}$") | None = None
    contact_email: str | None = None


class VendorQuotaCreate(BaseSchema):
    """Project/vendor pairing with its quota ceiling."""

    project_id: UUID
    vendor_id: UUID
    quota: conint(ge=0)


# Question schemas
class QuestionOption(BaseSchema):
    """One selectable answer with its flow action."""

    text: str
    value: str
    action: FlowAction = FlowAction.NEXT
    target: str | None = None
    disqualifying: bool = False

    @model_validator(mode="after")
    def check_target(self):
        """SKIP_TO needs a target; other actions must not carry one."""
        if self.action == FlowAction.SKIP_TO.value and not self.target:
            raise ValueError(f"Option '{self.value}' uses SKIP_TO without a target")
        if self.action != FlowAction.SKIP_TO.value and self.target:
            raise ValueError(f"Option '{self.value}' has a target but action {self.action}")
        return self


class QuestionCreate(BaseSchema):
    """Question creation schema."""

    key: constr(pattern=r"^[A-Za-z0-9_-]{1,100}$")
    sequence: conint(ge=0)
    text: constr(min_length=1)
    is_required: bool = True
    options: list[QuestionOption] = Field(default_factory=list)

    @field_validator("options")
    @classmethod
    def unique_option_values(cls, v):
        """Option values are the canonical match key and must be unique."""
        values = [o.value for o in v]
        if len(values) != len(set(values)):
            raise ValueError("Option values must be unique within a question")
        return v


# Respondent request schemas
class ClientContext(BaseSchema):
    """Network and client information captured for an inbound click."""

    ip_address: str | None = None
    user_agent: str | None = None
    consents: dict[str, bool] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    extra: dict[str, Any] = Field(default_factory=dict)

    @field_validator("ip_address")
    @classmethod
    def first_forwarded_ip(cls, v):
        """Load balancers may pass a comma-separated chain; keep the client address."""
        if v and "," in v:
            return v.split(",")[0].strip()
        return v


class CompletionMetadata(BaseSchema):
    """Client-side signals reported alongside an external completion."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    consistency_score: float | None = Field(default=None, alias="consistencyScore", ge=0, le=100)


class LinkIssueRequest(BaseSchema):
    """Bulk link issuance request."""

    project_id: UUID
    vendor_id: UUID | None = None
    count: conint(ge=1)
    variant: LinkVariant = LinkVariant.LIVE


class FlagCreate(BaseSchema):
    """Flag creation schema."""

    reason: constr(min_length=1, max_length=100)
    message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# Response schemas
class SurveyLinkResponse(BaseSchema):
    """Survey link response schema."""

    uid: str
    project_id: UUID
    vendor_id: UUID | None = None
    status: LinkStatus
    variant: LinkVariant
    issued_at: datetime
    clicked_at: datetime | None = None
    completed_at: datetime | None = None


class FlagResponse(BaseSchema):
    """Flag response schema."""

    id: UUID
    link_id: UUID
    reason: str
    severity: str
    message: str | None = None
    flag_metadata: dict[str, Any] | None = None
    created_at: datetime


class LinkStats(BaseSchema):
    """Per-project link statistics."""

    total: int = 0
    active: int = 0
    completed: int = 0
    test_links: int = 0
    live_links: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_vendor: dict[str, int] = Field(default_factory=dict)
