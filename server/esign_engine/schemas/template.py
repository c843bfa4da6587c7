import re
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from esign_engine.models.template import TemplateCategory, TemplateStatus
from esign_engine.schemas.common import ORMModel, Timestamped


class VariableType(str, Enum):
    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    CURRENCY = "currency"
    DATE = "date"
    BOOLEAN = "boolean"
    SELECT = "select"
    EMAIL = "email"
    PHONE = "phone"


class TemplateVariable(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    label: str | None = None
    type: VariableType = VariableType.TEXT
    required: bool = False
    default_value: Any = None
    options: List[str] = Field(default_factory=list)
    description: str | None = None
    pattern: str | None = None
    min_length: int | None = Field(default=None, ge=0)
    max_length: int | None = Field(default=None, ge=0)
    min: float | None = None
    max: float | None = None

    @field_validator("pattern")
    @classmethod
    def check_pattern(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                re.compile(value)
            except re.error as exc:
                raise ValueError(f"pattern is not a valid regular expression: {exc}") from exc
        return value


class RequiredConsent(BaseModel):
    id: str = Field(min_length=1)
    label: str
    required: bool = True
    order: int = 0


class SigningRequirements(BaseModel):
    require_signature: bool = True
    allow_typed_signature: bool = True
    allow_drawn_signature: bool = True
    allow_uploaded_signature: bool = False
    require_id_verification: bool = False
    require_selfie: bool = False
    required_consents: List[RequiredConsent] = Field(default_factory=list)
    expiration_days: Optional[int] = Field(default=None, ge=0)
    max_views: Optional[int] = Field(default=None, ge=1)
    reminder_days: List[int] = Field(default_factory=list)

    def allowed_signature_types(self) -> set[str]:
        allowed = set()
        if self.allow_typed_signature:
            allowed.add("typed")
        if self.allow_drawn_signature:
            allowed.add("drawn")
        if self.allow_uploaded_signature:
            allowed.add("uploaded")
        return allowed


class LegalInfo(BaseModel):
    jurisdiction: str | None = None
    governing_law: str | None = None
    signature_type: str = "electronic"
    witness_required: bool = False
    notarization_required: bool = False
    retention_period: str | None = None
    compliance_notes: str | None = None
    terms_version_id: str | None = None
    privacy_version_id: str | None = None


class TemplateBase(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    category: TemplateCategory = TemplateCategory.SERVICE_AGREEMENT
    locale: str = Field(default="en-US", max_length=16)
    content: str = Field(min_length=1)
    content_html: str | None = None
    variables: List[TemplateVariable] = Field(default_factory=list)
    applicable_plans: List[str] = Field(default_factory=list)
    applicable_regions: List[str] = Field(default_factory=lambda: ["ALL"])
    signing_requirements: SigningRequirements = Field(default_factory=SigningRequirements)
    legal: LegalInfo = Field(default_factory=LegalInfo)


class TemplateCreate(TemplateBase):
    pass


class TemplateUpdate(BaseModel):
    """Partial update. Identity, version and creation audit fields are refused by the service."""

    model_config = ConfigDict(extra="allow")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    category: TemplateCategory | None = None
    locale: str | None = Field(default=None, max_length=16)
    content: str | None = Field(default=None, min_length=1)
    content_html: str | None = None
    variables: List[TemplateVariable] | None = None
    applicable_plans: List[str] | None = None
    applicable_regions: List[str] | None = None
    signing_requirements: SigningRequirements | None = None
    legal: LegalInfo | None = None


class TemplateSummary(ORMModel):
    id: str
    family_id: str
    name: str
    category: TemplateCategory
    locale: str
    version: str
    status: TemplateStatus
    is_active: bool
    updated_at: datetime


class TemplateRead(TemplateSummary, Timestamped):
    description: str | None = None
    previous_version_id: str | None = None
    content: str
    content_html: str | None = None
    variables: List[TemplateVariable]
    applicable_plans: List[str]
    applicable_regions: List[str]
    signing_requirements: SigningRequirements
    legal: LegalInfo
    created_by: str
    created_by_name: str | None = None
    last_modified_by: str | None = None
    last_modified_at: datetime | None = None
    approved_by: str | None = None
    approved_by_name: str | None = None
    approved_at: datetime | None = None
    published_by: str | None = None
    published_at: datetime | None = None
    times_sent: int
    times_signed: int
    times_declined: int
    times_expired: int
    average_signing_minutes: float
    last_used_at: datetime | None = None


class TemplateCollection(ORMModel):
    items: List[TemplateSummary]
    total: int
    page: int
    page_size: int


class TemplateApproval(BaseModel):
    notes: str | None = None


class TemplateCloneRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class TemplateValidationReport(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class TemplateStatistics(BaseModel):
    template_id: str
    total_sent: int = 0
    total_signed: int = 0
    total_declined: int = 0
    total_expired: int = 0
    average_signing_minutes: float = 0.0
    conversion_rate: float = 0.0
    decline_rate: float = 0.0
    expire_rate: float = 0.0


class TemplateAuditEvent(BaseModel):
    template_id: str
    version: str
    action: str
    actor_id: str | None = None
    actor_name: str | None = None
    timestamp: datetime
    reason: str | None = None


class ExportMetadata(BaseModel):
    exported_at: datetime
    exported_by: str
    format_version: str = "1.0"


class TemplateExport(TemplateBase):
    """Portable copy of a template version. Statistics are only included on request."""

    source_id: str
    version: str
    status: TemplateStatus
    statistics: TemplateStatistics | None = None
    export_metadata: ExportMetadata


class TemplateImport(TemplateBase):
    """Body accepted by import. Identity, statistics and export metadata from an export are dropped."""

    model_config = ConfigDict(extra="ignore")
