from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, Enum as SAEnum, Float, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from esign_engine.db.base import Base
from esign_engine.db.types import UTCDateTime
from esign_engine.models.mixins import TimestampMixin


class TemplateStatus(str, Enum):
    DRAFT = "draft"
    REVIEW = "review"
    APPROVED = "approved"
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"


class TemplateCategory(str, Enum):
    INVESTMENT_AGREEMENT = "investment_agreement"
    SERVICE_AGREEMENT = "service_agreement"
    PRIVACY_POLICY = "privacy_policy"
    TERMS_OF_SERVICE = "terms_of_service"
    NDA = "nda"
    CUSTOM = "custom"


class ContractTemplate(TimestampMixin, Base):
    __tablename__ = "contract_templates"

    id: Mapped[str] = mapped_column(String(120), primary_key=True)
    family_id: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[TemplateCategory] = mapped_column(
        SAEnum(TemplateCategory), default=TemplateCategory.SERVICE_AGREEMENT, nullable=False
    )
    locale: Mapped[str] = mapped_column(String(16), default="en-US", nullable=False)
    version: Mapped[str] = mapped_column(String(20), default="1.0.0", nullable=False)
    previous_version_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    status: Mapped[TemplateStatus] = mapped_column(SAEnum(TemplateStatus), default=TemplateStatus.DRAFT, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    variables: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    applicable_plans: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    applicable_regions: Mapped[list] = mapped_column(JSON, nullable=False, default=lambda: ["ALL"])
    signing_requirements: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    legal: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Audit
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_modified_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_modified_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_modified_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    approval_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    published_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Soft deletions and restorations, oldest first
    lifecycle_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Statistics
    times_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    times_signed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    times_declined: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    times_expired: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_signing_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    conversion_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
