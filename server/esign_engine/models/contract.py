from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import Enum as SAEnum, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from esign_engine.db.base import Base
from esign_engine.db.types import UTCDateTime
from esign_engine.models.mixins import Identifier, TimestampMixin, utc_now


class ContractStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PARTIALLY_SIGNED = "partially_signed"
    FULLY_SIGNED = "fully_signed"
    COMPLETED = "completed"
    DECLINED = "declined"
    EXPIRED = "expired"
    VOIDED = "voided"


class SignerStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    OPENED = "opened"
    SIGNED = "signed"
    DECLINED = "declined"
    EXPIRED = "expired"


class SignerType(str, Enum):
    SUBSCRIBER = "subscriber"
    ADMIN = "admin"
    THIRD_PARTY = "third_party"


class IntegrationProvider(str, Enum):
    NATIVE = "native"
    DOCUSIGN = "docusign"
    ADOBE_SIGN = "adobe_sign"
    DROPBOX_SIGN = "dropbox_sign"


class SignedContract(TimestampMixin, Base):
    __tablename__ = "signed_contracts"

    id: Mapped[Identifier]
    template_id: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    template_version: Mapped[str] = mapped_column(String(20), nullable=False)
    subscriber_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    language: Mapped[str] = mapped_column(String(16), default="en-US", nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    status: Mapped[ContractStatus] = mapped_column(
        SAEnum(ContractStatus), default=ContractStatus.DRAFT, nullable=False, index=True
    )

    content_original: Mapped[str] = mapped_column(Text, nullable=False)
    content_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_final: Mapped[str | None] = mapped_column(Text, nullable=True)
    placeholder_values: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    signing_requirements: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Dates
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    first_opened_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Security
    original_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    final_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    hash_algorithm: Mapped[str] = mapped_column(String(16), default="SHA-256", nullable=False)
    max_views: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    current_views: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Integration
    integration_provider: Mapped[IntegrationProvider] = mapped_column(
        SAEnum(IntegrationProvider), default=IntegrationProvider.NATIVE, nullable=False
    )
    external_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    external_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    webhook_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Legal
    jurisdiction: Mapped[str | None] = mapped_column(String(120), nullable=True)
    governing_law: Mapped[str | None] = mapped_column(String(120), nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    voided_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    voided_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    custom_fields: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    signers: Mapped[list["ContractSigner"]] = relationship(
        back_populates="contract",
        cascade="all,delete-orphan",
        lazy="selectin",
        order_by="ContractSigner.position",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def get_signer(self, signer_id: str) -> "ContractSigner | None":
        for signer in self.signers:
            if signer.signer_id == signer_id:
                return signer
        return None


class ContractSigner(TimestampMixin, Base):
    __tablename__ = "contract_signers"
    __table_args__ = (UniqueConstraint("contract_id", "signer_id", name="uq_contract_signer"),)

    id: Mapped[Identifier]
    contract_id: Mapped[str] = mapped_column(
        ForeignKey("signed_contracts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    signer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    signer_type: Mapped[SignerType] = mapped_column(SAEnum(SignerType), default=SignerType.SUBSCRIBER, nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    title: Mapped[str | None] = mapped_column(String(120), nullable=True)
    company: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[SignerStatus] = mapped_column(SAEnum(SignerStatus), default=SignerStatus.PENDING, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    opened_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    declined_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    decline_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    signing_token_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)

    evidence: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    signature: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    consents: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    verification: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    contract: Mapped["SignedContract"] = relationship(back_populates="signers")
    access_log: Mapped[list["SignerAccessLog"]] = relationship(
        back_populates="signer",
        cascade="all,delete-orphan",
        lazy="selectin",
        order_by="SignerAccessLog.id",
    )


class SignerAccessLog(Base):
    """Append-only record of everything a signer did during signing."""

    __tablename__ = "signer_access_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    signer_row_id: Mapped[str] = mapped_column(
        ForeignKey("contract_signers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    signer: Mapped["ContractSigner"] = relationship(back_populates="access_log")
