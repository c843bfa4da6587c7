from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import Enum as SAEnum, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from esign_engine.db.base import Base
from esign_engine.db.types import UTCDateTime
from esign_engine.models.mixins import Identifier, TimestampMixin, utc_now


class EventStatus(str, Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    FAILED = "failed"


class NotificationKind(str, Enum):
    SIGNING_INVITATION = "signing.invitation"
    SIGNING_REMINDER = "signing.reminder"
    CONTRACT_COMPLETED = "contract.completed"
    CONTRACT_VOIDED = "contract.voided"
    CONTRACT_DECLINED = "contract.declined"


class EventOutbox(TimestampMixin, Base):
    __tablename__ = "event_outbox"

    id: Mapped[Identifier]
    contract_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    kind: Mapped[str] = mapped_column(String(80), nullable=False)
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[EventStatus] = mapped_column(SAEnum(EventStatus), default=EventStatus.PENDING, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    channel: Mapped[str] = mapped_column(String(40), default="email", nullable=False)
