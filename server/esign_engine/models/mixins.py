import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from esign_engine.core import clock
from esign_engine.db.types import UTCDateTime


def utc_now() -> datetime:
    return clock.utcnow()


Identifier = Annotated[str, mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))]
Timestamp = Annotated[datetime, mapped_column(UTCDateTime(), default=utc_now, nullable=False)]


class TimestampMixin:
    created_at: Mapped[Timestamp]
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )
