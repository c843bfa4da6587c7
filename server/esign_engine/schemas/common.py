from datetime import datetime

from pydantic import BaseModel, ConfigDict


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class Timestamped(ORMModel):
    created_at: datetime
    updated_at: datetime


class Actor(BaseModel):
    """Already-authenticated caller used for audit attribution."""

    id: str
    name: str | None = None


class ErrorBody(BaseModel):
    kind: str
    message: str
    details: dict = {}
