"""
Builders for templates, contracts and a controllable clock used across the suite.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from esign_engine.models.template import ContractTemplate
from esign_engine.schemas.common import Actor
from esign_engine.schemas.contract import ConsentRecord, ContractInitiate, SignatureInput, SignatureSubmission, SignatureType, SignerCreate
from esign_engine.schemas.evidence import RequestContext
from esign_engine.schemas.template import RequiredConsent, SigningRequirements, TemplateCreate, TemplateVariable
from esign_engine.services import template_service

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

DESKTOP_CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class FrozenClock:
    """Deterministic replacement for ``clock.utcnow``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


def template_payload(**overrides: Any) -> TemplateCreate:
    data = {
        "name": "Advisory Agreement",
        "content": "Agreement between {{company}} and {{client_name}} for {{fee}} USD, starting {{start_date}}.",
        "variables": [
            TemplateVariable(name="company", label="Company", required=True),
            TemplateVariable(name="client_name", label="Client name", required=True, min_length=2),
            TemplateVariable(name="fee", label="Fee", type="currency", required=True, min=0),
            TemplateVariable(name="start_date", label="Start date", type="date", required=False),
        ],
        "applicable_plans": ["premium"],
        "applicable_regions": ["US", "EU"],
        "signing_requirements": SigningRequirements(
            required_consents=[
                RequiredConsent(id="terms", label="I accept the terms", order=1),
                RequiredConsent(id="electronic_signature_consent", label="I agree to sign electronically", order=2),
            ],
        ),
        "legal": {"jurisdiction": "US-NY", "governing_law": "New York"},
    }
    data.update(overrides)
    return TemplateCreate(**data)


async def create_active_template(session: AsyncSession, actor: Actor, **overrides: Any) -> ContractTemplate:
    template = await template_service.create_template(session, template_payload(**overrides), actor)
    await template_service.approve_template(session, template.id, actor)
    await template_service.publish_template(session, template.id, actor)
    return template


def initiate_payload(template_id: str, signer_count: int = 2, **overrides: Any) -> ContractInitiate:
    data = {
        "template_id": template_id,
        "subscriber_id": "sub-42",
        "signers": [
            SignerCreate(full_name=f"Signer {index + 1}", email=f"Signer{index + 1}@Example.com")
            for index in range(signer_count)
        ],
        "placeholder_values": {
            "company": "Northwind Advisory",
            "client_name": "Jane Client",
            "fee": "1500",
            "start_date": "2026-04-01",
        },
    }
    data.update(overrides)
    return ContractInitiate(**data)


def full_submission(name: str = "Signer") -> SignatureSubmission:
    return SignatureSubmission(
        signature=SignatureInput(type=SignatureType.TYPED, data=name),
        consents=[
            ConsentRecord(consent_id="terms", label="I accept the terms", accepted=True),
            ConsentRecord(
                consent_id="electronic_signature_consent",
                label="I agree to sign electronically",
                accepted=True,
            ),
        ],
    )


def request_context(ip_address: str = "203.0.113.10", user_agent: str = DESKTOP_CHROME, **extra: Any) -> RequestContext:
    return RequestContext(
        ip_address=ip_address,
        user_agent=user_agent,
        headers={"User-Agent": user_agent, "Accept-Language": "en-US"},
        **extra,
    )
