"""
Signing workflow engine.

Contract status and per-signer status are separate axes. Every mutating
operation loads the contract through ``get_contract_for_update`` (lazy expiry
first) and finishes with a versioned flush, so concurrent writers to the same
contract are serialised by compare-and-swap on ``version_id``.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

from sqlalchemy.ext.asyncio import AsyncSession

from esign_engine.core import clock
from esign_engine.core.config import Settings, get_settings
from esign_engine.core.errors import (
    AlreadyTerminal,
    ConsentRequired,
    FieldViolation,
    NotFound,
    PreconditionFailed,
    ValidationError,
)
from esign_engine.core.logging import get_logger
from esign_engine.models.contract import (
    ContractSigner,
    ContractStatus,
    IntegrationProvider,
    SignedContract,
    SignerStatus,
)
from esign_engine.models.event import NotificationKind
from esign_engine.models.template import TemplateStatus
from esign_engine.schemas.common import Actor
from esign_engine.schemas.contract import (
    Certificate,
    ContractInitiate,
    SignatureSubmission,
    SigningProgress,
    SigningReference,
)
from esign_engine.schemas.evidence import RequestContext
from esign_engine.schemas.template import SigningRequirements
from esign_engine.services.contract_repository import flush_changes, get_contract, get_contract_for_update
from esign_engine.services.contract_state import (
    CLOSED_STATUSES,
    SEALED_STATUSES,
    SIGNER_TERMINAL_STATUSES,
    advance_contract,
    advance_signer,
    status_from_signers,
    touch,
)
from esign_engine.services.evidence_service import hash_token, record_access, verify_signing_token
from esign_engine.services.integrity_service import compute_hash, generate_certificate, seal_document
from esign_engine.services.outbox_service import enqueue_notification
from esign_engine.services.template_rendering import render_content, to_json_values, validate_placeholder_values
from esign_engine.services.template_service import get_template, legal_of, requirements_of, variables_of

logger = get_logger(__name__)


@dataclass(slots=True)
class IssuedContract:
    contract: SignedContract
    references: list[SigningReference] = field(default_factory=list)


@dataclass(slots=True)
class SignatureOutcome:
    contract: SignedContract
    signer: ContractSigner
    certificate: Optional[Certificate] = None


def _require_signer(contract: SignedContract, signer_id: str) -> ContractSigner:
    signer = contract.get_signer(signer_id)
    if signer is None:
        raise NotFound("signer", signer_id)
    return signer


def _ensure_open(contract: SignedContract) -> None:
    if contract.status in CLOSED_STATUSES:
        raise AlreadyTerminal(
            f"Contract is already {contract.status.value}",
            {"contract_id": contract.id, "status": contract.status.value},
        )


def _ensure_signer_open(contract: SignedContract, signer: ContractSigner) -> None:
    if signer.status in SIGNER_TERMINAL_STATUSES:
        raise AlreadyTerminal(
            f"Signer has already {signer.status.value}",
            {"contract_id": contract.id, "signer_id": signer.signer_id, "status": signer.status.value},
        )


def signing_url(settings: Settings, contract_id: str, signer_id: str, token: str) -> str:
    query = urlencode({"token": token, "signer": signer_id})
    return f"{settings.frontend_url.rstrip('/')}/sign/{contract_id}?{query}"


def issue_signing_reference(contract: SignedContract, signer: ContractSigner, settings: Settings) -> SigningReference:
    """Mint a fresh signing token. Only its digest is stored, so any earlier token stops working."""
    token = secrets.token_hex(settings.signing_token_bytes)
    signer.signing_token_hash = hash_token(token)
    return SigningReference(
        signer_id=signer.signer_id,
        email=signer.email,
        token=token,
        url=signing_url(settings, contract.id, signer.signer_id, token),
    )


def signing_progress(contract: SignedContract) -> SigningProgress:
    total = len(contract.signers)
    signed = sum(1 for signer in contract.signers if signer.status == SignerStatus.SIGNED)
    declined = sum(1 for signer in contract.signers if signer.status == SignerStatus.DECLINED)
    return SigningProgress(
        total=total,
        signed=signed,
        pending=total - signed - declined,
        declined=declined,
        percentage=round(signed / total * 100) if total else 0,
        is_complete=total > 0 and signed == total,
    )


def _signer_violations(data: ContractInitiate) -> list[FieldViolation]:
    violations = []
    seen_ids: set[str] = set()
    seen_emails: set[str] = set()
    for index, signer in enumerate(data.signers):
        signer_id = signer.signer_id or f"signer_{index + 1}"
        if signer_id in seen_ids:
            violations.append(FieldViolation(f"signers[{index}].signer_id", f"Duplicate signer id '{signer_id}'"))
        email = signer.email.lower()
        if email in seen_emails:
            violations.append(FieldViolation(f"signers[{index}].email", f"Duplicate signer email '{email}'"))
        seen_ids.add(signer_id)
        seen_emails.add(email)
    return violations


async def initiate_contract(
    session: AsyncSession,
    data: ContractInitiate,
    actor: Actor,
    settings: Settings | None = None,
) -> IssuedContract:
    settings = settings or get_settings()
    template = await get_template(session, data.template_id, include_inactive=True)
    if not template.is_active or template.status == TemplateStatus.ARCHIVED:
        raise PreconditionFailed(
            "Contracts can only be created from an active template",
            {"template_id": template.id, "status": template.status.value, "is_active": template.is_active},
        )

    values, violations = validate_placeholder_values(variables_of(template), data.placeholder_values)
    violations.extend(_signer_violations(data))
    if violations:
        raise ValidationError(violations, "Contract data is invalid")

    requirements = requirements_of(template)
    legal = legal_of(template)
    now = clock.utcnow()
    if data.expiration_days is not None:
        expiration_days = data.expiration_days
    elif requirements.expiration_days is not None:
        expiration_days = requirements.expiration_days
    else:
        expiration_days = settings.default_expiration_days

    content = render_content(template.content, values)
    content_html = render_content(template.content_html, values) if template.content_html else None

    contract = SignedContract(
        template_id=template.id,
        template_version=template.version,
        subscriber_id=data.subscriber_id,
        title=data.title or template.name,
        language=template.locale,
        currency=data.currency.upper(),
        status=ContractStatus.DRAFT,
        content_original=content,
        content_html=content_html,
        placeholder_values=to_json_values(values),
        signing_requirements=requirements.model_dump(mode="json"),
        last_activity_at=now,
        expires_at=now + timedelta(days=expiration_days),
        original_hash=compute_hash(content, settings.hash_algorithm),
        hash_algorithm=settings.hash_algorithm,
        max_views=requirements.max_views or settings.default_max_views,
        current_views=0,
        integration_provider=IntegrationProvider.NATIVE,
        webhook_data={},
        jurisdiction=legal.jurisdiction,
        governing_law=legal.governing_law,
        created_by=actor.id,
        created_by_name=actor.name,
        custom_fields=data.custom_fields,
        signers=[
            ContractSigner(
                signer_id=signer.signer_id or f"signer_{index + 1}",
                position=index,
                signer_type=signer.signer_type,
                full_name=signer.full_name,
                email=signer.email.lower(),
                phone=signer.phone,
                title=signer.title,
                company=signer.company,
                status=SignerStatus.PENDING,
                consents=[],
                access_log=[],
            )
            for index, signer in enumerate(data.signers)
        ],
    )
    session.add(contract)
    await session.flush()
    references = [issue_signing_reference(contract, signer, settings) for signer in contract.signers]

    template.last_used_at = now
    await session.flush()
    logger.info(
        "contract.initiated",
        contract_id=contract.id,
        template_id=template.id,
        template_version=template.version,
        signer_count=len(contract.signers),
        expires_at=contract.expires_at.isoformat(),
    )
    return IssuedContract(contract=contract, references=references)


def _invitation_payload(contract: SignedContract, reference: SigningReference, message: str | None) -> dict:
    return {
        "contract_id": contract.id,
        "title": contract.title,
        "signer_id": reference.signer_id,
        "signing_url": reference.url,
        "expires_at": contract.expires_at.isoformat() if contract.expires_at else None,
        "message": message,
    }


async def send_contract(
    session: AsyncSession,
    contract_id: str,
    actor: Actor,
    *,
    message: str | None = None,
    settings: Settings | None = None,
) -> IssuedContract:
    """Distribute a draft contract through the native engine."""
    settings = settings or get_settings()
    contract = await get_contract_for_update(session, contract_id)
    if contract.status != ContractStatus.DRAFT:
        raise PreconditionFailed(
            "Only a draft contract can be sent",
            {"contract_id": contract.id, "status": contract.status.value},
        )

    now = clock.utcnow()
    references = []
    for signer in contract.signers:
        if signer.status != SignerStatus.PENDING:
            continue
        reference = issue_signing_reference(contract, signer, settings)
        advance_signer(signer, SignerStatus.SENT, now)
        record_access(signer, "invitation_sent", details={"sent_by": actor.id})
        await enqueue_notification(
            session,
            contract_id=contract.id,
            kind=NotificationKind.SIGNING_INVITATION,
            recipient=signer.email,
            payload=_invitation_payload(contract, reference, message),
        )
        references.append(reference)

    advance_contract(contract, ContractStatus.SENT, now)
    touch(contract, now)
    await flush_changes(session, contract)
    logger.info("contract.sent", contract_id=contract.id, provider="native", signer_count=len(references))
    return IssuedContract(contract=contract, references=references)


def _submission_violations(submission: SignatureSubmission, requirements: SigningRequirements) -> list[FieldViolation]:
    violations = []
    signature = submission.signature
    if requirements.require_signature and (signature is None or not signature.data):
        violations.append(FieldViolation("signature.data", "Signature is required"))
    if signature is not None and signature.data:
        if signature.type is None:
            violations.append(FieldViolation("signature.type", "Signature type is required"))
        elif signature.type.value not in requirements.allowed_signature_types():
            violations.append(
                FieldViolation("signature.type", f"Signature type '{signature.type.value}' is not allowed")
            )
    verification = submission.identity_verification or {}
    if requirements.require_id_verification and not verification:
        violations.append(FieldViolation("identity_verification", "Identity verification is required"))
    if requirements.require_selfie and not verification.get("selfie"):
        violations.append(FieldViolation("identity_verification.selfie", "Selfie verification is required"))
    return violations


def _missing_consent(submission: SignatureSubmission, requirements: SigningRequirements):
    accepted = {consent.consent_id for consent in submission.consents if consent.accepted}
    for required in sorted(requirements.required_consents, key=lambda item: item.order):
        if required.required and required.id not in accepted:
            return required
    return None


async def process_signature(
    session: AsyncSession,
    contract_id: str,
    signer_id: str,
    submission: SignatureSubmission,
    context: RequestContext | None = None,
    settings: Settings | None = None,
    *,
    token: str | None = None,
) -> SignatureOutcome:
    settings = settings or get_settings()
    contract = await get_contract_for_update(session, contract_id)
    signer = _require_signer(contract, signer_id)
    if token is not None:
        verify_signing_token(contract, signer, token)
    _ensure_signer_open(contract, signer)
    _ensure_open(contract)

    requirements = SigningRequirements.model_validate(contract.signing_requirements or {})
    violations = _submission_violations(submission, requirements)
    if violations:
        raise ValidationError(violations, "Signature submission is invalid")
    missing = _missing_consent(submission, requirements)
    if missing is not None:
        raise ConsentRequired(missing.id, missing.label)

    now = clock.utcnow()
    evidence = signer.evidence or {}
    ip_address = context.ip_address if context else evidence.get("ip_address")
    user_agent = context.user_agent if context else evidence.get("user_agent")

    if submission.signature is not None and submission.signature.data:
        signer.signature = {
            **submission.signature.model_dump(mode="json"),
            "signed_at": now.isoformat(),
            "ip_address": ip_address,
            "user_agent": user_agent,
        }
    signer.consents = [
        consent.model_copy(update={"timestamp": consent.timestamp or now}).model_dump(mode="json")
        for consent in submission.consents
    ]
    if submission.identity_verification:
        signer.verification = {**(signer.verification or {}), **submission.identity_verification}

    advance_signer(signer, SignerStatus.SIGNED, now)
    record_access(
        signer,
        "signature_completed",
        ip_address=ip_address,
        user_agent=user_agent,
        details={
            "signature_type": (signer.signature or {}).get("type"),
            "consents": len(signer.consents),
        },
    )

    certificate = None
    if status_from_signers(contract.signers) == ContractStatus.FULLY_SIGNED:
        advance_contract(contract, ContractStatus.FULLY_SIGNED, now)
        seal_document(contract)
        for party in contract.signers:
            await enqueue_notification(
                session,
                contract_id=contract.id,
                kind=NotificationKind.CONTRACT_COMPLETED,
                recipient=party.email,
                payload={"contract_id": contract.id, "title": contract.title, "final_hash": contract.final_hash},
            )
    else:
        advance_contract(contract, ContractStatus.PARTIALLY_SIGNED, now)

    touch(contract, now)
    await flush_changes(session, contract)
    logger.info(
        "signature.completed",
        contract_id=contract.id,
        signer_id=signer_id,
        contract_status=contract.status.value,
    )
    if contract.status == ContractStatus.FULLY_SIGNED:
        certificate = generate_certificate(contract, settings.certificate_issuer)
    return SignatureOutcome(contract=contract, signer=signer, certificate=certificate)


async def decline_signature(
    session: AsyncSession,
    contract_id: str,
    signer_id: str,
    reason: str | None = None,
    *,
    token: str | None = None,
    context: RequestContext | None = None,
) -> SignedContract:
    contract = await get_contract_for_update(session, contract_id)
    signer = _require_signer(contract, signer_id)
    if token is not None:
        verify_signing_token(contract, signer, token)
    _ensure_signer_open(contract, signer)
    _ensure_open(contract)

    now = clock.utcnow()
    signer.decline_reason = reason
    advance_signer(signer, SignerStatus.DECLINED, now)
    record_access(
        signer,
        "signature_declined",
        ip_address=context.ip_address if context else None,
        user_agent=context.user_agent if context else None,
        details={"reason": reason},
    )
    advance_contract(contract, ContractStatus.DECLINED, now)
    for party in contract.signers:
        await enqueue_notification(
            session,
            contract_id=contract.id,
            kind=NotificationKind.CONTRACT_DECLINED,
            recipient=party.email,
            payload={"contract_id": contract.id, "declined_by": signer.signer_id, "reason": reason},
        )
    touch(contract, now)
    await flush_changes(session, contract)
    logger.info("signature.declined", contract_id=contract.id, signer_id=signer_id)
    return contract


async def void_contract(session: AsyncSession, contract_id: str, reason: str, actor: Actor) -> SignedContract:
    # Voiding is allowed after expiry, so the expiry guard must not raise here.
    contract = await get_contract(session, contract_id)
    if contract.status == ContractStatus.VOIDED:
        raise AlreadyTerminal("Contract is already voided", {"contract_id": contract.id})
    if contract.status in SEALED_STATUSES:
        raise AlreadyTerminal(
            f"Contract is {contract.status.value} and sealed; it can no longer be voided",
            {"contract_id": contract.id, "status": contract.status.value},
        )

    now = clock.utcnow()
    for signer in contract.signers:
        if signer.status not in SIGNER_TERMINAL_STATUSES:
            advance_signer(signer, SignerStatus.EXPIRED, now)
    advance_contract(contract, ContractStatus.VOIDED, now)
    contract.void_reason = reason
    contract.voided_by = actor.id
    contract.voided_by_name = actor.name
    for signer in contract.signers:
        await enqueue_notification(
            session,
            contract_id=contract.id,
            kind=NotificationKind.CONTRACT_VOIDED,
            recipient=signer.email,
            payload={"contract_id": contract.id, "title": contract.title, "reason": reason},
        )
    touch(contract, now)
    await flush_changes(session, contract)
    logger.info("contract.voided", contract_id=contract.id, voided_by=actor.id)
    return contract


async def resend_invitation(
    session: AsyncSession,
    contract_id: str,
    signer_id: str,
    actor: Actor,
    settings: Settings | None = None,
) -> SigningReference:
    settings = settings or get_settings()
    contract = await get_contract_for_update(session, contract_id)
    _ensure_open(contract)
    signer = _require_signer(contract, signer_id)
    _ensure_signer_open(contract, signer)

    now = clock.utcnow()
    reference = issue_signing_reference(contract, signer, settings)
    if signer.status == SignerStatus.PENDING:
        advance_signer(signer, SignerStatus.SENT, now)
    signer.sent_at = now
    record_access(signer, "invitation_resent", details={"sent_by": actor.id})
    await enqueue_notification(
        session,
        contract_id=contract.id,
        kind=NotificationKind.SIGNING_REMINDER,
        recipient=signer.email,
        payload=_invitation_payload(contract, reference, None),
    )
    touch(contract, now)
    await flush_changes(session, contract)
    logger.info("signer.invitation.resent", contract_id=contract.id, signer_id=signer_id)
    return reference


async def complete_contract(session: AsyncSession, contract_id: str, actor: Actor) -> SignedContract:
    contract = await get_contract(session, contract_id)
    if contract.status != ContractStatus.FULLY_SIGNED:
        raise PreconditionFailed(
            "Only a fully signed contract can be completed",
            {"contract_id": contract.id, "status": contract.status.value},
        )
    now = clock.utcnow()
    advance_contract(contract, ContractStatus.COMPLETED, now)
    touch(contract, now)
    await flush_changes(session, contract)
    logger.info("contract.completed", contract_id=contract.id, completed_by=actor.id)
    return contract
