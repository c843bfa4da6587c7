"""
Provider routing and reconciliation.

Provider state is merged into a contract monotonically: contract status only
moves forward along draft < sent < partially_signed < fully_signed <
completed, abandonment (declined/voided/expired) only applies to an open
contract, and a signer never leaves a terminal status. Applying the same
snapshot twice therefore changes nothing the second time.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from esign_engine.core import clock
from esign_engine.core.config import Settings, get_settings
from esign_engine.core.errors import PreconditionFailed, ProviderError
from esign_engine.core.logging import get_logger
from esign_engine.integrations.esignature import (
    ProviderRegistry,
    ProviderStatusSnapshot,
    SignatureProvider,
)
from esign_engine.models.contract import (
    ContractStatus,
    IntegrationProvider,
    SignedContract,
    SignerStatus,
)
from esign_engine.models.event import NotificationKind
from esign_engine.schemas.common import Actor
from esign_engine.schemas.contract import SigningReference, WebhookOutcome
from esign_engine.services.contract_repository import (
    find_by_external_id,
    flush_changes,
    get_contract,
    get_contract_for_update,
)
from esign_engine.services.contract_state import (
    ABANDONED_STATUSES,
    CONTRACT_PROGRESS_RANK,
    SEALED_STATUSES,
    SIGNER_TERMINAL_STATUSES,
    advance_contract,
    advance_signer,
    apply_lazy_expiry,
    status_from_signers,
    touch,
)
from esign_engine.services.evidence_service import record_access
from esign_engine.services.integrity_service import seal_document
from esign_engine.services.outbox_service import enqueue_notification
from esign_engine.services.signing_service import send_contract

logger = get_logger(__name__)

LOCK_PREFIX = "esign:webhook:idemp:"
LOCK_TTL_SECONDS = 3600
OPEN_STATUSES = frozenset({ContractStatus.DRAFT, ContractStatus.SENT, ContractStatus.PARTIALLY_SIGNED})
# A signer reported in one of these states has seen the document.
VIEWED_SIGNER_STATUSES = frozenset({SignerStatus.OPENED, SignerStatus.SIGNED, SignerStatus.DECLINED})


@dataclass(slots=True)
class ProviderSendOutcome:
    contract: SignedContract
    provider: IntegrationProvider
    references: list[SigningReference] = field(default_factory=list)
    error: Optional[ProviderError] = None


@dataclass(slots=True)
class ReconcileResult:
    changed: bool = False
    sealed: bool = False


def create_provider(
    provider: IntegrationProvider,
    session: AsyncSession | None = None,
    settings: Settings | None = None,
) -> SignatureProvider:
    settings = settings or get_settings()
    if provider == IntegrationProvider.NATIVE:
        return ProviderRegistry.create(provider, session=session, settings=settings)
    return ProviderRegistry.create(provider, **settings.provider_config(provider.value))


async def send_via_provider(
    session: AsyncSession,
    contract_id: str,
    actor: Actor,
    *,
    provider: IntegrationProvider | None = None,
    message: str | None = None,
    settings: Settings | None = None,
    adapter: SignatureProvider | None = None,
) -> ProviderSendOutcome:
    """Send through the requested provider.

    A vendor failure leaves the contract exactly as it was (still a native
    draft) and is reported on the outcome so the caller can retry.
    """
    settings = settings or get_settings()
    provider = IntegrationProvider(provider or settings.default_provider)

    if provider == IntegrationProvider.NATIVE:
        issued = await send_contract(session, contract_id, actor, message=message, settings=settings)
        return ProviderSendOutcome(contract=issued.contract, provider=provider, references=issued.references)

    contract = await get_contract_for_update(session, contract_id)
    if contract.status != ContractStatus.DRAFT:
        raise PreconditionFailed(
            "Only a draft contract can be sent",
            {"contract_id": contract.id, "status": contract.status.value},
        )

    adapter = adapter or create_provider(provider, session, settings)
    try:
        async with adapter:
            receipt = await adapter.send(contract, message=message, actor=actor)
    except ProviderError as exc:
        logger.warning(
            "provider.send.failed",
            contract_id=contract.id,
            provider=provider.value,
            error_code=exc.error_code,
            error=exc.message,
        )
        return ProviderSendOutcome(contract=contract, provider=provider, error=exc)

    now = clock.utcnow()
    contract.integration_provider = provider
    contract.external_id = receipt.external_id
    contract.external_status = receipt.status.value
    contract.synced_at = now
    for signer in contract.signers:
        if signer.status == SignerStatus.PENDING:
            advance_signer(signer, SignerStatus.SENT, now)
    advance_contract(contract, ContractStatus.SENT, now)
    touch(contract, now)
    await flush_changes(session, contract)
    logger.info("contract.sent", contract_id=contract.id, provider=provider.value, external_id=receipt.external_id)
    return ProviderSendOutcome(contract=contract, provider=provider)


def _signer_time(status: SignerStatus, snapshot_signed: datetime | None, snapshot_declined: datetime | None, now: datetime) -> datetime:
    if status == SignerStatus.SIGNED and snapshot_signed:
        return snapshot_signed
    if status == SignerStatus.DECLINED and snapshot_declined:
        return snapshot_declined
    return now


def _close_open_signers(contract: SignedContract, target: SignerStatus, at: datetime) -> None:
    for signer in contract.signers:
        if signer.status not in SIGNER_TERMINAL_STATUSES:
            advance_signer(signer, target, at)


def _merge_contract_status(
    contract: SignedContract,
    target: ContractStatus | None,
    snapshot: ProviderStatusSnapshot,
    now: datetime,
) -> bool:
    """Move the contract toward ``target`` if that is forward. Returns True when it sealed the document."""
    if target is None or target == contract.status:
        return False

    if target in ABANDONED_STATUSES:
        if contract.status not in OPEN_STATUSES:
            return False
        if target == ContractStatus.VOIDED:
            contract.voided_at = contract.voided_at or snapshot.voided_at
        if target in (ContractStatus.VOIDED, ContractStatus.EXPIRED):
            _close_open_signers(contract, SignerStatus.EXPIRED, now)
        advance_contract(contract, target, now)
        return False

    current_rank = CONTRACT_PROGRESS_RANK.get(contract.status)
    if current_rank is None or CONTRACT_PROGRESS_RANK[target] <= current_rank:
        return False

    if target in SEALED_STATUSES:
        # A vendor reporting completion means every recipient has signed.
        _close_open_signers(contract, SignerStatus.SIGNED, snapshot.completed_at or now)
        if any(signer.status != SignerStatus.SIGNED for signer in contract.signers):
            logger.warning(
                "provider.reconcile.inconsistent",
                contract_id=contract.id,
                reported_status=target.value,
            )
            return False
        contract.completed_at = contract.completed_at or snapshot.completed_at
        sealed_now = contract.final_hash is None
        advance_contract(contract, ContractStatus.FULLY_SIGNED, now)
        seal_document(contract)
        if target == ContractStatus.COMPLETED:
            advance_contract(contract, ContractStatus.COMPLETED, now)
        return sealed_now

    advance_contract(contract, target, now)
    return False


def update_contract_from_provider(
    contract: SignedContract,
    snapshot: ProviderStatusSnapshot,
    now: datetime | None = None,
) -> ReconcileResult:
    """Merge a provider snapshot into the contract without ever moving state backwards."""
    now = now or clock.utcnow()
    before = (contract.status, tuple(signer.status for signer in contract.signers))

    by_email = {signer.email.lower(): signer for signer in contract.signers}
    for reported in snapshot.signers:
        signer = by_email.get(reported.email.lower())
        if signer is None or reported.status is None or signer.status == reported.status:
            continue
        at = _signer_time(reported.status, reported.signed_at, reported.declined_at, now)
        if advance_signer(signer, reported.status, at).succeeded:
            if reported.status in VIEWED_SIGNER_STATUSES and contract.first_opened_at is None:
                contract.first_opened_at = at
            if reported.status == SignerStatus.DECLINED and reported.decline_reason and not signer.decline_reason:
                signer.decline_reason = reported.decline_reason
            record_access(
                signer,
                "provider_status_synced",
                details={"provider": snapshot.provider.value, "status": reported.raw_status},
            )

    sealed = _merge_contract_status(contract, status_from_signers(contract.signers), snapshot, now)
    sealed = _merge_contract_status(contract, snapshot.status, snapshot, now) or sealed

    if snapshot.raw_status:
        contract.external_status = snapshot.raw_status
    contract.synced_at = now
    after = (contract.status, tuple(signer.status for signer in contract.signers))
    return ReconcileResult(changed=before != after, sealed=sealed)


async def _apply_snapshot(session: AsyncSession, contract: SignedContract, snapshot: ProviderStatusSnapshot) -> ReconcileResult:
    now = clock.utcnow()
    result = update_contract_from_provider(contract, snapshot, now)
    if result.sealed:
        for signer in contract.signers:
            await enqueue_notification(
                session,
                contract_id=contract.id,
                kind=NotificationKind.CONTRACT_COMPLETED,
                recipient=signer.email,
                payload={"contract_id": contract.id, "title": contract.title, "final_hash": contract.final_hash},
            )
    touch(contract, now)
    await flush_changes(session, contract)
    return result


async def sync_contract_status(
    session: AsyncSession,
    contract_id: str,
    *,
    settings: Settings | None = None,
    adapter: SignatureProvider | None = None,
) -> SignedContract:
    contract = await get_contract(session, contract_id)
    if contract.integration_provider == IntegrationProvider.NATIVE or not contract.external_id:
        return contract

    adapter = adapter or create_provider(contract.integration_provider, session, settings)
    async with adapter:
        snapshot = await adapter.get_status(contract.external_id)
    result = await _apply_snapshot(session, contract, snapshot)
    logger.info(
        "provider.synced",
        contract_id=contract.id,
        provider=contract.integration_provider.value,
        changed=result.changed,
        status=contract.status.value,
    )
    return contract


async def _acquire_idempotency_lock(redis_client: Optional[Redis], key: str) -> bool:
    if redis_client is None:
        return True
    try:
        async with redis_client.pipeline(transaction=True) as pipe:  # type: ignore[attr-defined]
            pipe.setnx(key, 1)
            pipe.expire(key, LOCK_TTL_SECONDS)
            created, _ = await pipe.execute()
    except RedisError as exc:
        # The digest recorded on the contract still catches replays.
        logger.warning("webhook.lock.unavailable", error=str(exc))
        return True
    return bool(created)


async def _release_idempotency_lock(redis_client: Optional[Redis], key: str) -> None:
    if redis_client is None:
        return
    try:
        await redis_client.delete(key)
    except RedisError as exc:
        logger.warning("webhook.lock.release_failed", error=str(exc))


async def _contract_for_snapshot(
    session: AsyncSession,
    provider: IntegrationProvider,
    external_id: str,
) -> SignedContract | None:
    if provider == IntegrationProvider.NATIVE:
        return await session.get(SignedContract, external_id)
    return await find_by_external_id(session, provider, external_id)


def _snapshot_record(snapshot: ProviderStatusSnapshot, received_at: datetime) -> dict:
    return {
        "received_at": received_at.isoformat(),
        "external_id": snapshot.external_id,
        "status": snapshot.raw_status,
        "signers": [
            {"email": signer.email, "status": signer.raw_status} for signer in snapshot.signers
        ],
    }


async def handle_webhook(
    session: AsyncSession,
    provider: IntegrationProvider,
    payload: bytes,
    signature: str | None = None,
    *,
    headers: Mapping[str, str] | None = None,
    redis_client: Optional[Redis] = None,
    settings: Settings | None = None,
    adapter: SignatureProvider | None = None,
) -> WebhookOutcome:
    adapter = adapter or create_provider(provider, session, settings)
    adapter.verify_webhook(payload, signature, headers)
    snapshot = adapter.parse_webhook(payload)
    digest = hashlib.sha256(payload).hexdigest()

    contract = await _contract_for_snapshot(session, provider, snapshot.external_id)
    if contract is None:
        logger.warning("webhook.unmatched", provider=provider.value, external_id=snapshot.external_id)
        return WebhookOutcome(provider=provider, external_id=snapshot.external_id, applied=False)

    now = clock.utcnow()
    if apply_lazy_expiry(contract, now):
        logger.info("contract.expired", contract_id=contract.id)

    lock_key = f"{LOCK_PREFIX}{provider.value}:{digest}"
    duplicate = digest in (contract.webhook_data or {})
    if not duplicate:
        duplicate = not await _acquire_idempotency_lock(redis_client, lock_key)
    if duplicate:
        await flush_changes(session, contract)
        logger.info("webhook.duplicate.skipped", contract_id=contract.id, provider=provider.value)
        return WebhookOutcome(
            provider=provider,
            external_id=snapshot.external_id,
            contract_id=contract.id,
            applied=False,
            duplicate=True,
            contract_status=contract.status,
        )

    contract.webhook_data = {**(contract.webhook_data or {}), digest: _snapshot_record(snapshot, now)}
    try:
        result = await _apply_snapshot(session, contract, snapshot)
    except Exception:
        await _release_idempotency_lock(redis_client, lock_key)
        raise
    logger.info(
        "webhook.applied",
        contract_id=contract.id,
        provider=provider.value,
        changed=result.changed,
        status=contract.status.value,
    )
    return WebhookOutcome(
        provider=provider,
        external_id=snapshot.external_id,
        contract_id=contract.id,
        applied=result.changed,
        contract_status=contract.status,
    )


async def download_final_document(
    session: AsyncSession,
    contract_id: str,
    *,
    settings: Settings | None = None,
    adapter: SignatureProvider | None = None,
) -> bytes:
    contract = await get_contract(session, contract_id)
    if contract.status not in SEALED_STATUSES:
        raise PreconditionFailed(
            "The final document is only available once the contract is fully signed",
            {"contract_id": contract.id, "status": contract.status.value},
        )
    if contract.integration_provider == IntegrationProvider.NATIVE or not contract.external_id:
        if contract.content_final is None:
            contract.content_final = contract.content_original
            await flush_changes(session, contract)
        return contract.content_final.encode("utf-8")

    adapter = adapter or create_provider(contract.integration_provider, session, settings)
    async with adapter:
        document = await adapter.download_final_document(contract.external_id)
    logger.info(
        "provider.document.downloaded",
        contract_id=contract.id,
        provider=contract.integration_provider.value,
        size=len(document),
    )
    return document
