from __future__ import annotations

from typing import Sequence

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from esign_engine.core import clock
from esign_engine.core.errors import ConcurrentModification, ContractExpired, NotFound
from esign_engine.core.logging import get_logger
from esign_engine.models.contract import (
    ContractSigner,
    ContractStatus,
    IntegrationProvider,
    SignedContract,
)
from esign_engine.schemas.contract import ContractFilters
from esign_engine.services.contract_state import apply_lazy_expiry

logger = get_logger(__name__)


async def get_contract(session: AsyncSession, contract_id: str, *, apply_expiry: bool = True) -> SignedContract:
    """Load a contract, coercing it to expired first when its deadline has passed."""
    contract = await session.get(SignedContract, contract_id)
    if contract is None:
        raise NotFound("contract", contract_id)
    if apply_expiry and apply_lazy_expiry(contract, clock.utcnow()):
        await flush_changes(session, contract)
        logger.info("contract.expired", contract_id=contract.id)
    return contract


async def get_contract_for_update(session: AsyncSession, contract_id: str) -> SignedContract:
    """Load a contract for a mutating operation.

    Raises ``ContractExpired`` when the contract is, or has just become,
    expired. The coerced status is flushed before raising so the caller's
    unit of work can persist it.
    """
    contract = await get_contract(session, contract_id)
    if contract.status == ContractStatus.EXPIRED:
        raise ContractExpired(contract.id)
    return contract


async def find_by_external_id(
    session: AsyncSession,
    provider: IntegrationProvider,
    external_id: str,
) -> SignedContract | None:
    result = await session.execute(
        select(SignedContract).where(
            SignedContract.integration_provider == provider,
            SignedContract.external_id == external_id,
        )
    )
    return result.scalars().first()


async def search_contracts(
    session: AsyncSession,
    *,
    filters: ContractFilters,
    page: int,
    page_size: int,
) -> tuple[Sequence[SignedContract], int]:
    conditions = []
    if filters.subscriber_id:
        conditions.append(SignedContract.subscriber_id == filters.subscriber_id)
    if filters.template_id:
        conditions.append(SignedContract.template_id == filters.template_id)
    if filters.statuses:
        conditions.append(SignedContract.status.in_(filters.statuses))
    if filters.created_from:
        conditions.append(SignedContract.created_at >= filters.created_from)
    if filters.created_to:
        conditions.append(SignedContract.created_at <= filters.created_to)
    if filters.signer_email:
        conditions.append(
            SignedContract.signers.any(func.lower(ContractSigner.email) == filters.signer_email.lower())
        )
    if filters.search:
        like_term = f"%{filters.search.lower()}%"
        conditions.append(
            or_(
                func.lower(SignedContract.title).like(like_term),
                SignedContract.signers.any(
                    or_(
                        func.lower(ContractSigner.full_name).like(like_term),
                        func.lower(ContractSigner.email).like(like_term),
                    )
                ),
            )
        )

    base_query = select(SignedContract)
    count_query = select(func.count()).select_from(SignedContract)
    if conditions:
        base_query = base_query.where(and_(*conditions))
        count_query = count_query.where(and_(*conditions))

    total = await session.scalar(count_query)
    result = await session.execute(
        base_query.order_by(SignedContract.created_at.desc(), SignedContract.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return result.scalars().all(), int(total or 0)


async def flush_changes(session: AsyncSession, contract: SignedContract) -> None:
    """Flush pending writes; a moved version counter surfaces as ``ConcurrentModification``."""
    # A failed flush expires the instance, so its id cannot be read afterwards.
    contract_id = contract.id
    try:
        await session.flush()
    except StaleDataError as exc:
        logger.warning("contract.concurrent_modification", contract_id=contract_id)
        raise ConcurrentModification(
            "Contract was modified concurrently; reload and retry",
            {"contract_id": contract_id},
        ) from exc
