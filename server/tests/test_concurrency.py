"""
Optimistic concurrency on the contract row.
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from esign_engine.core.errors import ConcurrentModification
from esign_engine.db.base import Base
from esign_engine.models.contract import ContractStatus, SignedContract
from esign_engine.services import signing_service
from esign_engine.services.contract_repository import get_contract

from .factories import create_active_template, full_submission, initiate_payload


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest_asyncio.fixture
async def stored_contract_id(file_session_factory, actor, frozen_clock) -> str:
    async with file_session_factory() as setup:
        template = await create_active_template(setup, actor)
        issued = await signing_service.initiate_contract(setup, initiate_payload(template.id), actor)
        await setup.commit()
        return issued.contract.id


class TestConcurrentWriters:
    @pytest.mark.asyncio
    async def test_stale_writer_gets_conflict(self, file_session_factory, stored_contract_id, actor):
        async with file_session_factory() as first, file_session_factory() as second:
            stale = await get_contract(second, stored_contract_id)
            assert stale.version_id == 1

            await signing_service.send_contract(first, stored_contract_id, actor)
            await first.commit()

            with pytest.raises(ConcurrentModification) as excinfo:
                await signing_service.process_signature(second, stored_contract_id, "signer_1", full_submission())
            assert excinfo.value.kind == "conflict"
            assert excinfo.value.details["contract_id"] == stored_contract_id
            await second.rollback()

        async with file_session_factory() as check:
            contract = await check.get(SignedContract, stored_contract_id)
            assert contract.status == ContractStatus.SENT
            assert contract.version_id == 2
            assert all(signer.signature is None for signer in contract.signers)

    @pytest.mark.asyncio
    async def test_sequential_writers_both_succeed(self, file_session_factory, stored_contract_id):
        async with file_session_factory() as first:
            await signing_service.process_signature(first, stored_contract_id, "signer_1", full_submission())
            await first.commit()

        async with file_session_factory() as second:
            outcome = await signing_service.process_signature(
                second, stored_contract_id, "signer_2", full_submission()
            )
            await second.commit()

        assert outcome.contract.status == ContractStatus.FULLY_SIGNED
        # Sealing and the completion notifications land in one versioned write.
        assert outcome.contract.version_id == 3
