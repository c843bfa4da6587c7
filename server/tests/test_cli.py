"""
Operator CLI against a file-backed database.
"""

import asyncio
import json
import zipfile

import pytest
from click.testing import CliRunner
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from esign_engine.cli.evidence import cli
from esign_engine.core.config import clear_settings_cache
from esign_engine.db.base import Base
from esign_engine.schemas.common import Actor
from esign_engine.services import signing_service

from .factories import create_active_template, full_submission, initiate_payload


async def _seed(database_url):
    engine = create_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    actor = Actor(id="ops-1", name="Ops")
    async with factory() as session:
        template = await create_active_template(session, actor)
        issued = await signing_service.initiate_contract(session, initiate_payload(template.id), actor)
        await signing_service.send_contract(session, issued.contract.id, actor)
        for signer_id in ("signer_1", "signer_2"):
            await signing_service.process_signature(session, issued.contract.id, signer_id, full_submission(signer_id))
        await session.commit()
        contract_id, final_hash = issued.contract.id, issued.contract.final_hash
    await engine.dispose()
    return contract_id, final_hash


@pytest.fixture
def signed_contract(tmp_path, monkeypatch):
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("ESIGN_DATABASE_URL", database_url)
    clear_settings_cache()
    return asyncio.run(_seed(database_url))


class TestCli:
    def test_verify_matching_hash(self, signed_contract):
        contract_id, final_hash = signed_contract

        result = CliRunner().invoke(cli, ["verify", contract_id, final_hash])

        assert result.exit_code == 0, result.output
        assert "Compared against final_hash" in result.output
        assert "Hash matches" in result.output

    def test_verify_mismatch_exits_non_zero(self, signed_contract):
        contract_id, _ = signed_contract

        result = CliRunner().invoke(cli, ["verify", contract_id, "0" * 64])

        assert result.exit_code == 1

    def test_unknown_contract(self, signed_contract):
        result = CliRunner().invoke(cli, ["verify", "missing", "0" * 64])

        assert result.exit_code == 1
        assert "not_found" in result.output

    def test_export_evidence(self, signed_contract, tmp_path):
        contract_id, _ = signed_contract
        target = tmp_path / "bundle.zip"

        result = CliRunner().invoke(cli, ["export-evidence", contract_id, "--output", str(target)])

        assert result.exit_code == 0, result.output
        with zipfile.ZipFile(target) as bundle:
            assert "evidence_package.json" in bundle.namelist()

    def test_dispatch_notifications_emits_json_lines(self, signed_contract):
        result = CliRunner().invoke(cli, ["dispatch-notifications"])

        assert result.exit_code == 0, result.output
        lines = [json.loads(line) for line in result.stdout.splitlines() if line.startswith("{")]
        lines = [line for line in lines if "recipient" in line]
        kinds = {line["kind"] for line in lines}
        assert kinds == {"signing.invitation", "contract.completed"}
        assert len(lines) == 4
