"""
Operator CLI for evidence export, integrity checks and notification hand-off
"""

import asyncio
import json
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import click
from sqlalchemy.ext.asyncio import AsyncSession

from esign_engine.core.config import get_settings
from esign_engine.core.errors import SigningError
from esign_engine.core.logging import configure_logging
from esign_engine.db.session import dispose_engine, get_session_factory
from esign_engine.models.event import EventOutbox
from esign_engine.services.contract_repository import get_contract
from esign_engine.services.integrity_service import build_export_archive, verify_integrity
from esign_engine.services.outbox_service import dispatch_pending_notifications

T = TypeVar("T")


def _run(work: Callable[[AsyncSession], Awaitable[T]]) -> T:
    async def runner() -> T:
        try:
            async with get_session_factory()() as session:
                result = await work(session)
                await session.commit()
                return result
        finally:
            await dispose_engine()

    try:
        return asyncio.run(runner())
    except SigningError as exc:
        raise click.ClickException(f"{exc.kind}: {exc.message}") from exc


@click.group()
def cli():
    """Contract signing engine operations"""
    configure_logging()


@cli.command("export-evidence")
@click.argument("contract_id")
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Archive path (default: evidence_<id>.zip)")
def export_evidence(contract_id: str, output: Optional[Path]):
    """Write the evidence archive of a fully signed contract"""
    issuer = get_settings().certificate_issuer

    async def work(session: AsyncSession) -> bytes:
        contract = await get_contract(session, contract_id, apply_expiry=False)
        return build_export_archive(contract, issuer)

    archive = _run(work)
    target = output or Path(f"evidence_{contract_id}.zip")
    target.write_bytes(archive)
    click.echo(f"Wrote {len(archive)} bytes to {target}")


@cli.command()
@click.argument("contract_id")
@click.argument("document_hash")
def verify(contract_id: str, document_hash: str):
    """Compare DOCUMENT_HASH with the contract's stored hash"""

    async def work(session: AsyncSession):
        contract = await get_contract(session, contract_id, apply_expiry=False)
        return verify_integrity(contract, document_hash)

    result = _run(work)
    click.echo(f"Compared against {result.compared_against} ({result.hash_algorithm})")
    if not result.valid:
        click.echo("Hash does NOT match", err=True)
        raise SystemExit(1)
    click.echo("Hash matches")


async def _emit(event: EventOutbox) -> None:
    click.echo(
        json.dumps(
            {
                "id": event.id,
                "kind": event.kind,
                "channel": event.channel,
                "recipient": event.recipient,
                "payload": event.payload,
            }
        )
    )


@cli.command("dispatch-notifications")
def dispatch_notifications():
    """Hand due notifications to stdout as JSON lines for the mail relay"""
    delivered = _run(lambda session: dispatch_pending_notifications(session, _emit))
    click.echo(f"Dispatched {delivered} notifications", err=True)


if __name__ == "__main__":
    cli()
