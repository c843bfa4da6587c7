from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from esign_engine.api.dependencies.auth import get_current_actor
from esign_engine.api.dependencies.database import commit, get_db
from esign_engine.core.config import get_settings
from esign_engine.models.contract import ContractStatus
from esign_engine.schemas.common import Actor
from esign_engine.schemas.contract import (
    AuditEvent,
    Certificate,
    ContractCollection,
    ContractDetail,
    ContractFilters,
    ContractInitiate,
    ContractRead,
    ContractSummary,
    EvidencePackage,
    InitiateResult,
    IntegrityCheck,
    SendRequest,
    SendResult,
    SigningProgress,
    SigningReference,
    VerificationResult,
    VoidRequest,
)
from esign_engine.services import integration_service, integrity_service, signing_service
from esign_engine.services.audit_trail import build_audit_trail
from esign_engine.services.contract_repository import get_contract, search_contracts

router = APIRouter(prefix="/contracts", tags=["contracts"])

Page = Annotated[int, Query(ge=1)]
PageSize = Annotated[int, Query(ge=1, le=100)]


@router.get("", response_model=ContractCollection)
async def list_contracts_endpoint(
    page: Page = 1,
    page_size: PageSize = 20,
    subscriber_id: str | None = None,
    template_id: str | None = None,
    statuses: list[ContractStatus] | None = Query(default=None, alias="status"),
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    signer_email: str | None = None,
    search: str | None = Query(default=None, min_length=2),
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> ContractCollection:
    filters = ContractFilters(
        subscriber_id=subscriber_id,
        template_id=template_id,
        statuses=statuses or [],
        created_from=created_from,
        created_to=created_to,
        signer_email=signer_email,
        search=search,
    )
    items, total = await search_contracts(session, filters=filters, page=page, page_size=page_size)
    return ContractCollection(
        items=[ContractSummary.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("", response_model=InitiateResult, status_code=status.HTTP_201_CREATED)
async def initiate_contract_endpoint(
    payload: ContractInitiate,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> InitiateResult:
    issued = await signing_service.initiate_contract(session, payload, actor)
    await commit(session)
    return InitiateResult(
        contract=ContractRead.model_validate(issued.contract),
        signing_references=issued.references,
    )


@router.get("/{contract_id}", response_model=ContractDetail)
async def get_contract_endpoint(
    contract_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> ContractDetail:
    contract = await get_contract(session, contract_id)
    await commit(session)
    return ContractDetail.model_validate(contract)


@router.post("/{contract_id}/send", response_model=SendResult)
async def send_contract_endpoint(
    contract_id: str,
    payload: SendRequest | None = None,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> SendResult:
    payload = payload or SendRequest()
    outcome = await integration_service.send_via_provider(
        session,
        contract_id,
        actor,
        provider=payload.provider,
        message=payload.message,
    )
    await commit(session)
    return SendResult(
        contract=ContractRead.model_validate(outcome.contract),
        provider=outcome.provider,
        signing_references=outcome.references,
        provider_error=outcome.error.to_dict() if outcome.error else None,
    )


@router.post("/{contract_id}/void", response_model=ContractRead)
async def void_contract_endpoint(
    contract_id: str,
    payload: VoidRequest,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> ContractRead:
    contract = await signing_service.void_contract(session, contract_id, payload.reason, actor)
    await commit(session)
    return ContractRead.model_validate(contract)


@router.post("/{contract_id}/signers/{signer_id}/resend", response_model=SigningReference)
async def resend_invitation_endpoint(
    contract_id: str,
    signer_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> SigningReference:
    reference = await signing_service.resend_invitation(session, contract_id, signer_id, actor)
    await commit(session)
    return reference


@router.post("/{contract_id}/complete", response_model=ContractRead)
async def complete_contract_endpoint(
    contract_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> ContractRead:
    contract = await signing_service.complete_contract(session, contract_id, actor)
    await commit(session)
    return ContractRead.model_validate(contract)


@router.get("/{contract_id}/progress", response_model=SigningProgress)
async def signing_progress_endpoint(
    contract_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> SigningProgress:
    contract = await get_contract(session, contract_id)
    await commit(session)
    return signing_service.signing_progress(contract)


@router.post("/{contract_id}/verify", response_model=VerificationResult)
async def verify_integrity_endpoint(
    contract_id: str,
    payload: IntegrityCheck,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> VerificationResult:
    contract = await get_contract(session, contract_id, apply_expiry=False)
    return integrity_service.verify_integrity(contract, payload.hash)


@router.get("/{contract_id}/verify", response_model=VerificationResult)
async def verify_integrity_query_endpoint(
    contract_id: str,
    supplied_hash: str = Query(alias="hash", min_length=1),
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> VerificationResult:
    contract = await get_contract(session, contract_id, apply_expiry=False)
    return integrity_service.verify_integrity(contract, supplied_hash)


@router.get("/{contract_id}/certificate", response_model=Certificate)
async def certificate_endpoint(
    contract_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> Certificate:
    contract = await get_contract(session, contract_id, apply_expiry=False)
    return integrity_service.generate_certificate(contract, get_settings().certificate_issuer)


@router.get("/{contract_id}/evidence", response_model=EvidencePackage)
async def evidence_package_endpoint(
    contract_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> EvidencePackage:
    contract = await get_contract(session, contract_id, apply_expiry=False)
    return integrity_service.build_evidence_package(contract)


@router.get("/{contract_id}/export")
async def export_evidence_endpoint(
    contract_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> Response:
    contract = await get_contract(session, contract_id, apply_expiry=False)
    archive = integrity_service.build_export_archive(contract, get_settings().certificate_issuer)
    return Response(
        content=archive,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="evidence_{contract.id}.zip"'},
    )


@router.get("/{contract_id}/audit-trail", response_model=list[AuditEvent])
async def audit_trail_endpoint(
    contract_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> list[AuditEvent]:
    contract = await get_contract(session, contract_id)
    await commit(session)
    return build_audit_trail(contract)


@router.post("/{contract_id}/sync", response_model=ContractRead)
async def sync_contract_endpoint(
    contract_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> ContractRead:
    contract = await integration_service.sync_contract_status(session, contract_id)
    await commit(session)
    return ContractRead.model_validate(contract)


@router.get("/{contract_id}/document")
async def download_document_endpoint(
    contract_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> Response:
    contract = await get_contract(session, contract_id, apply_expiry=False)
    document = await integration_service.download_final_document(session, contract_id)
    await commit(session)
    if contract.external_id:
        return Response(content=document, media_type="application/pdf")
    return Response(content=document, media_type="text/plain; charset=utf-8")
