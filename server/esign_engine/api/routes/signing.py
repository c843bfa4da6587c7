"""Public endpoints used by signers. Access is gated by the signing token, not by bearer auth."""

import ipaddress

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from esign_engine.api.dependencies.auth import get_signing_token
from esign_engine.api.dependencies.database import commit, get_db
from esign_engine.api.dependencies.geolocation import geo_resolver_dependency
from esign_engine.core.config import Settings, get_settings
from esign_engine.schemas.contract import (
    Certificate,
    CertificateVerification,
    ContractRead,
    DeclineRequest,
    SignatureResult,
    SignatureSubmission,
    SignerRead,
)
from esign_engine.schemas.evidence import EvidenceAck, EvidencePayload, RequestContext, SessionStartRequest, SessionStartResult
from esign_engine.services import evidence_service, integrity_service, signing_service
from esign_engine.services.evidence_service import GeoResolver

router = APIRouter(prefix="/sign", tags=["signing"])


def _is_trusted(address: str, settings: Settings) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in network for network in settings.trusted_proxy_networks)


def client_ip(request: Request, settings: Settings) -> str:
    """Network origin of the signer.

    Forwarding headers are only believed when the connecting peer is a
    configured proxy. The forwarded chain is walked from the nearest hop and
    the first address that is not itself a trusted proxy wins.
    """
    peer = request.client.host if request.client else None
    if peer is None:
        return "unknown"
    if not _is_trusted(peer, settings):
        return peer

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        for hop in reversed(hops):
            if not _is_trusted(hop, settings):
                return hop
        if hops:
            return hops[0]
    return request.headers.get("x-real-ip") or peer


def request_context(request: Request, payload: SessionStartRequest | None = None) -> RequestContext:
    context = RequestContext(
        ip_address=client_ip(request, get_settings()),
        user_agent=request.headers.get("user-agent", ""),
        headers=dict(request.headers),
    )
    if payload is not None:
        context = context.model_copy(
            update=payload.model_dump(
                include={"screen_resolution", "timezone", "color_depth", "pixel_ratio", "touch_support"}
            )
        )
    return context


@router.post("/{contract_id}/signers/{signer_id}/session", response_model=SessionStartResult)
async def start_session_endpoint(
    contract_id: str,
    signer_id: str,
    payload: SessionStartRequest,
    request: Request,
    token: str = Depends(get_signing_token),
    geo_resolver: GeoResolver = Depends(geo_resolver_dependency),
    session: AsyncSession = Depends(get_db),
) -> SessionStartResult:
    outcome = await evidence_service.start_session(
        session,
        contract_id,
        signer_id,
        request_context(request, payload),
        token=token,
        geo_resolver=geo_resolver,
    )
    await commit(session)
    return outcome.result


@router.post("/{contract_id}/signers/{signer_id}/evidence", response_model=EvidenceAck)
async def collect_evidence_endpoint(
    contract_id: str,
    signer_id: str,
    payload: EvidencePayload,
    token: str = Depends(get_signing_token),
    session: AsyncSession = Depends(get_db),
) -> EvidenceAck:
    ack = await evidence_service.collect_evidence(session, contract_id, signer_id, payload, token=token)
    await commit(session)
    return ack


@router.post("/{contract_id}/signers/{signer_id}/signature", response_model=SignatureResult)
async def submit_signature_endpoint(
    contract_id: str,
    signer_id: str,
    payload: SignatureSubmission,
    request: Request,
    token: str = Depends(get_signing_token),
    session: AsyncSession = Depends(get_db),
) -> SignatureResult:
    outcome = await signing_service.process_signature(
        session,
        contract_id,
        signer_id,
        payload,
        request_context(request),
        token=token,
    )
    await commit(session)
    return SignatureResult(
        signer=SignerRead.model_validate(outcome.signer),
        contract_status=outcome.contract.status,
        progress=signing_service.signing_progress(outcome.contract),
        certificate=outcome.certificate,
    )


@router.post("/{contract_id}/signers/{signer_id}/decline", response_model=ContractRead)
async def decline_endpoint(
    contract_id: str,
    signer_id: str,
    payload: DeclineRequest,
    request: Request,
    token: str = Depends(get_signing_token),
    session: AsyncSession = Depends(get_db),
) -> ContractRead:
    contract = await signing_service.decline_signature(
        session,
        contract_id,
        signer_id,
        payload.reason,
        token=token,
        context=request_context(request),
    )
    await commit(session)
    return ContractRead.model_validate(contract)


@router.post("/certificates/verify", response_model=CertificateVerification)
async def verify_certificate_endpoint(certificate: Certificate) -> CertificateVerification:
    return integrity_service.verify_certificate(certificate)
