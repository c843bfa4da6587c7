"""
Evidence collection for signing sessions.

A session is opened per signer, capturing the network origin, a device
classification and fingerprint, an optional geolocation, and an entry in the
signer's access log. Later calls merge interaction telemetry into the same
evidence record until the signer reaches a terminal status.
"""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import json
import secrets
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from esign_engine.core import clock
from esign_engine.core.errors import (
    AlreadyTerminal,
    InvalidSigningToken,
    NotFound,
    SessionNotFound,
    ViewLimitExceeded,
)
from esign_engine.core.logging import get_logger
from esign_engine.models.contract import ContractSigner, SignedContract, SignerAccessLog, SignerStatus
from esign_engine.schemas.evidence import (
    DeviceInfo,
    DeviceType,
    EvidenceAck,
    EvidencePayload,
    GeoLocation,
    LegalBasis,
    RequestContext,
    SessionStartResult,
    SignerEvidence,
)
from esign_engine.schemas.template import SigningRequirements
from esign_engine.services.contract_repository import flush_changes, get_contract_for_update
from esign_engine.services.contract_state import (
    CLOSED_STATUSES,
    SIGNER_TERMINAL_STATUSES,
    advance_signer,
    touch,
)

logger = get_logger(__name__)

GeoResolver = Callable[[str], Awaitable[Optional[GeoLocation]]]

FINGERPRINT_HEADERS = (
    "user-agent",
    "accept-language",
    "accept-encoding",
    "accept-charset",
    "sec-ch-ua-platform",
    "sec-ch-ua-mobile",
)


async def no_geolocation(ip_address: str) -> Optional[GeoLocation]:  # noqa: ARG001
    """Resolver used when lookups are switched off."""
    return None


@dataclass(slots=True)
class SessionOutcome:
    result: SessionStartResult
    signer: ContractSigner


def is_public_address(ip_address: str | None) -> bool:
    if not ip_address:
        return False
    try:
        address = ipaddress.ip_address(ip_address.strip())
    except ValueError:
        return False
    return not (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


def classify_device(context: RequestContext) -> DeviceInfo:
    ua = (context.user_agent or "").lower()
    mobile_hint = (context.header("sec-ch-ua-mobile") or "").strip()
    platform_hint = (context.header("sec-ch-ua-platform") or "").strip().strip('"')

    if "ipad" in ua or "tablet" in ua or ("android" in ua and "mobile" not in ua):
        device_type = DeviceType.TABLET
    elif mobile_hint == "?1" or "mobile" in ua or "iphone" in ua or "android" in ua:
        device_type = DeviceType.MOBILE
    else:
        device_type = DeviceType.DESKTOP

    if platform_hint:
        os_name = platform_hint
    elif "windows" in ua:
        os_name = "Windows"
    elif "android" in ua:
        os_name = "Android"
    elif "iphone" in ua or "ipad" in ua or "ios" in ua:
        os_name = "iOS"
    elif "mac" in ua:
        os_name = "macOS"
    elif "linux" in ua:
        os_name = "Linux"
    else:
        os_name = "Unknown"

    if "edg" in ua:
        browser = "Edge"
    elif "opr" in ua or "opera" in ua:
        browser = "Opera"
    elif "firefox" in ua:
        browser = "Firefox"
    elif "chrome" in ua:
        browser = "Chrome"
    elif "safari" in ua:
        browser = "Safari"
    else:
        browser = "Unknown"

    return DeviceInfo(
        type=device_type,
        os=os_name,
        browser=browser,
        screen_resolution=context.screen_resolution,
        color_depth=context.color_depth,
        touch_support=context.touch_support,
    )


def device_fingerprint(context: RequestContext) -> str:
    material = {name: context.header(name) for name in FINGERPRINT_HEADERS}
    material["user-agent"] = material["user-agent"] or context.user_agent
    material.update(
        {
            "screen-resolution": context.screen_resolution,
            "timezone": context.timezone,
            "color-depth": context.color_depth,
            "pixel-ratio": context.pixel_ratio,
        }
    )
    canonical = json.dumps(material, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_signing_token(contract: SignedContract, signer: ContractSigner, token: str) -> None:
    """Raise ``InvalidSigningToken`` unless ``token`` is the signer's current signing reference."""
    if signer.signing_token_hash is None or not hmac.compare_digest(hash_token(token), signer.signing_token_hash):
        logger.warning("signer.token.rejected", contract_id=contract.id, signer_id=signer.signer_id)
        raise InvalidSigningToken(contract.id, signer.signer_id)


def record_access(
    signer: ContractSigner,
    action: str,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
    details: dict | None = None,
) -> SignerAccessLog:
    evidence = signer.evidence or {}
    entry = SignerAccessLog(
        action=action,
        occurred_at=clock.utcnow(),
        ip_address=ip_address or evidence.get("ip_address"),
        user_agent=user_agent or evidence.get("user_agent"),
        details=details or {},
    )
    signer.access_log.append(entry)
    return entry


def _require_signer(contract: SignedContract, signer_id: str) -> ContractSigner:
    signer = contract.get_signer(signer_id)
    if signer is None:
        raise NotFound("signer", signer_id)
    return signer


def _session_result(contract: SignedContract, signer: ContractSigner, session_id: str, resumed: bool) -> SessionStartResult:
    return SessionStartResult(
        session_id=session_id,
        contract_id=contract.id,
        signer_id=signer.signer_id,
        resumed=resumed,
        title=contract.title,
        content=contract.content_original,
        content_html=contract.content_html,
        signing_requirements=SigningRequirements.model_validate(contract.signing_requirements or {}),
        expires_at=contract.expires_at,
    )


async def start_session(
    session: AsyncSession,
    contract_id: str,
    signer_id: str,
    context: RequestContext,
    *,
    token: str | None = None,
    geo_resolver: GeoResolver = no_geolocation,
) -> SessionOutcome:
    contract = await get_contract_for_update(session, contract_id)
    if contract.status in CLOSED_STATUSES:
        raise AlreadyTerminal(
            f"Contract is {contract.status.value}; no further signing sessions",
            {"contract_id": contract.id, "status": contract.status.value},
        )

    signer = _require_signer(contract, signer_id)
    if token is not None:
        verify_signing_token(contract, signer, token)
    if signer.status in SIGNER_TERMINAL_STATUSES:
        raise AlreadyTerminal(
            f"Signer has already {signer.status.value}",
            {"contract_id": contract.id, "signer_id": signer_id, "status": signer.status.value},
        )

    # Check and increment happen in the same versioned write.
    if contract.current_views + 1 > contract.max_views:
        raise ViewLimitExceeded(
            "Maximum view limit exceeded",
            {"contract_id": contract.id, "max_views": contract.max_views, "current_views": contract.current_views},
        )
    contract.current_views += 1

    now = clock.utcnow()
    existing = SignerEvidence.model_validate(signer.evidence) if signer.evidence else None
    if existing is not None and signer.status == SignerStatus.OPENED:
        existing.page_views += 1
        signer.evidence = existing.model_dump(mode="json")
        record_access(
            signer,
            "session_resumed",
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details={"session_id": existing.session_id},
        )
        touch(contract, now)
        await flush_changes(session, contract)
        logger.info("signer.session.resumed", contract_id=contract.id, signer_id=signer_id)
        return SessionOutcome(_session_result(contract, signer, existing.session_id, True), signer)

    location = GeoLocation()
    if is_public_address(context.ip_address):
        resolved = await geo_resolver(context.ip_address)
        if resolved is not None:
            location = resolved.model_copy(
                update={"legal_basis": LegalBasis.LEGITIMATE_INTEREST, "consent_given": False}
            )

    evidence = SignerEvidence(
        session_id=secrets.token_hex(16),
        session_started_at=now,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        device_fingerprint=device_fingerprint(context),
        device=classify_device(context),
        location=location,
        document_hash=contract.original_hash,
        document_version=contract.template_version,
    )
    signer.evidence = evidence.model_dump(mode="json")
    record_access(
        signer,
        "session_started",
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        details={"session_id": evidence.session_id},
    )

    advance_signer(signer, SignerStatus.OPENED, now)
    if contract.first_opened_at is None:
        contract.first_opened_at = now
    touch(contract, now)
    await flush_changes(session, contract)

    logger.info(
        "signer.session.started",
        contract_id=contract.id,
        signer_id=signer_id,
        device_type=evidence.device.type.value,
        views=contract.current_views,
    )
    return SessionOutcome(_session_result(contract, signer, evidence.session_id, False), signer)


async def collect_evidence(
    session: AsyncSession,
    contract_id: str,
    signer_id: str,
    payload: EvidencePayload,
    *,
    token: str | None = None,
) -> EvidenceAck:
    contract = await get_contract_for_update(session, contract_id)
    signer = _require_signer(contract, signer_id)
    if token is not None:
        verify_signing_token(contract, signer, token)
    if signer.status in SIGNER_TERMINAL_STATUSES:
        raise AlreadyTerminal(
            f"Evidence is frozen once the signer has {signer.status.value}",
            {"contract_id": contract.id, "signer_id": signer_id, "status": signer.status.value},
        )
    if contract.status in CLOSED_STATUSES:
        raise AlreadyTerminal(
            f"Evidence is frozen once the contract is {contract.status.value}",
            {"contract_id": contract.id, "signer_id": signer_id, "contract_status": contract.status.value},
        )
    if not signer.evidence:
        raise SessionNotFound(contract.id, signer_id)

    evidence = SignerEvidence.model_validate(signer.evidence)
    evidence.mouse_movements.extend(payload.mouse_movements)
    evidence.keystroke_pattern.extend(payload.keystroke_pattern)
    if payload.scroll_depth is not None:
        evidence.scroll_depth = max(evidence.scroll_depth, payload.scroll_depth)
    if payload.time_on_page is not None:
        evidence.time_on_page = payload.time_on_page
        evidence.session_duration = payload.time_on_page
    if payload.geolocation_consent is not None:
        evidence.location.consent_given = payload.geolocation_consent
        evidence.location.legal_basis = (
            LegalBasis.CONSENT if payload.geolocation_consent else LegalBasis.LEGITIMATE_INTEREST
        )
    signer.evidence = evidence.model_dump(mode="json")

    if payload.biometric:
        verification = dict(signer.verification or {})
        verification["biometric"] = {**verification.get("biometric", {}), **payload.biometric}
        signer.verification = verification

    record_access(
        signer,
        "evidence_collected",
        details={
            "mouse_movements": len(payload.mouse_movements),
            "keystrokes": len(payload.keystroke_pattern),
            "scroll_depth": payload.scroll_depth,
            "time_on_page": payload.time_on_page,
        },
    )
    touch(contract, clock.utcnow())
    await flush_changes(session, contract)
    logger.info("signer.evidence.collected", contract_id=contract.id, signer_id=signer_id)

    return EvidenceAck(
        contract_id=contract.id,
        signer_id=signer_id,
        session_id=evidence.session_id,
        mouse_samples=len(evidence.mouse_movements),
        keystroke_samples=len(evidence.keystroke_pattern),
        scroll_depth=evidence.scroll_depth,
        time_on_page=evidence.time_on_page,
    )
