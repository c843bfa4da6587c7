"""
Document hashing, sealing, and the derived completion artifacts.

Two hashes are kept per contract: ``original_hash`` over the rendered content
at creation, and ``final_hash`` over the fully-signed content (rendered text
plus the ordered signature manifest). The final hash is written exactly once,
at the transition into ``fully_signed``.
"""

from __future__ import annotations

import hashlib
import io
import json
import zipfile
from typing import Any, Mapping

from esign_engine.core import clock
from esign_engine.core.config import SUPPORTED_HASH_ALGORITHMS
from esign_engine.core.errors import PreconditionFailed
from esign_engine.core.logging import get_logger
from esign_engine.models.contract import SignedContract, SignerStatus
from esign_engine.schemas.contract import (
    Certificate,
    CertificateSigner,
    CertificateVerification,
    ComplianceChecks,
    ConsentRecord,
    EvidencePackage,
    VerificationResult,
)
from esign_engine.services.audit_trail import build_audit_trail
from esign_engine.services.contract_state import SEALED_STATUSES

logger = get_logger(__name__)

ESIGN_CONSENT_ID = "electronic_signature_consent"


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_hash(content: str | bytes, algorithm: str = "SHA-256") -> str:
    try:
        name = SUPPORTED_HASH_ALGORITHMS[algorithm.upper()]
    except KeyError as exc:
        raise PreconditionFailed(f"Unsupported hash algorithm '{algorithm}'", {"algorithm": algorithm}) from exc
    if isinstance(content, str):
        content = content.replace("\r\n", "\n").encode("utf-8")
    return hashlib.new(name, content).hexdigest()


def signature_manifest(contract: SignedContract) -> list[dict]:
    manifest = []
    for signer in contract.signers:
        signature = signer.signature or {}
        payload = signature.get("data") or ""
        manifest.append(
            {
                "signer_id": signer.signer_id,
                "email": signer.email.lower(),
                "signed_at": signer.signed_at.isoformat() if signer.signed_at else None,
                "signature_type": signature.get("type"),
                "signature_hash": hashlib.sha256(payload.encode("utf-8")).hexdigest() if payload else None,
            }
        )
    return manifest


def fully_signed_content(contract: SignedContract) -> str:
    return canonical_json({"content": contract.content_original, "signatures": signature_manifest(contract)})


def seal_document(contract: SignedContract) -> str:
    """Freeze ``final_hash`` for a fully signed contract. Never recomputes an existing seal."""
    if contract.final_hash:
        return contract.final_hash
    if not contract.signers or any(signer.status != SignerStatus.SIGNED for signer in contract.signers):
        raise PreconditionFailed("Only a fully signed contract can be sealed", {"contract_id": contract.id})
    contract.final_hash = compute_hash(fully_signed_content(contract), contract.hash_algorithm)
    if contract.content_final is None:
        contract.content_final = contract.content_original
    logger.info("contract.sealed", contract_id=contract.id, algorithm=contract.hash_algorithm)
    return contract.final_hash


def verify_integrity(contract: SignedContract, supplied_hash: str) -> VerificationResult:
    if contract.final_hash:
        expected, against = contract.final_hash, "final_hash"
    else:
        expected, against = contract.original_hash, "original_hash"
    return VerificationResult(
        contract_id=contract.id,
        valid=bool(expected) and supplied_hash.strip().lower() == expected.lower(),
        compared_against=against,
        expected_hash=expected,
        supplied_hash=supplied_hash,
        hash_algorithm=contract.hash_algorithm,
        verified_at=clock.utcnow(),
    )


def _require_sealed(contract: SignedContract, artifact: str) -> None:
    if contract.status not in SEALED_STATUSES or not contract.final_hash:
        raise PreconditionFailed(
            f"{artifact} is only available once the contract is fully signed",
            {"contract_id": contract.id, "status": contract.status.value},
        )


def _consents(signer) -> list[ConsentRecord]:
    return [ConsentRecord.model_validate(item) for item in signer.consents or []]


def certificate_body_hash(body: Mapping[str, Any]) -> str:
    unsigned = {key: value for key, value in body.items() if key != "certificate_hash"}
    return hashlib.sha256(canonical_json(unsigned).encode("utf-8")).hexdigest()


def generate_certificate(contract: SignedContract, issuer: str) -> Certificate:
    _require_sealed(contract, "Certificate of completion")
    issued_at = clock.utcnow()
    manifest = {item["signer_id"]: item for item in signature_manifest(contract)}

    signers = []
    for signer in contract.signers:
        evidence = signer.evidence or {}
        signers.append(
            CertificateSigner(
                signer_id=signer.signer_id,
                full_name=signer.full_name,
                email=signer.email,
                signer_type=signer.signer_type.value,
                status=signer.status.value,
                signed_at=signer.signed_at,
                ip_address=evidence.get("ip_address"),
                device=evidence.get("device"),
                location=evidence.get("location"),
                session_id=evidence.get("session_id"),
                signature_type=manifest[signer.signer_id]["signature_type"],
                signature_hash=manifest[signer.signer_id]["signature_hash"],
                consents=_consents(signer),
            )
        )

    certificate = Certificate(
        certificate_id=f"cert_{contract.id}_{int(issued_at.timestamp())}",
        issuer=issuer,
        issued_at=issued_at,
        contract_id=contract.id,
        contract_title=contract.title,
        template_id=contract.template_id,
        template_version=contract.template_version,
        status=contract.status,
        created_at=contract.created_at,
        sent_at=contract.sent_at,
        completed_at=contract.completed_at,
        original_hash=contract.original_hash,
        final_hash=contract.final_hash,
        hash_algorithm=contract.hash_algorithm,
        jurisdiction=contract.jurisdiction,
        governing_law=contract.governing_law,
        signers=signers,
    )
    certificate.certificate_hash = certificate_body_hash(certificate.model_dump(mode="json"))
    logger.info("certificate.generated", contract_id=contract.id, certificate_id=certificate.certificate_id)
    return certificate


def verify_certificate(certificate: Certificate | Mapping[str, Any]) -> CertificateVerification:
    """Recompute the certificate hash from the certificate alone."""
    body = certificate.model_dump(mode="json") if isinstance(certificate, Certificate) else dict(certificate)
    expected = certificate_body_hash(body)
    supplied = body.get("certificate_hash")
    return CertificateVerification(
        certificate_id=str(body.get("certificate_id")),
        valid=supplied == expected,
        expected_hash=expected,
        supplied_hash=supplied,
    )


def _signed_signers(contract: SignedContract):
    return [signer for signer in contract.signers if signer.status == SignerStatus.SIGNED]


def compliance_checks(contract: SignedContract) -> ComplianceChecks:
    def has_core_evidence(signer) -> bool:
        evidence = signer.evidence or {}
        return bool(evidence.get("ip_address") and evidence.get("session_started_at"))

    def has_signature(signer) -> bool:
        return bool((signer.signature or {}).get("data"))

    def has_esign_consent(signer) -> bool:
        return any(item.consent_id == ESIGN_CONSENT_ID and item.accepted for item in _consents(signer))

    signed = _signed_signers(contract)
    return ComplianceChecks(
        eidas=bool(contract.original_hash) and all(has_core_evidence(s) and has_signature(s) for s in signed),
        esign_act=all(has_esign_consent(s) and has_signature(s) and has_core_evidence(s) for s in signed),
        ueta=bool(contract.original_hash) and all(has_signature(s) and has_core_evidence(s) for s in signed),
    )


def compliance_issues(contract: SignedContract) -> list[str]:
    issues = []
    unsigned = [signer.email for signer in contract.signers if signer.status != SignerStatus.SIGNED]
    if unsigned:
        issues.append(f"missing_signatures: {', '.join(unsigned)}")
    incomplete = [signer.email for signer in _signed_signers(contract) if not (signer.evidence or {}).get("ip_address")]
    if incomplete:
        issues.append(f"incomplete_evidence: {', '.join(incomplete)}")
    if not contract.original_hash:
        issues.append("missing_hash: document hash is missing")
    no_consents = [signer.email for signer in _signed_signers(contract) if not signer.consents]
    if no_consents:
        issues.append(f"missing_consents: {', '.join(no_consents)}")
    return issues


def _signer_evidence_entry(signer) -> dict:
    evidence = signer.evidence or {}
    signature = signer.signature or {}
    verification = signer.verification or {}
    payload = signature.get("data") or ""
    return {
        "signer_id": signer.signer_id,
        "identity": {
            "full_name": signer.full_name,
            "email": signer.email,
            "phone": signer.phone,
            "title": signer.title,
            "company": signer.company,
            "signer_type": signer.signer_type.value,
        },
        "status": signer.status.value,
        "signed_at": signer.signed_at.isoformat() if signer.signed_at else None,
        "evidence": {
            "ip_address": evidence.get("ip_address"),
            "user_agent": evidence.get("user_agent"),
            "device_fingerprint": evidence.get("device_fingerprint"),
            "device": evidence.get("device"),
            "location": evidence.get("location"),
            "session_id": evidence.get("session_id"),
            "session_started_at": evidence.get("session_started_at"),
            "session_duration": evidence.get("session_duration"),
            "document_hash": evidence.get("document_hash"),
            "document_version": evidence.get("document_version"),
            "mouse_samples": len(evidence.get("mouse_movements") or []),
            "keystroke_samples": len(evidence.get("keystroke_pattern") or []),
            "scroll_depth": evidence.get("scroll_depth"),
        },
        "signature": {
            "type": signature.get("type"),
            "payload_hash": hashlib.sha256(payload.encode("utf-8")).hexdigest() if payload else None,
            "has_cryptographic": bool(signature.get("cryptographic")),
        },
        "consents": [item.model_dump(mode="json") for item in _consents(signer)],
        "verification": {
            "id_document_verified": bool((verification.get("id_document") or {}).get("verified")),
            "selfie_verified": bool((verification.get("selfie") or {}).get("verified")),
            "biometric_captured": bool(verification.get("biometric")),
        },
        "access_log": [
            {
                "action": entry.action,
                "occurred_at": entry.occurred_at.isoformat(),
                "ip_address": entry.ip_address,
                "user_agent": entry.user_agent,
                "details": entry.details or {},
            }
            for entry in signer.access_log
        ],
    }


def build_evidence_package(contract: SignedContract) -> EvidencePackage:
    _require_sealed(contract, "Evidence package")
    signers = [_signer_evidence_entry(signer) for signer in contract.signers]
    audit_trail = build_audit_trail(contract)
    summary = {
        "title": contract.title,
        "template_id": contract.template_id,
        "template_version": contract.template_version,
        "subscriber_id": contract.subscriber_id,
        "language": contract.language,
        "currency": contract.currency,
        "status": contract.status.value,
        "created_at": contract.created_at.isoformat(),
        "completed_at": contract.completed_at.isoformat() if contract.completed_at else None,
        "original_hash": contract.original_hash,
        "final_hash": contract.final_hash,
        "hash_algorithm": contract.hash_algorithm,
    }
    package = EvidencePackage(
        contract_id=contract.id,
        generated_at=clock.utcnow(),
        contract=summary,
        signers=signers,
        audit_trail=audit_trail,
        compliance=compliance_checks(contract),
        compliance_issues=compliance_issues(contract),
        jurisdiction=contract.jurisdiction,
        governing_law=contract.governing_law,
    )
    package.evidence_hash = hashlib.sha256(
        canonical_json(
            {
                "contract_id": contract.id,
                "signers": signers,
                "audit_trail": [event.model_dump(mode="json") for event in audit_trail],
            }
        ).encode("utf-8")
    ).hexdigest()
    return package


def _readme(package: EvidencePackage, certificate: Certificate) -> str:
    yes_no = {True: "Yes", False: "No"}
    return (
        "EVIDENCE PACKAGE\n"
        "================\n\n"
        f"Contract ID: {package.contract_id}\n"
        f"Generated: {package.generated_at.isoformat()}\n"
        f"Certificate ID: {certificate.certificate_id}\n\n"
        "Contents:\n"
        "  evidence_package.json  complete evidence data\n"
        "  certificate.json       certificate of completion\n"
        "  contract_original.txt  rendered contract text\n\n"
        f"Evidence hash (SHA-256): {package.evidence_hash}\n"
        f"Final document hash ({package.contract['hash_algorithm']}): {package.contract['final_hash']}\n"
        f"Certificate hash (SHA-256): {certificate.certificate_hash}\n\n"
        f"eIDAS: {yes_no[package.compliance.eidas]}\n"
        f"ESIGN Act: {yes_no[package.compliance.esign_act]}\n"
        f"UETA: {yes_no[package.compliance.ueta]}\n"
        f"Jurisdiction: {package.jurisdiction or 'unspecified'}\n"
    )


def build_export_archive(contract: SignedContract, issuer: str) -> bytes:
    package = build_evidence_package(contract)
    certificate = generate_certificate(contract, issuer)
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("evidence_package.json", package.model_dump_json(indent=2))
        archive.writestr("certificate.json", certificate.model_dump_json(indent=2))
        archive.writestr("contract_original.txt", contract.content_original)
        archive.writestr("README.txt", _readme(package, certificate))
    logger.info("evidence.exported", contract_id=contract.id, size=buffer.tell())
    return buffer.getvalue()
