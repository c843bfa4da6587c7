from __future__ import annotations

from esign_engine.models.contract import SignedContract
from esign_engine.schemas.contract import AuditEvent


def build_audit_trail(contract: SignedContract) -> list[AuditEvent]:
    """Chronological event list derived from a contract's persisted state."""
    events: list[AuditEvent] = [
        AuditEvent(
            timestamp=contract.created_at,
            event="contract_created",
            actor=contract.created_by_name or contract.created_by or "system",
            details={"template_id": contract.template_id, "template_version": contract.template_version},
        )
    ]
    if contract.sent_at:
        events.append(
            AuditEvent(
                timestamp=contract.sent_at,
                event="contract_sent",
                actor="system",
                details={
                    "signer_count": len(contract.signers),
                    "provider": contract.integration_provider.value,
                },
            )
        )
    if contract.first_opened_at:
        events.append(AuditEvent(timestamp=contract.first_opened_at, event="first_opened", actor="signer"))

    for signer in contract.signers:
        logged_actions = set()
        for entry in signer.access_log:
            logged_actions.add(entry.action)
            events.append(
                AuditEvent(
                    timestamp=entry.occurred_at,
                    event=entry.action,
                    actor=signer.full_name,
                    signer_id=signer.signer_id,
                    details={
                        "email": signer.email,
                        "ip_address": entry.ip_address,
                        "user_agent": entry.user_agent,
                        **(entry.details or {}),
                    },
                )
            )
        # Signatures reconciled from a provider never pass through a native session.
        if signer.signed_at and "signature_completed" not in logged_actions:
            events.append(
                AuditEvent(
                    timestamp=signer.signed_at,
                    event="signature_completed",
                    actor=signer.full_name,
                    signer_id=signer.signer_id,
                    details={
                        "email": signer.email,
                        "signature_type": (signer.signature or {}).get("type"),
                        "consents": len(signer.consents or []),
                    },
                )
            )
        if signer.declined_at and "signature_declined" not in logged_actions:
            events.append(
                AuditEvent(
                    timestamp=signer.declined_at,
                    event="signature_declined",
                    actor=signer.full_name,
                    signer_id=signer.signer_id,
                    details={"email": signer.email, "reason": signer.decline_reason},
                )
            )

    if contract.completed_at:
        events.append(
            AuditEvent(
                timestamp=contract.completed_at,
                event="contract_completed",
                actor="system",
                details={"final_hash": contract.final_hash},
            )
        )
    if contract.voided_at:
        events.append(
            AuditEvent(
                timestamp=contract.voided_at,
                event="contract_voided",
                actor=contract.voided_by_name or contract.voided_by or "system",
                details={"reason": contract.void_reason},
            )
        )

    events.sort(key=lambda event: event.timestamp)
    return events
