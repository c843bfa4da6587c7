from esign_engine.services import (
    audit_trail,
    contract_repository,
    contract_state,
    evidence_service,
    integrity_service,
    outbox_service,
    signing_service,
    template_rendering,
    template_service,
)

__all__ = [
    "audit_trail",
    "contract_repository",
    "contract_state",
    "evidence_service",
    "integrity_service",
    "outbox_service",
    "signing_service",
    "template_rendering",
    "template_service",
]
