"""
Domain error taxonomy for the signing engine.

Every error carries a stable ``kind`` tag so callers (HTTP handlers, the CLI,
tests) can tell exactly which rule was violated without parsing messages.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional


class SigningError(Exception):
    """Base class for all domain errors raised by the signing services."""

    kind = "signing_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class NotFound(SigningError):
    kind = "not_found"

    def __init__(self, entity: str, identifier: str):
        super().__init__(f"{entity} '{identifier}' not found", {"entity": entity, "id": identifier})
        self.entity = entity
        self.identifier = identifier


class SessionNotFound(NotFound):
    kind = "session_not_found"

    def __init__(self, contract_id: str, signer_id: str):
        SigningError.__init__(
            self,
            f"No signing session started for signer '{signer_id}'",
            {"contract_id": contract_id, "signer_id": signer_id},
        )
        self.entity = "session"
        self.identifier = signer_id


@dataclass(slots=True)
class FieldViolation:
    field: str
    message: str


class ValidationError(SigningError):
    kind = "validation_error"

    def __init__(self, violations: List[FieldViolation], message: str = "Validation failed"):
        super().__init__(message, {"violations": [asdict(v) for v in violations]})
        self.violations = violations

    @property
    def fields(self) -> List[str]:
        return [violation.field for violation in self.violations]


class PreconditionFailed(SigningError):
    kind = "precondition_failed"


class TemplateInUse(PreconditionFailed):
    kind = "in_use"


class InvalidSigningToken(PreconditionFailed):
    kind = "invalid_signing_token"

    def __init__(self, contract_id: str, signer_id: str):
        SigningError.__init__(
            self,
            "Signing reference is invalid or has been replaced",
            {"contract_id": contract_id, "signer_id": signer_id},
        )


class AlreadyTerminal(SigningError):
    kind = "already_terminal"


class ConsentRequired(SigningError):
    kind = "consent_required"

    def __init__(self, consent_id: str, label: Optional[str] = None):
        super().__init__(
            f"Required consent missing: {label or consent_id}",
            {"consent_id": consent_id, "label": label},
        )
        self.consent_id = consent_id
        self.label = label


class ContractExpired(SigningError):
    kind = "expired"

    def __init__(self, contract_id: str):
        super().__init__(f"Contract '{contract_id}' has expired", {"contract_id": contract_id})
        self.contract_id = contract_id


class ViewLimitExceeded(SigningError):
    kind = "view_limit_exceeded"


class ProviderError(SigningError):
    """Vendor failure, always tagged with the provider that produced it."""

    kind = "provider_error"

    def __init__(
        self,
        message: str,
        provider: str,
        error_code: Optional[str] = None,
        provider_response: Optional[Dict[str, Any]] = None,
        external_id: Optional[str] = None,
    ):
        super().__init__(
            message,
            {
                "provider": provider,
                "error_code": error_code,
                "external_id": external_id,
            },
        )
        self.provider = provider
        self.error_code = error_code
        self.provider_response = provider_response or {}
        self.external_id = external_id


class ConcurrentModification(SigningError):
    kind = "conflict"


HTTP_STATUS_BY_KIND = {
    NotFound.kind: 404,
    SessionNotFound.kind: 404,
    ValidationError.kind: 422,
    PreconditionFailed.kind: 412,
    TemplateInUse.kind: 412,
    InvalidSigningToken.kind: 403,
    ConsentRequired.kind: 422,
    AlreadyTerminal.kind: 409,
    ConcurrentModification.kind: 409,
    ContractExpired.kind: 410,
    ViewLimitExceeded.kind: 429,
    ProviderError.kind: 502,
}
