from esign_engine.schemas.common import Actor, ErrorBody
from esign_engine.schemas.contract import (
    Certificate,
    ContractCollection,
    ContractDetail,
    ContractInitiate,
    ContractRead,
    ContractSummary,
    EvidencePackage,
    SignatureSubmission,
    SigningReference,
    VerificationResult,
    WebhookOutcome,
)
from esign_engine.schemas.evidence import EvidencePayload, RequestContext, SessionStartRequest, SessionStartResult
from esign_engine.schemas.template import TemplateCreate, TemplateRead, TemplateSummary, TemplateUpdate

__all__ = [
    "Actor",
    "Certificate",
    "ContractCollection",
    "ContractDetail",
    "ContractInitiate",
    "ContractRead",
    "ContractSummary",
    "ErrorBody",
    "EvidencePackage",
    "EvidencePayload",
    "RequestContext",
    "SessionStartRequest",
    "SessionStartResult",
    "SignatureSubmission",
    "SigningReference",
    "TemplateCreate",
    "TemplateRead",
    "TemplateSummary",
    "TemplateUpdate",
    "VerificationResult",
    "WebhookOutcome",
]
