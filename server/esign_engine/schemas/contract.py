from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field

from esign_engine.models.contract import ContractStatus, IntegrationProvider, SignerStatus, SignerType
from esign_engine.schemas.common import ORMModel, Timestamped


class SignatureType(str, Enum):
    TYPED = "typed"
    DRAWN = "drawn"
    UPLOADED = "uploaded"


class SignerCreate(BaseModel):
    signer_id: str | None = Field(default=None, max_length=64)
    signer_type: SignerType = SignerType.SUBSCRIBER
    full_name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=40)
    title: str | None = Field(default=None, max_length=120)
    company: str | None = Field(default=None, max_length=255)


class ContractInitiate(BaseModel):
    template_id: str
    subscriber_id: str = Field(min_length=1, max_length=64)
    title: str | None = Field(default=None, max_length=255)
    signers: List[SignerCreate] = Field(min_length=1)
    placeholder_values: Dict[str, Any] = Field(default_factory=dict)
    expiration_days: Optional[int] = Field(default=None, ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)


class AccessLogEntry(ORMModel):
    action: str
    occurred_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ConsentRecord(BaseModel):
    consent_id: str
    label: str
    accepted: bool
    timestamp: datetime | None = None


class CryptographicSignature(BaseModel):
    algorithm: str | None = None
    public_key: str | None = None
    signature: str | None = None
    certificate: str | None = None


class SignatureInput(BaseModel):
    type: SignatureType | None = None
    data: str | None = None
    coordinates: List[Dict[str, float]] = Field(default_factory=list)
    cryptographic: CryptographicSignature | None = None


class SignatureSubmission(BaseModel):
    signature: SignatureInput | None = None
    consents: List[ConsentRecord] = Field(default_factory=list)
    identity_verification: Dict[str, Any] | None = None


class SignerRead(ORMModel):
    signer_id: str
    signer_type: SignerType
    full_name: str
    email: str
    phone: str | None = None
    title: str | None = None
    company: str | None = None
    status: SignerStatus
    sent_at: datetime | None = None
    opened_at: datetime | None = None
    signed_at: datetime | None = None
    declined_at: datetime | None = None
    expired_at: datetime | None = None
    decline_reason: str | None = None
    consents: List[ConsentRecord] = Field(default_factory=list)


class SignerDetail(SignerRead):
    evidence: Dict[str, Any] | None = None
    signature: Dict[str, Any] | None = None
    verification: Dict[str, Any] | None = None
    access_log: List[AccessLogEntry] = Field(default_factory=list)


class ContractSummary(ORMModel):
    id: str
    template_id: str
    template_version: str
    subscriber_id: str
    title: str
    status: ContractStatus
    created_at: datetime
    expires_at: datetime | None = None
    completed_at: datetime | None = None


class ContractRead(ContractSummary, Timestamped):
    language: str
    currency: str
    content_original: str
    content_html: str | None = None
    placeholder_values: Dict[str, Any]
    sent_at: datetime | None = None
    first_opened_at: datetime | None = None
    last_activity_at: datetime
    voided_at: datetime | None = None
    original_hash: str
    final_hash: str | None = None
    hash_algorithm: str
    max_views: int
    current_views: int
    integration_provider: IntegrationProvider
    external_id: str | None = None
    external_status: str | None = None
    synced_at: datetime | None = None
    jurisdiction: str | None = None
    governing_law: str | None = None
    void_reason: str | None = None
    signers: List[SignerRead]


class ContractCollection(ORMModel):
    items: List[ContractSummary]
    total: int
    page: int
    page_size: int


class SigningReference(BaseModel):
    signer_id: str
    email: str
    token: str
    url: str


class InitiateResult(BaseModel):
    contract: ContractRead
    signing_references: List[SigningReference] = Field(default_factory=list)


class SendRequest(BaseModel):
    provider: IntegrationProvider | None = None
    message: str | None = None


class SendResult(BaseModel):
    contract: ContractRead
    provider: IntegrationProvider
    signing_references: List[SigningReference] = Field(default_factory=list)
    provider_error: Dict[str, Any] | None = None


class VoidRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class DeclineRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class SigningProgress(BaseModel):
    total: int
    signed: int
    pending: int
    declined: int
    percentage: int
    is_complete: bool


class SignatureResult(BaseModel):
    signer: SignerRead
    contract_status: ContractStatus
    progress: SigningProgress
    certificate: Optional["Certificate"] = None


class ContractFilters(BaseModel):
    subscriber_id: str | None = None
    template_id: str | None = None
    statuses: List[ContractStatus] = Field(default_factory=list)
    created_from: datetime | None = None
    created_to: datetime | None = None
    signer_email: str | None = None
    search: str | None = None


class VerificationResult(BaseModel):
    contract_id: str
    valid: bool
    compared_against: str
    expected_hash: str | None
    supplied_hash: str
    hash_algorithm: str
    verified_at: datetime


class IntegrityCheck(BaseModel):
    hash: str = Field(min_length=1)


class CertificateSigner(BaseModel):
    signer_id: str
    full_name: str
    email: str
    signer_type: str
    status: str
    signed_at: datetime | None = None
    ip_address: str | None = None
    device: Dict[str, Any] | None = None
    location: Dict[str, Any] | None = None
    session_id: str | None = None
    signature_type: str | None = None
    signature_hash: str | None = None
    consents: List[ConsentRecord] = Field(default_factory=list)


class Certificate(BaseModel):
    certificate_id: str
    issuer: str
    issued_at: datetime
    contract_id: str
    contract_title: str
    template_id: str
    template_version: str
    status: ContractStatus
    created_at: datetime
    sent_at: datetime | None = None
    completed_at: datetime | None = None
    original_hash: str
    final_hash: str
    hash_algorithm: str
    jurisdiction: str | None = None
    governing_law: str | None = None
    signers: List[CertificateSigner]
    certificate_hash: str | None = None


class CertificateVerification(BaseModel):
    certificate_id: str
    valid: bool
    expected_hash: str
    supplied_hash: str | None


class AuditEvent(BaseModel):
    timestamp: datetime
    event: str
    actor: str | None = None
    signer_id: str | None = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ComplianceChecks(BaseModel):
    eidas: bool
    esign_act: bool
    ueta: bool


class EvidencePackage(BaseModel):
    contract_id: str
    generated_at: datetime
    contract: Dict[str, Any]
    signers: List[Dict[str, Any]]
    audit_trail: List[AuditEvent]
    compliance: ComplianceChecks
    compliance_issues: List[str] = Field(default_factory=list)
    jurisdiction: str | None = None
    governing_law: str | None = None
    evidence_hash: str | None = None


class WebhookOutcome(BaseModel):
    provider: IntegrationProvider
    external_id: str
    contract_id: str | None = None
    applied: bool
    duplicate: bool = False
    contract_status: ContractStatus | None = None


class ContractDetail(ContractRead):
    signers: List[SignerDetail]


SignatureResult.model_rebuild()
