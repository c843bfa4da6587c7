from esign_engine.models.contract import (
    ContractSigner,
    ContractStatus,
    IntegrationProvider,
    SignedContract,
    SignerAccessLog,
    SignerStatus,
    SignerType,
)
from esign_engine.models.event import EventOutbox, EventStatus, NotificationKind
from esign_engine.models.template import ContractTemplate, TemplateCategory, TemplateStatus

__all__ = [
    "ContractSigner",
    "ContractStatus",
    "ContractTemplate",
    "EventOutbox",
    "EventStatus",
    "IntegrationProvider",
    "NotificationKind",
    "SignedContract",
    "SignerAccessLog",
    "SignerStatus",
    "SignerType",
    "TemplateCategory",
    "TemplateStatus",
]
