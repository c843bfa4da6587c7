"""
Native provider: a passthrough to the signing workflow engine.

Native contracts use their own id as the external id. Native webhooks are JSON
snapshots signed with HMAC-SHA256 over the raw body using the service secret.
"""

import hmac
import logging
from typing import Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from esign_engine.core.config import Settings, get_settings
from esign_engine.core.errors import ProviderError
from esign_engine.models.contract import ContractStatus, IntegrationProvider, SignedContract, SignerStatus
from esign_engine.schemas.common import Actor
from esign_engine.services.contract_repository import get_contract
from esign_engine.services.signing_service import send_contract

from .base import (
    ProviderStatusSnapshot,
    SendReceipt,
    SignatureProvider,
    SignerSnapshot,
    hmac_digest,
    load_json_payload,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = Actor(id="system", name="Signing Engine")


def _contract_status(value: Optional[str]) -> Optional[ContractStatus]:
    try:
        return ContractStatus(value) if value else None
    except ValueError:
        return None


def _signer_status(value: Optional[str]) -> Optional[SignerStatus]:
    try:
        return SignerStatus(value) if value else None
    except ValueError:
        return None


class NativeAdapter(SignatureProvider):
    """Provider backed by this engine's own workflow."""

    provider = IntegrationProvider.NATIVE

    def __init__(self, session: Optional[AsyncSession] = None, settings: Optional[Settings] = None, **config):
        self.session = session
        self.settings = settings or get_settings()
        self.config = config

    def _require_session(self) -> AsyncSession:
        if self.session is None:
            raise ProviderError("Native provider needs a database session", provider=self.provider.value, error_code="no_session")
        return self.session

    async def send(
        self,
        contract: SignedContract,
        *,
        message: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> SendReceipt:
        issued = await send_contract(
            self._require_session(),
            contract.id,
            actor or SYSTEM_ACTOR,
            message=message,
            settings=self.settings,
        )
        return SendReceipt(
            external_id=issued.contract.id,
            status=issued.contract.status,
            provider=self.provider,
            signing_references=issued.references,
        )

    async def get_status(self, external_id: str) -> ProviderStatusSnapshot:
        contract = await get_contract(self._require_session(), external_id, apply_expiry=False)
        return ProviderStatusSnapshot(
            provider=self.provider,
            external_id=contract.id,
            status=contract.status,
            raw_status=contract.status.value,
            signers=[
                SignerSnapshot(
                    email=signer.email,
                    status=signer.status,
                    raw_status=signer.status.value,
                    signed_at=signer.signed_at,
                    declined_at=signer.declined_at,
                    decline_reason=signer.decline_reason,
                )
                for signer in contract.signers
            ],
            completed_at=contract.completed_at,
            voided_at=contract.voided_at,
        )

    def verify_webhook(self, payload: bytes, signature: Optional[str], headers: Optional[Mapping[str, str]] = None) -> None:
        expected = hmac_digest(self.settings.secret_key, payload)
        if not signature or not hmac.compare_digest(expected, signature.strip().lower()):
            logger.warning("Rejected native webhook with an invalid signature")
            raise ProviderError("Invalid webhook signature", provider=self.provider.value, error_code="webhook_signature_invalid")

    def parse_webhook(self, payload: bytes) -> ProviderStatusSnapshot:
        data = load_json_payload(self.provider, payload)
        external_id = data.get("contract_id")
        if not external_id:
            raise ProviderError("Webhook has no contract_id", provider=self.provider.value, error_code="webhook_incomplete")
        return ProviderStatusSnapshot(
            provider=self.provider,
            external_id=external_id,
            status=_contract_status(data.get("status")),
            raw_status=data.get("status"),
            signers=[
                SignerSnapshot(
                    email=item.get("email", ""),
                    status=_signer_status(item.get("status")),
                    raw_status=item.get("status"),
                    signed_at=parse_timestamp(item.get("signed_at")),
                    declined_at=parse_timestamp(item.get("declined_at")),
                    decline_reason=item.get("decline_reason"),
                )
                for item in data.get("signers") or []
            ],
            completed_at=parse_timestamp(data.get("completed_at")),
            voided_at=parse_timestamp(data.get("voided_at")),
            raw=data,
        )

    async def download_final_document(self, external_id: str) -> bytes:
        contract = await get_contract(self._require_session(), external_id, apply_expiry=False)
        return (contract.content_final or contract.content_original).encode("utf-8")
