"""
DocuSign E-signature Adapter

Sends contracts as DocuSign envelopes and reconciles envelope status from the
REST API or from Connect webhooks.
"""

import asyncio
import base64
import hmac
import logging
from typing import Any, Dict, List, Mapping, Optional

import aiohttp

from esign_engine.models.contract import ContractStatus, IntegrationProvider, SignedContract, SignerStatus
from esign_engine.schemas.common import Actor

from .base import (
    HttpSignatureProvider,
    ProviderStatusSnapshot,
    SendReceipt,
    SignerSnapshot,
    StatusTable,
    hmac_digest,
    load_json_payload,
    map_status,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

# Envelope and recipient statuses share one vocabulary at DocuSign.
DOCUSIGN_STATUS_MAP: StatusTable = {
    "created": (ContractStatus.DRAFT, SignerStatus.PENDING),
    "sent": (ContractStatus.SENT, SignerStatus.SENT),
    "delivered": (ContractStatus.SENT, SignerStatus.OPENED),
    "signed": (ContractStatus.FULLY_SIGNED, SignerStatus.SIGNED),
    "completed": (ContractStatus.COMPLETED, SignerStatus.SIGNED),
    "declined": (ContractStatus.DECLINED, SignerStatus.DECLINED),
    "voided": (ContractStatus.VOIDED, SignerStatus.EXPIRED),
    "expired": (ContractStatus.EXPIRED, SignerStatus.EXPIRED),
    "timedout": (ContractStatus.EXPIRED, SignerStatus.EXPIRED),
    "autoresponded": (None, None),
}

SIGNATURE_HEADER = "X-DocuSign-Signature-1"


class DocuSignAdapter(HttpSignatureProvider):
    """DocuSign e-signature adapter."""

    provider = IntegrationProvider.DOCUSIGN

    def __init__(
        self,
        base_url: str,
        account_id: str,
        access_token: str,
        webhook_secret: Optional[str] = None,
        timeout_seconds: int = 30,
        **config
    ):
        """
        Initialize DocuSign adapter.

        Args:
            base_url: DocuSign base URL (demo or production)
            account_id: DocuSign account ID
            access_token: OAuth 2.0 access token
            webhook_secret: Connect HMAC key; when unset, webhook signatures are not checked
            timeout_seconds: Total request timeout
        """
        super().__init__(base_url, timeout_seconds=timeout_seconds, **config)
        self.account_id = account_id
        self.access_token = access_token
        self.webhook_secret = webhook_secret

        self.api_base = f"{self.base_url}/restapi/v2.1"
        self.envelopes_endpoint = f"{self.api_base}/accounts/{self.account_id}/envelopes"

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _build_envelope_payload(self, contract: SignedContract, message: Optional[str]) -> Dict[str, Any]:
        html = contract.content_html or contract.content_original
        return {
            "emailSubject": f"Please sign: {contract.title}"[:100],
            "emailBlurb": message or "",
            "documents": [
                {
                    "documentBase64": base64.b64encode(html.encode("utf-8")).decode("ascii"),
                    "name": f"{contract.title}.html",
                    "fileExtension": "html",
                    "documentId": "1",
                }
            ],
            "recipients": {
                "signers": [
                    {
                        "email": signer.email,
                        "name": signer.full_name,
                        "recipientId": str(index + 1),
                        "routingOrder": "1",
                        "tabs": {
                            "signHereTabs": [
                                {"documentId": "1", "pageNumber": "1", "xPosition": "100", "yPosition": "100"}
                            ]
                        },
                    }
                    for index, signer in enumerate(contract.signers)
                ]
            },
            "customFields": {
                "textCustomFields": [{"name": "contract_id", "value": contract.id, "show": "false"}]
            },
            "status": "sent",
        }

    async def send(
        self,
        contract: SignedContract,
        *,
        message: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> SendReceipt:
        payload = self._build_envelope_payload(contract, message)
        try:
            async with self.session.post(self.envelopes_endpoint, json=payload) as response:
                await self._handle_api_error(response, "create_envelope")
                response_data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._transport_error("create_envelope", e) from e

        envelope_id = response_data.get("envelopeId")
        if not envelope_id:
            raise self._error("DocuSign response has no envelopeId", "invalid_response", provider_response=response_data)
        status, _ = map_status(DOCUSIGN_STATUS_MAP, response_data.get("status", "sent"))
        logger.info(f"DocuSign envelope {envelope_id} created for contract {contract.id}")
        return SendReceipt(
            external_id=envelope_id,
            status=status or ContractStatus.SENT,
            provider=self.provider,
            provider_response=response_data,
        )

    def _signers_from(self, recipients: List[Dict[str, Any]]) -> List[SignerSnapshot]:
        signers = []
        for recipient in recipients:
            _, signer_status = map_status(DOCUSIGN_STATUS_MAP, recipient.get("status"))
            signers.append(
                SignerSnapshot(
                    email=recipient.get("email", ""),
                    status=signer_status,
                    raw_status=recipient.get("status"),
                    signed_at=parse_timestamp(recipient.get("signedDateTime")),
                    declined_at=parse_timestamp(recipient.get("declinedDateTime")),
                    decline_reason=recipient.get("declinedReason"),
                )
            )
        return signers

    def _snapshot(self, envelope: Dict[str, Any], recipients: List[Dict[str, Any]], raw: Dict[str, Any]) -> ProviderStatusSnapshot:
        raw_status = envelope.get("status") or envelope.get("envelopeStatus")
        status, _ = map_status(DOCUSIGN_STATUS_MAP, raw_status)
        return ProviderStatusSnapshot(
            provider=self.provider,
            external_id=envelope.get("envelopeId", ""),
            status=status,
            raw_status=raw_status,
            signers=self._signers_from(recipients),
            completed_at=parse_timestamp(envelope.get("completedDateTime")),
            voided_at=parse_timestamp(envelope.get("voidedDateTime")),
            raw=raw,
        )

    async def get_status(self, external_id: str) -> ProviderStatusSnapshot:
        url = f"{self.envelopes_endpoint}/{external_id}"
        try:
            async with self.session.get(url, params={"include": "recipients"}) as response:
                await self._handle_api_error(response, "get_envelope_status")
                envelope = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._transport_error("get_envelope_status", e) from e

        envelope.setdefault("envelopeId", external_id)
        recipients = (envelope.get("recipients") or {}).get("signers") or []
        return self._snapshot(envelope, recipients, envelope)

    def verify_webhook(self, payload: bytes, signature: Optional[str], headers: Optional[Mapping[str, str]] = None) -> None:
        """Verify the Connect HMAC signature (base64 HMAC-SHA256 of the raw body)."""
        if not self.webhook_secret:
            return
        if signature is None and headers:
            signature = next((v for k, v in headers.items() if k.lower() == SIGNATURE_HEADER.lower()), None)
        expected = hmac_digest(self.webhook_secret, payload, encoding="base64")
        if not signature or not hmac.compare_digest(expected, signature.strip()):
            raise self._error("Invalid webhook signature", "webhook_signature_invalid")

    def parse_webhook(self, payload: bytes) -> ProviderStatusSnapshot:
        data = load_json_payload(self.provider, payload)

        # Connect JSON (SIM) wraps the envelope under data.envelopeSummary.
        if isinstance(data.get("data"), dict):
            body = data["data"]
            envelope = dict(body.get("envelopeSummary") or {})
            envelope.setdefault("envelopeId", body.get("envelopeId"))
            recipients = (envelope.get("recipients") or {}).get("signers") or []
        else:
            envelope = data
            recipients = data.get("recipients") or []
            if isinstance(recipients, dict):
                recipients = recipients.get("signers") or []

        if not envelope.get("envelopeId"):
            raise self._error("Webhook has no envelopeId", "webhook_incomplete")
        return self._snapshot(envelope, recipients, data)

    async def download_final_document(self, external_id: str) -> bytes:
        url = f"{self.envelopes_endpoint}/{external_id}/documents/combined"
        try:
            async with self.session.get(url, headers={"Accept": "application/pdf"}) as response:
                await self._handle_api_error(response, "download_document")
                return await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._transport_error("download_document", e) from e
