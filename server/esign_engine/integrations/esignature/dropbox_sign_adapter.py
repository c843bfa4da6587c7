"""
Dropbox Sign (formerly HelloSign) E-signature Adapter

Signature requests are sent as multipart forms and authenticated with the
account API key over HTTP basic auth. Callback events carry an ``event_hash``
(HMAC-SHA256 of ``event_time + event_type`` keyed by the API key).
"""

import asyncio
import base64
import hmac
import logging
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qs

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

DROPBOX_SIGN_STATUS_MAP: StatusTable = {
    "awaiting_signature": (ContractStatus.SENT, SignerStatus.SENT),
    "viewed": (None, SignerStatus.OPENED),
    "signed": (ContractStatus.COMPLETED, SignerStatus.SIGNED),
    "declined": (ContractStatus.DECLINED, SignerStatus.DECLINED),
    "cancelled": (ContractStatus.VOIDED, SignerStatus.EXPIRED),
    "expired": (ContractStatus.EXPIRED, SignerStatus.EXPIRED),
    "on_hold": (None, None),
}


class DropboxSignAdapter(HttpSignatureProvider):
    """Dropbox Sign (HelloSign) e-signature adapter."""

    provider = IntegrationProvider.DROPBOX_SIGN

    def __init__(
        self,
        base_url: str,
        api_key: str,
        test_mode: bool = True,
        timeout_seconds: int = 30,
        **config
    ):
        """
        Initialize Dropbox Sign adapter.

        Args:
            base_url: API base URL, normally https://api.hellosign.com/v3
            api_key: Account API key, also the callback signing key
            test_mode: Send non-binding test requests
        """
        super().__init__(base_url, timeout_seconds=timeout_seconds, **config)
        self.api_key = api_key
        self.test_mode = test_mode

    def _default_headers(self) -> Dict[str, str]:
        credentials = base64.b64encode(f"{self.api_key}:".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {credentials}", "Accept": "application/json"}

    def _error_details(self, data: Dict[str, Any]):
        error = data.get("error") or {}
        return error.get("error_msg"), error.get("error_name")

    async def send(
        self,
        contract: SignedContract,
        *,
        message: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> SendReceipt:
        form = aiohttp.FormData()
        form.add_field("title", contract.title)
        form.add_field("subject", f"Please sign: {contract.title}")
        form.add_field("message", message or "Please review and sign this document.")
        form.add_field("test_mode", "1" if self.test_mode else "0")
        form.add_field("metadata[contract_id]", contract.id)
        for index, signer in enumerate(contract.signers):
            form.add_field(f"signers[{index}][email_address]", signer.email)
            form.add_field(f"signers[{index}][name]", signer.full_name)
            form.add_field(f"signers[{index}][order]", str(index))
        form.add_field(
            "file[0]",
            (contract.content_html or contract.content_original).encode("utf-8"),
            filename=f"{contract.title}.html",
            content_type="text/html",
        )

        try:
            async with self.session.post(f"{self.base_url}/signature_request/send", data=form) as response:
                await self._handle_api_error(response, "send_signature_request")
                response_data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._transport_error("send_signature_request", e) from e

        request = response_data.get("signature_request") or {}
        request_id = request.get("signature_request_id")
        if not request_id:
            raise self._error("Dropbox Sign response has no signature_request_id", "invalid_response", provider_response=response_data)
        logger.info(f"Dropbox Sign request {request_id} created for contract {contract.id}")
        return SendReceipt(
            external_id=request_id,
            status=ContractStatus.SENT,
            provider=self.provider,
            provider_response=response_data,
        )

    @staticmethod
    def _request_status(request: Dict[str, Any]) -> str:
        if request.get("status_code"):
            return request["status_code"]
        if request.get("is_declined"):
            return "declined"
        if request.get("is_complete"):
            return "signed"
        return "awaiting_signature"

    def _signers_from(self, signatures: List[Dict[str, Any]]) -> List[SignerSnapshot]:
        signers = []
        for signature in signatures:
            _, signer_status = map_status(DROPBOX_SIGN_STATUS_MAP, signature.get("status_code"))
            signers.append(
                SignerSnapshot(
                    email=signature.get("signer_email_address", ""),
                    status=signer_status,
                    raw_status=signature.get("status_code"),
                    signed_at=parse_timestamp(signature.get("signed_at")),
                    declined_at=parse_timestamp(signature.get("declined_at")),
                    decline_reason=signature.get("decline_reason"),
                )
            )
        return signers

    def _snapshot(self, request: Dict[str, Any], raw: Dict[str, Any]) -> ProviderStatusSnapshot:
        raw_status = self._request_status(request)
        status, _ = map_status(DROPBOX_SIGN_STATUS_MAP, raw_status)
        signers = self._signers_from(request.get("signatures") or [])
        completed_at = None
        if request.get("is_complete"):
            signed_times = [signer.signed_at for signer in signers if signer.signed_at]
            completed_at = max(signed_times) if signed_times else None
        return ProviderStatusSnapshot(
            provider=self.provider,
            external_id=request.get("signature_request_id", ""),
            status=status,
            raw_status=raw_status,
            signers=signers,
            completed_at=completed_at,
            raw=raw,
        )

    async def get_status(self, external_id: str) -> ProviderStatusSnapshot:
        try:
            async with self.session.get(f"{self.base_url}/signature_request/{external_id}") as response:
                await self._handle_api_error(response, "get_signature_request")
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._transport_error("get_signature_request", e) from e
        request = data.get("signature_request") or {}
        request.setdefault("signature_request_id", external_id)
        return self._snapshot(request, data)

    def verify_webhook(self, payload: bytes, signature: Optional[str], headers: Optional[Mapping[str, str]] = None) -> None:
        data = load_json_payload(self.provider, payload)
        event = data.get("event") or {}
        message = f"{event.get('event_time', '')}{event.get('event_type', '')}".encode("utf-8")
        expected = hmac_digest(self.api_key, message)
        supplied = signature or event.get("event_hash") or ""
        if not hmac.compare_digest(expected, supplied.strip().lower()):
            raise self._error("Invalid webhook event hash", "webhook_signature_invalid")

    def parse_webhook(self, payload: bytes) -> ProviderStatusSnapshot:
        data = load_json_payload(self.provider, payload)
        request = data.get("signature_request") or {}
        if not request.get("signature_request_id"):
            raise self._error("Webhook has no signature_request_id", "webhook_incomplete")
        return self._snapshot(request, data)

    async def download_final_document(self, external_id: str) -> bytes:
        url = f"{self.base_url}/signature_request/files/{external_id}"
        try:
            async with self.session.get(url, params={"file_type": "pdf"}) as response:
                await self._handle_api_error(response, "download_files")
                return await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._transport_error("download_files", e) from e


def extract_callback_json(body: bytes) -> bytes:
    """Dropbox Sign posts callbacks as a form with a single ``json`` field; return the JSON bytes."""
    text = body.decode("utf-8", errors="replace")
    if text.lstrip().startswith("{"):
        return body
    fields = parse_qs(text)
    if "json" in fields:
        return fields["json"][0].encode("utf-8")
    return body
