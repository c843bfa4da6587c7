"""
Adobe Acrobat Sign adapter.

Agreements are created from a transient document. Access tokens come from an
``OAuthTokenSource`` that owns the token and its expiry and refreshes ahead of
it; the adapter never caches tokens itself.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

import aiohttp

from esign_engine.core import clock
from esign_engine.models.contract import ContractStatus, IntegrationProvider, SignedContract, SignerStatus
from esign_engine.schemas.common import Actor

from .base import (
    HttpSignatureProvider,
    ProviderStatusSnapshot,
    SendReceipt,
    SignerSnapshot,
    StatusTable,
    load_json_payload,
    map_status,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

ADOBE_SIGN_STATUS_MAP: StatusTable = {
    "AUTHORING": (ContractStatus.DRAFT, SignerStatus.PENDING),
    "DRAFT": (ContractStatus.DRAFT, SignerStatus.PENDING),
    "IN_PROCESS": (ContractStatus.SENT, SignerStatus.SENT),
    "OUT_FOR_SIGNATURE": (ContractStatus.SENT, SignerStatus.SENT),
    "WAITING_FOR_MY_SIGNATURE": (ContractStatus.SENT, SignerStatus.SENT),
    "ACTIVE": (ContractStatus.SENT, SignerStatus.SENT),
    "WAITING_FOR_OTHERS": (ContractStatus.PARTIALLY_SIGNED, SignerStatus.SIGNED),
    "SIGNED": (ContractStatus.COMPLETED, SignerStatus.SIGNED),
    "COMPLETED": (ContractStatus.COMPLETED, SignerStatus.SIGNED),
    "CANCELLED": (ContractStatus.VOIDED, SignerStatus.EXPIRED),
    "EXPIRED": (ContractStatus.EXPIRED, SignerStatus.EXPIRED),
    "REJECTED": (ContractStatus.DECLINED, SignerStatus.DECLINED),
    "DECLINED": (ContractStatus.DECLINED, SignerStatus.DECLINED),
}

CLIENT_ID_HEADER = "X-AdobeSign-ClientId"


class OAuthTokenSource:
    """Refresh-token backed access token with explicit, owned expiry."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        refresh_margin_seconds: int = 60,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self.access_token: Optional[str] = None
        self.expires_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    def needs_refresh(self) -> bool:
        if not self.access_token or self.expires_at is None:
            return True
        return clock.utcnow() >= self.expires_at - self.refresh_margin

    async def get_token(self, http: aiohttp.ClientSession) -> str:
        async with self._lock:
            if self.needs_refresh():
                await self._refresh(http)
            return self.access_token  # type: ignore[return-value]

    async def _refresh(self, http: aiohttp.ClientSession) -> None:
        form = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.refresh_token,
        }
        async with http.post(self.token_url, data=form) as response:
            if response.status != 200:
                detail = await response.text()
                raise aiohttp.ClientResponseError(
                    response.request_info,
                    response.history,
                    status=response.status,
                    message=f"token refresh failed: {detail}",
                )
            data = await response.json()
        self.access_token = data["access_token"]
        self.expires_at = clock.utcnow() + timedelta(seconds=int(data.get("expires_in", 3600)))
        # Adobe rotates refresh tokens on some account types
        self.refresh_token = data.get("refresh_token", self.refresh_token)
        logger.info("Adobe Sign access token refreshed")


class AdobeSignAdapter(HttpSignatureProvider):
    """Adobe Acrobat Sign adapter."""

    provider = IntegrationProvider.ADOBE_SIGN

    def __init__(
        self,
        base_url: str,
        token_url: str = "",
        client_id: str = "",
        client_secret: str = "",
        refresh_token: str = "",
        token_source: Optional[OAuthTokenSource] = None,
        timeout_seconds: int = 30,
        **config
    ):
        super().__init__(base_url, timeout_seconds=timeout_seconds, **config)
        self.client_id = client_id
        self.token_source = token_source or OAuthTokenSource(token_url, client_id, client_secret, refresh_token)

    def _error_details(self, data: Dict[str, Any]):
        return data.get("message"), data.get("code")

    async def _auth_headers(self) -> Dict[str, str]:
        try:
            token = await self.token_source.get_token(self.session)
        except (aiohttp.ClientError, asyncio.TimeoutError, KeyError) as e:
            raise self._error(f"Could not obtain access token: {e}", "AUTH_ERROR") from e
        return {"Authorization": f"Bearer {token}"}

    async def _upload_transient_document(self, contract: SignedContract, headers: Dict[str, str]) -> str:
        form = aiohttp.FormData()
        form.add_field("File-Name", f"{contract.title}.html")
        form.add_field(
            "File",
            (contract.content_html or contract.content_original).encode("utf-8"),
            filename=f"{contract.title}.html",
            content_type="text/html",
        )
        async with self.session.post(f"{self.base_url}/transientDocuments", data=form, headers=headers) as response:
            await self._handle_api_error(response, "upload_transient_document")
            data = await response.json()
        return data["transientDocumentId"]

    async def send(
        self,
        contract: SignedContract,
        *,
        message: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> SendReceipt:
        headers = await self._auth_headers()
        try:
            transient_id = await self._upload_transient_document(contract, headers)
            agreement = {
                "fileInfos": [{"transientDocumentId": transient_id}],
                "name": contract.title,
                "message": message or "",
                "participantSetsInfo": [
                    {"memberInfos": [{"email": signer.email}], "order": index + 1, "role": "SIGNER"}
                    for index, signer in enumerate(contract.signers)
                ],
                "signatureType": "ESIGN",
                "state": "IN_PROCESS",
                "externalId": {"id": contract.id},
            }
            async with self.session.post(f"{self.base_url}/agreements", json=agreement, headers=headers) as response:
                await self._handle_api_error(response, "create_agreement")
                response_data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._transport_error("create_agreement", e) from e
        except KeyError as e:
            raise self._error(f"Unexpected Adobe Sign response, missing {e}", "invalid_response") from e

        agreement_id = response_data.get("id")
        if not agreement_id:
            raise self._error("Adobe Sign response has no agreement id", "invalid_response", provider_response=response_data)
        logger.info(f"Adobe Sign agreement {agreement_id} created for contract {contract.id}")
        return SendReceipt(
            external_id=agreement_id,
            status=ContractStatus.SENT,
            provider=self.provider,
            provider_response=response_data,
        )

    def _signers_from(self, participant_sets: List[Dict[str, Any]]) -> List[SignerSnapshot]:
        signers = []
        for participant_set in participant_sets:
            # Member status is reported on the set in v6 and on the member in older payloads
            set_status = participant_set.get("status")
            for member in participant_set.get("memberInfos") or []:
                raw_status = member.get("status") or set_status
                _, signer_status = map_status(ADOBE_SIGN_STATUS_MAP, raw_status, case="upper")
                signers.append(
                    SignerSnapshot(
                        email=member.get("email", ""),
                        status=signer_status,
                        raw_status=raw_status,
                        signed_at=parse_timestamp(member.get("signedDate")),
                        declined_at=parse_timestamp(member.get("declinedDate")),
                    )
                )
        return signers

    def _snapshot(self, agreement: Dict[str, Any], raw: Dict[str, Any]) -> ProviderStatusSnapshot:
        raw_status = agreement.get("status")
        status, _ = map_status(ADOBE_SIGN_STATUS_MAP, raw_status, case="upper")
        events = agreement.get("events") or []
        return ProviderStatusSnapshot(
            provider=self.provider,
            external_id=agreement.get("id", ""),
            status=status,
            raw_status=raw_status,
            signers=self._signers_from(agreement.get("participantSets") or agreement.get("participantSetsInfo") or []),
            completed_at=parse_timestamp(next((e.get("date") for e in events if e.get("type") == "SIGNED"), None)),
            voided_at=parse_timestamp(next((e.get("date") for e in events if e.get("type") == "CANCELLED"), None)),
            raw=raw,
        )

    async def get_status(self, external_id: str) -> ProviderStatusSnapshot:
        headers = await self._auth_headers()
        try:
            async with self.session.get(f"{self.base_url}/agreements/{external_id}", headers=headers) as response:
                await self._handle_api_error(response, "get_agreement")
                agreement = await response.json()
            async with self.session.get(f"{self.base_url}/agreements/{external_id}/members", headers=headers) as response:
                await self._handle_api_error(response, "get_agreement_members")
                members = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._transport_error("get_agreement", e) from e

        agreement.setdefault("id", external_id)
        agreement["participantSets"] = members.get("participantSets") or []
        return self._snapshot(agreement, agreement)

    def verify_webhook(self, payload: bytes, signature: Optional[str], headers: Optional[Mapping[str, str]] = None) -> None:
        """Adobe identifies webhook deliveries by echoing the application's client id."""
        supplied = signature
        if supplied is None and headers:
            supplied = next((v for k, v in headers.items() if k.lower() == CLIENT_ID_HEADER.lower()), None)
        if not self.client_id or supplied != self.client_id:
            raise self._error("Webhook client id does not match", "webhook_signature_invalid")

    def parse_webhook(self, payload: bytes) -> ProviderStatusSnapshot:
        data = load_json_payload(self.provider, payload)
        agreement = data.get("agreement") or {}
        if not agreement.get("id"):
            raise self._error("Webhook has no agreement id", "webhook_incomplete")
        return self._snapshot(agreement, data)

    async def download_final_document(self, external_id: str) -> bytes:
        headers = await self._auth_headers()
        headers["Accept"] = "application/pdf"
        url = f"{self.base_url}/agreements/{external_id}/combinedDocument"
        try:
            async with self.session.get(url, headers=headers) as response:
                await self._handle_api_error(response, "download_document")
                return await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._transport_error("download_document", e) from e
