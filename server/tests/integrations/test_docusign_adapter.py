"""
DocuSign adapter: envelope creation, status mapping and Connect webhooks.
"""

import json
from unittest.mock import patch

import aiohttp
import pytest

from esign_engine.core.errors import ProviderError
from esign_engine.integrations.esignature import DocuSignAdapter
from esign_engine.integrations.esignature.base import hmac_digest, parse_timestamp
from esign_engine.models.contract import ContractStatus, IntegrationProvider, SignerStatus

from .helpers import mock_response


@pytest.fixture
def docusign_config():
    return {
        "base_url": "https://demo.docusign.net/",
        "account_id": "123456789",
        "access_token": "test_access_token",
        "webhook_secret": "test_webhook_secret",
    }


@pytest.fixture
def docusign_adapter(docusign_config):
    return DocuSignAdapter(**docusign_config)


class TestDocuSignAdapter:
    def test_adapter_initialization(self, docusign_adapter):
        assert docusign_adapter.provider == IntegrationProvider.DOCUSIGN
        assert docusign_adapter.base_url == "https://demo.docusign.net"
        assert docusign_adapter.envelopes_endpoint == (
            "https://demo.docusign.net/restapi/v2.1/accounts/123456789/envelopes"
        )
        # Session is created lazily
        assert docusign_adapter._session is None

    @pytest.mark.asyncio
    async def test_send_creates_envelope(self, docusign_adapter, draft_contract):
        contract = draft_contract.contract

        with patch("aiohttp.ClientSession.post") as mock_post:
            mock_post.return_value = mock_response(201, {"envelopeId": "env-123", "status": "sent"})

            receipt = await docusign_adapter.send(contract, message="Please sign")

        assert receipt.external_id == "env-123"
        assert receipt.status == ContractStatus.SENT
        url = mock_post.call_args.args[0]
        envelope = mock_post.call_args.kwargs["json"]
        assert url.endswith("/accounts/123456789/envelopes")
        assert envelope["emailBlurb"] == "Please sign"
        assert [signer["email"] for signer in envelope["recipients"]["signers"]] == [
            "signer1@example.com",
            "signer2@example.com",
        ]
        assert envelope["customFields"]["textCustomFields"][0]["value"] == contract.id
        await docusign_adapter.close()

    @pytest.mark.asyncio
    async def test_send_without_envelope_id_is_rejected(self, docusign_adapter, draft_contract):
        with patch("aiohttp.ClientSession.post") as mock_post:
            mock_post.return_value = mock_response(201, {"status": "sent"})

            with pytest.raises(ProviderError) as excinfo:
                await docusign_adapter.send(draft_contract.contract)

        assert excinfo.value.error_code == "invalid_response"
        await docusign_adapter.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error_code",
        [
            (401, "AUTH_ERROR"),
            (403, "PERMISSION_ERROR"),
            (404, "NOT_FOUND"),
            (429, "RATE_LIMIT"),
            (503, "SERVER_ERROR"),
        ],
    )
    async def test_http_errors_are_mapped(self, docusign_adapter, draft_contract, status, error_code):
        with patch("aiohttp.ClientSession.post") as mock_post:
            mock_post.return_value = mock_response(status, {"message": "nope", "errorCode": "X"})

            with pytest.raises(ProviderError) as excinfo:
                await docusign_adapter.send(draft_contract.contract)

        assert excinfo.value.error_code == error_code
        assert excinfo.value.provider == "docusign"
        await docusign_adapter.close()

    @pytest.mark.asyncio
    async def test_vendor_error_code_is_kept_for_other_statuses(self, docusign_adapter, draft_contract):
        with patch("aiohttp.ClientSession.post") as mock_post:
            mock_post.return_value = mock_response(
                400, {"message": "Email address is invalid", "errorCode": "INVALID_EMAIL_ADDRESS_FOR_RECIPIENT"}
            )

            with pytest.raises(ProviderError) as excinfo:
                await docusign_adapter.send(draft_contract.contract)

        assert excinfo.value.error_code == "INVALID_EMAIL_ADDRESS_FOR_RECIPIENT"
        assert excinfo.value.message == "Email address is invalid"
        await docusign_adapter.close()

    @pytest.mark.asyncio
    async def test_transport_failure_becomes_provider_error(self, docusign_adapter, draft_contract):
        with patch("aiohttp.ClientSession.post") as mock_post:
            mock_post.side_effect = aiohttp.ClientConnectionError("connection reset")

            with pytest.raises(ProviderError) as excinfo:
                await docusign_adapter.send(draft_contract.contract)

        assert excinfo.value.error_code == "api_error"
        await docusign_adapter.close()

    @pytest.mark.asyncio
    async def test_get_status_maps_envelope_and_recipients(self, docusign_adapter):
        envelope = {
            "envelopeId": "env-123",
            "status": "completed",
            "completedDateTime": "2026-03-02T10:00:00.1234567Z",
            "recipients": {
                "signers": [
                    {"email": "signer1@example.com", "status": "completed", "signedDateTime": "2026-03-02T09:30:00Z"},
                    {"email": "signer2@example.com", "status": "delivered"},
                ]
            },
        }
        with patch("aiohttp.ClientSession.get") as mock_get:
            mock_get.return_value = mock_response(200, envelope)

            snapshot = await docusign_adapter.get_status("env-123")

        assert snapshot.status == ContractStatus.COMPLETED
        assert snapshot.completed_at == parse_timestamp("2026-03-02T10:00:00.123456Z")
        assert [signer.status for signer in snapshot.signers] == [SignerStatus.SIGNED, SignerStatus.OPENED]
        assert mock_get.call_args.kwargs["params"] == {"include": "recipients"}
        await docusign_adapter.close()

    @pytest.mark.asyncio
    async def test_download_returns_combined_document(self, docusign_adapter):
        with patch("aiohttp.ClientSession.get") as mock_get:
            mock_get.return_value = mock_response(200, body=b"%PDF-1.7 signed")

            document = await docusign_adapter.download_final_document("env-123")

        assert document == b"%PDF-1.7 signed"
        assert mock_get.call_args.args[0].endswith("/envelopes/env-123/documents/combined")
        await docusign_adapter.close()


class TestDocuSignWebhooks:
    def test_signed_status_means_fully_signed(self, docusign_adapter):
        payload = json.dumps({"envelopeId": "env-1", "status": "signed"}).encode()

        assert docusign_adapter.parse_webhook(payload).status == ContractStatus.FULLY_SIGNED

    def test_parses_connect_envelope_summary(self, docusign_adapter):
        payload = json.dumps(
            {
                "event": "envelope-declined",
                "data": {
                    "envelopeId": "env-9",
                    "envelopeSummary": {
                        "status": "declined",
                        "recipients": {
                            "signers": [
                                {
                                    "email": "Signer1@Example.com",
                                    "status": "declined",
                                    "declinedReason": "Wrong fee",
                                }
                            ]
                        },
                    },
                },
            }
        ).encode()

        snapshot = docusign_adapter.parse_webhook(payload)

        assert snapshot.external_id == "env-9"
        assert snapshot.status == ContractStatus.DECLINED
        assert snapshot.signers[0].status == SignerStatus.DECLINED
        assert snapshot.signers[0].decline_reason == "Wrong fee"

    def test_unknown_status_changes_nothing(self, docusign_adapter):
        payload = json.dumps({"envelopeId": "env-1", "status": "autoresponded"}).encode()

        assert docusign_adapter.parse_webhook(payload).status is None

    def test_webhook_without_envelope_id(self, docusign_adapter):
        with pytest.raises(ProviderError) as excinfo:
            docusign_adapter.parse_webhook(b'{"status": "sent"}')
        assert excinfo.value.error_code == "webhook_incomplete"

    def test_webhook_with_invalid_json(self, docusign_adapter):
        with pytest.raises(ProviderError) as excinfo:
            docusign_adapter.parse_webhook(b"not json")
        assert excinfo.value.error_code == "webhook_json_invalid"

    def test_webhook_signature_verification(self, docusign_adapter):
        payload = b'{"envelopeId": "env-1", "status": "sent"}'
        signature = hmac_digest("test_webhook_secret", payload, encoding="base64")

        docusign_adapter.verify_webhook(payload, None, {"x-docusign-signature-1": signature})

        with pytest.raises(ProviderError) as excinfo:
            docusign_adapter.verify_webhook(payload, "bm90LXRoZS1zaWduYXR1cmU=")
        assert excinfo.value.error_code == "webhook_signature_invalid"

    def test_webhook_signature_skipped_without_secret(self, docusign_config):
        adapter = DocuSignAdapter(**{**docusign_config, "webhook_secret": None})

        adapter.verify_webhook(b"{}", None)
