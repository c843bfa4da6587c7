"""
HTTP surface: routing, authentication and error mapping.
"""

import io
import json
import time
import zipfile
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from esign_engine.api.dependencies.database import get_db
from esign_engine.api.dependencies.redis import redis_dependency
from esign_engine.core.config import clear_settings_cache
from esign_engine.core.errors import ContractExpired
from esign_engine.integrations.esignature.base import hmac_digest
from esign_engine.main import app

from .factories import full_submission, initiate_payload, template_payload
from .integrations.helpers import mock_response

SECRET = "test-secret-key-0123456789"


def bearer(subject="admin-1", name="Ada Admin", expires_in=3600, secret=SECRET):
    token = jwt.encode({"sub": subject, "name": name, "exp": int(time.time()) + expires_in}, secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(session_factory, frozen_clock, monkeypatch):
    # The test transport connects from 127.0.0.1, which stands in for the load balancer.
    monkeypatch.setenv("ESIGN_TRUSTED_PROXIES", '["127.0.0.1"]')
    clear_settings_cache()

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
            except ContractExpired:
                await session.commit()
                raise

    async def no_redis():
        yield None

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[redis_dependency] = no_redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as http:
        yield http
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    return bearer()


async def publish_template(client, auth, **overrides):
    response = await client.post("/templates", json=template_payload(**overrides).model_dump(mode="json"), headers=auth)
    assert response.status_code == 201
    template_id = response.json()["id"]
    assert (await client.post(f"/templates/{template_id}/approve", json={"notes": "ok"}, headers=auth)).status_code == 200
    assert (await client.post(f"/templates/{template_id}/publish", headers=auth)).status_code == 200
    return template_id


async def create_contract(client, auth, template_id, **overrides):
    response = await client.post(
        "/contracts", json=initiate_payload(template_id, **overrides).model_dump(mode="json"), headers=auth
    )
    assert response.status_code == 201
    return response.json()


def signer_headers(initiated, signer_id="signer_1", **extra):
    token = next(item["token"] for item in initiated["signing_references"] if item["signer_id"] == signer_id)
    return {"X-Signing-Token": token, **extra}


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_reports_database(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get("/templates")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_token_signed_with_another_key(self, client):
        response = await client.get("/templates", headers=bearer(secret="someone-elses-secret"))

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_expired_token(self, client):
        response = await client.get("/templates", headers=bearer(expires_in=-60))

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_actor_is_recorded_from_token(self, client):
        response = await client.post(
            "/templates", json=template_payload().model_dump(mode="json"), headers=bearer(subject="legal-7")
        )

        assert response.status_code == 201
        assert response.json()["created_by"] == "legal-7"


class TestTemplateRoutes:
    @pytest.mark.asyncio
    async def test_publish_and_lookup_by_plan(self, client, auth):
        template_id = await publish_template(client, auth)

        response = await client.get("/templates/for-plan/premium", params={"region": "EU"}, headers=auth)

        assert response.status_code == 200
        assert response.json()["id"] == template_id
        assert response.json()["status"] == "active"

    @pytest.mark.asyncio
    async def test_unknown_template_is_404(self, client, auth):
        response = await client.get("/templates/tpl_missing", headers=auth)

        assert response.status_code == 404
        assert response.json()["kind"] == "not_found"

    @pytest.mark.asyncio
    async def test_listing_is_paginated(self, client, auth):
        template_id = await publish_template(client, auth)
        await create_contract(client, auth, template_id)
        await create_contract(client, auth, template_id)

        templates = await client.get("/templates", params={"page": 1, "page_size": 1}, headers=auth)
        contracts = await client.get("/contracts", params={"page": 2, "page_size": 1}, headers=auth)

        assert templates.status_code == 200
        assert templates.json()["page_size"] == 1
        assert contracts.status_code == 200
        assert contracts.json()["total"] == 2
        assert len(contracts.json()["items"]) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("params", [{"page_size": 101}, {"page_size": 0}, {"page": 0}])
    async def test_out_of_range_paging_is_422(self, client, auth, params):
        assert (await client.get("/templates", params=params, headers=auth)).status_code == 422
        assert (await client.get("/contracts", params=params, headers=auth)).status_code == 422

    @pytest.mark.asyncio
    async def test_publish_without_approval_is_412(self, client, auth):
        created = await client.post("/templates", json=template_payload().model_dump(mode="json"), headers=auth)

        response = await client.post(f"/templates/{created.json()['id']}/publish", headers=auth)

        assert response.status_code == 412
        assert response.json()["kind"] == "precondition_failed"

    @pytest.mark.asyncio
    async def test_protected_field_update_is_422(self, client, auth):
        template_id = await publish_template(client, auth)

        response = await client.patch(f"/templates/{template_id}", json={"version": "2.0.0"}, headers=auth)

        assert response.status_code == 422
        assert response.json()["kind"] == "validation_error"

    @pytest.mark.asyncio
    async def test_invalid_variable_pattern_is_422(self, client, auth):
        payload = template_payload().model_dump(mode="json")
        payload["variables"][0]["pattern"] = "(["

        response = await client.post("/templates", json=payload, headers=auth)

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_export_then_import_creates_inactive_draft(self, client, auth):
        template_id = await publish_template(client, auth)

        exported = await client.get(
            f"/templates/{template_id}/export", params={"include_statistics": "true"}, headers=auth
        )
        assert exported.status_code == 200
        body = exported.json()
        assert body["source_id"] == template_id
        assert body["statistics"]["total_sent"] == 0
        assert body["export_metadata"]["exported_by"] == "admin-1"

        imported = await client.post("/templates/import", json=body, headers=auth)

        assert imported.status_code == 201
        assert imported.json()["id"].startswith("tpl_imported_")
        assert imported.json()["status"] == "draft"
        assert imported.json()["is_active"] is False
        assert imported.json()["version"] == "1.0.0"

    @pytest.mark.asyncio
    async def test_delete_reason_appears_in_audit(self, client, auth):
        template_id = await publish_template(client, auth)

        deleted = await client.delete(f"/templates/{template_id}", params={"reason": "Replaced"}, headers=auth)
        assert deleted.status_code == 204
        assert (await client.post(f"/templates/{template_id}/restore", headers=auth)).status_code == 200

        audit = await client.get(f"/templates/{template_id}/audit", headers=auth)
        actions = [event["action"] for event in audit.json()]
        assert actions[-2:] == ["deleted", "restored"]
        assert audit.json()[-2]["reason"] == "Replaced"


class TestSigningFlow:
    @pytest.mark.asyncio
    async def test_two_signers_complete_the_contract(self, client, auth):
        template_id = await publish_template(client, auth)
        initiated = await create_contract(client, auth, template_id)
        contract_id = initiated["contract"]["id"]
        assert initiated["contract"]["status"] == "draft"

        sent = await client.post(f"/contracts/{contract_id}/send", json={"message": "Please sign"}, headers=auth)
        assert sent.status_code == 200
        assert sent.json()["provider"] == "native"
        references = {item["signer_id"]: item for item in sent.json()["signing_references"]}
        assert references["signer_1"]["url"].startswith("https://sign.example.com/")

        results = []
        for signer_id in ("signer_1", "signer_2"):
            opened = await client.post(
                f"/sign/{contract_id}/signers/{signer_id}/session",
                json={"timezone": "Europe/Berlin"},
                headers={
                    "X-Signing-Token": references[signer_id]["token"],
                    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/121.0",
                    "X-Forwarded-For": "198.51.100.7",
                },
            )
            assert opened.status_code == 200
            assert "Northwind Advisory" in opened.json()["content"]

            signed = await client.post(
                f"/sign/{contract_id}/signers/{signer_id}/signature",
                json=full_submission(signer_id).model_dump(mode="json"),
                headers={"X-Signing-Token": references[signer_id]["token"]},
            )
            assert signed.status_code == 200
            results.append(signed.json())

        assert results[0]["contract_status"] == "partially_signed"
        assert results[0]["certificate"] is None
        assert results[1]["contract_status"] == "fully_signed"
        certificate = results[1]["certificate"]
        assert certificate["signers"][0]["ip_address"] == "198.51.100.7"

        verified = await client.post("/sign/certificates/verify", json=certificate)
        assert verified.json()["valid"] is True

        completed = await client.post(f"/contracts/{contract_id}/complete", headers=auth)
        assert completed.json()["status"] == "completed"

        integrity = await client.post(
            f"/contracts/{contract_id}/verify", json={"hash": completed.json()["final_hash"]}, headers=auth
        )
        assert integrity.json()["valid"] is True
        by_query = await client.get(
            f"/contracts/{contract_id}/verify", params={"hash": completed.json()["final_hash"]}, headers=auth
        )
        assert by_query.status_code == 200
        assert by_query.json()["valid"] is True

        export = await client.get(f"/contracts/{contract_id}/export", headers=auth)
        assert export.status_code == 200
        assert export.headers["content-type"] == "application/zip"
        with zipfile.ZipFile(io.BytesIO(export.content)) as bundle:
            assert "certificate.json" in bundle.namelist()

        trail = await client.get(f"/contracts/{contract_id}/audit-trail", headers=auth)
        assert trail.json()[0]["event"] == "contract_created"

    @pytest.mark.asyncio
    async def test_missing_consent_is_422(self, client, auth):
        template_id = await publish_template(client, auth)
        initiated = await create_contract(client, auth, template_id)
        contract_id = initiated["contract"]["id"]
        submission = full_submission().model_dump(mode="json")
        submission["consents"] = submission["consents"][1:]

        response = await client.post(
            f"/sign/{contract_id}/signers/signer_1/signature", json=submission, headers=signer_headers(initiated)
        )

        assert response.status_code == 422
        assert response.json()["kind"] == "consent_required"
        assert response.json()["details"]["consent_id"] == "terms"

    @pytest.mark.asyncio
    async def test_signing_twice_is_409(self, client, auth):
        template_id = await publish_template(client, auth)
        initiated = await create_contract(client, auth, template_id)
        url = f"/sign/{initiated['contract']['id']}/signers/signer_1/signature"
        headers = signer_headers(initiated)

        assert (await client.post(url, json=full_submission().model_dump(mode="json"), headers=headers)).status_code == 200
        response = await client.post(url, json=full_submission().model_dump(mode="json"), headers=headers)

        assert response.status_code == 409
        assert response.json()["kind"] == "already_terminal"

    @pytest.mark.asyncio
    async def test_expired_contract_is_410_and_stays_expired(self, client, auth, frozen_clock):
        template_id = await publish_template(client, auth)
        initiated = await create_contract(client, auth, template_id, expiration_days=0)
        contract_id = initiated["contract"]["id"]
        frozen_clock.advance(seconds=1)

        response = await client.post(
            f"/sign/{contract_id}/signers/signer_1/signature",
            json=full_submission().model_dump(mode="json"),
            headers=signer_headers(initiated),
        )

        assert response.status_code == 410
        assert response.json()["kind"] == "expired"
        detail = await client.get(f"/contracts/{contract_id}", headers=auth)
        assert detail.json()["status"] == "expired"
        assert {signer["status"] for signer in detail.json()["signers"]} == {"expired"}

    @pytest.mark.asyncio
    async def test_invalid_placeholder_values_are_422(self, client, auth):
        template_id = await publish_template(client, auth)
        payload = initiate_payload(template_id, placeholder_values={"company": "Northwind"}).model_dump(mode="json")

        response = await client.post("/contracts", json=payload, headers=auth)

        assert response.status_code == 422
        fields = {item["field"] for item in response.json()["details"]["violations"]}
        assert fields == {"client_name", "fee"}

    @pytest.mark.asyncio
    async def test_decline_and_void(self, client, auth):
        template_id = await publish_template(client, auth)
        initiated = await create_contract(client, auth, template_id)
        contract_id = initiated["contract"]["id"]

        declined = await client.post(
            f"/sign/{contract_id}/signers/signer_2/decline",
            json={"reason": "Fee too high"},
            headers=signer_headers(initiated, "signer_2"),
        )
        assert declined.status_code == 200
        assert declined.json()["status"] == "declined"

        voided = await client.post(f"/contracts/{contract_id}/void", json={"reason": "Superseded"}, headers=auth)
        assert voided.status_code == 200
        assert voided.json()["status"] == "voided"

    @pytest.mark.asyncio
    async def test_unknown_hash_fails_query_verification(self, client, auth):
        template_id = await publish_template(client, auth)
        contract_id = (await create_contract(client, auth, template_id))["contract"]["id"]

        response = await client.get(f"/contracts/{contract_id}/verify", params={"hash": "0" * 64}, headers=auth)

        assert response.status_code == 200
        assert response.json()["valid"] is False

    @pytest.mark.asyncio
    async def test_query_verification_requires_hash(self, client, auth):
        template_id = await publish_template(client, auth)
        contract_id = (await create_contract(client, auth, template_id))["contract"]["id"]

        response = await client.get(f"/contracts/{contract_id}/verify", headers=auth)

        assert response.status_code == 422


class TestSigningTokens:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["session", "evidence", "signature", "decline"])
    async def test_signer_routes_require_token_header(self, client, auth, action):
        template_id = await publish_template(client, auth)
        contract_id = (await create_contract(client, auth, template_id))["contract"]["id"]

        response = await client.post(f"/sign/{contract_id}/signers/signer_1/{action}", json={"reason": "x"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_signature_with_another_signers_token_is_403(self, client, auth):
        template_id = await publish_template(client, auth)
        initiated = await create_contract(client, auth, template_id)
        contract_id = initiated["contract"]["id"]

        response = await client.post(
            f"/sign/{contract_id}/signers/signer_1/signature",
            json=full_submission().model_dump(mode="json"),
            headers=signer_headers(initiated, "signer_2"),
        )

        assert response.status_code == 403
        assert response.json()["kind"] == "invalid_signing_token"
        detail = await client.get(f"/contracts/{contract_id}", headers=auth)
        assert {signer["status"] for signer in detail.json()["signers"]} == {"pending"}

    @pytest.mark.asyncio
    async def test_evidence_with_forged_token_is_403(self, client, auth):
        template_id = await publish_template(client, auth)
        initiated = await create_contract(client, auth, template_id)
        contract_id = initiated["contract"]["id"]
        opened = await client.post(
            f"/sign/{contract_id}/signers/signer_1/session", json={}, headers=signer_headers(initiated)
        )
        assert opened.status_code == 200

        response = await client.post(
            f"/sign/{contract_id}/signers/signer_1/evidence",
            json={"scroll_depth": 80},
            headers={"X-Signing-Token": "forged"},
        )

        assert response.status_code == 403
        assert response.json()["kind"] == "invalid_signing_token"

    @pytest.mark.asyncio
    async def test_tokens_from_before_send_are_replaced(self, client, auth):
        template_id = await publish_template(client, auth)
        initiated = await create_contract(client, auth, template_id)
        contract_id = initiated["contract"]["id"]
        assert (await client.post(f"/contracts/{contract_id}/send", headers=auth)).status_code == 200

        response = await client.post(
            f"/sign/{contract_id}/signers/signer_1/decline",
            json={"reason": "Changed my mind"},
            headers=signer_headers(initiated),
        )

        assert response.status_code == 403


class TestSessionOrigin:
    @pytest.mark.asyncio
    async def test_public_address_is_geolocated(self, client, auth, monkeypatch):
        monkeypatch.setenv("ESIGN_GEOLOCATION_URL", "http://geo.test/json/{ip}")
        clear_settings_cache()
        template_id = await publish_template(client, auth)
        initiated = await create_contract(client, auth, template_id)
        contract_id = initiated["contract"]["id"]
        lookup = {
            "status": "success",
            "countryCode": "US",
            "regionName": "Virginia",
            "city": "Ashburn",
            "lat": 39.03,
            "lon": -77.5,
            "timezone": "America/New_York",
        }

        with patch("aiohttp.ClientSession.get") as mock_get:
            mock_get.return_value = mock_response(200, lookup)
            opened = await client.post(
                f"/sign/{contract_id}/signers/signer_1/session",
                json={},
                headers=signer_headers(initiated, **{"X-Forwarded-For": "8.8.8.8"}),
            )

        assert opened.status_code == 200
        assert mock_get.call_args.args[0] == "http://geo.test/json/8.8.8.8"
        detail = await client.get(f"/contracts/{contract_id}", headers=auth)
        evidence = next(s for s in detail.json()["signers"] if s["signer_id"] == "signer_1")["evidence"]
        assert evidence["ip_address"] == "8.8.8.8"
        assert evidence["location"]["country"] == "US"
        assert evidence["location"]["city"] == "Ashburn"
        assert evidence["location"]["legal_basis"] == "legitimate_interest"

    @pytest.mark.asyncio
    async def test_lookup_failure_still_opens_session(self, client, auth, monkeypatch):
        monkeypatch.setenv("ESIGN_GEOLOCATION_URL", "http://geo.test/json/{ip}")
        clear_settings_cache()
        template_id = await publish_template(client, auth)
        initiated = await create_contract(client, auth, template_id)
        contract_id = initiated["contract"]["id"]

        with patch("aiohttp.ClientSession.get") as mock_get:
            mock_get.return_value = mock_response(503)
            opened = await client.post(
                f"/sign/{contract_id}/signers/signer_1/session",
                json={},
                headers=signer_headers(initiated, **{"X-Forwarded-For": "8.8.8.8"}),
            )

        assert opened.status_code == 200
        detail = await client.get(f"/contracts/{contract_id}", headers=auth)
        evidence = next(s for s in detail.json()["signers"] if s["signer_id"] == "signer_1")["evidence"]
        assert evidence["location"]["country"] is None

    @pytest.mark.asyncio
    async def test_forwarded_header_ignored_from_untrusted_peer(self, client, auth, monkeypatch):
        monkeypatch.setenv("ESIGN_TRUSTED_PROXIES", "[]")
        clear_settings_cache()
        template_id = await publish_template(client, auth)
        initiated = await create_contract(client, auth, template_id)
        contract_id = initiated["contract"]["id"]

        opened = await client.post(
            f"/sign/{contract_id}/signers/signer_1/session",
            json={},
            headers=signer_headers(initiated, **{"X-Forwarded-For": "8.8.8.8"}),
        )

        assert opened.status_code == 200
        detail = await client.get(f"/contracts/{contract_id}", headers=auth)
        evidence = next(s for s in detail.json()["signers"] if s["signer_id"] == "signer_1")["evidence"]
        assert evidence["ip_address"] == "127.0.0.1"


class TestWebhookRoute:
    @pytest.mark.asyncio
    async def test_bad_signature_is_401(self, client):
        response = await client.post(
            "/webhooks/native",
            content=b'{"contract_id": "c-1", "status": "sent"}',
            headers={"X-Esign-Signature": "not-a-signature"},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_signed_native_webhook_is_applied(self, client, auth):
        template_id = await publish_template(client, auth)
        contract_id = (await create_contract(client, auth, template_id))["contract"]["id"]
        body = json.dumps({"contract_id": contract_id, "status": "sent"}).encode()

        response = await client.post(
            "/webhooks/native", content=body, headers={"X-Esign-Signature": hmac_digest(SECRET, body)}
        )

        assert response.status_code == 200
        assert response.json()["applied"] is True
        assert response.json()["contract_status"] == "sent"

        replay = await client.post(
            "/webhooks/native", content=body, headers={"X-Esign-Signature": hmac_digest(SECRET, body)}
        )
        assert replay.json()["duplicate"] is True

    @pytest.mark.asyncio
    async def test_malformed_body_is_400(self, client):
        body = b"not json"

        response = await client.post(
            "/webhooks/native", content=body, headers={"X-Esign-Signature": hmac_digest(SECRET, body)}
        )

        assert response.status_code == 400
