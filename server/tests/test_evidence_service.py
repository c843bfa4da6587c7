"""
Evidence collector: signing sessions, device capture and telemetry.
"""

import pytest

from esign_engine.core.errors import AlreadyTerminal, InvalidSigningToken, SessionNotFound, ViewLimitExceeded
from esign_engine.models.contract import SignerStatus
from esign_engine.schemas.evidence import DeviceType, EvidencePayload, GeoLocation, LegalBasis, MouseSample
from esign_engine.schemas.template import SigningRequirements
from esign_engine.services import evidence_service, signing_service

from .factories import create_active_template, full_submission, initiate_payload, request_context

IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


class TestDeviceCapture:
    def test_classifies_desktop_chrome(self):
        device = evidence_service.classify_device(request_context(screen_resolution="1920x1080"))

        assert device.type == DeviceType.DESKTOP
        assert device.os == "Windows"
        assert device.browser == "Chrome"
        assert device.screen_resolution == "1920x1080"

    def test_classifies_iphone(self):
        device = evidence_service.classify_device(request_context(user_agent=IPHONE))

        assert device.type == DeviceType.MOBILE
        assert device.os == "iOS"
        assert device.browser == "Safari"

    def test_client_hints_take_precedence(self):
        context = request_context()
        context.headers.update({"Sec-CH-UA-Mobile": "?1", "Sec-CH-UA-Platform": '"Android"'})

        device = evidence_service.classify_device(context)

        assert device.type == DeviceType.MOBILE
        assert device.os == "Android"

    def test_fingerprint_is_stable_and_sensitive(self):
        first = evidence_service.device_fingerprint(request_context(timezone="Europe/Berlin"))
        second = evidence_service.device_fingerprint(request_context(timezone="Europe/Berlin"))
        other = evidence_service.device_fingerprint(request_context(timezone="America/New_York"))

        assert first == second
        assert first != other
        assert len(first) == 64

    @pytest.mark.parametrize(
        "address,expected",
        [
            ("8.8.8.8", True),
            ("10.0.0.4", False),
            ("127.0.0.1", False),
            ("::1", False),
            ("not-an-ip", False),
            (None, False),
        ],
    )
    def test_public_address_detection(self, address, expected):
        assert evidence_service.is_public_address(address) is expected


class TestStartSession:
    @pytest.mark.asyncio
    async def test_first_session_opens_signer(self, session, draft_contract, frozen_clock):
        contract = draft_contract.contract

        outcome = await evidence_service.start_session(
            session, contract.id, "signer_1", request_context(), token=draft_contract.references[0].token
        )

        assert outcome.result.resumed is False
        assert outcome.result.content == contract.content_original
        signer = outcome.signer
        assert signer.status == SignerStatus.OPENED
        assert signer.opened_at == frozen_clock.now
        assert signer.evidence["ip_address"] == "203.0.113.10"
        assert signer.evidence["document_hash"] == contract.original_hash
        assert signer.evidence["device"]["browser"] == "Chrome"
        assert signer.access_log[-1].action == "session_started"
        assert contract.current_views == 1
        assert contract.first_opened_at == frozen_clock.now

    @pytest.mark.asyncio
    async def test_second_session_resumes(self, session, draft_contract):
        contract = draft_contract.contract
        first = await evidence_service.start_session(session, contract.id, "signer_1", request_context())

        second = await evidence_service.start_session(session, contract.id, "signer_1", request_context())

        assert second.result.resumed is True
        assert second.result.session_id == first.result.session_id
        assert second.signer.evidence["page_views"] == 2
        assert second.signer.access_log[-1].action == "session_resumed"
        assert contract.current_views == 2

    @pytest.mark.asyncio
    async def test_view_limit_is_shared_across_signers(self, session, actor, frozen_clock):
        template = await create_active_template(session, actor, signing_requirements=SigningRequirements(max_views=2))
        issued = await signing_service.initiate_contract(session, initiate_payload(template.id), actor)
        contract = issued.contract

        await evidence_service.start_session(session, contract.id, "signer_1", request_context())
        await evidence_service.start_session(session, contract.id, "signer_2", request_context())

        with pytest.raises(ViewLimitExceeded):
            await evidence_service.start_session(session, contract.id, "signer_1", request_context())
        with pytest.raises(ViewLimitExceeded):
            await evidence_service.start_session(session, contract.id, "signer_2", request_context())

        assert contract.current_views == 2

    @pytest.mark.asyncio
    async def test_public_address_is_geolocated_without_consent(self, session, draft_contract):
        looked_up = []

        async def resolver(ip_address):
            looked_up.append(ip_address)
            return GeoLocation(country="US", city="Mountain View", consent_given=True)

        outcome = await evidence_service.start_session(
            session,
            draft_contract.contract.id,
            "signer_1",
            request_context(ip_address="8.8.8.8"),
            geo_resolver=resolver,
        )

        assert looked_up == ["8.8.8.8"]
        location = outcome.signer.evidence["location"]
        assert location["country"] == "US"
        assert location["consent_given"] is False
        assert location["legal_basis"] == LegalBasis.LEGITIMATE_INTEREST.value

    @pytest.mark.asyncio
    async def test_private_address_is_not_geolocated(self, session, draft_contract):
        async def resolver(ip_address):
            raise AssertionError("private addresses must not be looked up")

        outcome = await evidence_service.start_session(
            session,
            draft_contract.contract.id,
            "signer_1",
            request_context(ip_address="192.168.1.20"),
            geo_resolver=resolver,
        )

        assert outcome.signer.evidence["location"]["country"] is None

    @pytest.mark.asyncio
    async def test_signed_signer_cannot_start_session(self, session, draft_contract):
        contract_id = draft_contract.contract.id
        await signing_service.process_signature(session, contract_id, "signer_1", full_submission())

        with pytest.raises(AlreadyTerminal):
            await evidence_service.start_session(session, contract_id, "signer_1", request_context())


class TestCollectEvidence:
    @pytest.mark.asyncio
    async def test_requires_started_session(self, session, draft_contract):
        with pytest.raises(SessionNotFound):
            await evidence_service.collect_evidence(
                session, draft_contract.contract.id, "signer_1", EvidencePayload(scroll_depth=10)
            )

    @pytest.mark.asyncio
    async def test_merges_telemetry(self, session, draft_contract):
        contract_id = draft_contract.contract.id
        await evidence_service.start_session(session, contract_id, "signer_1", request_context())

        await evidence_service.collect_evidence(
            session,
            contract_id,
            "signer_1",
            EvidencePayload(
                mouse_movements=[MouseSample(x=1, y=2, timestamp=0.5)],
                keystroke_pattern=[0.12, 0.2],
                scroll_depth=80,
            ),
        )
        ack = await evidence_service.collect_evidence(
            session,
            contract_id,
            "signer_1",
            EvidencePayload(
                mouse_movements=[MouseSample(x=3, y=4, timestamp=1.0)],
                scroll_depth=40,
                time_on_page=95,
                geolocation_consent=True,
                biometric={"pressure": [0.4, 0.5]},
            ),
        )

        assert ack.mouse_samples == 2
        assert ack.keystroke_samples == 2
        assert ack.scroll_depth == 80
        assert ack.time_on_page == 95
        signer = draft_contract.contract.get_signer("signer_1")
        assert signer.evidence["location"]["legal_basis"] == LegalBasis.CONSENT.value
        assert signer.verification["biometric"] == {"pressure": [0.4, 0.5]}
        assert [entry.action for entry in signer.access_log][-2:] == ["evidence_collected", "evidence_collected"]

    @pytest.mark.asyncio
    async def test_evidence_is_frozen_after_signing(self, session, draft_contract):
        contract_id = draft_contract.contract.id
        await evidence_service.start_session(session, contract_id, "signer_1", request_context())
        outcome = await signing_service.process_signature(session, contract_id, "signer_1", full_submission())
        evidence_before = dict(outcome.signer.evidence)

        with pytest.raises(AlreadyTerminal):
            await evidence_service.collect_evidence(session, contract_id, "signer_1", EvidencePayload(scroll_depth=99))

        assert outcome.signer.evidence == evidence_before

    @pytest.mark.asyncio
    async def test_evidence_is_frozen_once_contract_is_closed(self, session, draft_contract):
        contract_id = draft_contract.contract.id
        await evidence_service.start_session(session, contract_id, "signer_1", request_context())
        await signing_service.decline_signature(session, contract_id, "signer_2", "Fee too high")
        assert draft_contract.contract.get_signer("signer_1").status == SignerStatus.OPENED

        with pytest.raises(AlreadyTerminal) as excinfo:
            await evidence_service.collect_evidence(session, contract_id, "signer_1", EvidencePayload(scroll_depth=99))

        assert excinfo.value.message == "Evidence is frozen once the contract is declined"
        assert excinfo.value.details["contract_status"] == "declined"

    @pytest.mark.asyncio
    async def test_terminal_signer_message_names_the_signer(self, session, draft_contract):
        contract_id = draft_contract.contract.id
        await evidence_service.start_session(session, contract_id, "signer_2", request_context())
        await signing_service.decline_signature(session, contract_id, "signer_2", "No")

        with pytest.raises(AlreadyTerminal) as excinfo:
            await evidence_service.collect_evidence(session, contract_id, "signer_2", EvidencePayload(scroll_depth=5))

        assert excinfo.value.message == "Evidence is frozen once the signer has declined"


class TestSigningTokens:
    @pytest.mark.asyncio
    async def test_session_with_forged_token_is_refused(self, session, draft_contract):
        with pytest.raises(InvalidSigningToken):
            await evidence_service.start_session(
                session, draft_contract.contract.id, "signer_1", request_context(), token="forged"
            )

        assert draft_contract.contract.get_signer("signer_1").status == SignerStatus.PENDING
        assert draft_contract.contract.current_views == 0

    @pytest.mark.asyncio
    async def test_evidence_with_another_signers_token_is_refused(self, session, draft_contract):
        contract_id = draft_contract.contract.id
        await evidence_service.start_session(session, contract_id, "signer_1", request_context())
        other_token = next(ref.token for ref in draft_contract.references if ref.signer_id == "signer_2")

        with pytest.raises(InvalidSigningToken) as excinfo:
            await evidence_service.collect_evidence(
                session, contract_id, "signer_1", EvidencePayload(scroll_depth=10), token=other_token
            )

        assert excinfo.value.kind == "invalid_signing_token"

    @pytest.mark.asyncio
    async def test_signature_with_forged_token_is_refused(self, session, draft_contract):
        contract_id = draft_contract.contract.id

        with pytest.raises(InvalidSigningToken):
            await signing_service.process_signature(
                session, contract_id, "signer_1", full_submission(), request_context(), token="forged"
            )

        assert draft_contract.contract.get_signer("signer_1").status == SignerStatus.PENDING

    @pytest.mark.asyncio
    async def test_signature_with_own_token_is_accepted(self, session, draft_contract):
        contract_id = draft_contract.contract.id
        token = next(ref.token for ref in draft_contract.references if ref.signer_id == "signer_1")

        outcome = await signing_service.process_signature(
            session, contract_id, "signer_1", full_submission(), request_context(), token=token
        )

        assert outcome.signer.status == SignerStatus.SIGNED
