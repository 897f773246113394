import httpx
import pytest
import requests
from twilio.base.exceptions import TwilioRestException

from medreminder.services.whatsapp_service import (
    FonnteBackend, MessagingConfigurationError, MessagingGateway, TwilioBackend,
    build_gateway, normalize_phone_number, phone_lookup_variants,
)

from conftest import FakeBackend, FakeTwilioClient


@pytest.mark.parametrize("raw, expected", [
    ("081234567890", "6281234567890"),
    ("+62 812-3456-7890", "6281234567890"),
    ("81234567890", "6281234567890"),
    ("6281234567890", "6281234567890"),
    ("1234567", "621234567"),
    ("", ""),
])
def test_normalize_phone_number(raw, expected):
    assert normalize_phone_number(raw) == expected


def test_lookup_variants_cover_local_and_international_forms():
    variants = phone_lookup_variants("6281234567890")
    assert "6281234567890" in variants
    assert "081234567890" in variants
    assert "+6281234567890" in variants


@pytest.mark.asyncio
async def test_failover_to_next_backend():
    primary = FakeBackend("fonnte", succeed=False)
    backup = FakeBackend("twilio")
    gateway = MessagingGateway([primary, backup])

    result = await gateway.send("081234567890", "halo")

    assert result.success
    assert result.provider == "twilio"
    assert len(primary.sent) == 1 and len(backup.sent) == 1


@pytest.mark.asyncio
async def test_failover_disabled_reports_primary_failure():
    primary = FakeBackend("fonnte", succeed=False)
    backup = FakeBackend("twilio")
    gateway = MessagingGateway([primary, backup], failover_enabled=False)

    result = await gateway.send("081234567890", "halo")

    assert not result.success
    assert result.provider == "fonnte"
    assert backup.sent == []


@pytest.mark.asyncio
async def test_explicit_provider_override_uses_only_that_backend():
    primary = FakeBackend("fonnte")
    backup = FakeBackend("twilio", succeed=False)
    gateway = MessagingGateway([primary, backup])

    result = await gateway.send("081234567890", "halo", provider="twilio")

    assert not result.success
    assert primary.sent == []


@pytest.mark.asyncio
async def test_unconfigured_backends_are_skipped_and_missing_config_raises():
    gateway = MessagingGateway([FakeBackend("fonnte", configured=False), FakeBackend("twilio")])
    result = await gateway.send("081234567890", "halo")
    assert result.provider == "twilio"

    with pytest.raises(MessagingConfigurationError):
        await MessagingGateway([FakeBackend("fonnte", configured=False)]).send("0812", "halo")
    with pytest.raises(MessagingConfigurationError):
        MessagingGateway([FakeBackend("fonnte")]).ensure_configured("twilio")


def test_build_gateway_follows_provider_order(settings):
    settings.messaging_providers = "twilio,fonnte"
    gateway = build_gateway(settings)
    assert [b.name for b in gateway.backends] == ["twilio", "fonnte"]
    assert [b.name for b in gateway.configured_backends] == ["fonnte"]


def _fonnte(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FonnteBackend("fonnte-token", "https://api.fonnte.test", client=client)


@pytest.mark.asyncio
async def test_fonnte_success_with_list_id():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        seen["url"] = str(request.url)
        seen["body"] = request.read()
        return httpx.Response(200, json={"status": True, "id": ["80367170"]})

    result = await _fonnte(handler).send("0812-3456-7890", "Waktunya minum obat")

    assert result.success
    assert result.message_id == "80367170"
    assert seen["auth"] == "fonnte-token"
    assert seen["url"] == "https://api.fonnte.test/send"
    assert b'"target":"6281234567890"' in seen["body"].replace(b" ", b"")


@pytest.mark.asyncio
async def test_fonnte_rejection_reason_is_reported():
    backend = _fonnte(lambda request: httpx.Response(200, json={"status": False, "reason": "invalid token"}))
    result = await backend.send("081234567890", "halo")
    assert not result.success
    assert result.error == "invalid token"


@pytest.mark.asyncio
async def test_fonnte_client_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, json={"reason": "unauthorized"})

    result = await _fonnte(handler).send("081234567890", "halo")
    assert not result.success
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_fonnte_server_error_is_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(502)
        return httpx.Response(200, json={"status": True, "id": 42})

    result = await _fonnte(handler).send("081234567890", "halo")
    assert result.success
    assert result.message_id == "42"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_twilio_backend_formats_whatsapp_address():
    fake = FakeTwilioClient()
    backend = TwilioBackend("AC1", "token", "+14155238886", client=fake)

    result = await backend.send("081234567890", "halo")

    assert result.success and result.message_id == "SM123"
    assert fake.messages.created[0]["to"] == "whatsapp:+6281234567890"
    assert fake.messages.created[0]["from_"] == "whatsapp:+14155238886"


@pytest.mark.asyncio
async def test_twilio_error_becomes_failed_result():
    error = TwilioRestException(status=400, uri="/Messages", msg="bad number")
    backend = TwilioBackend("AC1", "token", "+14155238886", client=FakeTwilioClient(error))
    result = await backend.send("081234567890", "halo")
    assert not result.success
    assert "400" in result.error


@pytest.mark.asyncio
async def test_twilio_network_failure_becomes_failed_result():
    error = requests.exceptions.ConnectionError("api.twilio.com unreachable")
    backend = TwilioBackend("AC1", "token", "+14155238886", client=FakeTwilioClient(error))

    result = await backend.send("081234567890", "halo")

    assert not result.success
    assert result.provider == "twilio"
    assert "unreachable" in result.error


@pytest.mark.asyncio
async def test_twilio_network_failure_fails_over():
    error = requests.exceptions.ConnectionError("api.twilio.com unreachable")
    twilio = TwilioBackend("AC1", "token", "+14155238886", client=FakeTwilioClient(error))
    fonnte = FakeBackend("fonnte")

    result = await MessagingGateway([twilio, fonnte]).send("081234567890", "halo")

    assert result.success
    assert result.provider == "fonnte"


@pytest.mark.asyncio
async def test_fonnte_non_object_body_is_a_failure():
    result = await _fonnte(lambda request: httpx.Response(200, json=["queued"])).send("081234567890", "halo")
    assert not result.success
    assert "unexpected" in result.error
