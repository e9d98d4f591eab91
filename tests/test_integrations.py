"""Tests for the Twilio client, the S3 store, settings and the directory seed script."""

import asyncio
import importlib.util
from unittest.mock import MagicMock

import httpx
import pytest
from botocore.exceptions import ClientError

from folioflow.core.settings import Settings, get_settings
from folioflow.services import transport as transport_module
from folioflow.services.errors import ErrorCode, ExternalServiceError
from folioflow.services.identity import IdentityResolver
from folioflow.services.object_store import S3ObjectStore, extension_for
from folioflow.services.transport import TwilioWhatsAppClient, as_whatsapp_address

from conftest import ROOT

TWILIO = dict(
    twilio_account_sid="AC123",
    twilio_auth_token="token",
    twilio_from_number="+14155238886",
)


def mock_httpx(monkeypatch, handler):
    real_client = httpx.AsyncClient

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(transport_module.httpx, "AsyncClient", factory)


class TestTwilioClient:
    def test_unconfigured_send_is_a_failed_result(self):
        result = asyncio.run(TwilioWhatsAppClient(Settings()).send("whatsapp:+525550000003", "hi"))
        assert not result.ok
        assert "not configured" in result.error

    def test_invalid_recipient(self):
        result = asyncio.run(TwilioWhatsAppClient(Settings(**TWILIO)).send("+525550000003", "hi"))
        assert not result.ok

    def test_successful_send(self, monkeypatch):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["form"] = dict(httpx.QueryParams(request.content.decode()))
            return httpx.Response(201, json={"sid": "SM42", "status": "queued"})

        mock_httpx(monkeypatch, handler)
        result = asyncio.run(TwilioWhatsAppClient(Settings(**TWILIO)).send("whatsapp:+525550000003", "Folio approved"))

        assert result.ok
        assert result.sid == "SM42"
        assert seen["url"].endswith("/Accounts/AC123/Messages.json")
        assert seen["form"] == {"From": "whatsapp:+14155238886", "To": "whatsapp:+525550000003", "Body": "Folio approved"}

    def test_provider_error(self, monkeypatch):
        mock_httpx(monkeypatch, lambda request: httpx.Response(400, json={"code": 63016, "message": "outside window"}))
        result = asyncio.run(TwilioWhatsAppClient(Settings(**TWILIO)).send("whatsapp:+525550000003", "x"))
        assert not result.ok
        assert result.error_code == "63016"
        assert result.error == "outside window"

    def test_fetch_media(self, monkeypatch):
        mock_httpx(monkeypatch, lambda request: httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf"}))
        data, content_type = asyncio.run(TwilioWhatsAppClient(Settings(**TWILIO)).fetch_media("https://api.twilio.com/m/1"))
        assert data == b"%PDF"
        assert content_type == "application/pdf"

    def test_fetch_media_failure(self, monkeypatch):
        mock_httpx(monkeypatch, lambda request: httpx.Response(404))
        with pytest.raises(ExternalServiceError):
            asyncio.run(TwilioWhatsAppClient(Settings(**TWILIO)).fetch_media("https://api.twilio.com/m/1"))

    def test_address(self):
        assert as_whatsapp_address("+525550000003") == "whatsapp:+525550000003"
        assert as_whatsapp_address("whatsapp:+525550000003") == "whatsapp:+525550000003"


class TestS3ObjectStore:
    def test_unconfigured_store_refuses(self):
        with pytest.raises(ExternalServiceError) as exc:
            S3ObjectStore(Settings()).put(b"x", "quotes/F-202602-001/1.pdf")
        assert exc.value.code is ErrorCode.STORAGE_ERROR

    def test_put(self):
        store = S3ObjectStore(Settings(s3_bucket="folios", aws_region="us-east-1"))
        store._client = MagicMock()
        url = store.put(b"%PDF", "quotes/F-202602-001/1.pdf", "application/pdf")
        assert url == "s3://folios/quotes/F-202602-001/1.pdf"
        store._client.put_object.assert_called_once_with(
            Bucket="folios", Key="quotes/F-202602-001/1.pdf", Body=b"%PDF", ContentType="application/pdf",
        )

    def test_upload_error(self):
        store = S3ObjectStore(Settings(s3_bucket="folios", aws_region="us-east-1"))
        store._client = MagicMock()
        store._client.put_object.side_effect = ClientError({"Error": {"Code": "AccessDenied", "Message": "no"}}, "PutObject")
        with pytest.raises(ExternalServiceError):
            store.put(b"x", "k")

    def test_extensions(self):
        assert extension_for(None) == ".pdf"
        assert extension_for("image/jpeg") in (".jpg", ".jpeg")


class TestSettings:
    def test_env(self, monkeypatch):
        monkeypatch.setenv("NOTIFY_CHUNK_SIZE", "5")
        monkeypatch.setenv("NOTIFY_EXCLUDE_ACTOR", "false")
        monkeypatch.setenv("DEFAULT_COUNTRY_CODE", "+54")
        settings = Settings.from_env()
        assert settings.notify_chunk_size == 5
        assert settings.notify_exclude_actor is False
        assert settings.default_country_code == "54"

    def test_secrets_hidden(self):
        data = Settings(twilio_auth_token="t", api_key="k").to_dict()
        assert data["twilio_auth_token"] == "***"
        assert data["api_key"] == "***"

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            Settings(notify_chunk_size=0)

    def test_cached(self):
        assert get_settings() is get_settings()


class TestSeedScript:
    def _load(self):
        spec = importlib.util.spec_from_file_location("seed_directory", ROOT / "scripts" / "seed_directory.py")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module

    def test_seed_is_rerunnable(self, db):
        seed = self._load().seed
        data = {
            "org_units": [{"code": "PUE", "name": "Puebla"}],
            "actors": [
                {"phone": "+52 222 555 0101", "name": "Ana", "role": "GA", "org_unit": "PUE"},
                {"phone": "5215550000003", "name": "Diana", "role": "zp"},
            ],
        }
        assert seed(data, db) == {"org_units": 1, "actors": 2, "skipped": 0}
        assert seed(data, db) == {"org_units": 1, "actors": 0, "skipped": 2}
        assert IdentityResolver(db).resolve("whatsapp:+525550000003").name == "Diana"

    def test_plant_role_needs_plant(self, db):
        with pytest.raises(ValueError):
            self._load().seed({"actors": [{"phone": "+525511112222", "name": "X", "role": "GG"}]}, db)
