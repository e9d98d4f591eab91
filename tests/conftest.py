"""Shared fixtures: temporary database, seeded directory, fake transport and store."""

import sys
from pathlib import Path
from typing import Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from folioflow.core import database as db_module
from folioflow.core.dispatch import reset_dispatcher
from folioflow.core.models import Role
from folioflow.core.settings import reset_settings
from folioflow.services import object_store as object_store_module
from folioflow.services import transport as transport_module
from folioflow.services.folio_workflow import FolioDraft, FolioWorkflowService, reset_folio_workflow
from folioflow.services.identity import IdentityResolver
from folioflow.services.inbound import reset_inbound_handler
from folioflow.services.metrics import reset_metrics
from folioflow.services.notifications import reset_fanout_engine
from folioflow.services.project_workflow import ProjectWorkflowService, reset_project_workflow
from folioflow.services.transport import SendResult
from folioflow.state import sessions as sessions_module


PHONES = {
    "ga": "+52 222 555 0101",
    "gg": "5215550000002",
    "zp": "+525550000003",
    "cdmx": "+525550000004",
    "ga_qro": "+524425550105",
}


class FakeTransport:
    """Records every send; recipients in `fail_for` get a failed SendResult."""

    def __init__(self, fail_for=(), raise_for=()):
        self.sent = []
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.media = (b"%PDF-1.4 quote", "application/pdf")

    async def send(self, to: str, body: str, correlation_id: Optional[str] = None) -> SendResult:
        self.sent.append((to, body))
        if to in self.raise_for:
            raise RuntimeError("connection reset")
        if to in self.fail_for:
            return SendResult(ok=False, correlation_id="test", error_code="63016", error="Recipient outside session window")
        return SendResult(ok=True, correlation_id="test", sid=f"SM{len(self.sent):04d}", status="queued")

    async def fetch_media(self, url: str):
        return self.media

    @property
    def recipients(self):
        return [to for to, _ in self.sent]


class FakeStore:
    def __init__(self):
        self.objects = {}

    def put(self, data: bytes, key: str, content_type: Optional[str] = None) -> str:
        self.objects[key] = (data, content_type)
        return f"s3://test-bucket/{key}"


def _reset_singletons():
    reset_settings()
    db_module._DB_INSTANCE = None
    reset_folio_workflow()
    reset_project_workflow()
    reset_fanout_engine()
    reset_dispatcher()
    reset_inbound_handler()
    reset_metrics()


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("FOLIOFLOW_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.setenv("NOTIFY_CHUNK_DELAY_SECONDS", "0")
    for name in ("DATABASE_URL", "API_KEY", "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "S3_BUCKET"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(sessions_module, "_STORE", None)
    _reset_singletons()
    yield
    _reset_singletons()


@pytest.fixture()
def transport(monkeypatch):
    fake = FakeTransport()
    monkeypatch.setattr(transport_module, "_CLIENT", fake)
    return fake


@pytest.fixture()
def store(monkeypatch):
    fake = FakeStore()
    monkeypatch.setattr(object_store_module, "_STORE", fake)
    return fake


@pytest.fixture()
def db():
    db = db_module.get_db()
    db.initialize()
    return db


@pytest.fixture()
def directory(db):
    db.upsert_org_unit("PUE", "Puebla")
    db.upsert_org_unit("QRO", "Queretaro")
    db.add_actor(PHONES["ga"], "Ana Ruiz", Role.SITE_MANAGER, org_unit_code="PUE")
    db.add_actor(PHONES["gg"], "Gabriel Soto", Role.GENERAL_MANAGER, org_unit_code="PUE")
    db.add_actor(PHONES["zp"], "Diana Vega", Role.DIRECTOR)
    db.add_actor(PHONES["cdmx"], "Carlos Mena", Role.CONTROLLER)
    db.add_actor(PHONES["ga_qro"], "Quique Lara", Role.SITE_MANAGER, org_unit_code="QRO")
    return db


@pytest.fixture()
def actors(directory):
    resolver = IdentityResolver(directory)
    return {key: resolver.resolve(phone) for key, phone in PHONES.items()}


@pytest.fixture()
def folios(db):
    return FolioWorkflowService(db)


@pytest.fixture()
def projects(db):
    return ProjectWorkflowService(db)


def folio_draft(**overrides) -> FolioDraft:
    values = dict(
        purpose="Compressor valves",
        beneficiary="Refacciones del Centro",
        amount="$1,500.50",
        category="Maintenance",
    )
    values.update(overrides)
    return FolioDraft(**values)
