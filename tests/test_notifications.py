"""
Tests for Notification Fan-out

Recipient scopes, delivery, failure isolation, pacing and the dispatcher.
"""

import asyncio

import pytest

from conftest import FakeTransport, folio_draft
from folioflow.core.dispatch import NotificationDispatcher
from folioflow.core.models import Folio, FolioStatus, NotificationRequest, Priority, Role
from folioflow.core.settings import Settings
from folioflow.services.notifications import (
    DispatchOptions,
    EventKind,
    FanoutEngine,
    RecipientScope,
    folio_message,
    format_amount,
    recipient_scopes,
)

GA = RecipientScope(Role.SITE_MANAGER, True)
GG = RecipientScope(Role.GENERAL_MANAGER, True)
ZP = RecipientScope(Role.DIRECTOR, False)
CDMX = RecipientScope(Role.CONTROLLER, False)


def wa(phone):
    return f"whatsapp:{phone}"


@pytest.fixture()
def pue(directory):
    return directory.get_org_unit("PUE")["id"]


def make_engine(db, transport, **settings):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    engine = FanoutEngine(db, transport, Settings(**settings), sleep=fake_sleep)
    engine.delays = delays
    return engine


class TestRecipientScopes:
    """The pure event -> (role, scope) table."""

    def test_plant_approval_goes_to_directors(self):
        assert recipient_scopes("PLANT_APPROVED") == [ZP]

    def test_final_approval_goes_to_plant_and_controllers(self):
        assert recipient_scopes(EventKind.APPROVED.value) == [GA, GG, CDMX]

    def test_cancellation_request_goes_to_directors(self):
        assert recipient_scopes("CANCELLATION_REQUESTED") == [ZP]

    def test_notify_everyone(self):
        assert set(recipient_scopes("COMMENT", notify_everyone=True)) == {GA, GG, ZP, CDMX}

    def test_role_filter_replaces_table(self):
        assert recipient_scopes("APPROVED", role_filter=[Role.CONTROLLER, Role.GENERAL_MANAGER]) == [CDMX, GG]

    def test_unknown_event(self):
        assert recipient_scopes("NOT_AN_EVENT") == []

    def test_pure(self):
        assert recipient_scopes("APPROVED") == recipient_scopes("APPROVED")


class TestRecipientResolution:
    def test_unit_scope_and_actor_exclusion(self, directory, pue):
        engine = make_engine(directory, FakeTransport())
        recipients = engine.resolve_recipients([GA, GG, CDMX], pue, actor_phone="whatsapp:+5212225550101")
        # GA of PUE is the actor; QRO's GA is out of scope
        assert recipients == ["+525550000002", "+525550000004"]

    def test_actor_kept_when_exclusion_disabled(self, directory, pue):
        engine = make_engine(directory, FakeTransport())
        recipients = engine.resolve_recipients([GA], pue, actor_phone="+522225550101", exclude_actor=False)
        assert recipients == ["+522225550101"]

    def test_duplicate_directory_numbers_collapse(self, directory, pue):
        directory.add_actor("+52 55 5000 0004", "Carlos (old)", Role.CONTROLLER)
        engine = make_engine(directory, FakeTransport())
        assert engine.resolve_recipients([CDMX], pue) == ["+525550000004"]

    def test_unit_scoped_roles_need_a_unit(self, directory):
        engine = make_engine(directory, FakeTransport())
        assert engine.resolve_recipients([GA, GG], None) == []


class TestDispatch:
    def test_one_failure_does_not_stop_the_rest(self, directory, pue):
        transport = FakeTransport(fail_for={wa("+525550000002")})
        engine = make_engine(directory, transport)
        options = DispatchOptions(org_unit_id=pue, body="Folio approved", actor_phone="+525550000003")

        report = asyncio.run(engine.dispatch("F-202602-001", EventKind.APPROVED, options))

        assert report.sent == 2
        assert report.failed == 1
        assert report.failures[0]["recipient"] == "+525550000002"
        assert transport.recipients == [wa("+522225550101"), wa("+525550000002"), wa("+525550000004")]

        rows = directory.query_all("SELECT * FROM notification_log WHERE record_code = ? ORDER BY recipient", ("F-202602-001",))
        assert [(r["recipient"], r["outcome"]) for r in rows] == [
            ("+522225550101", "SENT"),
            ("+525550000002", "FAILED"),
            ("+525550000004", "SENT"),
        ]
        assert rows[1]["error_detail"]
        assert all(r["event_kind"] == "APPROVED" for r in rows)

    def test_transport_exception_is_logged_as_failure(self, directory, pue):
        transport = FakeTransport(raise_for={wa("+522225550101")})
        engine = make_engine(directory, transport)
        options = DispatchOptions(org_unit_id=pue, body="New folio")

        report = asyncio.run(engine.dispatch("F-202602-001", "FOLIO_CREATED", options))
        assert (report.sent, report.failed) == (1, 1)
        assert report.failures[0]["error"] == "connection reset"

    def test_chunks_are_paced(self, directory, pue):
        transport = FakeTransport()
        engine = make_engine(directory, transport, notify_chunk_size=2, notify_chunk_delay_seconds=0.5)
        options = DispatchOptions(org_unit_id=pue, body="Comment", notify_everyone=True)

        report = asyncio.run(engine.dispatch("F-202602-001", "COMMENT", options))
        assert report.sent == 4
        assert engine.delays == [0.5]

    def test_no_recipients(self, directory):
        engine = make_engine(directory, FakeTransport())
        report = asyncio.run(engine.dispatch("F-202602-001", "FOLIO_CREATED", DispatchOptions(None, "x")))
        assert report.attempted == 0

    def test_engine_output_feeds_dispatch(self, directory, folios, actors):
        transport = FakeTransport()
        engine = make_engine(directory, transport)
        created = folios.create_folio(actors["ga"], folio_draft())

        reports = asyncio.run(NotificationDispatcher(engine).dispatch_all(created.notifications))
        # FOLIO_CREATED reaches the plant's other approver only
        assert transport.recipients == [wa("+525550000002")]
        assert reports[0].sent == 1
        assert created.record_code in transport.sent[0][1]


class TestDispatcher:
    def test_failing_fanout_does_not_block_the_next(self, directory, pue):
        transport = FakeTransport()
        engine = make_engine(directory, transport)
        calls = []
        real = engine.dispatch_request

        async def flaky(request):
            calls.append(request.record_code)
            if request.record_code == "F-202602-001":
                raise RuntimeError("db gone")
            return await real(request)

        engine.dispatch_request = flaky
        dispatcher = NotificationDispatcher(engine)
        requests = [
            NotificationRequest("F-202602-001", "APPROVED", pue, "a"),
            NotificationRequest("F-202602-002", "APPROVED", pue, "b"),
        ]
        reports = asyncio.run(dispatcher.dispatch_all(requests))
        assert calls == ["F-202602-001", "F-202602-002"]
        assert [r.record_code for r in reports] == ["F-202602-002"]
        assert dispatcher.recent()[-1].record_code == "F-202602-002"

    def test_submit_and_drain(self, directory, pue):
        transport = FakeTransport()
        dispatcher = NotificationDispatcher(make_engine(directory, transport))

        async def scenario():
            dispatcher.submit([NotificationRequest("F-202602-003", "PLANT_APPROVED", pue, "hq queue")])
            assert dispatcher.pending == 1
            await dispatcher.drain(timeout=5)

        asyncio.run(scenario())
        assert dispatcher.pending == 0
        assert transport.recipients == [wa("+525550000003")]


class TestMessages:
    def _folio(self, **fields):
        values = dict(
            id="FOL-1", code="F-202602-001", org_unit_id="OU-1", status=FolioStatus.READY_TO_SCHEDULE,
            org_unit="PUE", org_unit_name="Puebla", amount=1500.5, beneficiary="Acme",
        )
        values.update(fields)
        return Folio(**values)

    def test_amount_format(self):
        assert format_amount(1500.5) == "$1,500.50"
        assert format_amount(None) == "-"

    def test_urgent_prefix(self):
        body = folio_message(EventKind.SELECTED, self._folio(priority=Priority.URGENT), "Carlos")
        assert body.startswith("URGENT | ")
        assert "By: Carlos" in body
        assert "Amount: $1,500.50" in body

    def test_quote_warning_only_without_quote(self):
        assert "no quote" in folio_message(EventKind.APPROVED, self._folio())
        with_quote = self._folio(quote_attachment_ref="s3://b/quotes/F-202602-001/1.pdf")
        assert "no quote" not in folio_message(EventKind.APPROVED, with_quote)
