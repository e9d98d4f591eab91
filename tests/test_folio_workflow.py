"""
Tests for the Folio Workflow

Creation, approvals, the controller payment lane, cancellation,
comments, quotes and amount handling.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from conftest import FakeStore, folio_draft
from folioflow.core.models import FolioStatus, Priority, RecordKind, money
from folioflow.services.audit_trail import AuditTrailService, format_history
from folioflow.services.errors import (
    AuthorizationError,
    ConflictError,
    ErrorCode,
    NotFoundError,
    ValidationError,
)
from folioflow.services.folio_workflow import (
    BatchOutcome,
    FolioDraft,
    normalize_folio_code,
    parse_amount,
    resolve_batch_tokens,
)
from folioflow.services.inbound import format_batch_report
from folioflow.services.project_workflow import ProjectDraft

FEB = datetime(2026, 2, 10, 15, 30, tzinfo=timezone.utc)


def statuses(folios, code):
    return [entry.status_at_entry for entry in folios.history(code)]


def pending_hq(folios, actors, **overrides):
    """Create a folio as GA and take it through plant approval."""
    created = folios.create_folio(actors["ga"], folio_draft(**overrides), when=FEB)
    folios.approve(actors["gg"], created.record_code)
    return created.record_code


def ready(folios, actors):
    code = pending_hq(folios, actors)
    folios.approve(actors["zp"], code)
    return code


class TestFolioCreation:
    """Creation and the director auto-approval path."""

    def test_director_folio_is_approved_on_creation(self, folios, actors):
        draft = folio_draft(amount="$1,500.50", category="Workshop", unit_ref="at-15", plant="PUE")
        result = folios.create_folio(actors["zp"], draft, when=FEB)

        assert result.record_code == "F-202602-001"
        assert result.status == FolioStatus.READY_TO_SCHEDULE.value
        folio = result.folio
        assert folio.amount == 1500.50
        assert folio.unit_ref == "AT-15"
        assert folio.org_unit == "PUE"
        assert folio.approved_by == actors["zp"].user_id
        assert folio.approved_at

        history = folios.history(result.record_code)
        assert [h.status_at_entry for h in history] == ["GENERATED", "HQ_APPROVED", "READY_TO_SCHEDULE"]
        assert "automatically" in history[1].comment
        assert all(h.actor_role == "ZP" for h in history)

        assert [n.event_kind for n in result.notifications] == ["APPROVED"]
        assert result.notifications[0].org_unit_id == folio.org_unit_id

    def test_plant_folio_waits_for_plant_approval(self, folios, actors):
        result = folios.create_folio(actors["ga"], folio_draft(), when=FEB)

        assert result.status == FolioStatus.PENDING_PLANT_APPROVAL.value
        assert result.folio.org_unit == "PUE"
        assert result.folio.approved_by is None
        assert statuses(folios, result.record_code) == ["GENERATED", "PENDING_PLANT_APPROVAL"]
        assert result.notifications[0].event_kind == "FOLIO_CREATED"
        assert result.notifications[0].actor_phone == actors["ga"].canonical_phone

    def test_codes_are_sequential_within_the_month(self, folios, actors):
        first = folios.create_folio(actors["ga"], folio_draft(), when=FEB)
        second = folios.create_folio(actors["ga"], folio_draft(), when=FEB)
        march = folios.create_folio(actors["ga"], folio_draft(), when=datetime(2026, 3, 1, tzinfo=timezone.utc))
        assert (first.record_code, second.record_code) == ("F-202602-001", "F-202602-002")
        assert march.record_code == "F-202603-001"

    def test_round_trip(self, folios, actors):
        created = folios.create_folio(actors["ga"], folio_draft(urgent=True, subcategory="Pneumatics"), when=FEB)
        loaded = folios.get_folio(created.record_code.lower())
        assert loaded.code == created.record_code
        assert loaded.beneficiary == "Refacciones del Centro"
        assert loaded.purpose == "Compressor valves"
        assert loaded.subcategory == "Pneumatics"
        assert loaded.priority is Priority.URGENT
        assert loaded.created_by_id == actors["ga"].user_id

    def test_missing_fields(self, folios, actors):
        with pytest.raises(ValidationError) as exc:
            folios.create_folio(actors["ga"], FolioDraft(purpose="Valves"))
        assert exc.value.code is ErrorCode.MISSING_FIELD
        assert "Beneficiary" in exc.value.message
        assert "Amount" in exc.value.message

    def test_workshop_needs_unit(self, folios, actors):
        with pytest.raises(ValidationError) as exc:
            folios.create_folio(actors["ga"], folio_draft(category="Workshop"))
        assert "Unit" in exc.value.message

    def test_director_must_name_plant(self, folios, actors):
        with pytest.raises(ValidationError) as exc:
            folios.create_folio(actors["zp"], folio_draft())
        assert "Plant" in exc.value.message

    def test_plant_role_cannot_create_for_another_plant(self, folios, actors):
        with pytest.raises(AuthorizationError):
            folios.create_folio(actors["ga"], folio_draft(plant="QRO"))

    def test_unknown_plant(self, folios, actors):
        with pytest.raises(NotFoundError):
            folios.create_folio(actors["zp"], folio_draft(plant="MTY"))

    @pytest.mark.parametrize(
        "raw",
        ["-5", "0", "abc", "", "1e5", "inf", "nan", "9" * 400, "0.001", "10000000000", float("inf"), float("nan"), 10 ** 400],
    )
    def test_invalid_amounts(self, raw):
        with pytest.raises(ValidationError) as exc:
            parse_amount(raw)
        assert exc.value.code is ErrorCode.INVALID_AMOUNT

    def test_amount_formats(self):
        assert parse_amount("$12,500.00") == 12500.0
        assert parse_amount("1500.50 MXN") == 1500.5
        assert parse_amount(99) == 99.0
        assert parse_amount("MXN 250") == 250.0
        assert parse_amount("9,999,999,999.99") == 9999999999.99
        assert parse_amount("10.005") == 10.01

    def test_amount_survives_the_round_trip(self, folios, actors, db):
        created = folios.create_folio(actors["ga"], folio_draft(amount="123,456.78"), when=FEB)
        assert created.folio.amount == 123456.78
        assert folios.get_folio(created.record_code).amount == 123456.78

        column = next(c for c in db.query_all("PRAGMA table_info(folios)") if c["name"] == "amount")
        assert column["type"] == "NUMERIC(12,2)"

    def test_stored_amounts_are_read_back_in_cents(self):
        # float4 and Decimal values as a Postgres driver may return them
        assert money(123456.78125) == 123456.78
        assert money(Decimal("98765.43")) == 98765.43
        assert money(0.1 + 0.2) == 0.3
        assert money(None) is None

    def test_failed_creation_leaves_no_trace(self, folios, projects, actors, db):
        with pytest.raises(NotFoundError):
            folios.create_folio(actors["ga"], folio_draft(project_ref="PRJ-202602-009"), when=FEB)
        assert db.query_one("SELECT COUNT(*) AS n FROM folios")["n"] == 0
        assert db.query_one("SELECT COUNT(*) AS n FROM folio_history")["n"] == 0
        assert folios.create_folio(actors["ga"], folio_draft(), when=FEB).record_code == "F-202602-001"

    def test_project_from_another_plant_is_rejected(self, folios, projects, actors):
        project = projects.create_project(actors["ga_qro"], ProjectDraft(name="Dock"), when=FEB)
        with pytest.raises(ValidationError):
            folios.create_folio(actors["ga"], folio_draft(project_ref=project.record_code), when=FEB)


class TestApproval:
    def test_plant_approval_moves_to_hq_queue(self, folios, actors):
        created = folios.create_folio(actors["ga"], folio_draft(), when=FEB)
        result = folios.approve(actors["gg"], created.record_code)

        assert result.status == FolioStatus.PENDING_HQ_APPROVAL.value
        assert statuses(folios, created.record_code)[-2:] == ["PLANT_APPROVED", "PENDING_HQ_APPROVAL"]
        assert [n.event_kind for n in result.notifications] == ["PLANT_APPROVED"]

    def test_director_approval(self, folios, actors):
        code = pending_hq(folios, actors)
        result = folios.approve(actors["zp"], code)

        assert result.status == FolioStatus.READY_TO_SCHEDULE.value
        assert result.folio.approved_by == actors["zp"].user_id
        assert statuses(folios, code)[-2:] == ["HQ_APPROVED", "READY_TO_SCHEDULE"]
        notification = result.notifications[0]
        assert notification.event_kind == "APPROVED"
        assert "Warning: no quote attached yet." in notification.body

    def test_second_approval_conflicts(self, folios, actors):
        code = ready(folios, actors)
        with pytest.raises(ConflictError) as exc:
            folios.approve(actors["zp"], code)
        assert "already approved" in exc.value.message

    def test_director_cannot_skip_plant_without_override(self, folios, actors):
        created = folios.create_folio(actors["ga"], folio_draft(), when=FEB)
        with pytest.raises(ConflictError) as exc:
            folios.approve(actors["zp"], created.record_code)
        assert "approve_override" in exc.value.message

    def test_controller_cannot_approve(self, folios, actors):
        created = folios.create_folio(actors["ga"], folio_draft(), when=FEB)
        with pytest.raises(AuthorizationError) as exc:
            folios.approve(actors["cdmx"], created.record_code)
        assert "GA, GG" in exc.value.message
        assert folios.get_folio(created.record_code).status is FolioStatus.PENDING_PLANT_APPROVAL

    def test_malformed_and_missing_codes(self, folios, actors):
        with pytest.raises(ValidationError) as exc:
            normalize_folio_code("X-1")
        assert exc.value.code is ErrorCode.MALFORMED_CODE
        with pytest.raises(NotFoundError):
            folios.approve(actors["gg"], "F-202602-999")

    def test_override_from_plant_pending(self, folios, actors):
        created = folios.create_folio(actors["ga"], folio_draft(), when=FEB)
        result = folios.approve_override(actors["zp"], created.record_code, "Supplier deadline today")

        assert result.status == FolioStatus.READY_TO_SCHEDULE.value
        history = folios.history(created.record_code)
        assert [h.status_at_entry for h in history][-2:] == ["HQ_APPROVED", "READY_TO_SCHEDULE"]
        assert "PENDING_PLANT_APPROVAL" in history[-2].comment
        assert "Supplier deadline today" in history[-2].comment
        assert result.notifications[0].event_kind == "OVERRIDE_APPROVED"

    def test_override_needs_reason(self, folios, actors):
        created = folios.create_folio(actors["ga"], folio_draft(), when=FEB)
        with pytest.raises(ValidationError):
            folios.approve_override(actors["zp"], created.record_code, "  ")

    def test_override_is_director_only(self, folios, actors):
        created = folios.create_folio(actors["ga"], folio_draft(), when=FEB)
        with pytest.raises(AuthorizationError):
            folios.approve_override(actors["gg"], created.record_code, "urgent")


class TestBatchApproval:
    def test_short_tokens_take_period_of_first_full_code(self):
        resolved = resolve_batch_tokens(["001", "2", "F-202602-050", "x1"])
        assert resolved == [
            ("001", "F-202602-001"),
            ("2", "F-202602-002"),
            ("F-202602-050", "F-202602-050"),
            ("x1", None),
        ]

    def test_short_tokens_without_full_code_use_current_period(self):
        assert resolve_batch_tokens(["7"], when=FEB) == [("7", "F-202602-007")]

    def test_mixed_batch_reports_each_item(self, folios, actors):
        for _ in range(3):
            folios.create_folio(actors["ga"], folio_draft(), when=FEB)
        folios.approve(actors["gg"], "F-202602-002")
        folios.request_cancellation(actors["ga"], "F-202602-003", "Duplicated")

        report = folios.approve_batch(actors["gg"], ["001", "002", "003", "F-202602-050", "abc"])
        outcomes = [(item.code, item.outcome) for item in report.items]
        assert outcomes == [
            ("F-202602-001", BatchOutcome.APPROVED),
            ("F-202602-002", BatchOutcome.ALREADY_APPROVED),
            ("F-202602-003", BatchOutcome.CANCELED),
            ("F-202602-050", BatchOutcome.NOT_FOUND),
            (None, BatchOutcome.MALFORMED_TOKEN),
        ]
        assert len(report.notifications) == 1
        assert folios.get_folio("F-202602-001").status is FolioStatus.PENDING_HQ_APPROVAL

        text = format_batch_report(report)
        assert text.splitlines()[0] == "Approved 1 of 5:"
        assert "F-202602-050: does not exist" in text

    def test_batch_uses_when_for_short_tokens(self, folios, actors):
        folios.create_folio(actors["ga"], folio_draft(), when=FEB)
        report = folios.approve_batch(actors["gg"], ["1"], when=FEB)
        assert report.items[0].outcome is BatchOutcome.APPROVED

    def test_batch_rejects_role_up_front(self, folios, actors):
        with pytest.raises(AuthorizationError):
            folios.approve_batch(actors["cdmx"], ["001"], when=FEB)


class TestControllerLane:
    def test_full_lane(self, folios, actors):
        code = ready(folios, actors)
        cdmx = actors["cdmx"]
        assert folios.select_for_week(cdmx, code).status == "SELECTED_FOR_WEEK"
        assert folios.request_payment(cdmx, code).status == "PAYMENT_REQUESTED"
        assert folios.mark_paid(cdmx, code).status == "PAID"
        result = folios.close_folio(cdmx, code)
        assert result.status == "CLOSED"
        assert result.notifications[0].event_kind == "CLOSED"
        assert statuses(folios, code)[-4:] == ["SELECTED_FOR_WEEK", "PAYMENT_REQUESTED", "PAID", "CLOSED"]

    def test_steps_cannot_be_skipped(self, folios, actors):
        code = ready(folios, actors)
        with pytest.raises(ConflictError) as exc:
            folios.mark_paid(actors["cdmx"], code)
        assert exc.value.context["current_status"] == "READY_TO_SCHEDULE"

    def test_repeated_step_conflicts(self, folios, actors):
        code = ready(folios, actors)
        folios.select_for_week(actors["cdmx"], code)
        with pytest.raises(ConflictError) as exc:
            folios.select_for_week(actors["cdmx"], code)
        assert "already" in exc.value.message

    def test_plant_role_cannot_pay(self, folios, actors):
        code = ready(folios, actors)
        with pytest.raises(AuthorizationError):
            folios.select_for_week(actors["ga"], code)


class TestCancellation:
    def test_paid_folio_cannot_be_canceled(self, folios, actors, db):
        code = ready(folios, actors)
        for step in (folios.select_for_week, folios.request_payment, folios.mark_paid):
            step(actors["cdmx"], code)
        audit = AuditTrailService(db)
        before = audit.count(RecordKind.FOLIO, code)

        with pytest.raises(ConflictError):
            folios.request_cancellation(actors["cdmx"], code, "Wrong supplier")
        assert audit.count(RecordKind.FOLIO, code) == before
        assert folios.get_folio(code).status is FolioStatus.PAID

    def test_rejection_restores_prior_status(self, folios, actors):
        code = pending_hq(folios, actors)
        requested = folios.request_cancellation(actors["ga"], code, "Duplicated request")
        assert requested.folio.status is FolioStatus.CANCELLATION_REQUESTED
        assert requested.folio.prior_status is FolioStatus.PENDING_HQ_APPROVAL
        assert requested.notifications[0].event_kind == "CANCELLATION_REQUESTED"

        rejected = folios.reject_cancellation(actors["zp"], code, "Still needed")
        assert rejected.folio.status is FolioStatus.PENDING_HQ_APPROVAL
        assert rejected.folio.prior_status is None
        history = folios.history(code)
        assert history[-1].status_at_entry == "PENDING_HQ_APPROVAL"
        assert "Still needed" in history[-1].comment

        # The restored folio continues normally
        assert folios.approve(actors["zp"], code).status == "READY_TO_SCHEDULE"

    def test_authorized_cancellation_is_final(self, folios, actors):
        code = pending_hq(folios, actors)
        folios.request_cancellation(actors["cdmx"], code, "Budget frozen")
        result = folios.authorize_cancellation(actors["zp"], code)
        assert result.status == "CANCELED"
        assert result.folio.prior_status is None
        with pytest.raises(ConflictError):
            folios.approve(actors["zp"], code)
        with pytest.raises(ConflictError):
            folios.request_cancellation(actors["ga"], code, "again")

    def test_cancellation_needs_reason(self, folios, actors):
        code = pending_hq(folios, actors)
        with pytest.raises(ValidationError):
            folios.request_cancellation(actors["ga"], code, "")

    def test_resolution_is_director_only(self, folios, actors):
        code = pending_hq(folios, actors)
        folios.request_cancellation(actors["ga"], code, "Duplicated")
        with pytest.raises(AuthorizationError):
            folios.authorize_cancellation(actors["gg"], code)

    def test_resolving_without_request_conflicts(self, folios, actors):
        code = pending_hq(folios, actors)
        with pytest.raises(ConflictError):
            folios.authorize_cancellation(actors["zp"], code)


class TestCommentsAndQuotes:
    def test_comment_is_audited_without_status_change(self, folios, actors):
        created = folios.create_folio(actors["ga"], folio_draft(), when=FEB)
        result = folios.add_comment(actors["cdmx"], created.record_code, "Please attach the invoice")

        history = folios.history(created.record_code)
        assert history[-1].status_at_entry == "PENDING_PLANT_APPROVAL"
        assert history[-1].comment == "Please attach the invoice"
        assert history[-1].actor_role == "CDMX"
        assert result.notifications[0].notify_everyone
        assert "[" in format_history(history)

    def test_empty_comment(self, folios, actors):
        created = folios.create_folio(actors["ga"], folio_draft(), when=FEB)
        with pytest.raises(ValidationError):
            folios.add_comment(actors["ga"], created.record_code, " ")

    def test_attach_quote(self, folios, actors):
        store = FakeStore()
        created = folios.create_folio(actors["ga"], folio_draft(), when=FEB)
        result = folios.attach_quote(actors["ga"], created.record_code, b"%PDF", "application/pdf", store=store)

        assert result.folio.quote_attachment_ref.startswith("s3://test-bucket/quotes/F-202602-001/")
        assert result.folio.quote_attachment_ref.endswith(".pdf")
        assert result.notifications[0].event_kind == "QUOTE_ATTACHED"
        assert len(store.objects) == 1

        folios.approve(actors["gg"], created.record_code)
        approved = folios.approve(actors["zp"], created.record_code)
        assert "no quote" not in approved.notifications[0].body

    def test_empty_attachment(self, folios, actors):
        created = folios.create_folio(actors["ga"], folio_draft(), when=FEB)
        with pytest.raises(ValidationError):
            folios.attach_quote(actors["ga"], created.record_code, b"", store=FakeStore())
