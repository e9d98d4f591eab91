"""
Inbound Message Handler

One inbound chat event in, one reply out:

    idempotency gate -> identity -> parse -> engine call -> reply text

Every outcome, errors included, becomes reply text; the webhook always
acknowledges with 200. Notifications produced by the engines are returned
to the caller, which hands them to the dispatcher once the reply is ready.

Multi-turn state (drafts, a pending `attach`, a pending project close)
lives in the session store keyed by the actor's canonical phone.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from folioflow.core.database import FolioDB, get_db
from folioflow.core.models import Actor, NotificationRequest, RecordKind, TransitionResult
from folioflow.models.inbound import InboundEvent
from folioflow.services.audit_trail import format_history
from folioflow.services.commands import HELP_TEXT, CommandIntent, ParsedCommand, parse_command
from folioflow.services.errors import (
    ConfirmationRequired,
    ConflictError,
    ErrorCode,
    FolioflowError,
    InfrastructureError,
    ValidationError,
)
from folioflow.services.folio_workflow import (
    FOLIO_CODE_RE,
    BatchOutcome,
    BatchReport,
    FolioDraft,
    FolioWorkflowService,
)
from folioflow.services.identity import IdentityResolver
from folioflow.services.logging import log_error, log_inbound
from folioflow.services.metrics import record_error, record_inbound
from folioflow.services.notifications import format_amount, urgent_prefix
from folioflow.services.object_store import ObjectStore
from folioflow.services.project_workflow import PROJECT_CODE_RE, ProjectDraft, ProjectWorkflowService
from folioflow.state.idempotency import Admission, admit
from folioflow.state.sessions import SessionStore, get_session_store

logger = logging.getLogger(__name__)

REPLAY_REPLY = "Received (retry detected)."
RETRY_LATER_REPLY = "We could not process your request. Please try again in a minute."
ONBOARDING_REPLY = (
    "This number is not registered. Ask your administrator to add you to the "
    "directory with your plant and role, then send 'help'."
)

SLOT_FOLIO_DRAFT = "folio_draft"
SLOT_PROJECT_DRAFT = "project_draft"
SLOT_PENDING_ATTACH = "pending_attach"
SLOT_PENDING_CLOSE = "pending_close"


@dataclass
class InboundResult:
    reply: str
    outcome: str = "ok"
    notifications: List[NotificationRequest] = field(default_factory=list)
    actor: Optional[Actor] = None


class InboundMessageHandler:
    """
    Usage:
        handler = InboundMessageHandler()
        result = await handler.handle(event)
        dispatcher.submit(result.notifications)
    """

    def __init__(
        self,
        db: Optional[FolioDB] = None,
        folios: Optional[FolioWorkflowService] = None,
        projects: Optional[ProjectWorkflowService] = None,
        sessions: Optional[SessionStore] = None,
        resolver: Optional[IdentityResolver] = None,
        store: Optional[ObjectStore] = None,
        media_fetcher: Optional[Any] = None,
    ):
        self.db = db or get_db()
        self.folios = folios or FolioWorkflowService(self.db)
        self.projects = projects or ProjectWorkflowService(self.db)
        self.sessions = sessions or get_session_store()
        self.resolver = resolver or IdentityResolver(self.db)
        self.store = store
        self._media_fetcher = media_fetcher

    @property
    def media_fetcher(self):
        if self._media_fetcher is None:
            from folioflow.services.transport import get_transport
            self._media_fetcher = get_transport()
        return self._media_fetcher

    async def handle(self, event: InboundEvent) -> InboundResult:
        log_inbound(event.from_, event.delivery_id, event.attachment_count, event.body)

        try:
            if admit(event.delivery_id, event.from_, db=self.db) is Admission.ALREADY_SEEN:
                logger.info("Replay of delivery %s ignored", event.delivery_id)
                record_inbound("replay")
                return InboundResult(REPLAY_REPLY, outcome="replay")

            actor = self.resolver.resolve(event.from_)
        except Exception as exc:
            log_error("inbound_gate", "Could not admit inbound event", {"delivery_id": event.delivery_id}, exc)
            record_inbound("error")
            return InboundResult(RETRY_LATER_REPLY, outcome="error")

        if actor is None:
            record_inbound("unregistered")
            return InboundResult(ONBOARDING_REPLY, outcome="unregistered")

        notifications: List[NotificationRequest] = []
        try:
            reply = await self._route(actor, parse_command(event.body), event, notifications)
            outcome = "ok"
        except FolioflowError as exc:
            if isinstance(exc, InfrastructureError):
                log_error(exc.code.value, exc.detail or exc.message, exc.context, exc)
            else:
                logger.info("Rejected %s from %s: %s", exc.code.value, actor.canonical_phone, exc.message)
            record_error(exc.code.value)
            reply, outcome = exc.user_message, exc.code.value
            notifications = []
        except Exception as exc:
            log_error("unhandled", "Inbound event failed", {"phone": actor.canonical_phone}, exc)
            record_error("unhandled")
            reply, outcome = RETRY_LATER_REPLY, "error"
            notifications = []

        record_inbound(outcome)
        return InboundResult(reply, outcome=outcome, notifications=notifications, actor=actor)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def _route(self, actor: Actor, cmd: ParsedCommand, event: InboundEvent, out: List[NotificationRequest]) -> str:
        key = actor.canonical_phone
        intent = cmd.intent

        if event.has_attachment and intent not in (CommandIntent.ATTACH, CommandIntent.ATTACH_PROJECT):
            pending = self.sessions.get(key, SLOT_PENDING_ATTACH)
            if pending:
                self.sessions.delete(key, SLOT_PENDING_ATTACH)
                return await self._attach(actor, pending["kind"], pending["code"], event, out)

        def apply(result: TransitionResult) -> str:
            out.extend(result.notifications)
            return result.message

        f, p = self.folios, self.projects
        simple: dict = {
            CommandIntent.SELECT: lambda: apply(f.select_for_week(actor, cmd.code)),
            CommandIntent.REQUEST_PAYMENT: lambda: apply(f.request_payment(actor, cmd.code)),
            CommandIntent.MARK_PAID: lambda: apply(f.mark_paid(actor, cmd.code)),
            CommandIntent.CLOSE_FOLIO: lambda: apply(f.close_folio(actor, cmd.code)),
            CommandIntent.APPROVE_OVERRIDE: lambda: apply(f.approve_override(actor, cmd.code, cmd.reason)),
            CommandIntent.CANCEL: lambda: apply(f.request_cancellation(actor, cmd.code, cmd.reason)),
            CommandIntent.AUTHORIZE_CANCELLATION: lambda: apply(f.authorize_cancellation(actor, cmd.code)),
            CommandIntent.REJECT_CANCELLATION: lambda: apply(f.reject_cancellation(actor, cmd.code, cmd.reason)),
            CommandIntent.COMMENT: lambda: apply(f.add_comment(actor, cmd.code, cmd.text)),
            CommandIntent.APPROVE_PROJECT: lambda: apply(p.approve_project(actor, cmd.code)),
            CommandIntent.CANCEL_PROJECT: lambda: apply(p.request_cancellation(actor, cmd.code, cmd.reason)),
            CommandIntent.CONFIRM_PROJECT_CANCELLATION: lambda: apply(p.confirm_cancellation(actor, cmd.code)),
        }
        if intent in simple:
            return simple[intent]()

        if intent is CommandIntent.HELP and not event.has_attachment:
            return f"Hi {actor.name} ({actor.role.label}, {actor.org_unit or 'all plants'}).\n{HELP_TEXT}"
        if intent is CommandIntent.CREATE_FOLIO:
            draft = FolioDraft.from_dict(cmd.fields).merge(FolioDraft(purpose=cmd.text, urgent=cmd.urgent))
            return self._continue_folio_draft(actor, draft, out)
        if intent is CommandIntent.CREATE_PROJECT:
            draft = ProjectDraft.from_dict(cmd.fields).merge(ProjectDraft(name=cmd.text))
            return self._continue_project_draft(actor, draft, out)
        if intent is CommandIntent.FIELDS:
            return self._fill_draft(actor, cmd, out)
        if intent is CommandIntent.STATUS:
            return self._status(cmd.codes)
        if intent is CommandIntent.APPROVE:
            return self._approve(actor, cmd.codes, out)
        if intent is CommandIntent.HISTORY:
            return self._history(cmd.code)
        if intent in (CommandIntent.ATTACH, CommandIntent.ATTACH_PROJECT):
            kind = RecordKind.PROJECT if intent is CommandIntent.ATTACH_PROJECT else RecordKind.FOLIO
            if event.has_attachment:
                return await self._attach(actor, kind.value, cmd.code, event, out)
            code = (p.get_project(cmd.code) if kind is RecordKind.PROJECT else self.folios.get_folio(cmd.code)).code
            self.sessions.put(key, SLOT_PENDING_ATTACH, {"kind": kind.value, "code": code})
            return f"Send the file for {code} in your next message."
        if intent is CommandIntent.LIST_PROJECTS:
            return self._list_projects(cmd.text)
        if intent is CommandIntent.CLOSE_PROJECT:
            try:
                return apply(p.close_project(actor, cmd.code))
            except ConfirmationRequired as exc:
                self.sessions.put(key, SLOT_PENDING_CLOSE, {"code": exc.context["record_code"]})
                raise
        if intent is CommandIntent.CONFIRM_CLOSE_PROJECT:
            pending = self.sessions.get(key, SLOT_PENDING_CLOSE)
            if not pending or pending.get("code") != cmd.code:
                raise ConflictError(f"Nothing to confirm for {cmd.code}. Send 'close project {cmd.code}' first.")
            message = apply(p.close_project(actor, cmd.code, confirmed=True))
            self.sessions.delete(key, SLOT_PENDING_CLOSE)
            return message

        if event.has_attachment:
            return "I received a file but no folio. Send 'attach <code>' with the file or just before it."
        return "I did not understand that. Send 'help' to see the commands."

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def _continue_folio_draft(self, actor: Actor, draft: FolioDraft, out: List[NotificationRequest]) -> str:
        key = actor.canonical_phone
        self.sessions.put(key, SLOT_FOLIO_DRAFT, draft.to_dict())
        missing = draft.missing_fields(actor)
        if missing:
            return (
                "Folio draft saved. Still missing: " + ", ".join(missing) + ".\n"
                "Reply with lines like 'Amount: 1500.00'."
            )
        result = self.folios.create_folio(actor, draft)
        self.sessions.delete(key, SLOT_FOLIO_DRAFT)
        out.extend(result.notifications)
        return f"{urgent_prefix(result.folio)}{result.message}"

    def _continue_project_draft(self, actor: Actor, draft: ProjectDraft, out: List[NotificationRequest]) -> str:
        key = actor.canonical_phone
        self.sessions.put(key, SLOT_PROJECT_DRAFT, draft.to_dict())
        missing = draft.missing_fields(actor)
        if missing:
            return "Project draft saved. Still missing: " + ", ".join(missing) + "."
        result = self.projects.create_project(actor, draft)
        self.sessions.delete(key, SLOT_PROJECT_DRAFT)
        out.extend(result.notifications)
        return result.message

    def _fill_draft(self, actor: Actor, cmd: ParsedCommand, out: List[NotificationRequest]) -> str:
        key = actor.canonical_phone
        folio_draft = self.sessions.get(key, SLOT_FOLIO_DRAFT)
        if folio_draft is not None:
            draft = FolioDraft.from_dict(folio_draft).merge(FolioDraft.from_dict(cmd.fields))
            return self._continue_folio_draft(actor, draft, out)
        project_draft = self.sessions.get(key, SLOT_PROJECT_DRAFT)
        if project_draft is not None:
            draft = ProjectDraft.from_dict(project_draft).merge(ProjectDraft.from_dict(cmd.fields))
            return self._continue_project_draft(actor, draft, out)
        raise ValidationError("There is no folio or project in progress. Start with 'create folio <purpose>'.")

    # ------------------------------------------------------------------
    # Read commands
    # ------------------------------------------------------------------

    def _status(self, codes: List[str]) -> str:
        if not codes:
            raise ValidationError("Tell me which code: status <code>", code=ErrorCode.MISSING_FIELD)
        lines = []
        for code in codes:
            try:
                lines.append(self._status_line(code))
            except FolioflowError as exc:
                lines.append(exc.user_message)
        return "\n".join(lines)

    def _status_line(self, code: str) -> str:
        if PROJECT_CODE_RE.match(code):
            project = self.projects.get_project(code)
            totals = self.projects.totals(code)
            approved = "approved" if project.zp_approved else "not approved"
            return (
                f"{project.code} {project.name}: {project.status.value} ({approved}), "
                f"{totals.folio_count} folio(s), {format_amount(totals.total_amount)}"
            )
        folio = self.folios.get_folio(code)
        return (
            f"{urgent_prefix(folio)}{folio.code}: {folio.status.value} | "
            f"{folio.org_unit} | {format_amount(folio.amount)} | {folio.beneficiary or '-'}"
        )

    def _history(self, code: Optional[str]) -> str:
        code = str(code or "").upper()
        if PROJECT_CODE_RE.match(code):
            entries = self.projects.history(code)
        else:
            entries = self.folios.history(code)
        return f"History of {code}:\n{format_history(entries) or '(empty)'}"

    def _list_projects(self, unit: Optional[str]) -> str:
        summaries = self.projects.list_projects_for_unit(unit or "")
        if not summaries:
            return f"No projects for {unit}."
        lines = [f"Projects for {summaries[0].project.org_unit_name or unit}:"]
        for summary in summaries:
            project, totals = summary.project, summary.totals
            lines.append(
                f"{project.code} {project.name} [{project.status.value}] "
                f"{totals.folio_count} folio(s), {format_amount(totals.total_amount)}"
            )
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def _approve(self, actor: Actor, tokens: List[str], out: List[NotificationRequest]) -> str:
        if not tokens:
            raise ValidationError("Tell me which folio: approve <code>", code=ErrorCode.MISSING_FIELD)
        if len(tokens) == 1 and FOLIO_CODE_RE.match(tokens[0]):
            result = self.folios.approve(actor, tokens[0])
            out.extend(result.notifications)
            return result.message
        report = self.folios.approve_batch(actor, tokens)
        out.extend(report.notifications)
        return format_batch_report(report)

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def _attach(self, actor: Actor, kind: str, code: str, event: InboundEvent, out: List[NotificationRequest]) -> str:
        if not event.has_attachment:
            raise ValidationError("No file came with this message.", field="attachment")
        data, fetched_type = await self.media_fetcher.fetch_media(event.attachment_url)
        content_type = event.attachment_content_type or fetched_type
        if kind == RecordKind.PROJECT.value:
            result = self.projects.attach(actor, code, data, content_type, store=self.store)
        else:
            result = self.folios.attach_quote(actor, code, data, content_type, store=self.store)
        out.extend(result.notifications)
        return result.message


_BATCH_LABELS = {
    BatchOutcome.APPROVED: "approved",
    BatchOutcome.ALREADY_APPROVED: "already approved",
    BatchOutcome.NOT_FOUND: "does not exist",
    BatchOutcome.WRONG_STATE: "not in an approvable status",
    BatchOutcome.CANCELED: "canceled or pending cancellation",
    BatchOutcome.MALFORMED_TOKEN: "not a folio code",
}


def format_batch_report(report: BatchReport) -> str:
    lines = [f"Approved {report.count(BatchOutcome.APPROVED)} of {len(report.items)}:"]
    for item in report.items:
        label = _BATCH_LABELS[item.outcome]
        status = f" ({item.status})" if item.status and item.outcome is not BatchOutcome.APPROVED else ""
        lines.append(f"{item.code or item.token}: {label}{status}")
    return "\n".join(lines)


_HANDLER: Optional[InboundMessageHandler] = None


def get_inbound_handler() -> InboundMessageHandler:
    global _HANDLER
    if _HANDLER is None:
        _HANDLER = InboundMessageHandler()
    return _HANDLER


def reset_inbound_handler() -> None:
    global _HANDLER
    _HANDLER = None
