"""
Command Parser

Turns the text of an inbound message into an intent plus its arguments.
The first line carries the command (case-insensitive); any following
`Key: value` lines carry folio or project fields:

    create folio Replace compressor valves urgent
    Plant: PUE
    Beneficiary: Refacciones del Centro
    Amount: $12,500.00
    Category: Maintenance
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class CommandIntent(Enum):
    CREATE_FOLIO = "create_folio"
    STATUS = "status"
    APPROVE = "approve"
    APPROVE_OVERRIDE = "approve_override"
    SELECT = "select"
    REQUEST_PAYMENT = "request_payment"
    MARK_PAID = "mark_paid"
    CLOSE_FOLIO = "close_folio"
    CANCEL = "cancel"
    AUTHORIZE_CANCELLATION = "authorize_cancellation"
    REJECT_CANCELLATION = "reject_cancellation"
    HISTORY = "history"
    COMMENT = "comment"
    ATTACH = "attach"
    CREATE_PROJECT = "create_project"
    LIST_PROJECTS = "list_projects"
    APPROVE_PROJECT = "approve_project"
    CLOSE_PROJECT = "close_project"
    CONFIRM_CLOSE_PROJECT = "confirm_close_project"
    CANCEL_PROJECT = "cancel_project"
    CONFIRM_PROJECT_CANCELLATION = "confirm_project_cancellation"
    ATTACH_PROJECT = "attach_project"
    FIELDS = "fields"
    HELP = "help"
    UNKNOWN = "unknown"


@dataclass
class ParsedCommand:
    intent: CommandIntent
    codes: List[str] = field(default_factory=list)
    text: Optional[str] = None
    reason: Optional[str] = None
    fields: Dict[str, str] = field(default_factory=dict)
    urgent: bool = False
    original_text: str = ""

    @property
    def code(self) -> Optional[str]:
        return self.codes[0] if self.codes else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent.value,
            "codes": self.codes,
            "text": self.text,
            "reason": self.reason,
            "fields": self.fields,
            "urgent": self.urgent,
        }


# Field labels accepted on `Key: value` lines -> draft attribute
FIELD_ALIASES: Dict[str, str] = {
    "plant": "plant",
    "planta": "plant",
    "beneficiary": "beneficiary",
    "amount": "amount",
    "cost": "amount",
    "category": "category",
    "subcategory": "subcategory",
    "unit": "unit_ref",
    "purpose": "purpose",
    "project": "project_ref",
    "name": "name",
    "start": "start_date",
    "start date": "start_date",
    "estimated close": "estimated_close_date",
    "estimated close date": "estimated_close_date",
}

_FIELD_LINE = re.compile(r"^\s*([A-Za-z][A-Za-z ]*?)\s*:\s*(.*?)\s*$")
_REASON = re.compile(r"\breason\s*:\s*(.+)$", re.IGNORECASE | re.DOTALL)
_URGENT_TAIL = re.compile(r"\s+urgent\s*$", re.IGNORECASE)
_HELP_WORDS = {"help", "menu", "hi", "hello", "?"}

CODE = r"([A-Za-z]+-\d{6}-\d{3,}|\S+)"

# (intent, pattern on the first line). Order matters: longer phrases first.
PATTERNS: List[Tuple[CommandIntent, re.Pattern]] = [
    (CommandIntent.CONFIRM_CLOSE_PROJECT, re.compile(rf"^confirm\s+close\s+project\s+{CODE}", re.I)),
    (CommandIntent.CONFIRM_PROJECT_CANCELLATION, re.compile(rf"^confirm\s+cancel(?:l)?ation\s+project\s+{CODE}", re.I)),
    (CommandIntent.AUTHORIZE_CANCELLATION, re.compile(rf"^authori[sz]e\s+cancel(?:l)?ation\s+{CODE}", re.I)),
    (CommandIntent.REJECT_CANCELLATION, re.compile(rf"^reject\s+cancel(?:l)?ation\s+{CODE}", re.I)),
    (CommandIntent.APPROVE_OVERRIDE, re.compile(rf"^approve[_ ]override\s+{CODE}", re.I)),
    (CommandIntent.APPROVE_PROJECT, re.compile(rf"^approve\s+project\s+{CODE}", re.I)),
    (CommandIntent.APPROVE, re.compile(r"^approve\s+(.+)$", re.I)),
    (CommandIntent.CREATE_FOLIO, re.compile(r"^create\s+folio\b\s*(.*)$", re.I)),
    (CommandIntent.CREATE_PROJECT, re.compile(r"^create\s+project\b\s*(.*)$", re.I)),
    (CommandIntent.LIST_PROJECTS, re.compile(r"^projects\s+(?:for|of|in)\s+(.+)$", re.I)),
    (CommandIntent.CLOSE_PROJECT, re.compile(rf"^close\s+project\s+{CODE}", re.I)),
    (CommandIntent.CANCEL_PROJECT, re.compile(rf"^cancel\s+project\s+{CODE}", re.I)),
    (CommandIntent.ATTACH_PROJECT, re.compile(rf"^attach\s+project\s+{CODE}", re.I)),
    (CommandIntent.ATTACH, re.compile(rf"^attach\s+{CODE}", re.I)),
    (CommandIntent.CLOSE_FOLIO, re.compile(rf"^close\s+(?:folio\s+)?{CODE}", re.I)),
    (CommandIntent.REQUEST_PAYMENT, re.compile(rf"^request\s+payment\s+{CODE}", re.I)),
    (CommandIntent.MARK_PAID, re.compile(rf"^(?:mark\s+)?paid\s+{CODE}", re.I)),
    (CommandIntent.SELECT, re.compile(rf"^select\s+{CODE}", re.I)),
    (CommandIntent.CANCEL, re.compile(rf"^cancel\s+{CODE}", re.I)),
    (CommandIntent.STATUS, re.compile(r"^status\s+(.+)$", re.I)),
    (CommandIntent.HISTORY, re.compile(rf"^history\s+{CODE}", re.I)),
    (CommandIntent.COMMENT, re.compile(r"^comment\s+([A-Za-z]+-\d{6}-\d{3,})\s*:?\s*(.*)$", re.I | re.DOTALL)),
]


def split_tokens(text: str) -> List[str]:
    return [token for token in re.split(r"[\s,;]+", text or "") if token]


def parse_fields(lines: List[str]) -> Dict[str, str]:
    """Collect recognised `Key: value` lines; unknown keys are ignored."""
    fields: Dict[str, str] = {}
    for line in lines:
        match = _FIELD_LINE.match(line)
        if not match:
            continue
        key = FIELD_ALIASES.get(match.group(1).strip().lower())
        if key and match.group(2):
            fields[key] = match.group(2)
    return fields


def _strip_code(token: str) -> str:
    return token.strip().rstrip(",;.:").upper()


def parse_command(body: Optional[str]) -> ParsedCommand:
    text = str(body or "").strip()
    if not text:
        return ParsedCommand(CommandIntent.HELP, original_text=text)

    lines = text.splitlines()
    first, rest = lines[0].strip(), lines[1:]

    if first.lower() in _HELP_WORDS:
        return ParsedCommand(CommandIntent.HELP, original_text=text)

    for intent, pattern in PATTERNS:
        match = pattern.match(first if intent is not CommandIntent.COMMENT else text)
        if not match:
            continue
        parsed = ParsedCommand(intent, original_text=text)
        reason = _REASON.search(text)
        if reason:
            parsed.reason = reason.group(1).strip()

        if intent in (CommandIntent.APPROVE, CommandIntent.STATUS):
            parsed.codes = [_strip_code(token) for token in split_tokens(match.group(1))]
        elif intent is CommandIntent.COMMENT:
            parsed.codes = [_strip_code(match.group(1))]
            parsed.text = match.group(2).strip()
        elif intent in (CommandIntent.CREATE_FOLIO, CommandIntent.CREATE_PROJECT):
            head = match.group(1).strip()
            if intent is CommandIntent.CREATE_FOLIO and _URGENT_TAIL.search(" " + head):
                parsed.urgent = True
                head = _URGENT_TAIL.sub("", " " + head).strip()
            parsed.text = head or None
            parsed.fields = parse_fields(rest)
        elif intent is CommandIntent.LIST_PROJECTS:
            parsed.text = match.group(1).strip()
        else:
            parsed.codes = [_strip_code(match.group(1))]
        return parsed

    fields = parse_fields(lines)
    if fields:
        return ParsedCommand(CommandIntent.FIELDS, fields=fields, original_text=text)
    return ParsedCommand(CommandIntent.UNKNOWN, original_text=text)


HELP_TEXT = "\n".join([
    "Commands:",
    "create folio <purpose> [urgent]  (then Plant/Beneficiary/Amount/Category lines)",
    "status <code> [<code> ...]",
    "approve <code> [<code> ...]  (short numbers work: approve 001 002)",
    "approve_override <code> reason: <text>",
    "select <code> | request payment <code> | paid <code> | close folio <code>",
    "cancel <code> reason: <text>",
    "authorize cancellation <code> | reject cancellation <code> reason: <text>",
    "history <code> | comment <code>: <text> | attach <code>",
    "create project <name> | projects for <plant> | approve project <code>",
    "close project <code> | cancel project <code> | confirm cancellation project <code>",
    "attach project <code>",
])
