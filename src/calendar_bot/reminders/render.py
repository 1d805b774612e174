"""Render reminder messages from user templates.

Templates use the small Handlebars subset the management UI stores:
``{{ name }}`` substitutions and ``{{#if cond}}...{{else}}...{{/if}}``
blocks, where ``cond`` is a variable name or ``(gt name N)``.

Every message is rendered twice: a plain ``body`` and an HTML
``formatted_body``.  Event fields come from remote feeds and are untrusted,
so substituted values are stripped of control characters, length-capped and
HTML-escaped; the only markup ever emitted is bold text and ``matrix.to``
mention links.
"""

from __future__ import annotations

import html
import logging
import math
import re
import unicodedata
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from calendar_bot.models import Attendee, PendingReminder

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = (
    "**{{ summary }}** {{#if (gt minutes_before 0) }}starts in {{ duration }} {{/if}}"
    "{{#if location}}at {{ location }} {{/if}}"
    "{{#if attendees}} ─ {{ attendees }}{{/if}}"
    "{{#if description}}\n\n**Description:** {{ description }}\n{{/if}}"
)

MAX_TEMPLATE_LENGTH = 4000
MAX_VALUE_LENGTH = 500
MAX_DESCRIPTION_LENGTH = 2000
MAX_BODY_LENGTH = 16000

# Private-use code points mark substituted values while the template text is
# converted to HTML; they are stripped from all untrusted input.
_PH_OPEN = "\ue000"
_PH_CLOSE = "\ue001"
_PLACEHOLDER_PATTERN = re.compile(f"{_PH_OPEN}(\\d+){_PH_CLOSE}")

_TAG_PATTERN = re.compile(r"\{\{\s*(.*?)\s*\}\}", re.DOTALL)
_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"
_IF_PATTERN = re.compile(rf"^#if\s+(?:({_IDENT})|\(\s*gt\s+({_IDENT})\s+(-?\d+)\s*\))$")
_VAR_PATTERN = re.compile(rf"^{_IDENT}$")
_BOLD_PATTERN = re.compile(r"\*\*(.+?)\*\*", re.DOTALL)
_LINK_PATTERN = re.compile(r"\[([^\]\n]+)\]\((https://matrix\.to/#/[^)\s]+)\)")
_MATRIX_ID_PATTERN = re.compile(r"^@[^:\s]+:\S+$")


class TemplateError(ValueError):
    """Raised when a reminder template cannot be parsed."""


@dataclass(frozen=True)
class RenderedMessage:
    body: str
    formatted_body: str


# ---------------------------------------------------------------------------
# Sanitization
# ---------------------------------------------------------------------------


def sanitize_text(
    value: Any, *, max_length: int = MAX_VALUE_LENGTH, multiline: bool = False
) -> str:
    """Strip control characters and cap the length of an untrusted value."""
    if value is None:
        return ""
    text = str(value)
    if not multiline:
        text = " ".join(text.split())
    kept = []
    for char in text:
        if char in (_PH_OPEN, _PH_CLOSE):
            continue
        if char in "\n\t" and multiline:
            kept.append(char)
        elif unicodedata.category(char) not in ("Cc", "Cf"):
            kept.append(char)
    text = "".join(kept).strip()
    if len(text) > max_length:
        text = text[: max_length - 1].rstrip() + "…"
    return text


def humanize_minutes(minutes: int) -> str:
    """Format a minute count as e.g. ``1 hour 30 minutes``."""
    if minutes <= 0:
        return "now"
    days, remainder = divmod(minutes, 24 * 60)
    hours, mins = divmod(remainder, 60)
    parts = []
    for amount, unit in ((days, "day"), (hours, "hour"), (mins, "minute")):
        if amount:
            parts.append(f"{amount} {unit}{'s' if amount != 1 else ''}")
    return " ".join(parts)


# ---------------------------------------------------------------------------
# Template parsing
# ---------------------------------------------------------------------------


@dataclass
class _Text:
    text: str


@dataclass
class _Var:
    name: str


@dataclass
class _If:
    name: str
    greater_than: int | None
    then: list[Any] = field(default_factory=list)
    otherwise: list[Any] = field(default_factory=list)


def parse_template(template: str) -> list[Any]:
    """Parse *template* into a node list.

    Raises
    ------
    TemplateError
        On unknown tags or unbalanced ``if`` blocks.
    """
    root: list[Any] = []
    stack: list[tuple[_If, list[Any]]] = []
    current = root
    pos = 0
    for match in _TAG_PATTERN.finditer(template):
        if match.start() > pos:
            current.append(_Text(template[pos : match.start()]))
        pos = match.end()
        tag = match.group(1)

        if tag.startswith("#if"):
            cond = _IF_PATTERN.match(tag)
            if cond is None:
                raise TemplateError(f"unsupported condition: {{{{{tag}}}}}")
            plain_name, gt_name, gt_value = cond.groups()
            node = _If(
                name=plain_name or gt_name,
                greater_than=int(gt_value) if gt_value is not None else None,
            )
            current.append(node)
            stack.append((node, current))
            current = node.then
        elif tag == "else":
            if not stack:
                raise TemplateError("{{else}} outside of an if block")
            node = stack[-1][0]
            if current is node.otherwise:
                raise TemplateError("duplicate {{else}}")
            current = node.otherwise
        elif tag == "/if":
            if not stack:
                raise TemplateError("unbalanced {{/if}}")
            _, current = stack.pop()
        elif _VAR_PATTERN.match(tag):
            current.append(_Var(tag))
        else:
            raise TemplateError(f"unsupported tag: {{{{{tag}}}}}")

    if stack:
        raise TemplateError("unclosed {{#if}} block")
    if pos < len(template):
        current.append(_Text(template[pos:]))
    return root


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Value:
    raw: Any
    plain: str
    html: str


def _text_value(
    raw: Any, *, max_length: int = MAX_VALUE_LENGTH, multiline: bool = False
) -> _Value:
    text = sanitize_text(raw, max_length=max_length, multiline=multiline)
    return _Value(raw=text, plain=text, html=html.escape(text).replace("\n", "<br>"))


def _attendees_value(attendees: list[Attendee], mappings: Mapping[str, str]) -> _Value:
    plain_parts = []
    html_parts = []
    for attendee in attendees:
        matrix_id = mappings.get(attendee.email)
        if matrix_id is not None and not _MATRIX_ID_PATTERN.match(matrix_id):
            matrix_id = None
        name = sanitize_text(attendee.common_name or matrix_id or attendee.email)
        if matrix_id is not None:
            link_text = re.sub(r"[\[\]()]", "", name) or matrix_id
            url = f"https://matrix.to/#/{matrix_id}"
            plain_parts.append(f"[{link_text}]({url})")
            html_parts.append(f'<a href="{html.escape(url)}">{html.escape(link_text)}</a>')
        else:
            plain_parts.append(name)
            html_parts.append(html.escape(name))
    return _Value(raw=plain_parts, plain=", ".join(plain_parts), html=", ".join(html_parts))


def _truthy(value: _Value | None, greater_than: int | None) -> bool:
    if value is None:
        return False
    if greater_than is not None:
        try:
            return float(value.raw) > greater_than
        except (TypeError, ValueError):
            return False
    return bool(value.raw)


def _walk(
    nodes: list[Any],
    context: Mapping[str, _Value],
    plain: list[str],
    markup: list[str],
    values: list[_Value],
) -> None:
    for node in nodes:
        if isinstance(node, _Text):
            plain.append(node.text)
            markup.append(node.text)
        elif isinstance(node, _Var):
            value = context.get(node.name)
            if value is None:
                continue
            plain.append(value.plain)
            markup.append(f"{_PH_OPEN}{len(values)}{_PH_CLOSE}")
            values.append(value)
        else:
            taken = _truthy(context.get(node.name), node.greater_than)
            branch = node.then if taken else node.otherwise
            _walk(branch, context, plain, markup, values)


def _markup_to_html(markup: str, values: list[_Value]) -> str:
    """Convert trusted template text to HTML and splice in escaped values."""
    escaped = html.escape(markup)
    escaped = _BOLD_PATTERN.sub(r"<strong>\1</strong>", escaped)
    escaped = _LINK_PATTERN.sub(r'<a href="\2">\1</a>', escaped)
    escaped = escaped.replace("\n", "<br>")
    return _PLACEHOLDER_PATTERN.sub(lambda m: values[int(m.group(1))].html, escaped)


def build_context(
    reminder: PendingReminder,
    mappings: Mapping[str, str],
    now: datetime,
) -> dict[str, _Value]:
    occurrence = reminder.occurrence.astimezone(UTC)
    starts_in = max(0, math.ceil((occurrence - now).total_seconds() / 60))
    return {
        "event_id": _text_value(reminder.event_id),
        "summary": _text_value(reminder.summary or "Untitled event"),
        "description": _text_value(
            reminder.description, max_length=MAX_DESCRIPTION_LENGTH, multiline=True
        ),
        "location": _text_value(reminder.location),
        "attendees": _attendees_value(reminder.attendees, mappings),
        "minutes_before": _Value(
            raw=reminder.minutes_before,
            plain=str(reminder.minutes_before),
            html=str(reminder.minutes_before),
        ),
        "duration": _text_value(humanize_minutes(reminder.minutes_before)),
        "starts_in": _text_value(humanize_minutes(starts_in)),
        "occurrence": _text_value(occurrence.strftime("%Y-%m-%d %H:%M UTC")),
        "occurrence_time": _text_value(occurrence.strftime("%H:%M UTC")),
    }


def render_template(template: str, context: Mapping[str, _Value]) -> RenderedMessage:
    nodes = parse_template(
        sanitize_text(template, max_length=MAX_TEMPLATE_LENGTH, multiline=True)
    )
    plain: list[str] = []
    markup: list[str] = []
    values: list[_Value] = []
    _walk(nodes, context, plain, markup, values)
    body = "".join(plain).strip()
    if len(body) > MAX_BODY_LENGTH:
        body = body[: MAX_BODY_LENGTH - 1] + "…"
    formatted_body = _markup_to_html("".join(markup).strip(), values)
    return RenderedMessage(body=body, formatted_body=formatted_body)


def render_reminder(
    reminder: PendingReminder,
    mappings: Mapping[str, str],
    *,
    now: datetime | None = None,
) -> RenderedMessage:
    """Render the message for a pending reminder.

    Falls back to :data:`DEFAULT_TEMPLATE` when the reminder has no template
    or its template cannot be parsed.
    """
    context = build_context(reminder, mappings, now or datetime.now(UTC))
    if reminder.template and reminder.template.strip():
        try:
            return render_template(reminder.template, context)
        except TemplateError as exc:
            logger.warning(
                "Reminder %d has an invalid template (%s); using the default",
                reminder.reminder_id,
                exc,
            )
    return render_template(DEFAULT_TEMPLATE, context)
