"""Message builders for registration, upgrade, reminder and admin notification emails."""
import json
import datetime
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from jinja2 import Environment, select_autoescape

from config import EVENT_NAME, FRONTEND_BASE
from utils import make_json_serializable

_html = Environment(autoescape=select_autoescape(default_for_string=True, default=True))
_text = Environment(autoescape=False, keep_trailing_newline=True)

CONFIRMATION_TEXT = """Hello {{ name or "Participant" }},

Thank you for registering for {{ event }}.
{% if ticket_code %}Your ticket code: {{ ticket_code }}
{% endif %}Download your e-badge: {{ download_url }}

Regards,
{{ event }} Team
"""

CONFIRMATION_HTML = """<p>Hello {{ name or "Participant" }},</p>
<p>Thank you for registering for {{ event }}.</p>
{% if ticket_code %}<p><strong>Your ticket code:</strong> {{ ticket_code }}</p>{% endif %}
<p><a href="{{ download_url }}" target="_blank" rel="noopener noreferrer">Download your e-badge</a></p>
<p>Regards,<br/>{{ event }} Team</p>"""

ACKNOWLEDGEMENT_TEXT = """Hello {{ name }},

Thank you for your interest in {{ event }}. Your {{ role }} request has been received.
Our team is reviewing the details you shared and will get back to you shortly with the next steps.

Warm regards,
{{ event }} Team
"""

ACKNOWLEDGEMENT_HTML = """<p>Hello {{ name }},</p>
<p>Thank you for your interest in <strong>{{ event }}</strong>. Your {{ role }} request has been <strong>successfully received</strong>.</p>
<p>Our team is reviewing the details you shared and will get back to you shortly with the next steps.</p>
<p>Warm regards,<br/><strong>{{ event }} Team</strong></p>"""

DECISION_TEXT = """Hello {{ name }},

Your {{ role }} registration for {{ event }} has been {{ status }}.
{% if status == "approved" and ticket_code %}Your ticket code: {{ ticket_code }}
Download your e-badge: {{ download_url }}
{% endif %}
Regards,
{{ event }} Team
"""

DECISION_HTML = """<p>Hello {{ name }},</p>
<p>Your {{ role }} registration for {{ event }} has been <strong>{{ status }}</strong>.</p>
{% if status == "approved" and ticket_code %}<p><strong>Your ticket code:</strong> {{ ticket_code }}</p>
<p><a href="{{ download_url }}" target="_blank" rel="noopener noreferrer">Download your e-badge</a></p>{% endif %}
<p>Regards,<br/>{{ event }} Team</p>"""

UPGRADE_TEXT = """Hello {{ name }},

Your ticket has been upgraded to {{ category }}.

Ticket: {{ ticket_code or "N/A" }}
You can view/manage your ticket here: {{ manage_url }}

Regards,
{{ event }} Team
"""

UPGRADE_HTML = """<p>Hello {{ name }},</p>
<p>Your ticket has been upgraded to <strong>{{ category }}</strong>.</p>
<p>Ticket: <strong>{{ ticket_code or "N/A" }}</strong></p>
<p>You can view/manage your ticket <a href="{{ manage_url }}">here</a>.</p>"""

REMINDER_TEXT = """Hello {{ name }},

This is a reminder that {{ event_name }} is {{ day_label }}.
{% if upgrade_url %}
Want to upgrade your ticket? Visit: {{ upgrade_url }}
{% endif %}
Regards,
{{ event }} Team
"""

REMINDER_HTML = """<p>Hello {{ name }},</p>
<p>This is a reminder that <strong>{{ event_name }}</strong> is <strong>{{ day_label }}</strong>.</p>
{% if upgrade_url %}<p style="margin-top:12px">Want to upgrade your ticket? <a href="{{ upgrade_url }}">Click here to upgrade</a>.</p>{% endif %}
<p>Regards,<br/>{{ event }} Team</p>"""

ADMIN_TEXT = """{{ headline }}

{{ body }}
"""

ADMIN_HTML = """<p>{{ headline }}</p><pre>{{ body }}</pre>"""


def _render(text_template: str, html_template: str, subject: str, **context) -> Dict[str, str]:
    context.setdefault("event", EVENT_NAME)
    return {
        "subject": subject,
        "text": _text.from_string(text_template).render(**context),
        "html": _html.from_string(html_template).render(**context),
    }


def ticket_download_url(role_plural: str, entity_id: Optional[str] = None, ticket_code: Optional[str] = None) -> str:
    params = {"entity": role_plural}
    if entity_id:
        params["id"] = str(entity_id)
    else:
        params["ticket_code"] = ticket_code or ""
    return f"{FRONTEND_BASE}/ticket-download?{urlencode(params)}"


def ticket_manage_url(role_plural: str, entity_id: str, ticket_code: Optional[str] = None) -> str:
    params = {"entity": role_plural, "id": str(entity_id)}
    if ticket_code:
        params["ticket"] = ticket_code
    return f"{FRONTEND_BASE}/ticket?{urlencode(params)}"


def display_name(doc: Dict[str, Any]) -> str:
    for key in ("name", "full_name", "fullname", "contact_name", "company"):
        value = doc.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def build_confirmation_email(role_plural: str, doc: Dict[str, Any]) -> Dict[str, str]:
    """Ticket email sent right after a self-service registration."""
    ticket_code = doc.get("ticket_code") or ""
    return _render(
        CONFIRMATION_TEXT, CONFIRMATION_HTML,
        f"{EVENT_NAME}: Your e-badge & ticket",
        name=display_name(doc),
        ticket_code=ticket_code,
        download_url=ticket_download_url(role_plural, str(doc.get("_id") or ""), ticket_code),
    )


def build_acknowledgement_email(role: str, doc: Dict[str, Any]) -> Dict[str, str]:
    """Request-received email for roles that wait for approval."""
    return _render(
        ACKNOWLEDGEMENT_TEXT, ACKNOWLEDGEMENT_HTML,
        f"{EVENT_NAME}: {role.capitalize()} request received",
        name=display_name(doc) or "there",
        role=role,
    )


def build_decision_email(role: str, role_plural: str, doc: Dict[str, Any], status: str) -> Dict[str, str]:
    ticket_code = doc.get("ticket_code") or ""
    return _render(
        DECISION_TEXT, DECISION_HTML,
        f"{EVENT_NAME}: Your {role} registration was {status}",
        name=display_name(doc) or "there",
        role=role,
        status=status,
        ticket_code=ticket_code,
        download_url=ticket_download_url(role_plural, str(doc.get("_id") or ""), ticket_code),
    )


def build_upgrade_email(role_plural: str, entity_id: str, name: str, category: str, ticket_code: str) -> Dict[str, str]:
    return _render(
        UPGRADE_TEXT, UPGRADE_HTML,
        f"Your ticket has been upgraded to {category}",
        name=name or "",
        category=category,
        ticket_code=ticket_code,
        manage_url=ticket_manage_url(role_plural, entity_id, ticket_code),
    )


def build_admin_notification(headline: str, subject: str, doc: Dict[str, Any]) -> Dict[str, str]:
    body = json.dumps(make_json_serializable(doc), indent=2, default=str)
    return _render(ADMIN_TEXT, ADMIN_HTML, subject, headline=headline, body=body)


def ticket_upgrade_url(role_plural: str, entity_id: str, ticket_code: str) -> str:
    params = {"entity": role_plural, "id": str(entity_id), "ticket_code": ticket_code}
    return f"{FRONTEND_BASE}/ticket-upgrade?{urlencode(params)}"


def _day_label(days_until: Optional[int]) -> str:
    if days_until == 0:
        return "today"
    if days_until is None or days_until < 0:
        return "upcoming"
    return f"{days_until} day{'' if days_until == 1 else 's'} to go"


def build_reminder_email(
    role_plural: str,
    doc: Dict[str, Any],
    event_date: Optional[datetime.date],
    days_until: Optional[int],
    event_name: Optional[str] = None,
    with_upgrade_link: bool = False,
) -> Dict[str, str]:
    """Event reminder; ticket holders can get a link to the upgrade page."""
    name = display_name(doc) or "Participant"
    subject = f"{name} - Reminder"
    if event_date is not None:
        subject += f": {event_date:%a %b %d %Y}"
    upgrade_url = None
    if with_upgrade_link and doc.get("ticket_code"):
        upgrade_url = ticket_upgrade_url(role_plural, str(doc.get("_id") or ""), doc["ticket_code"])
    return _render(
        REMINDER_TEXT, REMINDER_HTML,
        subject,
        name=name,
        event_name=event_name or EVENT_NAME,
        day_label=_day_label(days_until),
        upgrade_url=upgrade_url,
    )
