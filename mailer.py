"""
Mail collaborator (mailer.py)
================================================================================

`Mailer.send_mail` delivers one message over SMTP and records the attempt in
the `mail_logs` collection. The log row is inserted as `pending` before the
attempt and updated to `sent` or `failed` afterwards, so a crash mid-send is
still visible to operators.

Without `SMTP_HOST` the mailer uses a log-only transport: messages are
written to the application log and reported as sent. This keeps local
development and tests free of a mail server.

send_mail never raises. Callers inspect the returned dict:
    {"success": bool, "info": ..., "error": ..., "db_record_id": ...}
"""

import asyncio
import logging
import re
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, parseaddr
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase

from config import MAIL_FROM, MAIL_FROM_NAME, MAIL_REPLYTO, SMTP_HOST, SMTP_PASS, SMTP_PORT, SMTP_USER
from utils import utcnow

logger = logging.getLogger(__name__)

_EMAIL_SHAPE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAIL_LOG_COLLECTION = "mail_logs"


def parse_mail_from(address: str, name: str = "") -> Tuple[str, str]:
    """Accepts `a@b.c`, `Name <a@b.c>` or `Name a@b.c`; returns (email, name)."""
    parsed_name, parsed_email = parseaddr(str(address or "").strip())
    if not _EMAIL_SHAPE.match(parsed_email or ""):
        parts = str(address or "").split()
        if len(parts) == 2 and "@" in parts[1]:
            parsed_name, parsed_email = parts[0], parts[1]
    if not _EMAIL_SHAPE.match(parsed_email or ""):
        if SMTP_USER and _EMAIL_SHAPE.match(SMTP_USER):
            logger.warning(f"⚠️ Invalid MAIL_FROM '{address}'. Falling back to SMTP_USER.")
            parsed_email = SMTP_USER
        else:
            raise ValueError("No valid sender email configured")
    return parsed_email, (name or parsed_name or "").strip()


def attachments_meta(attachments: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """What gets stored in mail_logs: names, types and sizes, never the content."""
    meta = []
    for attachment in attachments or []:
        entry = {k: attachment[k] for k in ("filename", "content_type") if attachment.get(k)}
        content = attachment.get("content")
        if isinstance(content, (bytes, bytearray)):
            entry["size"] = len(content)
        elif isinstance(content, str):
            entry["contentPreview"] = content[:256] + ("..." if len(content) > 256 else "")
        meta.append(entry)
    return meta


class Mailer:
    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        smtp_host: Optional[str] = SMTP_HOST,
        smtp_port: int = SMTP_PORT,
        smtp_user: Optional[str] = SMTP_USER,
        smtp_pass: Optional[str] = SMTP_PASS,
        mail_from: str = MAIL_FROM,
        mail_from_name: str = MAIL_FROM_NAME,
        reply_to: str = MAIL_REPLYTO,
    ):
        self.db = db
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_pass = smtp_pass
        self.from_email, self.from_name = parse_mail_from(mail_from, mail_from_name)
        self.reply_to = reply_to

    @property
    def from_header(self) -> str:
        return formataddr((self.from_name, self.from_email)) if self.from_name else self.from_email

    @property
    def log_only(self) -> bool:
        return not self.smtp_host

    def _build_message(self, to, subject, text, html, attachments) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.from_header
        message["To"] = ", ".join(to) if isinstance(to, (list, tuple)) else to
        message["Subject"] = subject or ""
        if self.reply_to:
            message["Reply-To"] = self.reply_to
        message.set_content(text or "")
        if html:
            message.add_alternative(html, subtype="html")
        for attachment in attachments or []:
            content = attachment.get("content")
            if isinstance(content, str):
                content = content.encode("utf-8")
            if not content:
                continue
            maintype, _, subtype = (attachment.get("content_type") or "application/octet-stream").partition("/")
            message.add_attachment(
                content, maintype=maintype, subtype=subtype or "octet-stream",
                filename=attachment.get("filename") or "attachment",
            )
        return message

    def _deliver(self, message: EmailMessage) -> Dict[str, Any]:
        """Blocking SMTP delivery; run in a worker thread."""
        if self.smtp_port == 465:
            server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=30)
        else:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        with server:
            if self.smtp_port != 465:
                server.starttls()
            if self.smtp_user:
                server.login(self.smtp_user, self.smtp_pass or "")
            refused = server.send_message(message, from_addr=self.from_email)
        return {"messageId": message.get("Message-ID"), "refused": refused}

    async def _log_attempt(self, entry: Dict[str, Any]) -> Optional[Any]:
        if self.db is None:
            return None
        try:
            result = await self.db[MAIL_LOG_COLLECTION].insert_one(entry)
            return result.inserted_id
        except Exception as e:
            logger.warning(f"⚠️ Failed to write mail log: {e}")
            return None

    async def _log_result(self, record_id: Any, status: str, send_result: Dict[str, Any]) -> None:
        if self.db is None or record_id is None:
            return
        try:
            await self.db[MAIL_LOG_COLLECTION].update_one(
                {"_id": record_id},
                {"$set": {"status": status, "sendResult": send_result, "updatedAt": utcnow()}},
            )
        except Exception as e:
            logger.warning(f"⚠️ Failed to update mail log {record_id}: {e}")

    async def send_mail(
        self,
        to,
        subject: str,
        text: str = "",
        html: str = "",
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Send one message; always returns a result dict."""
        if not to:
            return {"success": False, "error": "Missing `to` address"}

        now = utcnow()
        record_id = await self._log_attempt({
            "to": to,
            "subject": subject,
            "text": text,
            "html": html,
            "attachments": attachments_meta(attachments),
            "from": self.from_header,
            "status": "pending",
            "createdAt": now,
            "updatedAt": now,
        })

        if self.log_only:
            logger.info(f"[mail:log-only] To: {to} | Subject: {subject}")
            info = {"transport": "log-only"}
            await self._log_result(record_id, "sent", {"success": True, "info": info})
            return {"success": True, "info": info, "db_record_id": str(record_id) if record_id else None}

        try:
            message = self._build_message(to, subject, text, html, attachments)
            info = await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError, ValueError) as e:
            logger.error(f"❌ Failed to send mail to {to}: {e}")
            await self._log_result(record_id, "failed", {"success": False, "error": str(e)})
            return {"success": False, "error": str(e), "db_record_id": str(record_id) if record_id else None}

        logger.info(f"✔️ Mail sent to {to} (subject='{subject}').")
        await self._log_result(record_id, "sent", {"success": True, "info": info})
        return {"success": True, "info": info, "db_record_id": str(record_id) if record_id else None}
