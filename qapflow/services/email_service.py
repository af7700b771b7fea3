"""
Email Service — QAP share links.

When SMTP is not configured, emails are logged but not sent (dev/test mode).

Configuration (app config / env vars):
    MAIL_SERVER          SMTP host (default: None → log-only mode)
    MAIL_PORT            SMTP port (default: 587)
    MAIL_USE_TLS         Use STARTTLS (default: true)
    MAIL_USERNAME        SMTP username
    MAIL_PASSWORD        SMTP password
    MAIL_DEFAULT_SENDER  From address
    APP_URL              Base URL of the web client, used to build QAP links
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from email_validator import EmailNotValidError, validate_email
from flask import current_app
from markupsafe import escape

from qapflow.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

STATUS_SENT = "sent"
STATUS_LOGGED = "logged"
STATUS_FAILED = "failed"

_TEMPLATES: dict[str, dict[str, str]] = {
    "qap_share": {
        "subject": "QAP Review Link",
        "html": """
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <p>A QAP has been shared with you by {shared_by}:</p>
            <p><strong>{customer_name}</strong> / {project_name} (plant {plant}, {status})</p>
            <p><a href="{link}">{link}</a></p>
        </div>
        """,
    },
}


def normalize_recipient(email: str) -> str:
    """Validate syntax (no DNS lookup) and return the normalized address."""
    if not isinstance(email, str) or not email.strip():
        raise ValidationError("to is required", details={"to": "required"})
    try:
        return validate_email(email.strip(), check_deliverability=False).normalized
    except EmailNotValidError as exc:
        raise ValidationError(f"Invalid email address: {exc}", details={"to": email}) from exc


def qap_link(qap_id: str) -> str:
    base = (current_app.config.get("APP_URL") or "http://localhost:3000").rstrip("/")
    return f"{base}/qap/{qap_id}"


class EmailService:
    """SMTP sender with log-only fallback."""

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @classmethod
    def send(cls, *, to_email: str, subject: str, html_body: str) -> str:
        """Send one email. Returns STATUS_SENT, STATUS_LOGGED or STATUS_FAILED."""
        if not cls.is_configured():
            logger.info("Email (dev mode): to=%s subject='%s'", to_email, subject)
            return STATUS_LOGGED

        try:
            cls._send_smtp(to_email=to_email, subject=subject, html_body=html_body)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email failed: to=%s error=%s", to_email, exc)
            return STATUS_FAILED
        logger.info("Email sent: to=%s subject='%s'", to_email, subject)
        return STATUS_SENT

    @classmethod
    def send_from_template(cls, *, to_email: str, template_name: str,
                           context: dict[str, Any]) -> str:
        template = _TEMPLATES[template_name]
        return cls.send(
            to_email=to_email,
            subject=template["subject"].format_map(_SafeDict(context)),
            html_body=template["html"].format_map(_SafeDict(context)),
        )

    @classmethod
    def share_qap(cls, qap, to_email: str, shared_by: str) -> dict:
        """Email a link to ``qap``. Returns {"to", "link", "status"}."""
        recipient = normalize_recipient(to_email)
        link = qap_link(qap.id)
        status = cls.send_from_template(
            to_email=recipient,
            template_name="qap_share",
            context={
                "shared_by": escape(shared_by),
                "customer_name": escape(qap.customer_name),
                "project_name": escape(qap.project_name),
                "plant": qap.plant.value,
                "status": qap.status.value,
                "link": link,
            },
        )
        return {"to": recipient, "link": link, "status": status}

    @staticmethod
    def _send_smtp(*, to_email: str, subject: str, html_body: str) -> None:
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER") or f"noreply@{server}"

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = to_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"
