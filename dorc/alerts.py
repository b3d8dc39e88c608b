from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .runtime import ChangeEvent, RolloutStatus
from .settings import settings

logger = logging.getLogger(__name__)


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - DORC_ENABLE_EMAIL=true
      - DORC_SMTP_HOST / DORC_SMTP_PORT
      - DORC_SMTP_USER / DORC_SMTP_PASSWORD
      - DORC_EMAIL_FROM / DORC_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        logger.warning("Email alerting enabled but SMTP settings are incomplete")
        return False

    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("Could not send alert email '%s': %s", subject, e)
        return False


def instance_alert(ev: ChangeEvent) -> tuple[str, str]:
    inst = ev.instance
    up = ev.kind == "recovered"
    subject = f"{'RECOVERED' if up else 'DOWN'}: {inst.app} r{inst.revision} ({inst.name})"
    body = (
        f"Application: {inst.app}\n"
        f"Revision: {inst.revision}\n"
        f"Instance: {inst.name}\n"
        f"Status: {'UP' if up else 'DOWN'}\n"
        f"Detail: {ev.detail or inst.message}"
    )
    return subject, body


def rollout_alert(st: RolloutStatus) -> tuple[str, str]:
    subject = f"ROLLOUT {st.state.upper()}: {st.app} r{st.to_revision}"
    body = (
        f"Application: {st.app}\n"
        f"From revision: {st.from_revision}\n"
        f"To revision: {st.to_revision}\n"
        f"Phase: {st.phase} ({st.weight}%)\n"
        f"Detail: {st.message}"
    )
    return subject, body
