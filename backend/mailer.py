# mailer.py — Outgoing email (magic links, invitations)
import os
import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

logger = logging.getLogger("kanban-portal.mail")

APP_NAME = os.getenv("APP_NAME", "PrintNow Portal")
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_FROM = os.getenv("SMTP_FROM", "no-reply@localhost")
SMTP_TLS = os.getenv("SMTP_TLS", "true").lower() == "true"


def smtp_configured() -> bool:
    return bool(SMTP_HOST)


def _send_sync(to_addr: str, subject: str, body: str) -> None:
    m = EmailMessage()
    m["Subject"] = subject
    m["From"] = SMTP_FROM
    m["To"] = to_addr
    m.set_content(body)

    with smtplib.SMTP(host=SMTP_HOST, port=SMTP_PORT, timeout=15) as s:
        s.ehlo()
        if SMTP_TLS:
            s.starttls()
            s.ehlo()
        if SMTP_USER:
            s.login(SMTP_USER, SMTP_PASSWORD)
        s.send_message(m)


async def send_email(to_addr: str, subject: str, body: str) -> bool:
    """Send a plain-text email. Returns False instead of raising when delivery fails."""
    if not smtp_configured():
        logger.info(f"SMTP not configured; email to {to_addr} not sent. Subject: {subject}\n{body}")
        return False
    try:
        await asyncio.to_thread(_send_sync, to_addr, subject, body)
    except (smtplib.SMTPException, OSError) as e:
        logger.warning(f"Email delivery to {to_addr} failed: {e}")
        return False
    logger.info(f"Email sent to {to_addr}: {subject}")
    return True


async def send_magic_link(to_addr: str, link: str) -> bool:
    body = (
        f"Click the link below to sign in to {APP_NAME}:\n\n"
        f"{link}\n\n"
        "The link can be used once and expires shortly. "
        "If you did not request it, you can ignore this email."
    )
    return await send_email(to_addr, f"Sign in to {APP_NAME}", body)


async def send_invitation(to_addr: str, org_name: str, inviter_name: Optional[str], signup_url: str) -> bool:
    who = inviter_name or "A teammate"
    body = (
        f"{who} invited you to join {org_name} on {APP_NAME}.\n\n"
        f"Sign up with this email address to accept: {signup_url}\n"
    )
    return await send_email(to_addr, f"You're invited to {org_name}", body)
