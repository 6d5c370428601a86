"""
Outbound email dispatch

Fire-and-forget notifications: dispatch_email() schedules delivery on the event
loop and returns immediately. Delivery failures are logged and never reach the
caller's primary flow.
"""

import asyncio
import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage as MimeMessage
from typing import Any, Dict, Optional, Set

from brand_config import get_platform_name, get_support_email
from platform_settings import SmtpSettings, get_smtp_settings
from utils.environment import get_external_api_timeout, is_test_mode

logger = logging.getLogger(__name__)

_pending_tasks: Set[asyncio.Task] = set()

# In TEST_MODE messages are recorded here instead of being sent
sent_test_messages = []


@dataclass
class EmailMessage:
    to: str
    subject: str
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)


def _render_body(message: EmailMessage) -> str:
    # Plain key/value body; branded templates are rendered by the mail provider
    lines = [message.subject, '']
    for key, value in message.payload.items():
        lines.append(f"{key}: {value}")
    lines.extend(['', f"- {get_platform_name()}", f"Support: {get_support_email()}"])
    return '\n'.join(lines)


def _build_mime(message: EmailMessage, sender: str) -> MimeMessage:
    mime = MimeMessage()
    mime['From'] = sender
    mime['To'] = message.to
    mime['Subject'] = message.subject
    mime['X-Notification-Type'] = message.type
    mime.set_content(_render_body(message))
    return mime


def _deliver(mime: MimeMessage, smtp: SmtpSettings, timeout: float) -> None:
    if smtp.port == 465:
        with smtplib.SMTP_SSL(smtp.host, smtp.port, timeout=timeout) as client:
            if smtp.user:
                client.login(smtp.user, smtp.password)
            client.send_message(mime)
        return

    with smtplib.SMTP(smtp.host, smtp.port, timeout=timeout) as client:
        client.ehlo()
        if client.has_extn('starttls'):
            client.starttls()
            client.ehlo()
        if smtp.user:
            client.login(smtp.user, smtp.password)
        client.send_message(mime)


async def send_email(message: EmailMessage) -> bool:
    """Send one email now; returns False when SMTP is not configured or delivery fails"""
    if not message.to or message.to == 'N/A':
        logger.warning(f"📧 Skipping '{message.type}' email - no recipient address")
        return False

    if is_test_mode():
        sent_test_messages.append(message)
        logger.info(f"📧 TEST_MODE: recorded '{message.type}' email to {message.to}")
        return True

    smtp = await get_smtp_settings()
    if not smtp.is_configured:
        logger.warning(f"📧 SMTP not configured - '{message.type}' email to {message.to} not sent")
        return False

    timeout = get_external_api_timeout()
    mime = _build_mime(message, smtp.sender)
    try:
        await asyncio.wait_for(asyncio.to_thread(_deliver, mime, smtp, timeout), timeout=timeout + 1)
    except asyncio.TimeoutError:
        logger.error(f"⏱️ SMTP delivery of '{message.type}' to {message.to} timed out after {timeout}s")
        return False
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"❌ SMTP delivery of '{message.type}' to {message.to} failed: {e}")
        return False

    logger.info(f"📧 Sent '{message.type}' email to {message.to}")
    return True


async def _send_quietly(message: EmailMessage) -> None:
    try:
        await send_email(message)
    except Exception as e:
        # Email is never allowed to break the primary flow
        logger.error(f"❌ Unexpected error sending '{message.type}' email to {message.to}: {e}", exc_info=True)


def dispatch_email(to: str, subject: str, type: str,
                   payload: Optional[Dict[str, Any]] = None) -> Optional[asyncio.Task]:
    """Queue an email for background delivery and return the task"""
    message = EmailMessage(to=to, subject=subject, type=type, payload=payload or {})
    try:
        task = asyncio.get_running_loop().create_task(_send_quietly(message))
    except RuntimeError:
        logger.warning(f"📧 No running event loop - '{type}' email to {to} dropped")
        return None
    _pending_tasks.add(task)
    task.add_done_callback(_pending_tasks.discard)
    return task


async def wait_for_pending_emails(timeout: Optional[float] = None) -> None:
    """Wait for queued emails to finish (used on shutdown and in tests)"""
    if _pending_tasks:
        await asyncio.wait(set(_pending_tasks), timeout=timeout)
