"""Outbound mail channel used to deliver verification codes."""
from __future__ import annotations

import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, Protocol, Tuple

import aiosmtplib

from .codes import Purpose
from .config import SMTPSettings
from .errors import DeliveryFailure

logger = logging.getLogger("identity.mail")

_CODE_MESSAGES: Dict[Purpose, Tuple[str, str]] = {
    Purpose.REGISTER: ("Registration code", "Your registration code is"),
    Purpose.UPDATE_PASSWORD: ("Password change code", "Your password change code is"),
    Purpose.UPDATE_PROFILE: ("Profile update code", "Your profile update code is"),
}


class Mailer(Protocol):
    async def send(self, to: str, subject: str, html: str) -> None: ...


def render_code_message(purpose: Purpose | str, code: str) -> Tuple[str, str]:
    """Return the subject and HTML body announcing ``code``."""

    subject, lead = _CODE_MESSAGES[Purpose(purpose)]
    return subject, f"<p>{lead} {code}</p>"


class SMTPMailer:
    """Send HTML mail through an SMTP relay."""

    def __init__(self, settings: SMTPSettings) -> None:
        self._settings = settings

    async def send(self, to: str, subject: str, html: str) -> None:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self._settings.sender
        message["To"] = to
        message.attach(MIMEText(html, "html"))

        try:
            await aiosmtplib.send(
                message,
                hostname=self._settings.host,
                port=self._settings.port,
                username=self._settings.username,
                password=self._settings.password,
                use_tls=self._settings.use_tls,
                start_tls=self._settings.start_tls,
                timeout=self._settings.timeout,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.error("Failed to deliver mail to %s: %s", to, exc)
            raise DeliveryFailure(f"Failed to send mail to {to}") from exc


__all__ = ["Mailer", "SMTPMailer", "render_code_message"]
