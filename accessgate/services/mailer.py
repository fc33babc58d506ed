"""Purchase confirmation email over SMTP.

Sending is optional: without ``SMTP_HOST`` and ``SMTP_SENDER`` the mailer is
disabled and :meth:`ConfirmationMailer.send_access_confirmation` is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage

from accessgate.config import GateSettings

logger = logging.getLogger(__name__)

_SUBJECT = "Your access is ready"

_BODY = """\
Hello{name_part},

Thank you for your purchase. Your account now has full access.

{folder_part}
"""


class ConfirmationMailer:
    """Sends a short confirmation after access is granted."""

    def __init__(self, settings: GateSettings) -> None:
        self._settings = settings

    @property
    def enabled(self) -> bool:
        return self._settings.mail_enabled

    def build_message(self, to_addr: str, name: str | None = None) -> EmailMessage:
        folder_url = self._settings.resolved_drive_folder_url
        message = EmailMessage()
        message["Subject"] = _SUBJECT
        message["From"] = self._settings.smtp_sender
        message["To"] = to_addr
        message.set_content(
            _BODY.format(
                name_part=f" {name}" if name else "",
                folder_part=f"Open the shared folder: {folder_url}" if folder_url else "",
            )
        )
        return message

    def _send(self, message: EmailMessage) -> None:
        settings = self._settings
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as smtp:
            if settings.smtp_use_tls:
                smtp.starttls()
            if settings.smtp_username:
                smtp.login(settings.smtp_username, settings.smtp_password.get_secret_value())
            smtp.send_message(message)

    async def send_access_confirmation(self, to_addr: str | None, name: str | None = None) -> bool:
        """Send the confirmation to *to_addr*.  Returns ``True`` if sent.

        Failures are logged and reported as ``False``; they never propagate.
        """
        if not self.enabled or not to_addr:
            return False
        message = self.build_message(to_addr, name)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send, message)
        except (smtplib.SMTPException, OSError):
            logger.warning("Confirmation email to %s failed", to_addr, exc_info=True)
            return False
        logger.info("Confirmation email sent to %s", to_addr)
        return True
