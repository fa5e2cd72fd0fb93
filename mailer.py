"""
Transactional email over SMTP.

Sending never raises: failures are logged and reported through the return
value so that callers decide whether the user should see an error.
"""

import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Optional

from config import Settings

logger = logging.getLogger(__name__)


class Mailer:
    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(self.settings.smtp_host and self.settings.smtp_user and self.settings.smtp_password)

    @property
    def sender(self) -> str:
        address = self.settings.email_from or self.settings.smtp_user or "no-reply@localhost"
        return formataddr((self.settings.email_from_name, address))

    def build_message(
        self, to: str, subject: str, text: str, html: Optional[str] = None, reply_to: Optional[str] = None
    ) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        if reply_to:
            message["Reply-To"] = reply_to
        message.set_content(text)
        if html:
            message.add_alternative(html, subtype="html")
        return message

    def send(
        self, to: str, subject: str, text: str, html: Optional[str] = None, reply_to: Optional[str] = None
    ) -> bool:
        if not self.configured:
            logger.warning(f"Email to {to} not sent: SMTP is not configured")
            return False
        message = self.build_message(to, subject, text, html, reply_to)
        return self.deliver(message)

    def deliver(self, message: EmailMessage) -> bool:
        s = self.settings
        try:
            if s.smtp_secure:
                server = smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, timeout=15)
            else:
                server = smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=15)
            with server:
                if not s.smtp_secure:
                    server.starttls()
                server.login(s.smtp_user, s.smtp_password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending email '{message['Subject']}' to {message['To']}: {e}")
            return False
        logger.info(f"Email '{message['Subject']}' sent to {message['To']}")
        return True

    # Templates

    def send_confirmation_email(self, to: str, name: str, token: str) -> bool:
        url = f"{self.settings.api_url}/api/v1/auth/confirm-email?token={token}"
        text = (
            f"Hello {name},\n\nPlease confirm your email address by opening this link:\n{url}\n\n"
            f"The link expires in {self.settings.email_verification_hours} hours."
        )
        html = f'<p>Hello {name},</p><p><a href="{url}">Confirm my email</a></p>'
        return self.send(to, "Confirm your email address", text, html)

    def send_password_reset_email(self, to: str, name: str, token: str) -> bool:
        url = f"{self.settings.client_url}/reset-password?token={token}"
        text = (
            f"Hello {name},\n\nYou asked to reset your password. Open this link to choose a new one:\n{url}\n\n"
            f"The link expires in {self.settings.password_reset_minutes} minutes."
        )
        html = f'<p>Hello {name},</p><p><a href="{url}">Reset my password</a></p>'
        return self.send(to, "Reset your password", text, html)

    def send_contact_email(self, name: str, email: str, subject: str, message: str) -> bool:
        recipient = self.settings.contact_recipient or self.settings.smtp_user
        if not recipient:
            logger.warning("Contact message dropped: no recipient configured")
            return False
        text = f"From: {name} <{email}>\nSubject: {subject}\n\n{message}"
        return self.send(recipient, f"[Portfolio] {subject}", text, reply_to=email)
