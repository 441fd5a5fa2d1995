"""
Outbound account notifications.

The account-security services depend only on the Notifier protocol. The
SMTP implementation renders short HTML messages and sends them from a
thread pool so the event loop is never blocked on the mail server.
"""

import asyncio
import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Protocol

from src.infrastructure.config import EmailConfig

from .exceptions import ConfigurationError, DeliveryError

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers account emails. Each call completes or raises DeliveryError."""

    async def send_verification(self, to: str, username: str, link: str) -> None: ...

    async def send_two_factor_code(self, to: str, username: str, code: str) -> None: ...

    async def send_password_reset(self, to: str, username: str, link: str) -> None: ...

    async def send_email_change_link(self, to: str, username: str, link: str) -> None: ...

    async def send_account_locked_notice(
        self, to: str, username: str, unlock_link: str, reset_link: str
    ) -> None: ...


class SmtpNotifier:
    """Notifier that sends through an SMTP relay."""

    def __init__(self, config: EmailConfig):
        self.config = config

    async def send_verification(self, to: str, username: str, link: str) -> None:
        await self._send(
            to,
            "Verify Your Email",
            f"<p>Hi {html.escape(username)},</p>"
            f'<p>Click <a href="{link}">here</a> to verify your email. '
            "This link expires in 24 hours.</p>",
            f"Hi {username},\n\nVerify your email: {link}\nThis link expires in 24 hours.",
        )

    async def send_two_factor_code(self, to: str, username: str, code: str) -> None:
        await self._send(
            to,
            "2FA Code",
            f'<h2>Your Code: <strong style="font-size:24px;color:#c62828">{code}</strong></h2>'
            "<p>Valid for 15 minutes.</p>",
            f"Hi {username},\n\nYour code: {code}\nValid for 15 minutes.",
        )

    async def send_password_reset(self, to: str, username: str, link: str) -> None:
        await self._send(
            to,
            "Reset Your Password",
            f"<p>Hi {html.escape(username)},</p>"
            f'<p>Click <a href="{link}">here</a> to reset your password. '
            "This link expires in 1 hour.</p>",
            f"Hi {username},\n\nReset your password: {link}\nThis link expires in 1 hour.",
        )

    async def send_email_change_link(self, to: str, username: str, link: str) -> None:
        await self._send(
            to,
            "Change Your Email Address",
            f"<p>Hi {html.escape(username)},</p>"
            "<p>You requested to change your email address.</p>"
            f'<p>Click <a href="{link}">here</a> to set your new email.</p>'
            "<p>This link expires in 1 hour.</p>"
            "<p>If you didn't request this, you can safely ignore this email.</p>",
            f"Hi {username},\n\nSet your new email: {link}\nThis link expires in 1 hour.",
        )

    async def send_account_locked_notice(
        self, to: str, username: str, unlock_link: str, reset_link: str
    ) -> None:
        await self._send(
            to,
            "Account Locked",
            f"<p>Hi {html.escape(username)}, your account is locked.</p>"
            f'<p><a href="{unlock_link}">Unlock</a> | <a href="{reset_link}">Reset Password</a></p>',
            f"Hi {username}, your account is locked.\n\n"
            f"Unlock: {unlock_link}\nReset password: {reset_link}",
        )

    async def _send(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        recipient = (to or "").strip()
        if not recipient:
            raise DeliveryError(reason="Email recipient is required")
        if not self.config.is_configured:
            raise ConfigurationError("Email credentials missing")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.config.sender_name, str(self.config.address)))
        msg["To"] = recipient
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_email_sync, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send '{subject}' email: {e}")
            raise DeliveryError(recipient=recipient, reason=str(e)) from e

        logger.info(f"Email sent: {subject}")

    def _send_email_sync(self, msg: MIMEMultipart) -> None:
        """Synchronous email sending (called in thread pool)."""
        with smtplib.SMTP(
            str(self.config.host), self.config.port, timeout=self.config.timeout
        ) as server:
            if self.config.use_tls:
                server.starttls()
            server.login(str(self.config.address), str(self.config.secret))
            server.send_message(msg)
