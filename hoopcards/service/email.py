from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from typing import List, Optional, Tuple

from hoopcards.logging import get_logger

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30
LINK_TTL_TEXT = "This link expires in 1 hour."


class EmailService:
    """Password-reset and verification mail for HoopCards accounts.

    Without ``smtp_host`` and a sender address nothing is sent: the message is
    logged and its ``(recipient, subject)`` appended to :attr:`outbox`.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "HoopCards",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.outbox: List[Tuple[str, str]] = []

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build(self, to_email: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message.set_content(body)
        return message

    def _deliver(self, message: EmailMessage) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            # STARTTLS on the submission port
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.send_message(message)

    def send(self, to_email: str, subject: str, body: str) -> bool:
        """Send one plain-text message; delivery failures are logged and return False."""
        if not self.is_configured:
            self.outbox.append((to_email, subject))
            logger.info("email_not_sent_smtp_unconfigured", to_email=to_email, subject=subject)
            return True
        try:
            self._deliver(self._build(to_email, subject, body))
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to_email=to_email,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to_email=to_email, subject=subject)
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        link = f"{self.base_url}/reset-password?token={token}"
        return self.send(
            to_email,
            "Reset your HoopCards password",
            "Someone asked to reset the password on your HoopCards account.\n\n"
            f"Pick a new one here: {link}\n\n"
            f"{LINK_TTL_TEXT} If it wasn't you, you can ignore this message.\n",
        )

    def send_email_verification(self, to_email: str, token: str) -> bool:
        link = f"{self.base_url}/api/auth/verify-email/{token}"
        return self.send(
            to_email,
            "Verify your HoopCards email",
            "Thanks for joining HoopCards.\n\n"
            f"Confirm this address to start trading: {link}\n\n"
            f"{LINK_TTL_TEXT}\n",
        )
