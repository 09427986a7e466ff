"""
agora.services.email_service — Outbound Account Emails
========================================================

Verification, password-reset and reset-confirmation emails.  When
``SMTP_HOST`` is not configured the mailer only logs what it would send,
which is what development and the test-suite use.
"""

from __future__ import annotations

import logging
import os
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage

logger = logging.getLogger(__name__)


@dataclass
class Mailer:
    sender: str = "no-reply@agora.local"
    client_url: str = "http://localhost:3000"
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = field(default=None, repr=False)
    use_tls: bool = True
    outbox: list[EmailMessage] = field(default_factory=list, repr=False)

    @classmethod
    def from_env(cls) -> Mailer:
        return cls(
            sender=os.getenv("EMAIL_FROM", "no-reply@agora.local"),
            client_url=os.getenv("CLIENT_URL", "http://localhost:3000").rstrip("/"),
            smtp_host=os.getenv("SMTP_HOST") or None,
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=os.getenv("SMTP_USER") or None,
            smtp_password=os.getenv("SMTP_PASSWORD") or None,
            use_tls=os.getenv("SMTP_TLS", "true").lower() != "false",
        )

    def send(self, to: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)

        if not self.smtp_host:
            self.outbox.append(msg)
            logger.info("Email (not sent, no SMTP_HOST) to=%s subject=%r", to, subject)
            return

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15) as client:
            if self.use_tls:
                client.starttls()
            if self.smtp_user:
                client.login(self.smtp_user, self.smtp_password or "")
            client.send_message(msg)
        logger.info("Email sent to=%s subject=%r", to, subject)

    # -------------------------------------------------------------------
    # Templates
    # -------------------------------------------------------------------
    def send_verification(self, to: str, token: str) -> None:
        self.send(
            to,
            "Verify your Agora account",
            f"Welcome to Agora!\n\nConfirm your email address:\n"
            f"{self.client_url}/verify-email?token={token}\n",
        )

    def send_password_reset(self, to: str, token: str) -> None:
        self.send(
            to,
            "Reset your Agora password",
            f"Someone asked to reset your password.\n\n"
            f"{self.client_url}/reset-password?token={token}\n\n"
            "The link expires in 10 minutes. Ignore this email if it wasn't you.\n",
        )

    def send_password_changed(self, to: str) -> None:
        self.send(
            to,
            "Your Agora password was changed",
            "Your password has just been reset. If this wasn't you, contact support.\n",
        )
