from __future__ import annotations

import smtplib
import ssl
from collections import deque
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Deque, Optional

from idvault.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class OutboundMessage:
    to_email: str
    subject: str
    text_body: str
    html_body: str


class EmailNotifier:
    """Delivers password reset links over SMTP.

    Without an SMTP host the notifier runs in dev mode: messages are kept in
    ``outbox``, which keeps the last ``outbox_size`` messages, and only the
    recipient and subject are logged.
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
        from_name: str = "idvault",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 60,
        outbox_size: int = 50,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.outbox: Deque[OutboundMessage] = deque(maxlen=outbox_size)

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send(self, message: OutboundMessage) -> bool:
        recipient = self._redact_email(message.to_email)
        if not self.is_configured:
            self.outbox.append(message)
            logger.info("email_dev_mode", recipient=recipient, subject=message.subject)
            return True

        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = f"{self.from_name} <{self.from_email}>"
        mime["To"] = message.to_email
        mime.attach(MIMEText(message.text_body, "plain"))
        mime.attach(MIMEText(message.html_body, "html"))
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, message.to_email, mime.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, message.to_email, mime.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=recipient,
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", recipient=recipient)
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(e).__name__,
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
            )
            return False
        logger.info("email_sent", recipient=recipient, subject=message.subject)
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        subject = "Reset your password"
        text_body = (
            "We received a request to reset your password.\n\n"
            f"Open the link below to choose a new one:\n\n{reset_url}\n\n"
            f"The link expires in {self.reset_ttl_minutes} minutes and works once.\n"
            "If you did not ask for this, ignore this message.\n"
        )
        html_body = (
            "<p>We received a request to reset your password.</p>"
            f'<p><a href="{reset_url}">Choose a new password</a></p>'
            f"<p>The link expires in {self.reset_ttl_minutes} minutes and works once.</p>"
            "<p>If you did not ask for this, ignore this message.</p>"
        )
        return self._send(OutboundMessage(to_email, subject, text_body, html_body))
