from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from ridepass.logging import get_logger
from ridepass.storage.models import Purpose

logger = get_logger(__name__)


class DeliveryTransport(Protocol):
    """Outbound channel for one-time codes (email, SMS gateway, ...)."""

    def send(
        self,
        destination: str,
        subject: str,
        body_text: str,
        body_html: Optional[str] = None,
    ) -> bool: ...


_SUBJECTS = {
    Purpose.REGISTRATION: "Verify your {app} account",
    Purpose.LOGIN: "Your {app} sign-in code",
    Purpose.RESET: "Reset your {app} password",
}

_INTROS = {
    Purpose.REGISTRATION: "Use this code to finish creating your account:",
    Purpose.LOGIN: "Use this code to sign in:",
    Purpose.RESET: "We received a request to reset your password. Use this code to continue:",
}


def render_code_message(
    app_name: str, purpose: Purpose, code: str, expires_in: int
) -> tuple[str, str, str]:
    """Return ``(subject, text_body, html_body)`` for a verification code."""
    purpose = Purpose(purpose)
    minutes = max(1, expires_in // 60)
    subject = _SUBJECTS[purpose].format(app=app_name)
    intro = _INTROS[purpose]

    text_body = f"""{subject}

{intro}

    {code}

This code expires in {minutes} minutes.

If you didn't request this, you can safely ignore this message.

---
{app_name}
"""

    html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; font-weight: 700; letter-spacing: 8px; color: #0b7a5a; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{subject}</h1>
        <p>{intro}</p>
        <p class="code">{code}</p>
        <p>This code expires in {minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this message.</p>
        <div class="footer">
            <p>{app_name}</p>
        </div>
    </div>
</body>
</html>
"""
    return subject, text_body, html_body


class EmailService:
    """SMTP delivery transport.

    Falls back to logging (without the message body) when SMTP is not
    configured, so local environments can run without a mail server.
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
        from_name: str = "RidePass",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _build_message(
        self, destination: str, subject: str, body_text: str, body_html: Optional[str]
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = destination
        msg.attach(MIMEText(body_text, "plain"))
        if body_html:
            msg.attach(MIMEText(body_html, "html"))
        return msg

    def _connect(self) -> smtplib.SMTP:
        """Open an authenticated SMTP session (STARTTLS or implicit TLS)."""
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            )
        if self.smtp_user and self.smtp_password:
            try:
                server.login(self.smtp_user, self.smtp_password)
            except smtplib.SMTPException:
                server.close()
                raise
        return server

    def send(
        self,
        destination: str,
        subject: str,
        body_text: str,
        body_html: Optional[str] = None,
    ) -> bool:
        """Send a message via SMTP. Returns True if accepted by the server."""
        to = self._redact_email(destination)
        if not self.is_configured:
            logger.info("email_not_configured", to=to, subject=subject)
            return False

        msg = self._build_message(destination, subject, body_text, body_html)
        try:
            with self._connect() as server:
                server.sendmail(self.from_email, destination, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=to)
            return False
        except (smtplib.SMTPException, OSError) as e:
            # OSError covers refused connections, TLS failures and timeouts
            logger.error(
                "email_send_failed",
                to=to,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=to, subject=subject)
        return True
