from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from authserver.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;"><a href="{url}">{action}</a></p>
        <p>Your code: <code>{code}</code></p>
        <p>This code expires in {hours} hours.</p>
        <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{sender}</p>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

{url}

Your code: {code}
This code expires in {hours} hours.

---
{sender}
"""


class EmailService:
    """Transactional email for account verification and password resets.

    Falls back to logging a preview when SMTP is not configured (dev mode).
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
        from_name: str = "Authorization Server",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:80],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                recipient=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
        return True

    def _render(self, **fields: object) -> tuple[str, str]:
        fields.setdefault("sender", self.from_name)
        return _HTML_TEMPLATE.format(**fields), _TEXT_TEMPLATE.format(**fields)

    def send_email_verification(self, to_email: str, code: str, expires_hours: int) -> bool:
        """Send the code that confirms ownership of a newly registered address."""
        html_body, text_body = self._render(
            heading="Verify your email",
            intro="Thanks for signing up. Confirm your address with the link below.",
            url=f"{self.base_url}/v1/user/verify?code={quote(code)}",
            action="Verify email",
            code=code,
            hours=expires_hours,
        )
        return self._send_email(to_email, "Verify your email", html_body, text_body)

    def send_password_reset(self, to_email: str, code: str, expires_hours: int) -> bool:
        """Send the code needed to choose a new password."""
        html_body, text_body = self._render(
            heading="Reset your password",
            intro=(
                "We received a request to reset your password. "
                "If you didn't request this, you can ignore this email."
            ),
            url=f"{self.base_url}/?reset_code={quote(code)}",
            action="Reset password",
            code=code,
            hours=expires_hours,
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)
