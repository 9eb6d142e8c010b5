from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from gatehouse.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #222; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 32px 20px; }}
        .button {{ display: inline-block; background: #2f6fed; color: #fff; padding: 12px 24px; border-radius: 6px; text-decoration: none; }}
        .footer {{ margin-top: 32px; font-size: 12px; color: #666; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>Hello {name},</p>
        <p>{intro}</p>
        <p style="margin: 28px 0;"><a href="{url}" class="button">{action}</a></p>
        <p>{expiry}</p>
        <p>{closing}</p>
        <div class="footer">
            <p>{product}</p>
            <p>If the button doesn't work, paste this address into your browser: {url}</p>
        </div>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

Hello {name},

{intro}

{url}

{expiry}
{closing}

--
{product}
"""


class EmailService:
    """Sends verification and password reset messages over SMTP.

    When SMTP is not configured the message is logged instead of sent, which
    is what development and tests run with.
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
        from_name: str = "Gatehouse",
        base_url: Optional[str] = None,
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _deliver(self, to_email: str, message: MIMEMultipart) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            )
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, [to_email], message.as_string())

    def _send_email(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> bool:
        """Send one message. Returns False on delivery failure instead of raising."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=recipient,
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))

        try:
            self._deliver(to_email, message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                recipient=recipient,
                host=self.smtp_host,
                smtp_code=exc.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused",
                recipient=recipient,
                refused=len(exc.recipients),
            )
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            # covers refused connections and timeouts
            logger.error(
                "email_connect_failed",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient=recipient, subject=subject)
        return True

    def _compose(
        self,
        *,
        name: str,
        heading: str,
        intro: str,
        action: str,
        url: str,
        expiry: str,
        closing: str = "",
    ) -> tuple[str, str]:
        fields = {
            "name": name or "there",
            "heading": heading,
            "intro": intro,
            "action": action,
            "url": url,
            "expiry": expiry,
            "closing": closing,
            "product": self.from_name,
        }
        return _HTML_TEMPLATE.format(**fields), _TEXT_TEMPLATE.format(**fields)

    def send_email_verification(self, to_email: str, token: str, name: str = "") -> bool:
        url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._compose(
            name=name,
            heading="Verify your email address",
            intro="Thanks for signing up. Confirm your address to finish setting up your account.",
            action="Verify email",
            url=url,
            expiry=f"This link expires in {self.verification_ttl_hours} hours.",
        )
        return self._send_email(
            to_email, f"Verify your {self.from_name} account", html_body, text_body
        )

    def send_password_reset(self, to_email: str, token: str, name: str = "") -> bool:
        url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._compose(
            name=name,
            heading="Reset your password",
            intro="Someone asked to reset the password for this account. Use the link below to choose a new one.",
            action="Reset password",
            url=url,
            expiry=f"This link expires in {self.reset_ttl_minutes} minutes.",
            closing="If you did not ask for this, you can ignore this message; your password stays the same.",
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )


__all__ = ["EmailService"]
