from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from levelup.logging import get_logger

logger = get_logger(__name__)

_BASE_STYLE = """
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; background-color: #f9f9f9; border-radius: 8px; }}
        .button {{ display: inline-block; background-color: #45FFCA; color: #1F2937; padding: 12px 24px; border-radius: 5px; text-decoration: none; font-weight: bold; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
"""


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - Email verification emails
    - Welcome emails after verification
    - Fallback to logging when not configured (dev mode)

    Sending never raises; failures are logged and reported as False.
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
        from_name: str = "Level Up",
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

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )

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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # connection refused, DNS failure, timeout
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_email_verification(self, to_email: str, token: str) -> bool:
        """Send the email verification link."""
        verify_url = f"{self.base_url}/verify-email/{token}"
        subject = "Verify Your Email - Level Up"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_BASE_STYLE.format()}</style>
</head>
<body>
    <div class="container">
        <h1>Verify your email</h1>
        <p>Please verify your email by clicking the button below:</p>
        <p style="margin: 30px 0;">
            <a href="{verify_url}" class="button">Verify Email</a>
        </p>
        <p>This link will expire in 24 hours.</p>
        <div class="footer">
            <p>Level Up</p>
            <p>If the button doesn't work, copy and paste this URL: {verify_url}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Please verify your email by visiting: {verify_url}
This link will expire in 24 hours.
"""

        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, username: str) -> bool:
        """Send the welcome email once an address is verified."""
        login_url = f"{self.base_url}/login"
        subject = "Welcome to Level Up!"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_BASE_STYLE.format()}</style>
</head>
<body>
    <div class="container">
        <h1>Welcome to Level Up!</h1>
        <p>Hi {username},</p>
        <p>Thank you for joining Level Up! We're excited to help you achieve your fitness goals.</p>
        <p>You can now access your account and start your fitness journey.</p>
        <p style="margin: 30px 0;">
            <a href="{login_url}" class="button">Get Started</a>
        </p>
    </div>
</body>
</html>
"""

        text_body = f"Welcome to Level Up, {username}! You can now log in at: {login_url}\n"

        return self._send_email(to_email, subject, html_body, text_body)
