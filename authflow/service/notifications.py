from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Protocol

from authflow.logging import get_logger

logger = get_logger(__name__)

EMAIL = "email"
SMS = "sms"


class Notifier(Protocol):
    def send_otp(
        self, channel: str, destination: str, code: str, context: Dict[str, Any]
    ) -> bool: ...

    def send_notice(self, channel: str, destination: str, kind: str) -> bool: ...


_OTP_SUBJECTS = {
    "signup": "Verify your {app} account",
    "reset": "Reset your {app} password",
}

_NOTICES = {
    "account_verified": (
        "Your {app} account is verified",
        "Your email address has been verified. You can now sign in.",
    ),
    "password_changed": (
        "Your {app} password was changed",
        "Your password was just changed and other sign-ins were ended. "
        "If you didn't make this change, please contact support immediately.",
    ),
}


class NotificationService:
    """Delivers one-time passcodes and account notices.

    Email goes out over SMTP with TLS/SSL. Without ``smtp_host`` (dev mode),
    and for SMS which has no gateway configured, messages are logged instead.
    Every method returns True/False and never raises.
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
        from_name: str = "Authflow",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_destination(self, destination: str) -> str:
        """Redact an address or phone number for logging."""
        if "@" not in destination:
            return f"***{destination[-2:]}" if len(destination) > 4 else "redacted"
        local, domain = destination.split("@", 1)
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
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_destination(to_email),
                subject=subject,
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

            logger.info("email_sent", to=self._redact_destination(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_destination(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_destination(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_destination(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_destination(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _send_sms(self, phone_number: str, text: str) -> bool:
        logger.info(
            "sms_dev_mode",
            to=self._redact_destination(phone_number),
            length=len(text),
        )
        return True

    def send_otp(
        self, channel: str, destination: str, code: str, context: Dict[str, Any]
    ) -> bool:
        """Send a verification or password-reset code."""
        flow = context.get("flow", "signup")
        minutes = context.get("expires_in_minutes", 10)
        if channel == SMS:
            return self._send_sms(
                destination, f"Your {self.from_name} code is {code}. It expires in {minutes} minutes."
            )

        subject = _OTP_SUBJECTS.get(flow, _OTP_SUBJECTS["signup"]).format(app=self.from_name)
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; letter-spacing: 8px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{subject}</h1>
        <p>Enter this code to continue:</p>
        <p class="code">{code}</p>
        <p>This code will expire in {minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p><a href="{self.base_url}">{self.from_name}</a></p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""{subject}

Enter this code to continue: {code}

This code will expire in {minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        return self._send_email(destination, subject, html_body, text_body)

    def send_notice(self, channel: str, destination: str, kind: str) -> bool:
        """Send a confirmation notice such as ``account_verified``."""
        if kind not in _NOTICES:
            logger.warning("notice_kind_unknown", kind=kind)
            return False
        subject, body = _NOTICES[kind]
        subject = subject.format(app=self.from_name)
        if channel == SMS:
            return self._send_sms(destination, body)
        html_body = f"<p>{body}</p><p><a href=\"{self.base_url}\">{self.from_name}</a></p>"
        return self._send_email(destination, subject, html_body, f"{body}\n\n---\n{self.from_name}\n")
