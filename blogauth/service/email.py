from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from blogauth.logging import get_logger

logger = get_logger(__name__)

_LAYOUT = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 560px; margin: 0 auto; padding: 24px;">
    {content}
    <p style="color: #7b8794; font-size: 13px;">If you did not request this, you can ignore this email.</p>
  </div>
</body>
</html>"""

_BUTTON = (
    '<a href="{href}" style="display: inline-block; padding: 10px 20px; margin: 4px; '
    'border-radius: 6px; color: #fff; background: {color}; text-decoration: none;">{label}</a>'
)


class EmailService:
    """Transactional email over SMTP.

    When SMTP is not configured the message is logged instead of sent and the
    send is reported as successful, which keeps local development usable.
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
        from_name: str = "Blog",
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

    def send(self, to_email: str, subject: str, html_body: str) -> bool:
        """Send one HTML email. Returns False on any delivery failure."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", recipient=recipient, subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    self._login(server)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", recipient=recipient, host=self.smtp_host, smtp_code=exc.smtp_code)
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", recipient=recipient, refused=len(exc.recipients))
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
        except (OSError, ssl.SSLError) as exc:
            # Connection refused, DNS failure, TLS failure and timeouts all land here
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

    def _login(self, server: smtplib.SMTP) -> None:
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)

    def send_login_approval(
        self,
        to_email: str,
        username: str,
        approve_link: str,
        reject_link: str,
        *,
        expires_minutes: int,
        ip_addr: Optional[str] = None,
    ) -> bool:
        """Ask the owner to approve or reject a sign-in from an unfamiliar context."""
        origin = f" from <strong>{html.escape(ip_addr)}</strong>" if ip_addr else ""
        content = (
            f"<h2>Was this you, {html.escape(username)}?</h2>"
            f"<p>Someone signed in to your account{origin}. "
            "Approve the sign-in to continue, or reject it if it was not you.</p>"
            "<p>"
            + _BUTTON.format(href=html.escape(approve_link, quote=True), color="#2f855a", label="Approve sign-in")
            + _BUTTON.format(href=html.escape(reject_link, quote=True), color="#c53030", label="Reject")
            + "</p>"
            f"<p>These links expire in {expires_minutes} minutes and work only once.</p>"
        )
        return self.send(to_email, "Confirm your sign-in", _LAYOUT.format(content=content))

    def send_password_reset(
        self, to_email: str, username: str, reset_link: str, *, expires_minutes: int
    ) -> bool:
        content = (
            f"<h2>Reset your password, {html.escape(username)}</h2>"
            "<p>We received a request to reset your password.</p>"
            "<p>"
            + _BUTTON.format(href=html.escape(reset_link, quote=True), color="#2b6cb0", label="Choose a new password")
            + "</p>"
            f"<p>This link expires in {expires_minutes} minutes.</p>"
        )
        return self.send(to_email, "Reset your password", _LAYOUT.format(content=content))
