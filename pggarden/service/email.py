from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import urlencode

from pggarden.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #336791; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{intro}</p>
        {action}
        <p>{outro}</p>
        <div class="footer"><p>{sender}</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email for the account lifecycle.

    Sends through SMTP (STARTTLS or implicit TLS). When no SMTP host is
    configured the message is logged instead, which is what local
    development and tests rely on.
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
        from_name: str = "Postgres Garden",
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

    def _link(self, path: str, **params: str) -> str:
        return f"{self.base_url}{path}?{urlencode(params)}"

    def _render(
        self, title: str, intro: str, outro: str, url: Optional[str] = None, label: str = ""
    ) -> tuple[str, str]:
        action = (
            f'<p style="margin: 30px 0;"><a href="{url}" class="button">{label}</a></p>'
            if url
            else ""
        )
        html_body = _HTML_TEMPLATE.format(
            title=title, intro=intro, action=action, outro=outro, sender=self.from_name
        )
        text_lines = [title, "", intro, ""]
        if url:
            text_lines += [url, ""]
        text_lines += [outro, "", "---", self.from_name]
        return html_body, "\n".join(text_lines)

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
                to_email=to_email,
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
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
                to_email=to_email,
                host=self.smtp_host,
                user=self.smtp_user,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to_email=to_email,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to_email=to_email,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to_email=to_email, subject=subject)
        return True

    def send_password_reset(self, to_email: str, user_id: str, token: str) -> bool:
        url = self._link("/reset", user_id=user_id, token=token)
        html_body, text_body = self._render(
            "Reset your password",
            "We received a request to reset your password. Use the link below to choose a new one.",
            "The link is valid for 3 days. If you didn't request this, you can safely ignore this email.",
            url,
            "Reset Password",
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)

    def send_unregistered_reset_notice(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Password reset request",
            "Someone asked to reset the password for this address, but no account uses it.",
            "If you meant to sign up, you can register with this address at any time.",
            f"{self.base_url}/register",
            "Create an account",
        )
        return self._send_email(to_email, "Password reset request", html_body, text_body)

    def send_email_verification(self, to_email: str, email_id: str, token: str) -> bool:
        url = self._link("/verify", id=email_id, token=token)
        html_body, text_body = self._render(
            "Verify your email",
            "Please confirm this email address by following the link below.",
            "If you didn't add this address to an account, you can ignore this email.",
            url,
            "Verify Email",
        )
        return self._send_email(to_email, "Verify your email", html_body, text_body)

    def send_delete_account(self, to_email: str, token: str) -> bool:
        url = self._link("/settings/delete", token=token)
        html_body, text_body = self._render(
            "Confirm account deletion",
            "You asked to delete your account. Follow the link below to confirm; this cannot be undone.",
            "The link is valid for 3 days. If you didn't request this, change your password.",
            url,
            "Delete my account",
        )
        return self._send_email(to_email, "Confirm account deletion", html_body, text_body)
