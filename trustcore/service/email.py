from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional
from urllib.parse import urlencode

from trustcore.logging import fingerprint, get_logger

logger = get_logger(__name__)


class EmailService:
    """Transactional mail for the account token flows.

    Sends over SMTP (STARTTLS or implicit TLS). Without an SMTP host the
    message is logged instead, minus the link.
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
        from_name: str = "Trustcore",
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

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _link(self, path: str, token: str) -> str:
        return f"{self.base_url}{path}?{urlencode({'token': token})}"

    def _send_email(self, to_email: str, subject: str, text_body: str, link: str) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
                link_fp=fingerprint(link),
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(f"{text_body}\n\n{link}\n", "plain"))
        msg.attach(
            MIMEText(
                f"<p>{escape(text_body)}</p><p><a href=\"{escape(link)}\">{escape(link)}</a></p>",
                "html",
            )
        )
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
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.smtp_host, smtp_code=exc.smtp_code)
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", recipient=self._redact_email(to_email))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
            )
            return False
        logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
        return True

    def send_verification(self, to_email: str, token: str) -> bool:
        return self._send_email(
            to_email,
            "Verify your email address",
            "Confirm this address to finish setting up your account. The link expires in 24 hours.",
            self._link("/verify-email", token),
        )

    def send_password_reset(self, to_email: str, token: str) -> bool:
        return self._send_email(
            to_email,
            "Reset your password",
            "Someone asked to reset the password for this account. If it was not you, ignore this message.",
            self._link("/reset-password", token),
        )

    def send_account_deletion(self, to_email: str, token: str) -> bool:
        return self._send_email(
            to_email,
            "Confirm account deletion",
            "Follow the link to schedule deletion of your account.",
            self._link("/account/delete", token),
        )

    def send_email_change(self, to_email: str, token: str) -> bool:
        return self._send_email(
            to_email,
            "Confirm your new email address",
            "Follow the link to make this the sign-in address for your account.",
            self._link("/account/email-change", token),
        )

    def send_password_changed(self, to_email: str) -> bool:
        return self._send_email(
            to_email,
            "Your password was changed",
            "The password for this account was just changed. If it was not you, reset it now.",
            f"{self.base_url}/reset-password",
        )
