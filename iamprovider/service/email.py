from __future__ import annotations

import asyncio
import smtplib
import ssl
from datetime import datetime
from email.mime.text import MIMEText
from typing import Optional, Set

from iamprovider.logging import get_logger, redact_email
from iamprovider.service.bounded import DependencyTimeoutError, run_bounded

logger = get_logger(__name__)


class EmailService:
    """SMTP transport for transactional emails.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Plain-text bodies
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "IAM Provider",
        timeout_seconds: float = 30,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            timeout_seconds=settings.email_timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def send_text(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send a plain-text email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        try:
            msg = MIMEText(text_body, "plain")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            context = ssl.create_default_context()
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=redact_email(to_email),
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host,
                    self.smtp_port,
                    context=context,
                    timeout=self.timeout_seconds,
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused=len(e.recipients),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False


def _plural_hours(hours: int) -> str:
    return f"{hours} hour" if hours == 1 else f"{hours} hours"


class EmailNotifier:
    """Fire-and-forget delivery of account emails.

    Each message is sent on a background task bounded by the transport
    timeout; failures are logged and never reach the request that triggered
    them.
    """

    def __init__(self, transport: EmailService, *, timeout_seconds: Optional[float] = None):
        self.transport = transport
        self.timeout_seconds = timeout_seconds or transport.timeout_seconds
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, to_email: str, subject: str, text_body: str) -> None:
        task = asyncio.get_running_loop().create_task(
            self._deliver(to_email, subject, text_body)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, to_email: str, subject: str, text_body: str) -> bool:
        try:
            sent = await run_bounded(
                self.transport.send_text,
                to_email,
                subject,
                text_body,
                timeout=self.timeout_seconds,
                label="email",
            )
        except DependencyTimeoutError:
            logger.error("email_send_timeout", to=redact_email(to_email), subject=subject)
            return False
        except Exception as exc:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                subject=subject,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not sent:
            logger.warning("email_not_delivered", to=redact_email(to_email), subject=subject)
        return sent

    async def drain(self) -> None:
        """Wait for every pending delivery; used at shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def send_verification(self, to_email: str, verification_url: str, ttl_hours: int) -> None:
        text = (
            "Welcome to IAM Provider!\n\n"
            "Please verify your email address by visiting the link below:\n\n"
            f"{verification_url}\n\n"
            f"This link will expire in {_plural_hours(ttl_hours)}.\n\n"
            "If you didn't create an account, you can safely ignore this email.\n"
        )
        self.dispatch(to_email, "Verify your email address", text)

    def send_password_reset(self, to_email: str, reset_url: str, ttl_hours: int) -> None:
        text = (
            "Password Reset Request\n\n"
            "You have requested to reset your password. Visit the link below to proceed:\n\n"
            f"{reset_url}\n\n"
            f"This link will expire in {_plural_hours(ttl_hours)}.\n\n"
            "If you didn't request a password reset, you can safely ignore this email.\n"
            "Your password will remain unchanged.\n"
        )
        self.dispatch(to_email, "Reset your password", text)

    def password_changed(self, to_email: str) -> None:
        text = (
            "Password Changed\n\n"
            "Your password was recently changed. If you made this change, you can "
            "safely ignore this email.\n\n"
            "If you did NOT change your password, your account may be compromised. "
            "Reset your password immediately and review your account activity.\n\n"
            "This is an automated security notification.\n"
        )
        self.dispatch(to_email, "Your password was changed", text)

    def account_deactivated(self, to_email: str, deletion_deadline: Optional[datetime]) -> None:
        when = deletion_deadline.strftime("%A, %B %d, %Y") if deletion_deadline else "soon"
        text = (
            "Account Deactivated\n\n"
            "Your account has been deactivated as requested.\n\n"
            f"Your account and all associated data will be permanently deleted on {when}.\n\n"
            "If you change your mind, you can reactivate your account before this date "
            "from the account reactivation page using your email and password.\n\n"
            "This is an automated security notification.\n"
        )
        self.dispatch(to_email, "Your account has been deactivated", text)
