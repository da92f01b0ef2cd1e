from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Optional, Protocol

from authcore.logging import get_logger, redact_email

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 100
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0


class EmailSender(Protocol):
    def send(self, to: str, subject: str, body: str) -> bool: ...


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    body: str


def verification_email(
    to: str, display_name: str, token: str, base_url: str, ttl_minutes: int
) -> EmailMessage:
    verify_url = f"{base_url.rstrip('/')}/api/v1/auth/verify-email?token={token}"
    body = f"""Hello {display_name or to},

Thank you for registering. Please verify your email address with this token:

    {token}

or by visiting:

{verify_url}

This token will expire in {ttl_minutes} minutes.

If you did not create an account, please ignore this email.
"""
    return EmailMessage(to=to, subject="Verify Your Email Address", body=body)


def password_reset_email(
    to: str, display_name: str, token: str, base_url: str, ttl_minutes: int
) -> EmailMessage:
    reset_url = f"{base_url.rstrip('/')}/reset-password?token={token}"
    body = f"""Hello {display_name or to},

You have requested to reset your password. Use the following token:

    {token}

or visit:

{reset_url}

This token will expire in {ttl_minutes} minutes.

If you did not request a password reset, please ignore this email.
"""
    return EmailMessage(to=to, subject="Password Reset Request", body=body)


class SmtpEmailSender:
    """Plain-text transactional mail over SMTP.

    Falls back to logging when SMTP is not configured (dev mode).
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
        from_name: str = "Authcore",
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

    def send(self, to: str, subject: str, body: str) -> bool:
        """Send one message; returns False on any SMTP failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to),
                subject=subject,
                body_chars=len(body),
            )
            return True

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.sendmail(self.from_email, to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    self._login(server)
                    server.sendmail(self.from_email, to, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to),
                host=self.smtp_host,
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=redact_email(to), error=str(e)
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to), subject=subject)
        return True

    def _login(self, server: smtplib.SMTP) -> None:
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)


class EmailDispatcher:
    """Bounded background queue that delivers email off the request path.

    ``submit`` never blocks and never raises; a full queue drops the message.
    Delivery runs in a worker thread and is retried with a fixed delay.
    """

    def __init__(
        self,
        sender: EmailSender,
        *,
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        self.sender = sender
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._queue: asyncio.Queue[EmailMessage] = asyncio.Queue(maxsize=max_queue_size)
        self._task: Optional[asyncio.Task] = None
        self.sent = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, message: EmailMessage) -> bool:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "email_queue_full",
                to=redact_email(message.to),
                subject=message.subject,
                queue_size=self._queue.maxsize,
            )
            return False
        return True

    async def start(self) -> None:
        if self.running:
            logger.warning("email_dispatcher_already_running")
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info("email_dispatcher_started", queue_size=self._queue.maxsize)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("email_dispatcher_stopped", pending=self.pending)

    async def drain(self) -> None:
        """Wait until every submitted message has been delivered or given up on."""
        await self._queue.join()

    async def _run_loop(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._deliver(message)
            finally:
                self._queue.task_done()

    async def _deliver(self, message: EmailMessage) -> bool:
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                ok = await asyncio.to_thread(
                    self.sender.send, message.to, message.subject, message.body
                )
            except Exception as exc:
                ok = False
                logger.warning(
                    "email_send_raised",
                    to=redact_email(message.to),
                    attempt=attempt,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            if ok:
                self.sent += 1
                return True
            if attempt < attempts:
                await asyncio.sleep(self.retry_delay)
        self.failed += 1
        logger.error(
            "email_delivery_failed",
            to=redact_email(message.to),
            subject=message.subject,
            attempts=attempts,
        )
        return False
