import asyncio
import logging
from typing import Optional, Set, Tuple

import httpx

from errors import EmailDeliveryError

logger = logging.getLogger(__name__)

SIGNATURE = "Best regards,\nFinEd Mentor Team"


def build_activation_email(username: str, otp: str, ttl_minutes: int) -> Tuple[str, str]:
    subject = "Activate Your FinEd Mentor Account"
    body = (
        f"Hello {username},\n\n"
        "Welcome to FinEd Mentor! Please use the following OTP to activate your account:\n\n"
        f"OTP: {otp}\n\n"
        f"This OTP will expire in {ttl_minutes} minutes.\n\n"
        "If you didn't create an account, please ignore this email.\n\n"
        f"{SIGNATURE}"
    )
    return subject, body


def build_password_reset_email(username: str, otp: str, ttl_minutes: int) -> Tuple[str, str]:
    subject = "Reset Your FinEd Mentor Password"
    body = (
        f"Hello {username},\n\n"
        "We received a request to reset your password. Please use the following OTP to reset it:\n\n"
        f"OTP: {otp}\n\n"
        f"This OTP will expire in {ttl_minutes} minutes.\n\n"
        "If you didn't request a password reset, please ignore this email.\n\n"
        f"{SIGNATURE}"
    )
    return subject, body


class MailgunMailer:
    def __init__(
        self,
        api_key: str,
        domain: str,
        from_email: str,
        base_url: str = "https://api.mailgun.net",
        timeout_seconds: float = 10.0,
    ):
        self.api_key = api_key
        self.domain = domain
        self.from_email = from_email
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def send(self, to: str, subject: str, text: str) -> None:
        if not self.api_key or not self.domain:
            raise EmailDeliveryError("Mailgun is not configured")
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    f"{self.base_url}/v3/{self.domain}/messages",
                    auth=("api", self.api_key),
                    data={
                        "from": self.from_email,
                        "to": to,
                        "subject": subject,
                        "text": text,
                    },
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code if e.response is not None else "unknown"
            logger.error("mailgun_send_failed to=%s status=%s body=%s", to, status, e.response.text[:300])
            raise EmailDeliveryError("Failed to send email via Mailgun") from e
        except httpx.HTTPError as e:
            logger.error("mailgun_send_failed to=%s error=%s", to, e)
            raise EmailDeliveryError("Exception occurred while sending email via Mailgun") from e
        logger.info("mailgun_send_ok to=%s subject=%s", to, subject)


class MailService:
    """Fire-and-forget account emails.

    ``inline`` mode schedules delivery on the running event loop; ``celery``
    mode hands the message to the worker queue. Either way the caller never
    waits for, or fails because of, delivery.
    """

    def __init__(
        self,
        mailer: MailgunMailer,
        dispatch_mode: str = "inline",
        activation_ttl_minutes: int = 15,
        password_reset_ttl_minutes: int = 15,
    ):
        self.mailer = mailer
        self.dispatch_mode = dispatch_mode
        self.activation_ttl_minutes = activation_ttl_minutes
        self.password_reset_ttl_minutes = password_reset_ttl_minutes
        self._pending: Set[asyncio.Task] = set()

    def send_activation_email(self, email: str, username: str, otp: str) -> None:
        subject, body = build_activation_email(username, otp, self.activation_ttl_minutes)
        self.dispatch(email, subject, body)

    def send_password_reset_email(self, email: str, username: str, otp: str) -> None:
        subject, body = build_password_reset_email(username, otp, self.password_reset_ttl_minutes)
        self.dispatch(email, subject, body)

    def dispatch(self, to: str, subject: str, text: str) -> Optional[asyncio.Task]:
        if self.dispatch_mode == "celery":
            try:
                from tasks.email_delivery import deliver_email

                deliver_email.delay(to=to, subject=subject, text=text)
            except Exception as exc:
                logger.error("Email enqueue failed to=%s: %s", to, exc)
            return None

        task = asyncio.create_task(self.deliver(to, subject, text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def deliver(self, to: str, subject: str, text: str) -> bool:
        try:
            await self.mailer.send(to, subject, text)
        except Exception as exc:
            logger.error("Email delivery failed to=%s subject=%s: %s", to, subject, exc)
            return False
        return True
