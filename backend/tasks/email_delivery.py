import logging

import config
from errors import EmailDeliveryError
from mail_service import MailgunMailer
from task_queue import EMAIL_TASK_MAX_RETRIES, celery_app
from tasks._async_runner import run_async

logger = logging.getLogger(__name__)


def build_mailer() -> MailgunMailer:
    return MailgunMailer(
        api_key=config.MAILGUN_API_KEY,
        domain=config.MAILGUN_DOMAIN,
        from_email=config.MAILGUN_FROM_EMAIL,
        base_url=config.MAILGUN_BASE_URL,
        timeout_seconds=config.MAIL_TIMEOUT_SECONDS,
    )


@celery_app.task(
    bind=True,
    name="tasks.email_delivery.deliver_email",
    max_retries=EMAIL_TASK_MAX_RETRIES,
)
def deliver_email(self, to: str, subject: str, text: str) -> bool:
    try:
        run_async(build_mailer().send(to, subject, text))
    except EmailDeliveryError as exc:
        if self.request.retries >= self.max_retries:
            logger.error("email_task_gave_up to=%s subject=%s error=%s", to, subject, exc)
            return False
        countdown = min(300, 15 * (2 ** self.request.retries))
        logger.warning(
            "email_task_retry to=%s attempt=%s countdown=%s error=%s",
            to,
            self.request.retries + 1,
            countdown,
            exc,
        )
        raise self.retry(exc=exc, countdown=countdown)
    logger.info("email_task_delivered to=%s subject=%s", to, subject)
    return True
