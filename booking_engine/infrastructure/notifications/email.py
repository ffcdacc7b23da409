# booking_engine/infrastructure/notifications/email.py

from email.message import EmailMessage
import logging
import smtplib

from booking_engine.domain.exceptions import NotificationError
from booking_engine.infrastructure.config import Settings

logger = logging.getLogger(__name__)


class SmtpNotifier:

    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.timeout = timeout

    def send(self, to_address: str, subject: str, html_body: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to_address
        message["Subject"] = subject
        message.set_content("Your booking is confirmed. Open this email in an HTML-capable client to see your tickets.")
        message.add_alternative(html_body, subtype="html")

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"Could not send email to {to_address}") from exc


class LoggingNotifier:
    """Used when no SMTP host is configured; records the email in the log only."""

    def send(self, to_address: str, subject: str, html_body: str) -> None:
        logger.info("Email to %s: %s (%s bytes)", to_address, subject, len(html_body))


def build_notifier(settings: Settings):
    if not settings.smtp_host:
        return LoggingNotifier()
    return SmtpNotifier(
        host=settings.smtp_host,
        port=settings.smtp_port,
        sender=settings.mail_from,
        username=settings.smtp_username,
        password=settings.smtp_password,
    )
