"""
Outbound e-mail over SMTP.

smtplib is blocking; send_email() runs it in a worker thread.
"""
import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import config

logger = logging.getLogger(__name__)


class SMTPMailer:
    def __init__(
        self,
        *,
        from_email: str,
        host: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
        use_tls: bool,
    ) -> None:
        self.from_email = from_email
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls

    def _build_message(self, to: str, subject: str, text_body: str) -> str:
        message = MIMEMultipart("alternative")
        message["From"] = self.from_email
        message["To"] = to
        message["Subject"] = subject
        message.attach(MIMEText(text_body, "plain", "utf-8"))
        message.attach(MIMEText(text_body.replace("\n", "<br>"), "html", "utf-8"))
        return message.as_string()

    def send_blocking(self, to: str, subject: str, text_body: str) -> None:
        payload = self._build_message(to, subject, text_body)
        with smtplib.SMTP(self.host, self.port, timeout=30) as client:
            if self.use_tls:
                client.starttls()
            if self.username and self.password:
                client.login(self.username, self.password)
            client.sendmail(self.from_email, [to], payload)


def get_mailer() -> Optional[SMTPMailer]:
    if not config.SMTP_ENABLED:
        return None
    return SMTPMailer(
        from_email=config.SMTP_FROM,
        host=config.SMTP_HOST,
        port=config.SMTP_PORT,
        username=config.SMTP_USER or None,
        password=config.SMTP_PASSWORD or None,
        use_tls=config.SMTP_USE_TLS,
    )


async def send_email(to: str, subject: str, text_body: str) -> bool:
    """True when the SMTP server accepted the message. Never raises."""
    mailer = get_mailer()
    if mailer is None:
        logger.debug("MAIL_SKIPPED [reason=smtp_not_configured]")
        return False
    try:
        await asyncio.to_thread(mailer.send_blocking, to, subject, text_body)
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.warning(f"MAIL_SEND_FAILED [to={to}, error={e}]")
        return False
