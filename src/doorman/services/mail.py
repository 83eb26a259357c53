from abc import ABC, abstractmethod
from email.message import EmailMessage
from email.utils import formataddr

import aiosmtplib
import structlog

from doorman.core.errors import EmailDeliveryFailed

logger = structlog.get_logger()


class Mailer(ABC):
    @abstractmethod
    async def send_mail(self, to: str, subject: str, html: str) -> None:
        """Deliver one HTML message. Raises EmailDeliveryFailed."""


class SmtpMailer(Mailer):
    """
    Sends through an authenticated SMTP relay (Gmail by default).

    A connection is opened per message; signup volume is far too low to
    justify a pooled transport.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        sender_name: str,
        use_tls: bool = True,
        timeout: float = 15.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._sender = formataddr((sender_name, username))
        self._use_tls = use_tls
        self._timeout = timeout

    def build_message(self, to: str, subject: str, html: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content("Please open this message in an HTML capable mail client.")
        message.add_alternative(html, subtype="html")
        return message

    async def send_mail(self, to: str, subject: str, html: str) -> None:
        message = self.build_message(to, subject, html)
        try:
            await aiosmtplib.send(
                message,
                hostname=self._host,
                port=self._port,
                username=self._username or None,
                password=self._password or None,
                use_tls=self._use_tls,
                timeout=self._timeout,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise EmailDeliveryFailed(f"smtp delivery failed: {exc}") from exc
        logger.info("email_sent", host=self._host, subject=subject)
