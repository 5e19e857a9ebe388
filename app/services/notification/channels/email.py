from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText

from app.core.config import settings

logger = logging.getLogger(__name__)


class EmailChannel:
    """Plain-text SMTP delivery for subscription notices."""

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        user: str | None = None,
        password: str | None = None,
        from_email: str | None = None,
    ) -> None:
        self.host = host or settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT
        self.user = user or settings.SMTP_USER
        self.password = password or settings.SMTP_PASSWORD
        self.from_email = from_email or settings.FROM_EMAIL or self.user

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password and self.from_email)

    def send(self, to_email: str, subject: str, body: str) -> bool:
        """Send one message. Returns True on success; failures are logged, never raised."""
        if not self.configured:
            logger.warning("SMTP not configured, skipping email to %s", to_email)
            return False

        msg = MIMEText(body, "plain", "utf-8")
        msg["From"] = self.from_email
        msg["To"] = to_email
        msg["Subject"] = subject

        try:
            with smtplib.SMTP(self.host, self.port, timeout=15) as server:
                server.starttls()
                server.login(self.user, self.password)
                server.send_message(msg)
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("SMTP send failed to %s: %s", to_email, e)
            return False
