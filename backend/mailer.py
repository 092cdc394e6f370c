# mailer.py — Outbound email for workflow notifications
# Providers (EMAIL_PROVIDER):
# - console: log the message only (development/testing default)
# - smtp / microsoft365 / gmail: SMTP with STARTTLS
# - http: JSON POST to a transactional mail API
import os
import ssl
import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional, Dict, Any

import httpx

logger = logging.getLogger("itsm.mailer")

EMAIL_PROVIDER = os.getenv("EMAIL_PROVIDER", "console").lower()
EMAIL_HOST = os.getenv("EMAIL_HOST", "")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
EMAIL_USERNAME = os.getenv("EMAIL_USERNAME", "")
EMAIL_PASSWORD = os.getenv("EMAIL_PASSWORD", "")
EMAIL_API_URL = os.getenv("EMAIL_API_URL", "")
EMAIL_API_KEY = os.getenv("EMAIL_API_KEY", "")
FROM_NAME = os.getenv("FROM_NAME", "ITSM Solution")
FROM_EMAIL = os.getenv("FROM_EMAIL", "noreply@example.com")

SMTP_PRESETS = {
    "microsoft365": ("smtp.office365.com", 587),
    "gmail": ("smtp.gmail.com", 587),
}


class MailDeliveryError(Exception):
    pass


class Mailer:
    """Sends one plain-text (optionally HTML) message per call."""

    def __init__(
        self,
        provider: str = EMAIL_PROVIDER,
        host: str = EMAIL_HOST,
        port: int = EMAIL_PORT,
        username: str = EMAIL_USERNAME,
        password: str = EMAIL_PASSWORD,
        api_url: str = EMAIL_API_URL,
        api_key: str = EMAIL_API_KEY,
        from_name: str = FROM_NAME,
        from_email: str = FROM_EMAIL,
    ):
        self.provider = provider
        self.host, self.port = SMTP_PRESETS.get(provider, (host, port))
        self.username = username
        self.password = password
        self.api_url = api_url
        self.api_key = api_key
        self.sender = f"{from_name} <{from_email}>"

    async def send(self, to: str, subject: str, body: str, html: Optional[str] = None) -> Dict[str, Any]:
        if not to:
            raise MailDeliveryError("Recipient email is empty")

        if self.provider == "console":
            logger.info(f"[console mail] to={to} subject={subject!r}")
            return {"provider": "console", "to": to}
        if self.provider == "http":
            return await self._send_http(to, subject, body, html)
        return await asyncio.to_thread(self._send_smtp, to, subject, body, html)

    def _build_message(self, to: str, subject: str, body: str, html: Optional[str]) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        if html:
            msg.add_alternative(html, subtype="html")
        return msg

    def _send_smtp(self, to: str, subject: str, body: str, html: Optional[str]) -> Dict[str, Any]:
        if not self.host:
            raise MailDeliveryError(f"No SMTP host configured for provider '{self.provider}'")
        msg = self._build_message(to, subject, body, html)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
                smtp.starttls(context=ssl.create_default_context())
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise MailDeliveryError(f"SMTP delivery to {to} failed: {e}") from e
        logger.info(f"Message sent via {self.provider} to {to}")
        return {"provider": self.provider, "to": to}

    async def _send_http(self, to: str, subject: str, body: str, html: Optional[str]) -> Dict[str, Any]:
        if not self.api_url:
            raise MailDeliveryError("EMAIL_API_URL is not configured")
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {"from": self.sender, "to": to, "subject": subject, "text": body}
        if html:
            payload["html"] = html
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.post(self.api_url, json=payload, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise MailDeliveryError(f"Mail API delivery to {to} failed: {e}") from e
        logger.info(f"Message sent via mail API to {to} ({resp.status_code})")
        return {"provider": "http", "to": to, "status_code": resp.status_code}


_mailer: Optional[Mailer] = None


def get_mailer() -> Mailer:
    global _mailer
    if _mailer is None:
        _mailer = Mailer()
    return _mailer
