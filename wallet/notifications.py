"""SMS and email delivery for workflow transitions.

Delivery is best-effort: every failure is logged and swallowed so that a
notification can never undo a ledger mutation.
"""

import logging
from typing import Optional, Protocol

import httpx

from .config import Settings

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class Recipient(Protocol):
    id: str
    phone: Optional[str]
    email: Optional[str]


class SmsSender:
    def __init__(self, account_sid: str, auth_token: str, from_number: str,
                 client: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.account_sid = account_sid
        self.from_number = from_number
        self.client = client or httpx.Client(auth=(account_sid, auth_token), timeout=timeout)

    def send(self, to: str, body: str) -> None:
        response = self.client.post(
            f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json",
            data={"From": self.from_number, "To": to, "Body": body},
        )
        response.raise_for_status()


class EmailSender:
    def __init__(self, api_key: str, from_address: str,
                 client: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.from_address = from_address
        self.client = client or httpx.Client(
            headers={"Authorization": f"Bearer {api_key}"}, timeout=timeout
        )

    def send(self, to: str, subject: str, body: str) -> None:
        response = self.client.post(SENDGRID_SEND_URL, json={
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_address},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        })
        response.raise_for_status()


class NotificationDispatcher:
    def __init__(self, sms: Optional[SmsSender] = None, email: Optional[EmailSender] = None):
        self.sms = sms
        self.email = email

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotificationDispatcher":
        sms = None
        if settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_phone_number:
            sms = SmsSender(
                settings.twilio_account_sid, settings.twilio_auth_token,
                settings.twilio_phone_number, timeout=settings.notification_timeout,
            )
        email = None
        if settings.sendgrid_api_key and settings.email_from:
            email = EmailSender(
                settings.sendgrid_api_key, settings.email_from,
                timeout=settings.notification_timeout,
            )
        return cls(sms=sms, email=email)

    def notify(self, user: Recipient, message: str, subject: str = "Wallet update") -> None:
        if user.phone:
            if self.sms is None:
                logger.info("SMS would be sent to %s: %s", user.phone, message)
            else:
                try:
                    self.sms.send(user.phone, message)
                except Exception:
                    logger.exception("Failed to send SMS to user %s", user.id)
        if user.email and self.email is not None:
            try:
                self.email.send(user.email, subject, message)
            except Exception:
                logger.exception("Failed to send email to user %s", user.id)
