import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from .config import Settings
from .db import CreditPurchaseRequest, User

logger = logging.getLogger(__name__)


class NullMirror:
    def append_purchase_request(self, request: CreditPurchaseRequest, user: User) -> Optional[str]:
        return None


class SheetsMirror:
    """Appends purchase requests to the admin spreadsheet via an Apps Script web app.

    Columns A:J are id, first name, last name, email, phone, location,
    credits, USD amount, CashApp link (filled in by hand) and timestamp.
    """

    def __init__(self, webhook_url: str, secret: str = "",
                 client: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.secret = secret
        self.client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings):
        if not settings.sheets_webhook_url:
            return NullMirror()
        return cls(settings.sheets_webhook_url, settings.sheets_webhook_secret,
                   timeout=settings.notification_timeout)

    def append_purchase_request(self, request: CreditPurchaseRequest, user: User) -> Optional[str]:
        row = [
            str(request.id),
            user.first_name or "",
            user.last_name or "",
            user.email or "",
            user.phone or "",
            user.location or "",
            str(request.credits_requested),
            str(request.usd_amount),
            "",
            datetime.now(timezone.utc).isoformat(),
        ]
        response = self.client.post(
            self.webhook_url,
            json={"secret": self.secret, "range": "A:J", "values": [row]},
        )
        response.raise_for_status()
        try:
            row_id = response.json().get("row")
        except ValueError:
            row_id = None
        return str(row_id) if row_id is not None else str(request.id)
