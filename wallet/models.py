from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CREDIT_USD_RATE = Decimal("0.01")
# upper bound for a single purchase or redemption; fits a 32-bit INTEGER column
MAX_CREDITS = 2**31 - 1


def credits_to_usd(credits: int) -> Decimal:
    return (Decimal(credits) * CREDIT_USD_RATE).quantize(Decimal("0.01"))


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    REDEMPTION = "redemption"
    GAME_PLAY = "game_play"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_LINK_SENT = "payment_link_sent"
    COMPLETED = "completed"


class PurchaseStage(str, Enum):
    PENDING = "pending"
    URL_SENT = "url_sent"
    PROCESSING = "processing"
    COMPLETED = "completed"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ─────────────────────────────────────────────
# REQUESTS
# ─────────────────────────────────────────────

class CreatePurchaseRequest(CamelModel):
    credits_requested: int = Field(..., gt=0, le=MAX_CREDITS, description="Whole credits to buy")
    usd_amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)

    model_config = ConfigDict(json_schema_extra={
        "example": {"creditsRequested": 1000, "usdAmount": 10.00}
    })


class RedeemCreditsRequest(CamelModel):
    credits_to_redeem: int = Field(..., gt=0, le=MAX_CREDITS)
    description: Optional[str] = None


class LegacyRedeemRequest(CamelModel):
    credits_to_redeem: int = Field(..., gt=0, le=MAX_CREDITS)
    cash_app_username: str = Field(..., min_length=1)


class AdminUrlUpdate(CamelModel):
    admin_url: str = Field(..., min_length=1, description="Out-of-band payment link")


class ProfileUpdate(CamelModel):
    phone: Optional[str] = None
    location: Optional[str] = None


class UserUpsert(CamelModel):
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    is_admin: bool = False


class SheetsWebhookPayload(CamelModel):
    request_id: int
    cashapp_link: str = Field(..., min_length=1)


# ─────────────────────────────────────────────
# RESPONSES
# ─────────────────────────────────────────────

class UserProfile(CamelModel):
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    credits: int
    usd_balance: Decimal
    game_username: Optional[str] = None
    is_admin: bool = False
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class TransactionRecord(CamelModel):
    id: int
    user_id: str
    type: TransactionType
    amount: int
    usd_value: Optional[Decimal] = None
    status: TransactionStatus
    description: Optional[str] = None
    admin_url: Optional[str] = None
    created_at: datetime


class RedemptionRecord(TransactionRecord):
    user_email: Optional[str] = None
    user_first_name: Optional[str] = None
    user_last_name: Optional[str] = None


class PurchaseRequestRecord(CamelModel):
    id: int
    user_id: str
    credits_requested: int
    usd_amount: Decimal
    status: PurchaseStatus
    admin_url: Optional[str] = None
    photo_path: Optional[str] = None
    cashapp_link: Optional[str] = None
    sheet_row_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PurchaseStatusResponse(CamelModel):
    id: int
    status: PurchaseStatus
    admin_url: Optional[str] = None
    credits_requested: int
    usd_amount: Decimal
    stage: PurchaseStage
    created_at: datetime
    updated_at: datetime


class RedemptionResponse(CamelModel):
    success: bool = True
    transaction: TransactionRecord
    credits: int


class ConfirmResponse(CamelModel):
    request: PurchaseRequestRecord
    transaction: TransactionRecord
    credits: int
    message: str


class Balance(CamelModel):
    user_id: str
    credits: int
    usd_balance: Decimal


class LedgerCheck(CamelModel):
    user_id: str
    credits: int
    transaction_sum: int
    transaction_count: int
    consistent: bool


class AdminUserSummary(UserProfile):
    game_password: Optional[str] = None
    total_transactions: int = 0
    total_purchases: int = 0
    total_redemptions: int = 0
    total_credit_requests: int = 0


class RecentLogin(CamelModel):
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    last_login_at: Optional[datetime] = None


class UserStats(CamelModel):
    total_users: int
    new_users_this_week: int
    recent_logins: list[RecentLogin]


class GameCredentials(CamelModel):
    success: bool = True
    game_username: str
    created: bool
