import logging
import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import sessionmaker

from .config import Settings, get_settings
from .db import (
    CreditPurchaseRequest, Transaction, User,
    create_db_engine, create_session_factory, init_db, utcnow,
)
from .mirror import NullMirror, SheetsMirror
from .models import (
    AdminUserSummary, Balance, ConfirmResponse, CreatePurchaseRequest, GameCredentials,
    LedgerCheck, ProfileUpdate, PurchaseRequestRecord, PurchaseStatus,
    PurchaseStatusResponse, RecentLogin, RedemptionRecord, RedemptionResponse,
    TransactionRecord, TransactionStatus, TransactionType, UserProfile, UserStats,
    UserUpsert, MAX_CREDITS, credits_to_usd,
)
from .notifications import NotificationDispatcher
from .stages import derive_stage
from .uploads import PhotoRejectedError, PhotoStore, PhotoTooLarge

logger = logging.getLogger(__name__)

DEFAULT_GAME_SITE_URL = "https://www.goldendragoncity.com/"


class WalletServiceError(Exception):
    pass


class WalletValidationError(WalletServiceError):
    pass


class InsufficientCreditsError(WalletValidationError):
    pass


class PhotoTooLargeError(WalletValidationError):
    pass


class AuthorizationError(WalletServiceError):
    pass


class NotFoundError(WalletServiceError):
    pass


class UserNotFoundError(NotFoundError):
    pass


class PurchaseRequestNotFoundError(NotFoundError):
    pass


class RedemptionNotFoundError(NotFoundError):
    pass


class AlreadyCompletedError(WalletServiceError):
    pass


def _require_positive_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise WalletValidationError(f"{name} must be a positive whole number")
    if value > MAX_CREDITS:
        raise WalletValidationError(f"{name} must be at most {MAX_CREDITS}")
    return value


def _require_url(url: Optional[str]) -> str:
    url = (url or "").strip()
    if not url:
        raise WalletValidationError("adminUrl is required")
    return url


def _profile(user: User) -> UserProfile:
    return UserProfile(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        phone=user.phone,
        location=user.location,
        credits=user.credits,
        usd_balance=credits_to_usd(user.credits),
        game_username=user.game_username,
        is_admin=user.is_admin,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


class WalletService:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        notifier: Optional[NotificationDispatcher] = None,
        mirror=None,
        photos: Optional[PhotoStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        if session_factory is None:
            engine = create_db_engine(self.settings.database_url)
            init_db(engine)
            session_factory = create_session_factory(engine)
        self.session_factory = session_factory
        self.notifier = notifier or NotificationDispatcher.from_settings(self.settings)
        self.mirror = mirror if mirror is not None else SheetsMirror.from_settings(self.settings)
        self.photos = photos or PhotoStore(self.settings.upload_dir, self.settings.max_photo_bytes)
        self.game_site_url = DEFAULT_GAME_SITE_URL

    # ─────────────────────────────────────────────
    # USERS
    # ─────────────────────────────────────────────

    def upsert_user(self, data: UserUpsert) -> UserProfile:
        with self.session_factory() as db, db.begin():
            user = db.get(User, data.id)
            if user is None:
                user = User(id=data.id, credits=0)
                db.add(user)
            for field in ("email", "first_name", "last_name", "phone", "location"):
                value = getattr(data, field)
                if value is not None:
                    setattr(user, field, value)
            user.is_admin = data.is_admin
            user.updated_at = utcnow()
            db.flush()
            return _profile(user)

    def get_user(self, user_id: str) -> UserProfile:
        with self.session_factory() as db:
            return _profile(self._load_user(db, user_id))

    def record_login(self, user_id: str) -> None:
        with self.session_factory() as db, db.begin():
            db.execute(update(User).where(User.id == user_id).values(last_login_at=utcnow()))

    def update_profile(self, user_id: str, changes: ProfileUpdate) -> UserProfile:
        with self.session_factory() as db, db.begin():
            user = self._load_user(db, user_id)
            if changes.phone is not None:
                user.phone = changes.phone
            if changes.location is not None:
                user.location = changes.location
            user.updated_at = utcnow()
            db.flush()
            return _profile(user)

    def ensure_game_credentials(self, user_id: str) -> GameCredentials:
        with self.session_factory() as db, db.begin():
            user = self._load_user(db, user_id)
            if user.game_username:
                return GameCredentials(game_username=user.game_username, created=False)
            user.game_username = f"user_{user_id[:8]}_{int(time.time() * 1000)}"
            alphabet = string.ascii_lowercase + string.digits
            user.game_password = "".join(secrets.choice(alphabet) for _ in range(12))
            user.updated_at = utcnow()
        logger.info("Generated game credentials for user %s", user_id)
        self._notify(
            user,
            f"Welcome! Your game credentials have been created. Access the game at: {self.game_site_url}",
            subject="Your game account is ready",
        )
        return GameCredentials(game_username=user.game_username, created=True)

    # ─────────────────────────────────────────────
    # PURCHASE WORKFLOW
    # ─────────────────────────────────────────────

    def create_purchase_request(self, user_id: str, request: CreatePurchaseRequest) -> PurchaseRequestRecord:
        credits = _require_positive_int(request.credits_requested, "creditsRequested")
        usd_amount = Decimal(request.usd_amount)
        if usd_amount <= 0:
            raise WalletValidationError("usdAmount must be greater than zero")

        with self.session_factory() as db, db.begin():
            user = self._load_user(db, user_id)
            now = utcnow()
            purchase = CreditPurchaseRequest(
                user_id=user_id,
                credits_requested=credits,
                usd_amount=usd_amount,
                status=PurchaseStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            db.add(purchase)
        logger.info("Created purchase request %s for user %s: %s credits", purchase.id, user_id, credits)

        row_id = self._mirror_purchase(purchase, user)
        if row_id is not None:
            with self.session_factory() as db, db.begin():
                db.execute(
                    update(CreditPurchaseRequest)
                    .where(CreditPurchaseRequest.id == purchase.id)
                    .values(sheet_row_id=row_id)
                )
            purchase.sheet_row_id = row_id
        return PurchaseRequestRecord.model_validate(purchase)

    def get_purchase_request(self, request_id: int) -> PurchaseRequestRecord:
        with self.session_factory() as db:
            return PurchaseRequestRecord.model_validate(self._load_purchase(db, request_id))

    def get_purchase_status(self, request_id: int, requester_id: str, is_admin: bool = False) -> PurchaseStatusResponse:
        with self.session_factory() as db:
            purchase = self._load_purchase(db, request_id)
        if purchase.user_id != requester_id and not is_admin:
            raise AuthorizationError("Access denied")
        return PurchaseStatusResponse(
            id=purchase.id,
            status=purchase.status,
            admin_url=purchase.admin_url,
            credits_requested=purchase.credits_requested,
            usd_amount=purchase.usd_amount,
            stage=derive_stage(purchase.status, purchase.admin_url),
            created_at=purchase.created_at,
            updated_at=purchase.updated_at,
        )

    def list_purchase_requests(self, user_id: Optional[str] = None,
                               status: Optional[PurchaseStatus] = None) -> list[PurchaseRequestRecord]:
        query = select(CreditPurchaseRequest).order_by(
            CreditPurchaseRequest.created_at.desc(), CreditPurchaseRequest.id.desc()
        )
        if user_id is not None:
            query = query.where(CreditPurchaseRequest.user_id == user_id)
        if status is not None:
            query = query.where(CreditPurchaseRequest.status == PurchaseStatus(status).value)
        with self.session_factory() as db:
            return [PurchaseRequestRecord.model_validate(p) for p in db.execute(query).scalars().all()]

    def attach_payment_link(self, request_id: int, admin_url: str) -> PurchaseRequestRecord:
        url = _require_url(admin_url)
        with self.session_factory() as db, db.begin():
            purchase = self._load_purchase(db, request_id)
            purchase.admin_url = url
            purchase.updated_at = utcnow()
            user = db.get(User, purchase.user_id)
        logger.info("Attached payment link to purchase request %s", request_id)
        if user is not None:
            self._notify(
                user,
                f"Your payment link is ready: {url}. Complete payment to receive your credits.",
                subject="Your payment link is ready",
            )
        return PurchaseRequestRecord.model_validate(purchase)

    def attach_photo(self, request_id: int, content_type: Optional[str], data: bytes) -> PurchaseRequestRecord:
        with self.session_factory() as db:
            self._load_purchase(db, request_id)
        try:
            path = self.photos.save(request_id, content_type, data)
        except PhotoTooLarge as e:
            raise PhotoTooLargeError(str(e)) from e
        except PhotoRejectedError as e:
            raise WalletValidationError(str(e)) from e

        try:
            with self.session_factory() as db, db.begin():
                purchase = self._load_purchase(db, request_id)
                purchase.photo_path = path
                purchase.updated_at = utcnow()
        except PurchaseRequestNotFoundError:
            self.photos.discard(path)
            raise
        return PurchaseRequestRecord.model_validate(purchase)

    def confirm_payment(self, request_id: int) -> ConfirmResponse:
        with self.session_factory() as db, db.begin():
            now = utcnow()
            # Compare-and-swap: only one caller can move the request out of a non-completed state
            claimed = db.execute(
                update(CreditPurchaseRequest)
                .where(
                    CreditPurchaseRequest.id == request_id,
                    CreditPurchaseRequest.status != PurchaseStatus.COMPLETED.value,
                )
                .values(status=PurchaseStatus.COMPLETED.value, updated_at=now)
            )
            if claimed.rowcount == 0:
                self._load_purchase(db, request_id)
                raise AlreadyCompletedError(f"Purchase request {request_id} is already completed")

            purchase = self._load_purchase(db, request_id)
            credited = db.execute(
                update(User)
                .where(User.id == purchase.user_id)
                .values(credits=User.credits + purchase.credits_requested, updated_at=now)
            )
            if credited.rowcount == 0:
                raise UserNotFoundError(f"User {purchase.user_id} not found")

            entry = Transaction(
                user_id=purchase.user_id,
                type=TransactionType.PURCHASE.value,
                amount=purchase.credits_requested,
                usd_value=purchase.usd_amount,
                status=TransactionStatus.COMPLETED.value,
                description="Credit purchase",
                admin_url=purchase.admin_url,
                created_at=now,
            )
            db.add(entry)
            db.flush()
            user = db.get(User, purchase.user_id, populate_existing=True)

        logger.info(
            "Confirmed purchase request %s: credited %s credits to user %s",
            request_id, purchase.credits_requested, purchase.user_id,
        )
        self._notify(
            user,
            f"Payment confirmed! {purchase.credits_requested} credits have been added to your account.",
            subject="Payment confirmed",
        )
        return ConfirmResponse(
            request=PurchaseRequestRecord.model_validate(purchase),
            transaction=TransactionRecord.model_validate(entry),
            credits=user.credits,
            message="Payment confirmed and credits applied",
        )

    def record_cashapp_link(self, request_id: int, cashapp_link: str) -> PurchaseRequestRecord:
        link = (cashapp_link or "").strip()
        if not link:
            raise WalletValidationError("cashappLink is required")
        with self.session_factory() as db, db.begin():
            self._load_purchase(db, request_id)
            db.execute(
                update(CreditPurchaseRequest)
                .where(CreditPurchaseRequest.id == request_id)
                .values(cashapp_link=link, updated_at=utcnow())
            )
            # only a fresh request advances; later states already show a link or are done
            db.execute(
                update(CreditPurchaseRequest)
                .where(
                    CreditPurchaseRequest.id == request_id,
                    CreditPurchaseRequest.status == PurchaseStatus.PENDING.value,
                    CreditPurchaseRequest.admin_url.is_(None),
                )
                .values(status=PurchaseStatus.PAYMENT_LINK_SENT.value)
            )
            purchase = db.get(CreditPurchaseRequest, request_id, populate_existing=True)
            user = db.get(User, purchase.user_id)
        if user is not None:
            self._notify(
                user,
                f"Your payment link is ready: {link}. Complete payment to receive your credits.",
                subject="Your payment link is ready",
            )
        return PurchaseRequestRecord.model_validate(purchase)

    # ─────────────────────────────────────────────
    # REDEMPTION WORKFLOW
    # ─────────────────────────────────────────────

    def redeem_credits(self, user_id: str, credits_to_redeem: int,
                       description: Optional[str] = None) -> RedemptionResponse:
        credits = _require_positive_int(credits_to_redeem, "creditsToRedeem")
        usd_value = credits_to_usd(credits)

        with self.session_factory() as db, db.begin():
            self._load_user(db, user_id)
            debited = db.execute(
                update(User)
                .where(User.id == user_id, User.credits >= credits)
                .values(credits=User.credits - credits, updated_at=utcnow())
            )
            if debited.rowcount == 0:
                raise InsufficientCreditsError("Insufficient credits")

            entry = Transaction(
                user_id=user_id,
                type=TransactionType.REDEMPTION.value,
                amount=-credits,
                usd_value=usd_value,
                status=TransactionStatus.PENDING.value,
                description=description or "Credit redemption",
                created_at=utcnow(),
            )
            db.add(entry)
            db.flush()
            user = db.get(User, user_id, populate_existing=True)

        logger.info("User %s redeemed %s credits ($%s)", user_id, credits, usd_value)
        self._notify(
            user,
            f"Your redemption request for {credits} credits (${usd_value}) has been submitted. "
            f"You'll receive payment within 24 hours.",
            subject="Redemption submitted",
        )
        return RedemptionResponse(transaction=TransactionRecord.model_validate(entry), credits=user.credits)

    def attach_redemption_url(self, transaction_id: int, admin_url: str) -> TransactionRecord:
        url = _require_url(admin_url)
        with self.session_factory() as db, db.begin():
            entry = db.get(Transaction, transaction_id)
            if entry is None or entry.type != TransactionType.REDEMPTION.value:
                raise RedemptionNotFoundError(f"Redemption {transaction_id} not found")
            entry.admin_url = url
            user = db.get(User, entry.user_id)
        logger.info("Attached payment url to redemption %s", transaction_id)
        if user is not None:
            self._notify(user, f"Your redemption payment has been sent: {url}", subject="Redemption paid")
        return TransactionRecord.model_validate(entry)

    def list_redemptions(self) -> list[RedemptionRecord]:
        query = (
            select(Transaction, User.email, User.first_name, User.last_name)
            .outerjoin(User, Transaction.user_id == User.id)
            .where(Transaction.type == TransactionType.REDEMPTION.value)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        )
        with self.session_factory() as db:
            rows = db.execute(query).all()
        return [
            RedemptionRecord(
                **TransactionRecord.model_validate(entry).model_dump(),
                user_email=email, user_first_name=first_name, user_last_name=last_name,
            )
            for entry, email, first_name, last_name in rows
        ]

    # ─────────────────────────────────────────────
    # LEDGER QUERIES
    # ─────────────────────────────────────────────

    def get_transactions(self, user_id: str, limit: int = 10) -> list[TransactionRecord]:
        with self.session_factory() as db:
            entries = db.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                .limit(limit)
            ).scalars().all()
        return [TransactionRecord.model_validate(e) for e in entries]

    def get_balance(self, user_id: str) -> Balance:
        with self.session_factory() as db:
            user = self._load_user(db, user_id)
        return Balance(user_id=user.id, credits=user.credits, usd_balance=credits_to_usd(user.credits))

    def check_ledger(self, user_id: str) -> LedgerCheck:
        with self.session_factory() as db:
            user = self._load_user(db, user_id)
            total, count = db.execute(
                select(func.coalesce(func.sum(Transaction.amount), 0), func.count(Transaction.id))
                .where(Transaction.user_id == user_id)
            ).one()
        consistent = user.credits == total
        if not consistent:
            logger.error("Ledger mismatch for user %s: credits=%s transactions=%s", user_id, user.credits, total)
        return LedgerCheck(
            user_id=user_id, credits=user.credits, transaction_sum=total,
            transaction_count=count, consistent=consistent,
        )

    # ─────────────────────────────────────────────
    # ADMIN
    # ─────────────────────────────────────────────

    def list_users_for_admin(self) -> list[AdminUserSummary]:
        with self.session_factory() as db:
            users = db.execute(select(User).order_by(User.created_at.desc())).scalars().all()
            counts = self._count_by_user(db, Transaction.user_id)
            purchases = self._count_by_user(db, Transaction.user_id, Transaction.type == TransactionType.PURCHASE.value)
            redemptions = self._count_by_user(db, Transaction.user_id, Transaction.type == TransactionType.REDEMPTION.value)
            requests = self._count_by_user(db, CreditPurchaseRequest.user_id)
        return [
            AdminUserSummary(
                **_profile(u).model_dump(),
                game_password=u.game_password,
                total_transactions=counts.get(u.id, 0),
                total_purchases=purchases.get(u.id, 0),
                total_redemptions=redemptions.get(u.id, 0),
                total_credit_requests=requests.get(u.id, 0),
            )
            for u in users
        ]

    def get_user_stats(self) -> UserStats:
        cutoff = utcnow() - timedelta(days=7)
        with self.session_factory() as db:
            total = db.execute(select(func.count(User.id))).scalar_one()
            new_this_week = db.execute(
                select(func.count(User.id)).where(User.created_at >= cutoff)
            ).scalar_one()
            recent = db.execute(
                select(User)
                .where(User.last_login_at.is_not(None))
                .order_by(User.last_login_at.desc())
                .limit(10)
            ).scalars().all()
        return UserStats(
            total_users=total,
            new_users_this_week=new_this_week,
            recent_logins=[RecentLogin.model_validate(u) for u in recent],
        )

    def delete_user(self, user_id: str) -> None:
        with self.session_factory() as db, db.begin():
            self._load_user(db, user_id)
            db.execute(delete(Transaction).where(Transaction.user_id == user_id))
            db.execute(delete(CreditPurchaseRequest).where(CreditPurchaseRequest.user_id == user_id))
            db.execute(delete(User).where(User.id == user_id))
        logger.info("Deleted user %s and all related records", user_id)

    # ─────────────────────────────────────────────
    # HELPERS
    # ─────────────────────────────────────────────

    def _load_user(self, db, user_id: str) -> User:
        user = db.get(User, user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    def _load_purchase(self, db, request_id: int) -> CreditPurchaseRequest:
        purchase = db.get(CreditPurchaseRequest, request_id)
        if purchase is None:
            raise PurchaseRequestNotFoundError(f"Purchase request {request_id} not found")
        return purchase

    def _count_by_user(self, db, column, *criteria) -> dict[str, int]:
        query = select(column, func.count()).group_by(column)
        if criteria:
            query = query.where(*criteria)
        return {user_id: count for user_id, count in db.execute(query).all()}

    def _mirror_purchase(self, purchase: CreditPurchaseRequest, user: User) -> Optional[str]:
        try:
            return self.mirror.append_purchase_request(purchase, user)
        except Exception:
            logger.exception("Error adding purchase request %s to spreadsheet", purchase.id)
            return None

    def _notify(self, user: User, message: str, subject: str) -> None:
        try:
            self.notifier.notify(user, message, subject=subject)
        except Exception:
            logger.exception("Notification dispatch failed for user %s", user.id)
