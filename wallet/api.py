import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import CurrentUser, get_current_user, require_admin
from .config import DEFAULT_JWT_SECRET, Settings, get_settings
from .logging_config import setup_logging
from .models import (
    AdminUrlUpdate, AdminUserSummary, Balance, ConfirmResponse, CreatePurchaseRequest,
    GameCredentials, LedgerCheck, LegacyRedeemRequest, ProfileUpdate, PurchaseRequestRecord,
    PurchaseStatus, PurchaseStatusResponse, RedeemCreditsRequest, RedemptionRecord,
    RedemptionResponse, SheetsWebhookPayload, TransactionRecord, UserProfile, UserStats, UserUpsert,
)
from .service import (
    AlreadyCompletedError, AuthorizationError, NotFoundError, PhotoTooLargeError,
    WalletService, WalletValidationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def get_service(request: Request) -> WalletService:
    return request.app.state.wallet_service


class SessionProfile(UserUpsert):
    id: Optional[str] = None


# ─────────────────────────────────────────────
# USER
# ─────────────────────────────────────────────

@router.post("/auth/sync", response_model=UserProfile, tags=["Users"])
def sync_user(
    profile: SessionProfile,
    user: CurrentUser = Depends(get_current_user),
    service: WalletService = Depends(get_service),
):
    data = UserUpsert(**profile.model_dump(exclude={"id", "is_admin"}), id=user.id, is_admin=user.is_admin)
    result = service.upsert_user(data)
    service.record_login(user.id)
    return result


@router.get("/auth/user", response_model=UserProfile, tags=["Users"])
def get_auth_user(user: CurrentUser = Depends(get_current_user), service: WalletService = Depends(get_service)):
    try:
        return service.get_user(user.id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")


@router.patch("/user/profile", response_model=UserProfile, tags=["Users"])
def update_profile(
    changes: ProfileUpdate,
    user: CurrentUser = Depends(get_current_user),
    service: WalletService = Depends(get_service),
):
    try:
        return service.update_profile(user.id, changes)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")


@router.post("/user/game-credentials", response_model=GameCredentials, tags=["Users"])
def game_credentials(user: CurrentUser = Depends(get_current_user), service: WalletService = Depends(get_service)):
    try:
        return service.ensure_game_credentials(user.id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")


@router.get("/transactions", response_model=list[TransactionRecord], tags=["Ledger"])
def list_transactions(
    limit: int = 10,
    user: CurrentUser = Depends(get_current_user),
    service: WalletService = Depends(get_service),
):
    return service.get_transactions(user.id, limit=max(1, min(limit, 100)))


@router.get("/balance", response_model=Balance, tags=["Ledger"])
def get_balance(user: CurrentUser = Depends(get_current_user), service: WalletService = Depends(get_service)):
    try:
        return service.get_balance(user.id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")


# ─────────────────────────────────────────────
# PURCHASES
# ─────────────────────────────────────────────

@router.post("/credit-purchase", response_model=PurchaseRequestRecord,
             status_code=status.HTTP_201_CREATED, tags=["Purchases"])
def create_credit_purchase(
    request: CreatePurchaseRequest,
    user: CurrentUser = Depends(get_current_user),
    service: WalletService = Depends(get_service),
):
    try:
        return service.create_purchase_request(user.id, request)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    except WalletValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/credit-purchases", response_model=list[PurchaseRequestRecord], tags=["Purchases"])
def list_own_purchases(user: CurrentUser = Depends(get_current_user), service: WalletService = Depends(get_service)):
    return service.list_purchase_requests(user_id=user.id)


@router.get("/credit-purchase/{request_id}/status", response_model=PurchaseStatusResponse, tags=["Purchases"])
def get_purchase_status(
    request_id: int,
    user: CurrentUser = Depends(get_current_user),
    service: WalletService = Depends(get_service),
):
    try:
        return service.get_purchase_status(request_id, user.id, is_admin=user.is_admin)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Purchase request {request_id} not found")
    except AuthorizationError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")


# ─────────────────────────────────────────────
# REDEMPTIONS
# ─────────────────────────────────────────────

@router.post("/redeem-credits", response_model=RedemptionResponse,
             status_code=status.HTTP_201_CREATED, tags=["Redemptions"])
def redeem_credits(
    request: RedeemCreditsRequest,
    user: CurrentUser = Depends(get_current_user),
    service: WalletService = Depends(get_service),
):
    try:
        return service.redeem_credits(user.id, request.credits_to_redeem, request.description)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    except WalletValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/credit-redeem", response_model=RedemptionResponse,
             status_code=status.HTTP_201_CREATED, tags=["Redemptions"])
def redeem_credits_legacy(
    request: LegacyRedeemRequest,
    user: CurrentUser = Depends(get_current_user),
    service: WalletService = Depends(get_service),
):
    try:
        return service.redeem_credits(
            user.id, request.credits_to_redeem, f"Credit redemption to {request.cash_app_username}"
        )
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    except WalletValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# ─────────────────────────────────────────────
# ADMIN
# ─────────────────────────────────────────────

@router.get("/admin/credit-purchases", response_model=list[PurchaseRequestRecord], tags=["Admin"])
def admin_list_purchases(
    status_filter: Optional[PurchaseStatus] = Query(default=None, alias="status"),
    admin: CurrentUser = Depends(require_admin),
    service: WalletService = Depends(get_service),
):
    return service.list_purchase_requests(status=status_filter)


@router.patch("/admin/credit-purchases/{request_id}", response_model=PurchaseRequestRecord, tags=["Admin"])
def admin_attach_payment_link(
    request_id: int,
    update: AdminUrlUpdate,
    admin: CurrentUser = Depends(require_admin),
    service: WalletService = Depends(get_service),
):
    try:
        return service.attach_payment_link(request_id, update.admin_url)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Purchase request {request_id} not found")
    except WalletValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.patch("/admin/credit-purchases/{request_id}/confirm", response_model=ConfirmResponse, tags=["Admin"])
def admin_confirm_payment(
    request_id: int,
    admin: CurrentUser = Depends(require_admin),
    service: WalletService = Depends(get_service),
):
    try:
        return service.confirm_payment(request_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except AlreadyCompletedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/admin/credit-purchases/{request_id}/photo", response_model=PurchaseRequestRecord, tags=["Admin"])
def admin_attach_photo(
    request: Request,
    request_id: int,
    photo: UploadFile = File(...),
    admin: CurrentUser = Depends(require_admin),
    service: WalletService = Depends(get_service),
):
    # read one byte past the limit so oversized uploads are detected without buffering them whole
    data = photo.file.read(request.app.state.settings.max_photo_bytes + 1)
    try:
        return service.attach_photo(request_id, photo.content_type, data)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Purchase request {request_id} not found")
    except PhotoTooLargeError as e:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(e))
    except WalletValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/admin/redemptions", response_model=list[RedemptionRecord], tags=["Admin"])
def admin_list_redemptions(admin: CurrentUser = Depends(require_admin), service: WalletService = Depends(get_service)):
    return service.list_redemptions()


@router.patch("/admin/redemptions/{transaction_id}", response_model=TransactionRecord, tags=["Admin"])
def admin_attach_redemption_url(
    transaction_id: int,
    update: AdminUrlUpdate,
    admin: CurrentUser = Depends(require_admin),
    service: WalletService = Depends(get_service),
):
    try:
        return service.attach_redemption_url(transaction_id, update.admin_url)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Redemption {transaction_id} not found")
    except WalletValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/admin/users", response_model=list[AdminUserSummary], tags=["Admin"])
def admin_list_users(admin: CurrentUser = Depends(require_admin), service: WalletService = Depends(get_service)):
    return service.list_users_for_admin()


@router.get("/admin/stats", response_model=UserStats, tags=["Admin"])
def admin_user_stats(admin: CurrentUser = Depends(require_admin), service: WalletService = Depends(get_service)):
    return service.get_user_stats()


@router.delete("/admin/users/{user_id}", tags=["Admin"])
def admin_delete_user(
    user_id: str,
    admin: CurrentUser = Depends(require_admin),
    service: WalletService = Depends(get_service),
):
    if user_id == admin.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Admins cannot delete their own account")
    try:
        service.delete_user(user_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return {"success": True}


@router.get("/admin/users/{user_id}/ledger-check", response_model=LedgerCheck, tags=["Admin"])
def admin_ledger_check(
    user_id: str,
    admin: CurrentUser = Depends(require_admin),
    service: WalletService = Depends(get_service),
):
    try:
        return service.check_ledger(user_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")


# ─────────────────────────────────────────────
# SPREADSHEET WEBHOOK
# ─────────────────────────────────────────────

@router.post("/sheets-webhook", tags=["Integrations"])
def sheets_webhook(
    request: Request,
    payload: SheetsWebhookPayload,
    x_webhook_secret: Optional[str] = Header(default=None),
    service: WalletService = Depends(get_service),
):
    expected = request.app.state.settings.sheets_webhook_secret
    if expected and x_webhook_secret != expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid webhook secret")
    try:
        service.record_cashapp_link(payload.request_id, payload.cashapp_link)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Request not found")
    except WalletValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"success": True}


# ─────────────────────────────────────────────
# APP
# ─────────────────────────────────────────────

async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(loc) for loc in first["loc"] if loc != "body")
        message = f"{field}: {first['msg']}" if field else first["msg"]
    else:
        message = "Invalid request"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"message": message})


async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"message": "Internal server error"})


def create_app(service: Optional[WalletService] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (service.settings if service else get_settings())
    setup_logging(settings.log_level)
    if settings.jwt_secret == DEFAULT_JWT_SECRET:
        logger.warning("JWT_SECRET is not set; tokens are signed with the built-in development key")

    app = FastAPI(
        title="Credit Wallet API",
        description="Credit purchases, redemptions and the admin workflow behind them",
        version="1.0.0",
    )
    app.state.settings = settings
    app.state.wallet_service = service or WalletService(settings=settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "credit-wallet"}

    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
