import logging
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .adapters import CoinGateProvider, PaymentProvider, SandboxProvider
from .audit import list_admin_actions
from .config import Settings, get_settings
from .database import create_engine, create_schema, create_sessionmaker
from .exceptions import (
    AuthenticationError,
    InternalError,
    LedgerError,
    PermissionDeniedError,
)
from .ledger import WalletLedger
from .models import EntryType
from .notifications import LoggingNotifier, NotificationDispatcher, Notifier
from .payment_service import PaymentService
from .rate_limit import WebhookRateLimiter
from .reconciliation import ReconciliationEngine
from .refunds import RefundProcessor
from .schemas import (
    AdminActionPage,
    AdminActionResponse,
    AdminCreditRequest,
    CreatePaymentRequest,
    InvestmentRequest,
    LedgerEntryPage,
    LedgerEntryResponse,
    PaymentIntentResponse,
    PaymentResponse,
    RefundRequest,
    WalletResponse,
    WithdrawalRequest,
)
from .signature import SignatureVerifier
from .webhooks import parse_webhook_event

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("wallet-ledger")


class EndpointFilter(logging.Filter):
    """Filter out noisy health check access logs."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging filter
        return "GET /health" not in record.getMessage()


logging.getLogger("uvicorn.access").addFilter(EndpointFilter())


def get_provider(settings: Settings) -> PaymentProvider:
    if settings.COINGATE_API_KEY:
        return CoinGateProvider(
            settings.COINGATE_API_KEY,
            api_url=settings.COINGATE_API_URL,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    if settings.is_production:
        logger.warning("COINGATE_API_KEY is not set; production is using the sandbox provider")
    return SandboxProvider(settings.CALLBACK_BASE_URL)


@dataclass
class Services:
    settings: Settings
    sessionmaker: async_sessionmaker[AsyncSession]
    provider: PaymentProvider
    ledger: WalletLedger
    payments: PaymentService
    refunds: RefundProcessor
    reconciliation: ReconciliationEngine
    verifier: SignatureVerifier
    rate_limiter: WebhookRateLimiter
    notifications: NotificationDispatcher


def build_services(
    settings: Settings,
    sessionmaker: async_sessionmaker[AsyncSession],
    provider: PaymentProvider,
    redis: Optional[Redis] = None,
    notifier: Optional[Notifier] = None,
) -> Services:
    notifications = NotificationDispatcher(notifier or LoggingNotifier())
    ledger = WalletLedger(sessionmaker)
    payments = PaymentService(
        sessionmaker, provider, ledger, settings, redis=redis, notifications=notifications
    )
    return Services(
        settings=settings,
        sessionmaker=sessionmaker,
        provider=provider,
        ledger=ledger,
        payments=payments,
        refunds=RefundProcessor(sessionmaker, ledger, payments, notifications),
        reconciliation=ReconciliationEngine(sessionmaker),
        verifier=SignatureVerifier(
            settings.COINGATE_WEBHOOK_SECRET, production=settings.is_production
        ),
        rate_limiter=WebhookRateLimiter(
            settings.WEBHOOK_RATE_LIMIT, settings.WEBHOOK_RATE_WINDOW_SECONDS, redis=redis
        ),
        notifications=notifications,
    )


# Request dependencies


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_caller(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Caller:
    """Identity forwarded by the authentication gateway."""
    if not x_user_id:
        raise AuthenticationError("Missing caller identity")
    return Caller(user_id=x_user_id, role=(x_user_role or "user").strip().lower())


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise PermissionDeniedError("Admin role required")
    return caller


def ensure_owner(caller: Caller, user_id: str) -> None:
    if not caller.is_admin and caller.user_id != user_id:
        raise PermissionDeniedError("Cannot access another user's wallet")


def create_app(
    settings: Optional[Settings] = None,
    *,
    sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None,
    redis: Optional[Redis] = None,
    provider: Optional[PaymentProvider] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    """Build the application.

    When ``sessionmaker`` is given the services are wired immediately and the
    lifespan only drains notifications; otherwise the lifespan connects to the
    configured database and Redis.
    """
    settings = settings or get_settings()
    settings.validate_webhook_security()
    logging.getLogger().setLevel(settings.LOG_LEVEL.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine: Optional[AsyncEngine] = None
        owned_redis: Optional[Redis] = None

        if app.state.services is None:
            engine = create_engine(settings.database_url)
            # Ensure database is reachable before starting services
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            await create_schema(engine)

            try:
                owned_redis = Redis.from_url(
                    settings.redis_url, encoding="utf-8", decode_responses=True
                )
                await owned_redis.ping()
            except Exception as exc:  # pragma: no cover - startup warning
                logger.warning("Redis unavailable: %s", exc)
                owned_redis = None

            app.state.services = build_services(
                settings,
                create_sessionmaker(engine),
                provider or get_provider(settings),
                redis=owned_redis,
                notifier=notifier,
            )
            logger.info("Wallet ledger service started (%s)", settings.ENVIRONMENT)

        try:
            yield
        finally:
            services: Services = app.state.services
            await services.notifications.drain()
            await services.provider.aclose()
            if engine is not None:
                await engine.dispose()
            if owned_redis is not None:
                await owned_redis.aclose()

    app = FastAPI(title="Wallet Ledger Service", version="1.0.0", lifespan=lifespan)
    app.state.services = None
    if sessionmaker is not None:
        app.state.services = build_services(
            settings,
            sessionmaker,
            provider or get_provider(settings),
            redis=redis,
            notifier=notifier,
        )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": type(exc).__name__},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = sorted(
            {".".join(str(part) for part in err["loc"][1:]) or "body" for err in exc.errors()}
        )
        return JSONResponse(
            status_code=400,
            content={"detail": f"Invalid request: {', '.join(fields)}", "error": "ValidationError"},
        )

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "wallet-ledger"}

    # Webhooks

    @app.post("/webhooks/payments")
    async def payment_webhook(request: Request, services: Services = Depends(get_services)):
        """Provider status callback.

        Anything that fails after the signature has been verified is logged and
        acknowledged with 200 so the provider does not keep redelivering it.
        """
        source_ip = request.client.host if request.client else "unknown"
        await services.rate_limiter.check(source_ip)

        payload = await request.body()
        services.verifier.verify(
            payload, request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER)
        )

        try:
            event = parse_webhook_event(payload)
            outcome = await services.payments.handle_webhook_event(event)
        except Exception as exc:
            logger.exception("Webhook not applied; manual follow-up required")
            error = exc if isinstance(exc, LedgerError) else InternalError("Webhook processing failed")
            return {
                "received": True,
                "processed": False,
                "error": type(error).__name__,
                "detail": error.message,
            }
        return {"received": True, "processed": True, **outcome.as_dict()}

    # Payments

    @app.post("/payments", status_code=201, response_model=PaymentIntentResponse)
    async def create_payment(
        body: CreatePaymentRequest,
        caller: Caller = Depends(get_caller),
        services: Services = Depends(get_services),
    ):
        ensure_owner(caller, body.user_id)
        payment = await services.payments.create_intent(
            body.user_id, body.amount, body.currency, property_id=body.property_id
        )
        return PaymentIntentResponse(
            transaction_id=payment.id,
            order_id=payment.order_id,
            payment_url=payment.payment_url,
            payment_address=payment.wallet_address,
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status,
            expires_at=payment.expires_at,
        )

    @app.get("/payments/{payment_id}", response_model=PaymentResponse)
    async def get_payment(
        payment_id: str,
        caller: Caller = Depends(get_caller),
        services: Services = Depends(get_services),
    ):
        snapshot = await services.payments.get_payment(payment_id)
        ensure_owner(caller, snapshot["user_id"])
        return PaymentResponse(**snapshot)

    @app.get("/users/{user_id}/payments", response_model=list[PaymentResponse])
    async def list_user_payments(
        user_id: str,
        caller: Caller = Depends(get_caller),
        services: Services = Depends(get_services),
    ):
        ensure_owner(caller, user_id)
        snapshots = await services.payments.list_user_payments(user_id)
        return [PaymentResponse(**snapshot) for snapshot in snapshots]

    # Wallets

    @app.get("/wallets/{user_id}", response_model=WalletResponse)
    async def get_wallet(
        user_id: str,
        caller: Caller = Depends(get_caller),
        services: Services = Depends(get_services),
    ):
        ensure_owner(caller, user_id)
        return WalletResponse.model_validate(await services.ledger.get_balance(user_id))

    @app.get("/wallets/{user_id}/entries", response_model=LedgerEntryPage)
    async def list_wallet_entries(
        user_id: str,
        entry_type: Optional[str] = Query(default=None, alias="type"),
        status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
        caller: Caller = Depends(get_caller),
        services: Services = Depends(get_services),
    ):
        ensure_owner(caller, user_id)
        entries, total = await services.ledger.list_entries(
            user_id,
            entry_type=entry_type,
            status=status,
            start=start,
            end=end,
            page=page,
            limit=limit,
        )
        return LedgerEntryPage(
            entries=[LedgerEntryResponse.model_validate(entry) for entry in entries],
            total=total,
            page=page,
            limit=limit,
            pages=math.ceil(total / limit) if total else 0,
        )

    @app.post("/wallets/{user_id}/withdrawals", status_code=201)
    async def request_withdrawal(
        user_id: str,
        body: WithdrawalRequest,
        caller: Caller = Depends(get_caller),
        services: Services = Depends(get_services),
    ):
        ensure_owner(caller, user_id)
        result = await services.ledger.request_withdrawal(
            user_id, body.amount, reference=body.reference, description=body.description
        )
        return {
            "entry": LedgerEntryResponse.model_validate(result.entry).model_dump(mode="json", by_alias=True),
            "wallet": WalletResponse.model_validate(result.wallet).model_dump(mode="json", by_alias=True),
            "applied": result.applied,
        }

    @app.post("/wallets/{user_id}/investments", status_code=201)
    async def invest(
        user_id: str,
        body: InvestmentRequest,
        caller: Caller = Depends(get_caller),
        services: Services = Depends(get_services),
    ):
        ensure_owner(caller, user_id)
        result = await services.ledger.debit_wallet(
            user_id,
            body.amount,
            reference=body.reference,
            entry_type=EntryType.INVESTMENT,
            description=f"Investment in property {body.property_id}",
        )
        return {
            "entry": LedgerEntryResponse.model_validate(result.entry).model_dump(mode="json", by_alias=True),
            "wallet": WalletResponse.model_validate(result.wallet).model_dump(mode="json", by_alias=True),
            "applied": result.applied,
        }

    # Admin

    @app.post("/admin/payments/{payment_id}/refund")
    async def refund_payment(
        payment_id: str,
        body: RefundRequest,
        admin: Caller = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        result = await services.refunds.request_refund(
            payment_id, body.reason, admin_id=admin.user_id
        )
        return result.as_dict()

    @app.post("/admin/payments/expire")
    async def expire_payments(
        admin: Caller = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        expired = await services.payments.expire_stale_payments(admin_id=admin.user_id)
        return {"expired": expired, "count": len(expired)}

    @app.post("/admin/withdrawals/{entry_id}/approve")
    async def approve_withdrawal(
        entry_id: str,
        admin: Caller = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        result = await services.ledger.approve_withdrawal(entry_id, admin.user_id)
        return {
            "entry": LedgerEntryResponse.model_validate(result.entry).model_dump(mode="json", by_alias=True),
            "applied": result.applied,
        }

    @app.post("/admin/withdrawals/{entry_id}/reject")
    async def reject_withdrawal(
        entry_id: str,
        reason: Optional[str] = None,
        admin: Caller = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        result = await services.ledger.reject_withdrawal(entry_id, admin.user_id, reason)
        return {
            "entry": LedgerEntryResponse.model_validate(result.entry).model_dump(mode="json", by_alias=True),
            "applied": result.applied,
        }

    @app.post("/admin/wallets/{wallet_id}/credit", status_code=201)
    async def credit_wallet(
        wallet_id: str,
        body: AdminCreditRequest,
        admin: Caller = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        result = await services.ledger.admin_credit(
            wallet_id,
            body.amount,
            body.reference,
            admin.user_id,
            entry_type=EntryType(body.entry_type),
            reason=body.reason,
        )
        return {
            "entry": LedgerEntryResponse.model_validate(result.entry).model_dump(mode="json", by_alias=True),
            "wallet": WalletResponse.model_validate(result.wallet).model_dump(mode="json", by_alias=True),
            "applied": result.applied,
        }

    @app.get("/admin/activity", response_model=AdminActionPage)
    async def list_admin_activity(
        admin_id: Optional[str] = Query(default=None, alias="adminId"),
        action: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
        admin: Caller = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        async with services.sessionmaker() as session:
            actions, total = await list_admin_actions(
                session,
                admin_id=admin_id,
                action=action,
                start=start,
                end=end,
                page=page,
                limit=limit,
            )
        return AdminActionPage(
            actions=[AdminActionResponse.model_validate(record) for record in actions],
            total=total,
            page=page,
            limit=limit,
            pages=math.ceil(total / limit) if total else 0,
        )

    @app.get("/admin/wallets/reconcile")
    async def reconcile_all_wallets(
        admin: Caller = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        reports = await services.reconciliation.reconcile_all(admin_id=admin.user_id)
        return {
            "wallets": [report.to_dict() for report in reports],
            "discrepancies": sum(1 for report in reports if report.discrepancy != 0),
        }

    @app.get("/admin/wallets/{wallet_id}/reconcile")
    async def reconcile_wallet(
        wallet_id: str,
        admin: Caller = Depends(require_admin),
        services: Services = Depends(get_services),
    ):
        report = await services.reconciliation.reconcile(wallet_id, admin_id=admin.user_id)
        return report.to_dict()

    return app


app = create_app()

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "wallet_ledger.main:app",
        host="0.0.0.0",
        port=settings.HTTP_PORT,
        reload=not settings.is_production,
        log_level=settings.LOG_LEVEL.lower(),
    )
