from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from pydantic_settings import BaseSettings
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth_routes import optional_user, require_user, router as auth_router
from card_engine import CardEngine, EngineConfig
from card_store import CardStore
from chain_client import ChainClient
from errors import CardError, ConfigurationError, NotAuthenticatedError, NotFoundError, UpstreamError
from notifier import TelegramNotifier
from price_engine import COINGECKO_SIMPLE_PRICE_URL, DEXSCREENER_TOKENS_URL, PriceEngine
from refund_sweeper import start_refund_sweeper
from schemas import (
    ClaimCardRequest,
    ClaimCardResponse,
    CreateCardRequest,
    CreateCardResponse,
    LockCardResponse,
    SolPriceResponse,
    StatsResponse,
    UpdateCardRequest,
)
from supabase_auth import SupabaseAuth


class Settings(BaseSettings):
    database_url: str = "sqlite:///./cryptocards.db"
    solana_rpc: str = "https://api.mainnet-beta.solana.com"
    helius_rpc_url: str = ""
    helius_api_key: str = ""
    coingecko_api_url: str = COINGECKO_SIMPLE_PRICE_URL
    dexscreener_api_url: str = DEXSCREENER_TOKENS_URL
    supabase_url: str = ""
    supabase_service_key: str = ""
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    treasury_wallet: Optional[str] = None
    operator_api_key: Optional[str] = None
    frontend_url: Optional[str] = None
    frontend_dist: Optional[str] = "../dist"
    tax_bps: int = 150  # 1.5% protocol tax
    fee_reserve_lamports: int = 5000  # one signature's network fee
    cvv_length: int = 6
    public_id_length: int = 8
    id_generation_attempts: int = 5
    lock_requires_funding: bool = False
    claim_confirm_timeout_seconds: float = 30
    pending_transfer_timeout_seconds: float = 120
    http_timeout_seconds: float = 10
    sol_price_ttl_seconds: float = 60
    fallback_sol_price_usd: float = 130
    refund_sweep_enabled: bool = False
    refund_sweep_interval_minutes: int = 10

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cryptocards")

router = APIRouter()


def engine_config_from_settings(settings: Settings) -> EngineConfig:
    return EngineConfig(
        tax_bps=settings.tax_bps,
        fee_reserve_lamports=settings.fee_reserve_lamports,
        cvv_length=settings.cvv_length,
        public_id_length=settings.public_id_length,
        id_generation_attempts=settings.id_generation_attempts,
        lock_requires_funding=settings.lock_requires_funding,
        treasury_wallet=settings.treasury_wallet,
        claim_confirm_timeout_seconds=settings.claim_confirm_timeout_seconds,
        pending_transfer_timeout_seconds=settings.pending_transfer_timeout_seconds,
    )


def build_db_engine(database_url: str):
    kwargs: Dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def to_epoch(value: Optional[datetime]) -> Optional[float]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def get_engine(request: Request) -> CardEngine:
    return request.app.state.card_engine


def require_operator(request: Request, x_operator_key: Optional[str] = Header(default=None)):
    expected = request.app.state.settings.operator_api_key
    if not expected:
        raise ConfigurationError("Operator access is not configured")
    if not x_operator_key or not hmac.compare_digest(x_operator_key, expected):
        raise NotAuthenticatedError("Operator key required")


@router.get("/health")
def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/sol-price", response_model=SolPriceResponse)
def sol_price(request: Request):
    price = request.app.state.prices.sol_usd()
    return {"sol_usd": price, "price_usd": price}


@router.post("/cards", response_model=CreateCardResponse)
def create_card(
    body: CreateCardRequest,
    user: Optional[Dict[str, Any]] = Depends(optional_user),
    engine: CardEngine = Depends(get_engine),
):
    card, cvv = engine.create_card(
        currency=body.currency,
        message=body.message,
        amount_fiat=body.amount_fiat,
        token_mint=body.token_mint,
        expires_at=to_epoch(body.expires_at),
        template_url=body.template_url,
        refund_wallet=body.refund_wallet,
        user_id=user.get("id") if user else None,
        creator_email=user.get("email") if user else None,
    )
    return {"public_id": card.public_id, "cvv": cvv, "deposit_address": card.deposit_address}


@router.get("/cards/{public_id}")
def get_card(public_id: str, engine: CardEngine = Depends(get_engine)):
    return engine.card_view(engine.get_card(public_id))


@router.patch("/cards/{public_id}")
def update_card(
    public_id: str,
    body: UpdateCardRequest,
    user: Dict[str, Any] = Depends(require_user),
    engine: CardEngine = Depends(get_engine),
):
    values = body.model_dump(exclude_unset=True)
    if "expires_at" in values:
        values["expires_at"] = to_epoch(values["expires_at"])
    return engine.card_view(engine.update_metadata(public_id, user.get("id"), values))


@router.post("/cards/{public_id}/lock", response_model=LockCardResponse)
def lock_card(public_id: str, engine: CardEngine = Depends(get_engine)):
    return engine.lock_card(public_id)


@router.post("/cards/{public_id}/refund", dependencies=[Depends(require_operator)])
def refund_card(public_id: str, engine: CardEngine = Depends(get_engine)):
    return engine.refund_card(public_id)


@router.get("/card-status/{public_id}")
def card_status(public_id: str, engine: CardEngine = Depends(get_engine)):
    return engine.card_status(public_id)


@router.get("/card-balance/{public_id}")
def card_balance(public_id: str, engine: CardEngine = Depends(get_engine)):
    return engine.card_balance(public_id)


@router.post("/sync-card-funding/{public_id}")
def sync_card_funding(public_id: str, engine: CardEngine = Depends(get_engine)):
    return engine.sync_funding(public_id)


@router.post("/claim-card", response_model=ClaimCardResponse)
def claim_card(body: ClaimCardRequest, engine: CardEngine = Depends(get_engine)):
    result = engine.claim_card(body.public_id, body.cvv, body.destination_wallet)
    return result.as_claim_response()


@router.get("/user/cards")
def user_cards(user: Dict[str, Any] = Depends(require_user), engine: CardEngine = Depends(get_engine)) -> List[dict]:
    return engine.list_user_cards(user["id"])


@router.delete("/user/cards/{public_id}")
def hide_user_card(
    public_id: str,
    user: Dict[str, Any] = Depends(require_user),
    engine: CardEngine = Depends(get_engine),
):
    return engine.hide_card(user["id"], public_id)


@router.get("/public-metrics")
def public_metrics(engine: CardEngine = Depends(get_engine)):
    return engine.public_metrics()


@router.get("/public-activity")
def public_activity(limit: int = 20, engine: CardEngine = Depends(get_engine)):
    return {"events": engine.public_activity(limit)}


@router.get("/stats", response_model=StatsResponse)
def stats(engine: CardEngine = Depends(get_engine)):
    return engine.stats()


def _first_validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    return f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))


def register_error_handlers(app: FastAPI):
    @app.exception_handler(CardError)
    async def card_error_handler(request: Request, exc: CardError):
        message = exc.message
        if isinstance(exc, UpstreamError):
            logger.error("request_failed path=%s error=%s", request.url.path, exc.message, exc_info=exc.__cause__)
            message = type(exc).default_message
        return JSONResponse(status_code=exc.status_code, content={"error": message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": _first_validation_message(exc)})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


def register_spa_fallback(app: FastAPI, dist_dir: Optional[str]):
    """Serve the built frontend for every unmatched GET. Must be registered last."""
    root = Path(dist_dir).resolve() if dist_dir else None

    @app.get("/{full_path:path}", include_in_schema=False)
    def spa_fallback(full_path: str):
        if root is not None and root.is_dir():
            candidate = (root / full_path).resolve()
            if full_path and candidate.is_file() and root in candidate.parents:
                return FileResponse(candidate)
            index = root / "index.html"
            if index.is_file():
                return FileResponse(index)
        raise NotFoundError("Not found")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[CardStore] = None,
    chain=None,
    prices=None,
    notifier=None,
    auth=None,
) -> FastAPI:
    settings = settings or Settings()
    timeout = settings.http_timeout_seconds
    store = store or CardStore(build_db_engine(settings.database_url))
    # Prefer Helius RPC if provided to improve reliability.
    chain = chain or ChainClient(settings.helius_rpc_url or settings.solana_rpc, timeout=timeout)
    prices = prices or PriceEngine(
        helius_api_key=settings.helius_api_key,
        coingecko_url=settings.coingecko_api_url,
        dexscreener_url=settings.dexscreener_api_url,
        ttl_seconds=settings.sol_price_ttl_seconds,
        fallback_sol_usd=settings.fallback_sol_price_usd,
        timeout=timeout,
    )
    notifier = notifier or TelegramNotifier(settings.telegram_bot_token, settings.telegram_chat_id, timeout=timeout)
    auth = auth or SupabaseAuth(settings.supabase_url, settings.supabase_service_key, timeout=timeout)
    card_engine = CardEngine(store, chain, prices, notifier, engine_config_from_settings(settings))

    app = FastAPI(title="CRYPTOCARDS API", version="0.1.0")
    app.state.settings = settings
    app.state.store = store
    app.state.prices = prices
    app.state.notifier = notifier
    app.state.auth = auth
    app.state.card_engine = card_engine

    register_error_handlers(app)
    app.include_router(auth_router)
    app.include_router(router)

    @app.on_event("startup")
    def startup_event():
        store.init_schema()
        if not settings.treasury_wallet and settings.tax_bps > 0:
            logger.warning("treasury_wallet_missing claims_will_fail tax_bps=%s", settings.tax_bps)
        start_refund_sweeper(card_engine, settings, logger)

    register_spa_fallback(app, settings.frontend_dist)
    return app


app = create_app()
