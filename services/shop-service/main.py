"""
Shop Service — coin ledger HTTP API.
POST /api/auth, GET /api/info, POST /api/sendCoin, GET /api/buy/{item}.
"""
import asyncio
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from coinshop.auth import PasswordHasher
from coinshop.catalog import DEFAULT_CATALOG
from coinshop.config import Settings, load_settings
from coinshop.db import Database
from coinshop.errors import (
    InsufficientBalance,
    InvalidCredentials,
    InvalidRequest,
    InvalidToken,
    LedgerError,
    NotFound,
    StorageError,
    StorageTimeout,
)
from coinshop.logging_utils import get_json_logger, RequestLogMiddleware, log_event, log_error_event, setup_exception_logging
from coinshop.observability import instrument_fastapi
from coinshop.service import LedgerService
from coinshop.storage import LedgerStore
from coinshop.tokens import TokenIssuer

SERVICE_NAME = "shop-service"

logger = get_json_logger(SERVICE_NAME)


class AuthReq(BaseModel):
    username: str
    password: str


class SendCoinReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to_user: str = Field(alias="toUser")
    # accepts "10" as well as 10
    amount: int

    @field_validator("amount", mode="before")
    @classmethod
    def _reject_bool(cls, v):
        # lax int mode would turn true into 1
        if isinstance(v, bool):
            raise ValueError("amount must be a number")
        return v


def _status_for(exc: LedgerError) -> int:
    if isinstance(exc, (InvalidCredentials, InvalidToken)):
        return 401
    if isinstance(exc, (NotFound, InsufficientBalance, InvalidRequest)):
        return 400
    if isinstance(exc, StorageTimeout):
        return 503
    return 500


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def create_app(settings: Settings | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or load_settings()
        logger.setLevel(cfg.log_level)
        db = Database(cfg, logger)
        db.start()
        store = LedgerStore(db, logger, starting_balance=cfg.starting_balance)
        if cfg.seed_catalog:
            store.seed_items(DEFAULT_CATALOG)
        app.state.db = db
        app.state.store = store
        app.state.ledger = LedgerService(
            store,
            TokenIssuer(cfg.jwt_secret, ttl_seconds=cfg.token_ttl_seconds),
            PasswordHasher(rounds=cfg.bcrypt_rounds),
            logger,
        )
        log_event(logger, "service_started", service=SERVICE_NAME, token_ttl_seconds=cfg.token_ttl_seconds)
        try:
            yield
        finally:
            db.stop()
            log_event(logger, "service_stopped", service=SERVICE_NAME)

    app = FastAPI(title="Shop Service", lifespan=lifespan)
    instrument_fastapi(app)
    setup_exception_logging(app, logger, SERVICE_NAME)
    if settings:
        cors_origins = settings.cors_origins
    else:
        cors_origins = tuple(x.strip() for x in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","))
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLogMiddleware, logger=logger, service_name=SERVICE_NAME)

    @app.exception_handler(RequestValidationError)
    async def _invalid_body(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"errors": "Invalid request"})

    @app.exception_handler(LedgerError)
    async def _ledger_error(request: Request, exc: LedgerError):
        status = _status_for(exc)
        if isinstance(exc, StorageError):
            log_error_event(logger, "storage_error", exc=exc, method=request.method, path=request.url.path)
            detail = "Service unavailable" if status == 503 else "Internal server error"
        else:
            detail = str(exc)
        return JSONResponse(status_code=status, content={"errors": detail})

    @app.post("/api/auth")
    async def auth(body: AuthReq, request: Request):
        """Authenticate, registering the user on first login"""
        token = await asyncio.to_thread(request.app.state.ledger.authenticate, body.username, body.password)
        return {"token": token}

    @app.get("/api/info")
    async def info(request: Request, authorization: str | None = Header(default=None)):
        """Balance, inventory and coin history of the current user"""
        summary = await asyncio.to_thread(request.app.state.ledger.get_account_summary, _bearer(authorization))
        return {
            "coins": summary.balance,
            "inventory": [{"type": x.item, "quantity": x.quantity} for x in summary.inventory],
            "coinHistory": {
                "received": [{"fromUser": x.from_user, "amount": x.amount} for x in summary.received],
                "sent": [{"toUser": x.to_user, "amount": x.amount} for x in summary.sent],
            },
        }

    @app.post("/api/sendCoin")
    async def send_coin(body: SendCoinReq, request: Request, authorization: str | None = Header(default=None)):
        """Send coins to another user"""
        await asyncio.to_thread(request.app.state.ledger.transfer, _bearer(authorization), body.to_user, body.amount)
        return {"ok": True}

    @app.get("/api/buy/{item}")
    async def buy(item: str, request: Request, authorization: str | None = Header(default=None)):
        """Buy one unit of a catalog item"""
        await asyncio.to_thread(request.app.state.ledger.purchase, _bearer(authorization), item)
        return {"ok": True}

    @app.get("/api/items")
    async def items(request: Request):
        """Item catalog"""
        catalog = await asyncio.to_thread(request.app.state.store.list_items)
        return [{"name": x.name, "price": x.price} for x in catalog]

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        try:
            await asyncio.to_thread(request.app.state.db.ping)
        except Exception as e:
            log_error_event(logger, "health_check_failed", exc=e, service=SERVICE_NAME)
            raise HTTPException(503, detail={"status": "unhealthy", "database": "error"})
        return {"status": "healthy", "service": SERVICE_NAME, "database": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=load_settings().port)
