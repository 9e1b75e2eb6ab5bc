"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cryptopay_core import __version__
from cryptopay_core.api.dependencies import get_container
from cryptopay_core.api.routes import auth, contract, notifications, transactions, wallet
from cryptopay_core.config import settings
from cryptopay_core.database import close_db, init_db
from cryptopay_core.exceptions import CryptoPayError
from cryptopay_core.logging_config import clear_context, generate_request_id, set_request_id, setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level, json_format=settings.log_json)
    container = get_container()
    if settings.database_url:
        await init_db()
    if settings.reconciliation_enabled:
        container.reconciliation.start(settings.reconciliation_interval_seconds)
    logger.info(f"CryptoPay API started in {settings.chain_mode} mode")
    yield
    await container.reconciliation.stop()
    await container.hub.close()
    await container.close_ledgers()
    if settings.database_url:
        await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="CryptoPay API",
        description="""
        Crypto wallet payments: payment requests, direct ETH and CPX
        transfers, and settlement tracking against the chain.
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_context()
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(CryptoPayError)
    async def cryptopay_error_handler(request: Request, exc: CryptoPayError):
        return JSONResponse(
            status_code=exc.http_status,
            content={"success": False, "message": exc.message, "error": exc.error_code},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0]["msg"] if errors else "Invalid request"
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "message": message,
                "error": "VALIDATION_ERROR",
                "data": {"errors": [{"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in errors]},
            },
        )

    app.include_router(auth.router, prefix=settings.api_prefix)
    app.include_router(transactions.router, prefix=settings.api_prefix)
    app.include_router(wallet.router, prefix=settings.api_prefix)
    app.include_router(contract.router, prefix=settings.api_prefix)
    app.include_router(notifications.router, prefix=settings.api_prefix)
    app.include_router(notifications.ws_router)

    @app.get("/", tags=["health"])
    async def root():
        return {
            "service": "CryptoPay API",
            "version": __version__,
            "status": "healthy",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Detailed health check."""
        container = get_container()
        try:
            block = await container.ledger.get_block_number()
            ledger_status = "up"
        except CryptoPayError as e:
            logger.warning(f"Health check: ledger unavailable: {e.message}")
            block, ledger_status = None, "down"
        return {
            "status": "healthy" if ledger_status == "up" else "degraded",
            "components": {
                "api": "up",
                "ledger": ledger_status,
                "chainMode": settings.chain_mode,
                "blockNumber": block,
            },
        }

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "cryptopay_core.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
    )
