"""
Family Bank API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware

from .accounts import router as accounts_router
from .auth import LedgerSystem
from ..config import FamilyBankConfig, get_config
from ..errors import (
    AuthError, BadRequestError, ConfigurationError, StorageError, VerificationError
)
from ..logging_config import get_logger, log_action, setup_logging


logger = get_logger("family_bank.api")


def register_error_handlers(app: FastAPI) -> None:
    """Map the error taxonomy to bare status codes; details stay in the server log"""

    @app.exception_handler(VerificationError)
    async def verification_error_handler(request: Request, exc: VerificationError):
        return Response(status_code=status.HTTP_401_UNAUTHORIZED)

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return Response(status_code=status.HTTP_401_UNAUTHORIZED)

    @app.exception_handler(BadRequestError)
    async def bad_request_handler(request: Request, exc: BadRequestError):
        logger.info(f"Bad request on {request.url.path}: {exc}")
        return Response(status_code=status.HTTP_400_BAD_REQUEST)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        log_action(
            logger, "error", f"Storage failure on {request.method} {request.url.path}: {exc}",
            action="storage", extra={"cause": repr(exc.__cause__)} if exc.__cause__ else None
        )
        return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        logger.error(f"Configuration error: {exc}")
        return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


def create_app(
    config: Optional[FamilyBankConfig] = None,
    system: Optional[LedgerSystem] = None
) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = config or (system.config if system is not None else get_config())
    setup_logging(config.log_level, config.log_format)
    system = system or LedgerSystem(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        system.close()

    app = FastAPI(
        title="Family Bank Ledger API",
        description="Authenticated balance reads and atomic transaction posting",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.ledger_system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_allowed_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type"],
    )

    register_error_handlers(app)
    app.include_router(accounts_router, prefix="/api", tags=["Accounts"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "family_bank_api",
            "version": "1.0.0"
        }

    if config.ping_path:
        async def ping(request: Request):
            client = request.client.host if request.client else "unknown"
            logger.info(f"PING from {client}")
            return Response(status_code=status.HTTP_200_OK)

        app.add_api_route(f"/{config.ping_path.strip('/')}", ping, methods=["GET"], include_in_schema=False)

    return app

