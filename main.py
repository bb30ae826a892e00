"""Process entry point: wires storage, clients and auth components into a FastAPI app.

create_app() takes already-constructed handles so tests and tools can
inject their own. build_app_from_vault() constructs the production
handles from Vault secrets. Whoever builds the handles owns them; the app
lifespan closes them on shutdown.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from api.base import success_response
from api.errors import register_error_handlers
from api.middleware import RequestIDMiddleware
from auth.access_gate import AccessGate
from auth.api import create_auth_router
from auth.config import AuthConfig
from auth.credentials import CredentialStore
from auth.database import AuthStore, PostgresAuthStore
from auth.purge import PurgeScheduler
from auth.rate_limiter import RateLimiter
from auth.security_logger import SecurityLogger
from auth.service import AuthService
from auth.session import SessionManager
from auth.tokens import TokenIssuer
from auth.verification import Notifier, VerificationCodeManager
from clients.postgres_client import PostgresClient
from clients.valkey_client import ValkeyClient

logger = logging.getLogger(__name__)


def create_app(
    config: AuthConfig,
    store: AuthStore,
    valkey: ValkeyClient,
    notifier: Notifier,
    access_secret: str,
    refresh_secret: str,
    postgres: PostgresClient | None = None,
    run_scheduler: bool = True,
) -> FastAPI:
    """Build the app from injected handles.

    Args:
        config: Auth configuration
        store: AuthStore (PostgresAuthStore or MemoryAuthStore)
        valkey: Rate limit counter store
        notifier: Email channel for codes and welcome messages
        access_secret / refresh_secret: Token signing secrets (must differ)
        postgres: When given, security events are persisted and the pool
            is closed on shutdown
        run_scheduler: Start the purge scheduler with the app
    """
    credentials = CredentialStore(store, bcrypt_rounds=config.bcrypt_rounds)
    codes = VerificationCodeManager(store, notifier, config)
    tokens = TokenIssuer(access_secret, refresh_secret, config)
    sessions = SessionManager(store, config)
    limiter = RateLimiter(valkey, config)
    security_logger = SecurityLogger(postgres)

    service = AuthService(
        config=config,
        store=store,
        credentials=credentials,
        codes=codes,
        tokens=tokens,
        sessions=sessions,
        notifier=notifier,
        security_logger=security_logger,
    )
    gate = AccessGate(tokens, sessions, credentials)
    purger = PurgeScheduler(sessions, codes, config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{config.app_name} identity service starting ({config.environment})")
        if run_scheduler:
            purger.start()
        yield
        logger.info("Identity service shutting down")
        purger.stop()
        valkey.close()
        if postgres is not None:
            postgres.close()

    app = FastAPI(title=f"{config.app_name} Identity", lifespan=lifespan)
    app.add_middleware(RequestIDMiddleware)
    register_error_handlers(app)
    app.include_router(create_auth_router(service, gate, limiter, config), prefix="/auth")

    @app.get("/health")
    def health_check(request: Request):
        valkey.ping()
        return success_response(
            {"status": "healthy", "purge_scheduler_running": purger.is_running},
            request_id=getattr(request.state, "request_id", None),
        )

    app.state.auth_service = service
    app.state.access_gate = gate
    app.state.purge_scheduler = purger
    return app


def build_app_from_vault() -> FastAPI:
    """Construct production handles from Vault and build the app."""
    from clients.email_client import EmailGatewayClient
    from clients.vault_client import get_database_url, get_email_config, get_jwt_config, get_valkey_url

    config = AuthConfig(
        environment=os.getenv("APP_ENV", "development"),
        app_name=os.getenv("APP_NAME", "Energy Solutions"),
        app_url=os.getenv("APP_URL", "http://localhost:8000"),
    )
    postgres = PostgresClient(get_database_url())
    valkey = ValkeyClient(get_valkey_url())
    notifier = EmailGatewayClient(app_name=config.app_name, **get_email_config())
    jwt_config = get_jwt_config()

    return create_app(
        config=config,
        store=PostgresAuthStore(postgres),
        valkey=valkey,
        notifier=notifier,
        access_secret=jwt_config["access_secret"],
        refresh_secret=jwt_config["refresh_secret"],
        postgres=postgres,
    )


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        build_app_from_vault(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
