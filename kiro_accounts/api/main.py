"""FastAPI command surface for the surrounding application."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kiro_accounts import __version__
from kiro_accounts.config import Settings
from kiro_accounts.errors import KiroAccountsError
from kiro_accounts.services import Services
from kiro_accounts.single_instance import remove_instance_file, write_instance_file

logger = logging.getLogger(__name__)


def _build_allowed_origins(host: str, port: int) -> list[str]:
    """Build the CORS allowed origins list.

    >>> _build_allowed_origins("127.0.0.1", 8765)
    ['http://127.0.0.1:8765', 'http://localhost:8765']
    >>> _build_allowed_origins("0.0.0.0", 8765)
    ['*']
    """
    if host == "0.0.0.0":
        return ["*"]
    return [f"http://127.0.0.1:{port}", f"http://localhost:{port}"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle."""
    services: Services = app.state.services

    # Startup: apply token recovery file (if DB update failed last run)
    try:
        if services.recover():
            logger.info("Applied token recovery from previous run")
    except KiroAccountsError as e:
        logger.warning("Token recovery at startup failed: %s", e)

    if app.state.register_instance:
        write_instance_file(services.settings.instance_file, services.settings.api_port)
        logger.info("Registered primary instance on port %d", services.settings.api_port)

    yield

    # Shutdown: stop background logins, release the instance file
    for task in list(app.state.background):
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, KiroAccountsError):
            pass
    if app.state.register_instance:
        remove_instance_file(services.settings.instance_file)
    services.close()


def create_app(
    settings: Optional[Settings] = None,
    *,
    services: Optional[Services] = None,
    register_instance: bool = False,
) -> FastAPI:
    """Build the app. ``register_instance`` makes it the relaunch target."""
    if services is None:
        services = Services(settings or Settings.from_env())
    settings = services.settings

    app = FastAPI(
        title="kiro account manager",
        description="Multi-account identity and machine-id management for the Kiro IDE.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.register_instance = register_instance
    app.state.background = set()

    origins = _build_allowed_origins(settings.api_host, settings.api_port)
    # allow_credentials must be False when origins is ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Exception handlers ---

    @app.exception_handler(KiroAccountsError)
    async def kiro_error_handler(request: Request, exc: KiroAccountsError):
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": {"message": str(exc), "code": "VALIDATION_ERROR"}},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {"message": "An internal error occurred", "code": "INTERNAL_ERROR"}
            },
        )

    # --- Include route modules ---

    from kiro_accounts.api.routes import accounts, auth, instance, machine_id

    app.include_router(accounts.router, prefix="/api", tags=["accounts"])
    app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
    app.include_router(machine_id.router, prefix="/api/machine-id", tags=["machine-id"])
    app.include_router(instance.router, prefix="/api/instance", tags=["instance"])

    return app
