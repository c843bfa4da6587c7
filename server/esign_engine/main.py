from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from esign_engine.api.routes import contracts, health, signing, templates, webhooks
from esign_engine.core.config import get_settings
from esign_engine.core.errors import HTTP_STATUS_BY_KIND, SigningError
from esign_engine.core.logging import configure_logging, get_logger
from esign_engine.db.session import lifespan


configure_logging()
logger = get_logger(__name__)


async def signing_error_handler(request: Request, exc: SigningError) -> JSONResponse:
    status_code = HTTP_STATUS_BY_KIND.get(exc.kind, 400)
    log = logger.warning if status_code < 500 else logger.error
    log("request.failed", path=request.url.path, kind=exc.kind, error=exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_application() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.include_router(health.router)
    application.include_router(templates.router)
    application.include_router(contracts.router)
    application.include_router(signing.router)
    application.include_router(webhooks.router)
    application.add_exception_handler(SigningError, signing_error_handler)

    if settings.allowed_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.allowed_origins],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    logger.info("application.created", environment=settings.environment)
    return application


app = create_application()
