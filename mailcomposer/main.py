from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mailcomposer.errors import MailerError
from mailcomposer.routes import router
from mailcomposer.services_jobs import Scheduler
from mailcomposer.services_mail import MailTransport, validate_mail_credentials
from mailcomposer.utils.settings import Settings, get_settings


logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    if settings.verify_on_startup:
        # Log only; a bad relay must not keep the API from starting
        for addr, status in (await validate_mail_credentials(app.state.transport)).items():
            if status == "ok":
                logger.info("SMTP credentials check for %s: %s", addr, status)
            else:
                logger.error("SMTP credentials check for %s: %s", addr, status)
    yield
    await app.state.scheduler.shutdown()
    await app.state.transport.close()


async def mailer_error_handler(request: Request, exc: MailerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "error": exc.detail},
    )


def create_app(settings: Settings | None = None, transport=None, scheduler: Scheduler | None = None) -> FastAPI:
    """Assemble the API around one transport and one scheduler instance."""
    settings = settings or get_settings()
    transport = transport or MailTransport(settings.mail)
    scheduler = scheduler or Scheduler(transport)

    app = FastAPI(title="Mail Composer", lifespan=lifespan)
    app.state.settings = settings
    app.state.transport = transport
    app.state.scheduler = scheduler
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_exception_handler(MailerError, mailer_error_handler)
    app.include_router(router)
    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=3001)


if __name__ == "__main__":
    main()
