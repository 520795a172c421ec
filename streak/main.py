import datetime as dt

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, load_settings
from .db import init_db, make_engine, make_session_factory
from .errors import AccountError
from .gateway import StripeGateway
from .log import RequestContext, configure_logging, get_logger
from .mail import Mailer
from .security import PasswordHasher, SessionTokens
from .subscriptions import AccountLocks
from . import auth, billing, profiles

logger = get_logger(__name__)


def create_app(settings: Settings = None, billing_gateway=None, mailer=None) -> FastAPI:
    """Build the application; collaborators are created once here and shared."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Writing Streak accounts")

    engine = make_engine(settings.database_url)
    init_db(engine)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.hasher = PasswordHasher()
    app.state.session_tokens = SessionTokens(settings.jwt_secret, dt.timedelta(hours=settings.session_ttl_hours))
    app.state.billing_gateway = billing_gateway or StripeGateway(
        settings.stripe_secret_key, timeout=settings.billing_timeout_seconds
    )
    app.state.mailer = mailer or Mailer(
        sender=settings.contact_email,
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
    )
    app.state.account_locks = AccountLocks()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        with RequestContext(request.headers.get("x-request-id")) as request_id:
            response = await call_next(request)
            response.headers["x-request-id"] = request_id
            return response

    @app.exception_handler(AccountError)
    async def account_error(request: Request, exc: AccountError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, code=exc.code, details=exc.details)
            return JSONResponse({"detail": "Something went wrong", "code": exc.code}, status_code=exc.status_code)
        logger.info("request_rejected", path=request.url.path, code=exc.code, status=exc.status_code)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.error("unhandled_error", path=request.url.path, exc_info=exc)
        return JSONResponse({"detail": "Something went wrong"}, status_code=500)

    @app.get("/health")
    def health():
        return JSONResponse({"ok": True})

    app.include_router(auth.router)
    app.include_router(profiles.router)
    app.include_router(billing.router)
    return app


app = create_app()
