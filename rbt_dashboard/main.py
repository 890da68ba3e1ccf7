import os
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .config import settings
from .db import Base, engine
from .logging import setup_logging, RequestIdMiddleware, structlog
from .models import models  # noqa: F401  (register tables on Base.metadata)
from .ratelimit import limiter, rate_limit_exceeded_handler
from .auth.router import router as auth_router
from .routes.clients import router as clients_router
from .routes.rbts import router as rbts_router
from .routes.dashboard import router as dashboard_router
from .routes.logs import router as logs_router
from .routes.users import router as users_router


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Routers
    app.include_router(auth_router)
    app.include_router(clients_router)
    app.include_router(rbts_router)
    app.include_router(dashboard_router)
    app.include_router(logs_router)
    app.include_router(users_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.on_event("startup")
    def _startup():
        log = structlog.get_logger("startup")
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            log.info("database_ready", url=engine.url.render_as_string(hide_password=True))

    return app


app = create_app()
