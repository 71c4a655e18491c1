import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from leadscore.api import endpoints
from leadscore.core.config import settings
from leadscore.core.errors import PipelineError
from leadscore.core.limiter import limiter
from leadscore.db import close_async_db, init_async_db, init_db
from leadscore.services.factory import build_services

logging.basicConfig(level=settings.LOG_LEVEL, format=settings.LOG_FORMAT)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: schema, pool, long-lived clients
    init_db()
    await init_async_db()
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services()
    logger.info(f"{settings.PROJECT_NAME} started (tasks={settings.TASK_BACKEND}, state={settings.STATE_BACKEND}).")
    yield
    await app.state.services.aclose()
    app.state.services = None
    await close_async_db()


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

# Rate Limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


_cors_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]

if settings.DATABASE_URL and any("localhost" in o for o in _cors_origins):
    logging.getLogger("cors").warning(
        "⚠ CORS allows localhost origins while DATABASE_URL is set (production?). "
        "Set CORS_ORIGINS env var to restrict origins in production."
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(endpoints.router, prefix="/api", tags=["api"])


@app.get("/health")
def health_check():
    return {"status": "healthy", "project": settings.PROJECT_NAME}
