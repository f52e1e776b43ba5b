import logging
import os

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from .routers import matches, sessions, leaderboards, players
from .exceptions import DomainException, ProblemDetail
from .config import API_PREFIX
from .utils.sentry import init_sentry

logger = logging.getLogger(__name__)

PROBLEM_JSON = "application/problem+json"


def _allowed_origins() -> list[str]:
    """Parse ``ALLOWED_ORIGINS``; the ladder API never serves arbitrary origins."""

    raw = os.getenv("ALLOWED_ORIGINS", "").strip()
    if not raw:
        raise ValueError(
            "ALLOWED_ORIGINS must list the club front-end origins, comma-separated."
        )
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    if not origins:
        raise ValueError("ALLOWED_ORIGINS must contain at least one non-empty origin.")
    if "*" in origins:
        raise ValueError("ALLOWED_ORIGINS cannot include '*'; list explicit origins.")
    return origins


def _problem_response(
    problem: ProblemDetail, headers: dict[str, str] | None = None
) -> JSONResponse:
    return JSONResponse(
        status_code=problem.status,
        content=problem.model_dump(),
        media_type=PROBLEM_JSON,
        headers=headers,
    )


init_sentry()

ALLOWED_ORIGINS = _allowed_origins()
ALLOW_CREDENTIALS = os.getenv("ALLOW_CREDENTIALS", "true").lower() == "true"

app = FastAPI(
    title="Club Ladder API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Result and edit routes share one limiter keyed by client address.
app.state.limiter = matches.limiter
app.add_exception_handler(RateLimitExceeded, matches.rate_limit_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=ALLOW_CREDENTIALS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

logger.info("ladder api mounted at %s/v0", API_PREFIX)


@app.exception_handler(DomainException)
async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    # 4xx rejections are expected; replay and persistence failures are not.
    if exc.status_code >= 500:
        logger.error(
            "%s %s failed: %s",
            request.method,
            request.url.path,
            exc.detail or exc.title,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
    return _problem_response(
        ProblemDetail(
            type=exc.type,
            title=exc.title,
            detail=exc.detail,
            status=exc.status_code,
            code=exc.code,
        )
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _problem_response(
        ProblemDetail(
            title=detail,
            detail=detail,
            status=exc.status_code,
            code=getattr(exc, "code", f"http_{exc.status_code}"),
        ),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception", exc_info=(type(exc), exc, exc.__traceback__))
    return _problem_response(
        ProblemDetail(
            title="Internal Server Error",
            status=500,
            detail=str(exc),
            code="internal_server_error",
        )
    )


def healthz():
    return {"status": "ok"}


# Unprefixed copy for load balancers that check the bare host.
app.add_api_route("/healthz", healthz, methods=["GET"], tags=["health"])

api_router = APIRouter(prefix=API_PREFIX)
api_router.add_api_route("/healthz", healthz, methods=["GET"], tags=["health"])

v0_router = APIRouter(prefix="/v0")
for module in (matches, sessions, leaderboards, players):
    v0_router.include_router(module.router)

api_router.include_router(v0_router)
app.include_router(api_router)
