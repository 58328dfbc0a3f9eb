import logging
import sys
import time
import uuid
from pathlib import Path

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

ROOT_DIR = Path(__file__).parent
# Ensure imports resolve to backend/* modules even when app is started from repo root.
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import config
from auth_routes import auth_router
from chat_routes import chat_router
from database import close_client, db, ensure_indexes, seed_roles
from errors import AppError
from quiz_routes import quiz_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="FinEd Mentor API")
api_router = APIRouter(prefix="/api")


def envelope(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "data": None},
    )


def describe_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Validation failed"
    first = errors[0]
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    message = str(first.get("msg", "Invalid value"))
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    if location:
        return f"{'.'.join(location)}: {message}"
    return message


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.exception(
            "request_id=%s method=%s path=%s status=500 duration_ms=%s error=%s",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
            str(e),
        )
        raise
    duration_ms = int((time.perf_counter() - start) * 1000)
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request_id=%s method=%s path=%s status=%s duration_ms=%s",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "AppError request_id=%s path=%s status=%s type=%s message=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
        exc.status_code,
        type(exc).__name__,
        exc.message,
    )
    return envelope(exc.message, exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    message = describe_validation_error(exc)
    logger.warning(
        "RequestValidationError request_id=%s path=%s message=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
        message,
    )
    return envelope(message, 400)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(
        "HTTPException request_id=%s path=%s status=%s detail=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
        exc.status_code,
        exc.detail,
    )
    return envelope(str(exc.detail), exc.status_code)


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    logger.exception("Unhandled server error: %s", exc)
    return envelope("An unexpected error occurred", 500)


@api_router.get("/health")
async def health():
    try:
        await db.command("ping")
    except Exception as exc:
        logger.warning("health_check_failed error=%s", exc)
        raise HTTPException(status_code=503, detail="Database unavailable")
    return {"success": True, "message": "ok", "data": None}


@app.on_event("startup")
async def startup_checks():
    problems = config.validate_settings()
    if problems:
        raise RuntimeError("Invalid configuration: " + "; ".join(problems))
    if not config.LLM_API_KEY:
        logger.warning("LLM_API_KEY is not set; quiz generation and chat will fail")
    if not config.MAILGUN_API_KEY or not config.MAILGUN_DOMAIN:
        logger.warning("Mailgun is not configured; account emails will not be delivered")
    if not config.TAVILY_API_KEY:
        logger.warning("TAVILY_API_KEY is not set; quiz generation runs without web search")
    await ensure_indexes()
    await seed_roles()
    logger.info("Startup checks completed")


@app.on_event("shutdown")
async def shutdown_db_client():
    close_client()


app.include_router(api_router)
app.include_router(auth_router)
app.include_router(quiz_router)
app.include_router(chat_router)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)
