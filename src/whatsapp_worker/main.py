from __future__ import annotations

import re
import secrets
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, get_settings
from .dispatcher import BulkDispatcher, DispatchConfig
from .errors import ConfigurationError
from .intake import (
    PHONE_NUMBERS_ERROR,
    TEXT_ERROR,
    BulkSendRequest,
    run_bulk_send,
    run_bulk_send_detached,
)
from .logging import configure_logging
from .providers import MessageSender, build_sender, close_sender

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.service_name, settings.log_level)
    logger.info(
        "worker_starting",
        port=settings.port,
        provider=settings.provider,
        mode=settings.bulk_send_mode,
    )
    yield
    sender = getattr(app.state, "sender", None)
    if sender is not None:
        await close_sender(sender)


app = FastAPI(title="whatsapp-worker", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    message = validation_message(exc.errors())
    logger.info("send_bulk_validation_failed", error=message)
    return _error(400, message)


@app.exception_handler(ValidationError)
async def settings_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    # Raised while building Settings from a malformed environment.
    logger.error("invalid_configuration", error=str(exc))
    return _error(500, f"Invalid configuration: {exc}")


def validation_message(errors: Any) -> str:
    """Pick the caller-facing message for the first offending field."""
    fields = {str(loc) for err in errors for loc in err.get("loc", ())[1:2]}
    if "phoneNumbers" in fields:
        return PHONE_NUMBERS_ERROR
    if "text" in fields:
        return TEXT_ERROR
    if not fields or all(field.isdigit() for field in fields):
        # Missing or unparseable body: phoneNumbers is the first thing checked.
        return PHONE_NUMBERS_ERROR
    return f"Invalid request body: {', '.join(sorted(fields))}"


# --- Worker secret ---

_BEARER_RE = re.compile(r"^Bearer\s+", re.IGNORECASE)


def verify_worker_secret(request: Request, settings: Settings = Depends(get_settings)) -> None:
    """
    Optional shared-secret protection for /send-bulk.

    Disabled when WORKER_SECRET is unset. Otherwise the secret must be sent
    as "Authorization: Bearer <secret>" or in the X-Worker-Secret header.
    """
    if not settings.worker_secret:
        return

    authorization = request.headers.get("Authorization")
    if authorization is not None:
        value = _BEARER_RE.sub("", authorization)
    else:
        value = request.headers.get("X-Worker-Secret", "")

    if not secrets.compare_digest(value.encode(), settings.worker_secret.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


# --- Dispatcher dependency ---


def get_sender(request: Request, settings: Settings = Depends(get_settings)) -> MessageSender:
    """One sender per process so its HTTP connections are reused across requests."""
    sender = getattr(request.app.state, "sender", None)
    if sender is None:
        try:
            sender = build_sender(settings)
        except ConfigurationError as e:
            raise HTTPException(status_code=500, detail=str(e)) from e
        request.app.state.sender = sender
    return sender


def get_dispatcher(
    sender: MessageSender = Depends(get_sender),
    settings: Settings = Depends(get_settings),
) -> BulkDispatcher:
    return BulkDispatcher(sender, DispatchConfig.from_settings(settings))


# --- Routes ---


@app.post("/send-bulk", dependencies=[Depends(verify_worker_secret)])
async def send_bulk(
    payload: BulkSendRequest,
    background_tasks: BackgroundTasks,
    dispatcher: BulkDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    """
    Send `text` to every number in `phoneNumbers`.

    In "sync" mode the response carries the aggregate result. In
    "background" mode the request is acknowledged with 202 and the send
    continues after the response; its outcome is only logged.
    """
    logger.info(
        "send_bulk_received",
        count=len(payload.phoneNumbers),
        group_id=payload.groupId,
        delay_seconds=payload.delaySeconds,
        mode=settings.bulk_send_mode,
    )
    try:
        if settings.bulk_send_mode == "background":
            background_tasks.add_task(run_bulk_send_detached, dispatcher, payload)
            return JSONResponse(
                {
                    "success": True,
                    "accepted": True,
                    "count": len(payload.phoneNumbers),
                    "groupId": payload.groupId,
                    "message": "Bulk send accepted; messages will be sent in the background",
                },
                status_code=202,
            )

        result = await run_bulk_send(dispatcher, payload)
        return JSONResponse({"success": True, "groupId": payload.groupId, **result.to_dict()})
    except Exception as e:
        logger.error("send_bulk_error", group_id=payload.groupId, error=str(e))
        return _error(500, str(e))


@app.get("/health")
def health(settings: Settings = Depends(get_settings)) -> dict[str, Any]:
    logger.debug("health_check")
    return {"ok": True, "service": settings.service_name}
