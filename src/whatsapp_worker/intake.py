from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable
from typing import Any, Final

import structlog
from pydantic import BaseModel, ConfigDict, StrictStr, field_validator

from .dispatcher import BulkDispatcher, BulkSendResult
from .logging import preview

logger = structlog.get_logger(__name__)

MAX_DELAY_SECONDS: Final[float] = 86400

PHONE_NUMBERS_ERROR: Final[str] = "phoneNumbers must be a non-empty array of strings"
TEXT_ERROR: Final[str] = "text is required and must be a non-empty string"


class BulkSendRequest(BaseModel):
    """
    Body of POST /send-bulk.

    An empty `phoneNumbers` list is accepted; it simply sends nothing.
    `groupId` is echoed back as given and a `delaySeconds` that is not a
    number means no delay, so neither can make a request invalid.
    """

    model_config = ConfigDict(extra="ignore")

    phoneNumbers: list[StrictStr]
    text: StrictStr
    groupId: Any = None
    delaySeconds: Any = None

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError(TEXT_ERROR)
        return value


def clamp_delay(delay_seconds: Any) -> float:
    """Clamp the optional stagger delay to [0, 86400] seconds; non-numbers mean 0."""
    if isinstance(delay_seconds, bool) or not isinstance(delay_seconds, (int, float)):
        return 0.0
    if (isinstance(delay_seconds, float) and math.isnan(delay_seconds)) or delay_seconds <= 0:
        return 0.0
    return float(min(delay_seconds, MAX_DELAY_SECONDS))


async def run_bulk_send(
    dispatcher: BulkDispatcher,
    request: BulkSendRequest,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> BulkSendResult:
    """Wait for the requested stagger delay, then dispatch the trimmed text."""
    delay = clamp_delay(request.delaySeconds)
    if delay > 0:
        logger.info("send_bulk_staggering", group_id=request.groupId, delay_seconds=delay)
        await sleep(delay)

    logger.info(
        "send_bulk_dispatching",
        count=len(request.phoneNumbers),
        group_id=request.groupId,
        text_preview=preview(request.text),
    )
    result = await dispatcher.dispatch(request.phoneNumbers, request.text.strip())
    logger.info("send_bulk_completed", group_id=request.groupId, **result.to_dict())
    return result


async def run_bulk_send_detached(
    dispatcher: BulkDispatcher,
    request: BulkSendRequest,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """
    Background variant of `run_bulk_send`.

    The HTTP caller has already received 202, so nobody is left to report
    to: the outcome, including configuration errors, only reaches the logs.
    If the process stops mid-send the remaining messages are lost.
    """
    try:
        await run_bulk_send(dispatcher, request, sleep=sleep)
    except Exception:
        logger.exception("send_bulk_background_failed", group_id=request.groupId)
