from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Final

import structlog

from .config import Settings
from .errors import ConfigurationError, SendError
from .phone import normalize_phones
from .providers import MessageSender

logger = structlog.get_logger(__name__)

# One message at a time, 6s apart: the provider allows ~1 message / 5s per account.
DEFAULT_BATCH_SIZE: Final[int] = 1
DEFAULT_DELAY_MS: Final[int] = 6000


@dataclass(frozen=True)
class BulkSendResult:
    total_attempted: int
    sent: int
    failed: int

    def to_dict(self) -> dict[str, int]:
        return {
            "totalAttempted": self.total_attempted,
            "sent": self.sent,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class DispatchConfig:
    batch_size: int = DEFAULT_BATCH_SIZE
    delay_ms: int = DEFAULT_DELAY_MS

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.delay_ms < 0:
            raise ValueError("delay_ms must not be negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> DispatchConfig:
        return cls(batch_size=settings.bulk_batch_size, delay_ms=settings.bulk_delay_ms)


def batched(items: Sequence[str], size: int) -> list[list[str]]:
    """Split `items` into consecutive slices of at most `size` elements."""
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def describe_error(err: BaseException) -> str:
    if isinstance(err, SendError):
        return err.describe()
    return str(err)


class BulkDispatcher:
    """
    Send one text to many phone numbers, batch by batch.

    Sends inside a batch run concurrently and each one succeeds or fails on
    its own. Between batches the dispatcher sleeps for `config.delay_ms`;
    there is no wait after the last batch. Individual failures only show up
    in the `failed` count and in the logs.
    """

    def __init__(
        self,
        sender: MessageSender,
        config: DispatchConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._sender = sender
        self._config = config or DispatchConfig()
        self._sleep = sleep

    @property
    def config(self) -> DispatchConfig:
        return self._config

    async def dispatch(self, identifiers: Sequence[str], text: str) -> BulkSendResult:
        if not self._sender.is_configured:
            raise ConfigurationError("WhatsApp provider is not configured")

        normalized = normalize_phones(identifiers)
        logger.info(
            "bulk_send_starting",
            input_count=len(identifiers),
            normalized_count=len(normalized),
        )

        if not normalized:
            logger.info("bulk_send_skipped", reason="no valid phones")
            return BulkSendResult(total_attempted=0, sent=0, failed=0)

        sent = 0
        failed = 0

        async def send_one(to: str) -> None:
            # Counters are only touched from the event loop thread.
            nonlocal sent, failed
            try:
                await self._sender.send_text(to, text)
            except Exception as err:
                failed += 1
                logger.error("bulk_send_failed", to=to, error=describe_error(err))
            else:
                sent += 1
                logger.info("bulk_send_sent", to=to)

        batch_size = self._config.batch_size
        batches = batched(normalized, batch_size)
        for index, batch in enumerate(batches):
            logger.info(
                "bulk_send_batch",
                batch_number=index + 1,
                size=len(batch),
                total_processed=index * batch_size,
                total=len(normalized),
            )
            await asyncio.gather(*(send_one(to) for to in batch))

            if index < len(batches) - 1:
                logger.info("bulk_send_waiting", delay_ms=self._config.delay_ms)
                await self._sleep(self._config.delay_ms / 1000)

        result = BulkSendResult(total_attempted=len(normalized), sent=sent, failed=failed)
        logger.info("bulk_send_completed", **result.to_dict())
        return result
