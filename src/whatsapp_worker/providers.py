"""
Outbound WhatsApp providers.

The dispatcher only needs one capability: "send this text to this number".
Every backend exposes it as `send_text()` and reports whether it has the
credentials it needs through `is_configured`, so the dispatcher can refuse to
start a bulk send that cannot succeed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from .config import Settings
from .errors import ConfigurationError, SendError

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

DEFAULT_RETRY_AFTER_SECONDS = 1.0


class MessageSender(Protocol):
    @property
    def is_configured(self) -> bool: ...

    async def send_text(self, to: str, text: str) -> None: ...


class RateLimitedError(SendError):
    """HTTP 429 from the provider; `retry_after` is the wait it asked for."""

    def __init__(self, message: str, retry_after: float, api_message: str | None = None) -> None:
        super().__init__(message, api_message=api_message, status_code=429)
        self.retry_after = retry_after


class WasenderClient:
    """
    Minimal async client for the Wasender REST API.

    Rate limited requests (HTTP 429) are retried up to `max_retries` times,
    waiting for the delay the API asks for. Any other failure raises
    `SendError` straight away. One `httpx.AsyncClient` is opened on first use
    and kept until `aclose()`.
    """

    def __init__(
        self,
        api_key: str | None,
        personal_access_token: str | None = None,
        base_url: str = "https://www.wasenderapi.com/api",
        max_retries: int = 3,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._api_key = api_key
        self._personal_access_token = personal_access_token
        self._base_url = base_url.rstrip("/")
        self._max_retries = max(0, max_retries)
        self._timeout = timeout
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key or self._personal_access_token)

    def _headers(self) -> dict[str, str]:
        token = self._api_key or self._personal_access_token
        if not token:
            raise ConfigurationError(
                "WASENDER_API_KEY or WASENDER_PERSONAL_ACCESS_TOKEN is required"
            )
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers(),
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(RateLimitedError),
            stop=stop_after_attempt(self._max_retries + 1),
            wait=_wait_retry_after,
            before_sleep=_log_rate_limited,
            sleep=self._sleep,
            reraise=True,
        )

    async def send_text(self, to: str, text: str) -> None:
        client = self._get_client()
        async for attempt in self._retrying():
            with attempt:
                await self._post(client, {"to": to, "text": text})

    async def _post(self, client: httpx.AsyncClient, payload: dict[str, str]) -> None:
        try:
            response = await client.post("/send-message", json=payload)
        except httpx.HTTPError as e:
            raise SendError(f"Wasender request failed: {e}") from e
        _raise_for_error(response)


def _wait_retry_after(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, RateLimitedError):
        return exc.retry_after
    return DEFAULT_RETRY_AFTER_SECONDS


def _log_rate_limited(retry_state: RetryCallState) -> None:
    logger.warning(
        "wasender_rate_limited",
        attempt=retry_state.attempt_number,
        retry_after=retry_state.next_action.sleep if retry_state.next_action else None,
    )


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _retry_after(response: httpx.Response, body: dict[str, Any]) -> float:
    for value in (body.get("retry_after"), response.headers.get("Retry-After")):
        if value is None:
            continue
        try:
            return max(0.0, float(value))
        except (TypeError, ValueError):
            continue
    return DEFAULT_RETRY_AFTER_SECONDS


def _raise_for_error(response: httpx.Response) -> None:
    body = _json_body(response)
    if response.is_success and body.get("success", True) is not False:
        return

    api_message = body.get("message")
    if not isinstance(api_message, str) or not api_message:
        api_message = None
    message = f"Wasender API error: {response.status_code}"
    if response.status_code == 429:
        raise RateLimitedError(message, _retry_after(response, body), api_message=api_message)
    raise SendError(message, api_message=api_message, status_code=response.status_code)


class TwilioWhatsAppSender:
    """Send WhatsApp messages through the Twilio REST API."""

    def __init__(
        self,
        account_sid: str | None,
        auth_token: str | None,
        from_number: str | None,
        client: Client | None = None,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_number)

    def _get_client(self) -> Client:
        if self._client is None:
            if not self._account_sid or not self._auth_token:
                raise ConfigurationError(
                    "Twilio credentials are not configured (TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN)"
                )
            self._client = Client(self._account_sid, self._auth_token)
        return self._client

    def _send_blocking(self, to: str, text: str) -> None:
        if not self._from_number:
            raise ConfigurationError("TWILIO_FROM_NUMBER is not configured")
        client = self._get_client()
        try:
            client.messages.create(
                to=_whatsapp_address(to),
                from_=_whatsapp_address(self._from_number),
                body=text,
            )
        except TwilioRestException as e:
            raise SendError(
                f"Twilio API error: {e.status}",
                api_message=e.msg,
                status_code=e.status,
            ) from e

    async def send_text(self, to: str, text: str) -> None:
        # The Twilio SDK is blocking; keep the event loop free for other sends.
        await asyncio.to_thread(self._send_blocking, to, text)


def _whatsapp_address(number: str) -> str:
    return number if number.startswith("whatsapp:") else f"whatsapp:{number}"


def build_sender(settings: Settings) -> MessageSender:
    """Create the sender selected by `WHATSAPP_PROVIDER`."""
    provider = settings.provider.lower()
    if provider == "wasender":
        return WasenderClient(
            api_key=settings.wasender_api_key,
            personal_access_token=settings.wasender_personal_access_token,
            base_url=settings.wasender_base_url,
            max_retries=settings.wasender_max_retries,
        )
    if provider == "twilio":
        return TwilioWhatsAppSender(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
        )
    raise ConfigurationError(f"Unknown WhatsApp provider: {settings.provider!r}")


async def close_sender(sender: MessageSender) -> None:
    """Release connections held by `sender`, for backends that keep any."""
    aclose = getattr(sender, "aclose", None)
    if aclose is not None:
        await aclose()
