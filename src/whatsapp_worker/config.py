from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


class Settings(BaseModel):
    # Defaults come from the environment; validate them like explicit values.
    model_config = ConfigDict(validate_default=True)

    service_name: str = Field(
        default_factory=lambda: _env("SERVICE_NAME", "whatsapp-worker")
    )
    # Numeric fields receive the raw string and pydantic parses it.
    port: int = Field(default_factory=lambda: _env("PORT", "3000"))
    log_level: str = Field(default_factory=lambda: _env("LOG_LEVEL", "INFO"))

    # Optional shared secret; when unset /send-bulk is open.
    worker_secret: str | None = Field(default_factory=lambda: _env("WORKER_SECRET"))

    # --- Provider selection ---
    provider: str = Field(default_factory=lambda: _env("WHATSAPP_PROVIDER", "wasender"))

    # --- Wasender ---
    wasender_api_key: str | None = Field(default_factory=lambda: _env("WASENDER_API_KEY"))
    wasender_personal_access_token: str | None = Field(
        default_factory=lambda: _env("WASENDER_PERSONAL_ACCESS_TOKEN")
    )
    wasender_base_url: str = Field(
        default_factory=lambda: _env("WASENDER_BASE_URL", "https://www.wasenderapi.com/api")
    )
    wasender_max_retries: int = Field(
        default_factory=lambda: _env("WASENDER_MAX_RETRIES", "3")
    )

    # --- Twilio (WhatsApp sandbox / business sender) ---
    twilio_account_sid: str | None = Field(default_factory=lambda: _env("TWILIO_ACCOUNT_SID"))
    twilio_auth_token: str | None = Field(default_factory=lambda: _env("TWILIO_AUTH_TOKEN"))
    twilio_from_number: str | None = Field(default_factory=lambda: _env("TWILIO_FROM_NUMBER"))

    # --- Bulk pacing ---
    # The provider allows roughly one message every 5 seconds per account.
    bulk_batch_size: int = Field(default_factory=lambda: _env("BULK_BATCH_SIZE", "1"))
    bulk_delay_ms: int = Field(default_factory=lambda: _env("BULK_DELAY_MS", "6000"))

    # "sync" waits for the whole send, "background" acknowledges with 202.
    bulk_send_mode: Literal["sync", "background"] = Field(
        default_factory=lambda: _env("BULK_SEND_MODE", "sync")  # type: ignore[arg-type, return-value]
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
