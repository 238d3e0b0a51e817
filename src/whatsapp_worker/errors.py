from __future__ import annotations


class WorkerError(Exception):
    """Base class for errors raised by the worker."""


class ConfigurationError(WorkerError):
    """The messaging provider cannot be used (e.g. missing credentials)."""


class SendError(WorkerError):
    """
    A single message could not be delivered.

    `api_message` holds the provider's human readable explanation when the
    provider returned one; `status_code` is the HTTP status, if any.
    """

    def __init__(
        self,
        message: str,
        api_message: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.api_message = api_message
        self.status_code = status_code

    def describe(self) -> str:
        return self.api_message or str(self)
