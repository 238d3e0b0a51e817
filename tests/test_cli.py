from __future__ import annotations

import json

import pytest
import uvicorn

from whatsapp_worker import cli
from whatsapp_worker.config import Settings
from whatsapp_worker.errors import SendError


class RecordingSender:
    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.fail_for = fail_for or set()
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    @property
    def is_configured(self) -> bool:
        return True

    async def send_text(self, to: str, text: str) -> None:
        self.calls.append((to, text))
        if to in self.fail_for:
            raise SendError("rejected")

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def settings() -> Settings:
    return Settings(wasender_api_key="key", bulk_delay_ms=0, port=8123)


@pytest.fixture(autouse=True)
def patch_cli(monkeypatch: pytest.MonkeyPatch, settings: Settings) -> None:
    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)


def test_send_prints_result(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    sender = RecordingSender()
    monkeypatch.setattr(cli, "build_sender", lambda settings: sender)

    exit_code = cli.main(["send", "--text", " hi ", "1", "2"])

    assert exit_code == 0
    assert json.loads(capsys.readouterr().out.strip().splitlines()[-1]) == {
        "totalAttempted": 2,
        "sent": 2,
        "failed": 0,
    }
    assert sender.calls == [("+1", "hi"), ("+2", "hi")]
    assert sender.closed


def test_send_exits_non_zero_on_failures(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    sender = RecordingSender(fail_for={"+2"})
    monkeypatch.setattr(cli, "build_sender", lambda settings: sender)

    exit_code = cli.main(["send", "--text", "hi", "1", "2"])

    assert exit_code == 1
    result = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert (result["sent"], result["failed"]) == (1, 1)
    assert sender.closed


def test_serve_uses_configured_port(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[tuple, dict]] = []
    monkeypatch.setattr(uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))

    assert cli.main(["serve"]) == 0

    assert calls == [(("whatsapp_worker.main:app",), {"host": "0.0.0.0", "port": 8123})]


def test_serve_port_flag_wins(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []
    monkeypatch.setattr(uvicorn, "run", lambda *args, **kwargs: calls.append(kwargs))

    cli.main(["serve", "--host", "127.0.0.1", "--port", "9000"])

    assert calls == [{"host": "127.0.0.1", "port": 9000}]
