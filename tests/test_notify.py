import asyncio
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import telegram_bot.notify as notify


def _clear_tokens(monkeypatch):
    for name in ("TELEGRAM_BOT_TOKEN", "BOT_TOKEN", "TOKEN"):
        monkeypatch.delenv(name, raising=False)


def test_without_token_nothing_is_sent(monkeypatch):
    _clear_tokens(monkeypatch)
    assert asyncio.run(notify.send_telegram_message(1, "hi")) is False


def test_sends_through_bot(monkeypatch):
    _clear_tokens(monkeypatch)
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
    sent = []

    class DummyBot:
        def __init__(self, token):
            self.token = token

        async def send_message(self, chat_id, text):
            sent.append((self.token, chat_id, text))

    monkeypatch.setattr(notify, "Bot", DummyBot)
    assert asyncio.run(notify.send_telegram_message(42, "ready")) is True
    assert sent == [("123:abc", 42, "ready")]


def test_send_failure_is_reported(monkeypatch):
    _clear_tokens(monkeypatch)
    monkeypatch.setenv("BOT_TOKEN", "123:abc")

    class BrokenBot:
        def __init__(self, token):
            pass

        async def send_message(self, chat_id, text):
            raise RuntimeError("network down")

    monkeypatch.setattr(notify, "Bot", BrokenBot)
    assert asyncio.run(notify.send_telegram_message(42, "ready")) is False
