import pytest
import requests

from alarmqueue.errors import TransportError
from alarmqueue.telegram_client import (
    MAX_MESSAGE_LENGTH,
    TelegramSender,
    escape_html,
    format_error,
    mask_token,
    truncate_message,
)
from alarmqueue.tenant_config import TelegramConfig

CONFIG = TelegramConfig(bot_token="123456789:secret-token", chat_id="-1001", parse_mode="HTML")


class StubResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class StubSession:
    def __init__(self, responses=None, exc=None):
        self.responses = list(responses or [])
        self.exc = exc
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "timeout": timeout, **kwargs})
        if self.exc:
            raise self.exc
        return self.responses.pop(0)


def test_send_posts_message():
    session = StubSession([StubResponse(200, {"ok": True, "result": {"message_id": 7}})])
    sender = TelegramSender(CONFIG, session=session, timeout=5, api_base="https://tg.example")

    data = sender.send({"text": "<b>Alarm</b>", "disable_notification": True})

    call = session.calls[0]
    assert data["result"]["message_id"] == 7
    assert call["method"] == "POST"
    assert call["url"] == "https://tg.example/bot123456789:secret-token/sendMessage"
    assert call["timeout"] == 5
    assert call["json"] == {
        "chat_id": "-1001", "text": "<b>Alarm</b>", "parse_mode": "HTML", "disable_notification": True,
    }


def test_send_truncates_long_text():
    session = StubSession([StubResponse(200, {"ok": True})])
    TelegramSender(CONFIG, session=session).send({"text": "x" * 5000})

    text = session.calls[0]["json"]["text"]
    assert len(text) == MAX_MESSAGE_LENGTH
    assert text.endswith("[Message truncated]")


def test_send_requires_text():
    sender = TelegramSender(CONFIG, session=StubSession())

    with pytest.raises(TransportError) as excinfo:
        sender.send({"text": ""})
    assert excinfo.value.status_code == 400


def test_api_error_carries_status_and_retry_after():
    body = {"ok": False, "error_code": 429, "description": "Too Many Requests", "parameters": {"retry_after": 12}}
    sender = TelegramSender(CONFIG, session=StubSession([StubResponse(429, body)]))

    with pytest.raises(TransportError) as excinfo:
        sender.send({"text": "hi"})

    error = excinfo.value
    assert error.status_code == 429
    assert error.retry_after == 12
    assert sender.is_retryable(error)


def test_timeout_is_retryable_transport_error():
    sender = TelegramSender(CONFIG, session=StubSession(exc=requests.exceptions.Timeout("slow")))

    with pytest.raises(TransportError) as excinfo:
        sender.send({"text": "hi"})

    assert excinfo.value.status_code is None
    assert sender.is_retryable(excinfo.value)


@pytest.mark.parametrize("error,retryable", [
    (TransportError("net"), True),
    (TransportError("limit", status_code=429), True),
    (TransportError("server", status_code=502), True),
    (TransportError("bad", status_code=400), False),
    (TransportError("auth", status_code=401), False),
    (RuntimeError("bug"), False),
])
def test_is_retryable(error, retryable):
    assert TelegramSender(CONFIG, session=StubSession()).is_retryable(error) is retryable


def test_validate_calls_get_me():
    session = StubSession([StubResponse(200, {"ok": True, "result": {"username": "alarm_bot"}})])

    assert TelegramSender(CONFIG, session=session).validate() == {"username": "alarm_bot"}
    assert session.calls[0]["url"].endswith("/getMe")


def test_helpers():
    assert mask_token("123456789:secret") == "123456789::***"
    assert mask_token("short") == "***"
    assert escape_html("a < b & c > d") == "a &lt; b &amp; c &gt; d"
    assert truncate_message("short") == "short"
    assert "check bot token" in format_error(TransportError("Unauthorized", status_code=401))
    assert format_error(TransportError("reset")).startswith("Network error")
