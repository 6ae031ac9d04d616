"""Outbound notification senders."""
from typing import Optional, Dict, Any
import requests

from alarmqueue import settings
from alarmqueue.errors import TransportError
from alarmqueue.logging_conf import logger

MAX_MESSAGE_LENGTH = 4096


class NotificationSender:
    """Performs the outbound call and classifies its failures."""

    def send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def is_retryable(self, error: Exception) -> bool:
        raise NotImplementedError


class TelegramSender(NotificationSender):
    """Sends queue payloads through the Telegram Bot API."""

    def __init__(self, config, session: Optional[requests.Session] = None, timeout: Optional[int] = None,
                 api_base: Optional[str] = None):
        self.config = config
        self.timeout = timeout or settings.TELEGRAM_TIMEOUT
        self.base_url = f"{(api_base or settings.TELEGRAM_API_BASE).rstrip('/')}/bot{config.bot_token}"
        self.session = session or requests.Session()

    def send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Post one message.

        Args:
            payload: Queue payload; "text" is required, "parse_mode" and
                "disable_notification" override the tenant defaults.

        Returns:
            The Telegram response body.

        Raises:
            TransportError on any failure; status_code is None for network errors.
        """
        text = payload.get("text")
        if not text or not isinstance(text, str):
            raise TransportError("Message text is required and must be a string", status_code=400)

        body = {
            "chat_id": self.config.chat_id,
            "text": truncate_message(text),
            "parse_mode": payload.get("parse_mode", self.config.parse_mode),
            "disable_notification": payload.get("disable_notification", self.config.disable_notification),
        }
        logger.debug(f"Sending message to Telegram chat {self.config.chat_id} ({len(text)} chars)")
        return self._request("POST", "/sendMessage", json=body)

    def is_retryable(self, error: Exception) -> bool:
        if not isinstance(error, TransportError):
            return False
        # Network errors and timeouts carry no status
        if error.status_code is None:
            return True
        if error.status_code == 429:
            return True
        return 500 <= error.status_code < 600

    def validate(self) -> Dict[str, Any]:
        """Check the bot token with getMe; returns the bot info."""
        bot = self._request("GET", "/getMe").get("result", {})
        logger.info(f"Telegram bot token {mask_token(self.config.bot_token)} valid (@{bot.get('username')})")
        return bot

    def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.request(method=method, url=url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            logger.warning(f"Telegram API {endpoint} timed out after {self.timeout}s")
            raise TransportError(f"Telegram request timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.warning(f"Network error calling Telegram API {endpoint}: {e}")
            raise TransportError(f"Network error: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400 or not data.get("ok", False):
            status_code = data.get("error_code") or response.status_code
            description = data.get("description") or "Unknown error"
            retry_after = (data.get("parameters") or {}).get("retry_after")
            error = TransportError(
                f"Telegram API error: {description}",
                status_code=status_code,
                retry_after=retry_after,
                response=data,
            )
            logger.warning(f"Telegram API {endpoint} - {format_error(error)}")
            raise error

        logger.debug(f"Telegram API {endpoint} - HTTP {response.status_code} OK")
        return data


def format_error(error: Exception) -> str:
    if not isinstance(error, TransportError):
        return str(error) or "Unknown error"
    if error.status_code is None:
        return f"Network error: {error}"

    message = f"HTTP {error.status_code}: {error}"
    hints = {
        429: "rate limit, retry with backoff",
        400: "invalid message or chat ID",
        401: "unauthorized, check bot token",
        404: "chat not found, check chat ID",
    }
    if error.status_code in hints:
        message += f" ({hints[error.status_code]})"
    return message


def mask_token(token: Optional[str]) -> str:
    if not token or len(token) <= 10:
        return "***"
    return token[:10] + ":***"


def escape_html(text: Optional[str]) -> str:
    if not text:
        return ""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def truncate_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 21] + "\n\n[Message truncated]"
