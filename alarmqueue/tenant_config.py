"""Per-tenant queue configuration, validated at load time."""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List

from alarmqueue import settings
from alarmqueue.errors import ConfigError
from alarmqueue.kv_store import KeyValueStore
from alarmqueue.logging_conf import logger
from alarmqueue.priority_resolver import PriorityRuleSet, default_rule_set

CONFIG_KEY = "telegram_queue_config"
BACKOFF_STRATEGIES = ("exponential", "linear")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class RateControl:
    batch_size: int = settings.DEFAULT_BATCH_SIZE
    min_interval_seconds: float = settings.DEFAULT_MIN_INTERVAL_SECONDS
    max_retries: int = settings.DEFAULT_MAX_RETRIES
    retry_backoff: str = settings.DEFAULT_RETRY_BACKOFF
    retry_base_delay_seconds: float = settings.DEFAULT_RETRY_BASE_DELAY_SECONDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchSize": self.batch_size,
            "minIntervalSeconds": self.min_interval_seconds,
            "maxRetries": self.max_retries,
            "retryBackoff": self.retry_backoff,
            "retryBaseDelaySeconds": self.retry_base_delay_seconds,
        }


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str = settings.TELEGRAM_BOT_TOKEN
    chat_id: str = settings.TELEGRAM_CHAT_ID
    parse_mode: str = "HTML"
    disable_notification: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "botToken": self.bot_token,
            "chatId": self.chat_id,
            "parseMode": self.parse_mode,
            "disableNotification": self.disable_notification,
        }


@dataclass(frozen=True)
class TenantConfig:
    enabled: bool = True
    rate_control: RateControl = field(default_factory=RateControl)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    priority_rules: PriorityRuleSet = field(default_factory=default_rule_set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "rateControl": self.rate_control.to_dict(),
            "telegram": self.telegram.to_dict(),
            "priorityRules": self.priority_rules.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "TenantConfig":
        """Build a config, collecting every problem into one ConfigError."""
        if not isinstance(data, dict):
            raise ConfigError("Tenant configuration must be an object")

        errors: List[str] = []

        enabled = data.get("enabled", True)
        if not isinstance(enabled, bool):
            errors.append("enabled must be a boolean")

        rate_control = RateControl()
        raw_rate = data.get("rateControl", {})
        if not isinstance(raw_rate, dict):
            errors.append("rateControl must be an object")
        else:
            batch_size = raw_rate.get("batchSize", rate_control.batch_size)
            interval = raw_rate.get("minIntervalSeconds",
                                    raw_rate.get("delayBetweenBatchesSeconds", rate_control.min_interval_seconds))
            max_retries = raw_rate.get("maxRetries", rate_control.max_retries)
            backoff = raw_rate.get("retryBackoff", rate_control.retry_backoff)
            base_delay = raw_rate.get("retryBaseDelaySeconds", rate_control.retry_base_delay_seconds)

            if not isinstance(batch_size, int) or isinstance(batch_size, bool) or batch_size <= 0:
                errors.append("rateControl.batchSize must be a positive integer")
            if not _is_number(interval) or interval < 0:
                errors.append("rateControl.minIntervalSeconds must be a non-negative number")
            if not isinstance(max_retries, int) or isinstance(max_retries, bool) or max_retries < 0:
                errors.append("rateControl.maxRetries must be a non-negative integer")
            if backoff not in BACKOFF_STRATEGIES:
                errors.append('rateControl.retryBackoff must be "exponential" or "linear"')
            if not _is_number(base_delay) or base_delay < 0:
                errors.append("rateControl.retryBaseDelaySeconds must be a non-negative number")

            if not errors:
                rate_control = RateControl(batch_size, interval, max_retries, backoff, base_delay)

        telegram = TelegramConfig()
        raw_telegram = data.get("telegram", {})
        if not isinstance(raw_telegram, dict):
            errors.append("telegram must be an object")
        else:
            bot_token = raw_telegram.get("botToken") or telegram.bot_token
            chat_id = raw_telegram.get("chatId") or telegram.chat_id
            if not bot_token or not isinstance(bot_token, str):
                errors.append("telegram.botToken is required and must be a string")
            if not chat_id or not isinstance(chat_id, (str, int)) or isinstance(chat_id, bool):
                errors.append("telegram.chatId is required")
            telegram = TelegramConfig(
                bot_token=bot_token if isinstance(bot_token, str) else "",
                chat_id=str(chat_id) if chat_id else "",
                parse_mode=raw_telegram.get("parseMode", telegram.parse_mode),
                disable_notification=bool(raw_telegram.get("disableNotification", False)),
            )

        priority_rules = default_rule_set()
        if data.get("priorityRules") is not None:
            try:
                priority_rules = PriorityRuleSet.from_dict(data["priorityRules"])
            except ConfigError as e:
                errors.append(str(e))

        if errors:
            raise ConfigError("Invalid tenant configuration: " + "; ".join(errors))

        return cls(enabled=enabled, rate_control=rate_control, telegram=telegram, priority_rules=priority_rules)


class TenantConfigStore:
    """Loads and saves TenantConfig under a tenant-scoped key."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def load(self, tenant_id: str) -> TenantConfig:
        blob = self.store.get(tenant_id, CONFIG_KEY)
        if blob is None:
            logger.debug(f"No queue configuration for tenant {tenant_id}, using defaults",
                         extra={"tenant_id": tenant_id})
            return self.defaults()

        try:
            data = json.loads(blob)
        except ValueError as e:
            raise ConfigError(f"Queue configuration for tenant {tenant_id} is not valid JSON: {e}") from e
        return TenantConfig.from_dict(data)

    def save(self, tenant_id: str, config: TenantConfig) -> None:
        self.store.set_many(tenant_id, {CONFIG_KEY: json.dumps(config.to_dict())})

    def defaults(self) -> TenantConfig:
        return TenantConfig()

    def load_or_default(self, tenant_id: str) -> TenantConfig:
        """Like load, but falls back to defaults on a ConfigError."""
        try:
            return self.load(tenant_id)
        except ConfigError as e:
            logger.warning(f"Using default queue configuration for tenant {tenant_id}: {e}",
                           extra={"tenant_id": tenant_id})
            return self.defaults()
