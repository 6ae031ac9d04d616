"""Rate-limited dispatch cycles, one tenant at a time."""
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from alarmqueue.errors import ConfigError, QueueError, StoreError, TransportError
from alarmqueue.logging_conf import logger
from alarmqueue.queue.models import QueueEntry, QueueStatus
from alarmqueue.queue.queue_core import QueueCore, should_retry
from alarmqueue.rate_limiter import RateLimiter, calculate_retry_delay
from alarmqueue.telegram_client import NotificationSender, TelegramSender, format_error
from alarmqueue.tenant_config import TelegramConfig, TenantConfig, TenantConfigStore


class TenantLocks:
    """One non-reentrant lock per tenant; tenants never block each other."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, tenant_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(tenant_id)
            if lock is None:
                lock = self._locks[tenant_id] = threading.Lock()
            return lock

    def is_locked(self, tenant_id: str) -> bool:
        return self.get(tenant_id).locked()


@dataclass
class DispatchResult:
    tenant_id: str
    skipped: bool = False
    reason: Optional[str] = None
    queue_empty: bool = False
    sent: int = 0
    failed: int = 0
    retried: int = 0
    batch_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "skipped": self.skipped,
            "reason": self.reason,
            "queueEmpty": self.queue_empty,
            "sent": self.sent,
            "failed": self.failed,
            "retried": self.retried,
            "batchSize": self.batch_size,
            "tenantId": self.tenant_id,
        }


class DispatchScheduler:
    """Runs dispatch cycles: lock, gate, dequeue, send, record."""

    def __init__(
        self,
        queue: QueueCore,
        rate_limiter: RateLimiter,
        config_store: TenantConfigStore,
        sender_factory: Callable[[TelegramConfig], NotificationSender] = TelegramSender,
        locks: Optional[TenantLocks] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.queue = queue
        self.rate_limiter = rate_limiter
        self.config_store = config_store
        self.sender_factory = sender_factory
        self.locks = locks or TenantLocks()
        self.clock = clock

    def run_all(self, tenant_ids: Iterable[str]) -> List[DispatchResult]:
        return [self.run_cycle(tenant_id) for tenant_id in tenant_ids]

    def run_cycle(self, tenant_id: str) -> DispatchResult:
        """
        Run one dispatch cycle for a tenant.

        Returns immediately with reason "in_progress" when another cycle for
        the same tenant holds the lock.
        """
        lock = self.locks.get(tenant_id)
        if not lock.acquire(blocking=False):
            logger.info(f"Dispatch already in progress for tenant {tenant_id}", extra={"tenant_id": tenant_id})
            return DispatchResult(tenant_id, skipped=True, reason="in_progress")

        try:
            return self._run_locked(tenant_id)
        finally:
            lock.release()

    def _run_locked(self, tenant_id: str) -> DispatchResult:
        try:
            config = self.config_store.load(tenant_id)
            self._check_ready(config)
        except (ConfigError, StoreError) as e:
            logger.error(f"Cannot dispatch for tenant {tenant_id}: {e}", extra={"tenant_id": tenant_id})
            return DispatchResult(tenant_id, skipped=True, reason="config_error")

        if not config.enabled:
            logger.debug(f"Queue disabled for tenant {tenant_id}", extra={"tenant_id": tenant_id})
            return DispatchResult(tenant_id, skipped=True, reason="disabled")

        rate = config.rate_control
        if not self.rate_limiter.can_dispatch(tenant_id, rate.min_interval_seconds):
            wait = self.rate_limiter.get_wait_time(tenant_id, rate.min_interval_seconds)
            logger.debug(f"Rate limited for tenant {tenant_id}, next dispatch in {wait:.0f}s",
                         extra={"tenant_id": tenant_id})
            return DispatchResult(tenant_id, skipped=True, reason="rate_limited")

        batch = self.queue.dequeue(tenant_id, rate.batch_size)
        if not batch:
            return DispatchResult(tenant_id, queue_empty=True)

        logger.info(f"Dispatching {len(batch)} messages for tenant {tenant_id}", extra={"tenant_id": tenant_id})
        sender = self.sender_factory(config.telegram)
        result = DispatchResult(tenant_id, batch_size=len(batch))

        for entry in batch:
            try:
                outcome = self._dispatch_entry(entry, sender, config)
            except QueueError as e:
                # Entry stays indexed and is picked up again next cycle
                logger.error(f"Status update failed for {entry.queue_id}: {e}",
                             extra={"tenant_id": tenant_id, "queue_id": entry.queue_id})
                continue

            if outcome == QueueStatus.SENT:
                result.sent += 1
            elif outcome == QueueStatus.RETRY:
                result.retried += 1
            elif outcome == QueueStatus.FAILED:
                result.failed += 1

        try:
            self.rate_limiter.record_dispatch(tenant_id, len(batch))
        except StoreError as e:
            # The batch already went out; report it even if the gate was not recorded
            logger.error(f"Could not record dispatch for tenant {tenant_id}: {e}", extra={"tenant_id": tenant_id})

        logger.info(
            f"Batch complete for tenant {tenant_id} - sent: {result.sent}, "
            f"retried: {result.retried}, failed: {result.failed}",
            extra={"tenant_id": tenant_id},
        )
        return result

    def _dispatch_entry(self, entry: QueueEntry, sender: NotificationSender, config: TenantConfig) -> QueueStatus:
        tenant_id = entry.tenant_id
        entry = self.queue.update_status(tenant_id, entry.queue_id, QueueStatus.SENDING)

        try:
            sender.send(entry.payload)
        except Exception as e:
            return self._handle_send_failure(entry, sender, config, e)

        self.queue.update_status(tenant_id, entry.queue_id, QueueStatus.SENT, {"sent_at": self.clock()})
        logger.info(f"Sent {entry.queue_id} (priority {entry.priority})",
                    extra={"tenant_id": tenant_id, "queue_id": entry.queue_id})
        return QueueStatus.SENT

    def _handle_send_failure(self, entry: QueueEntry, sender: NotificationSender, config: TenantConfig,
                             error: Exception) -> QueueStatus:
        status_code = error.status_code if isinstance(error, TransportError) else None
        meta = {"status_code": status_code, "error_message": str(error)}

        if sender.is_retryable(error) and should_retry(entry):
            rate = config.rate_control
            delay = calculate_retry_delay(entry.retry_count, rate.retry_backoff, rate.retry_base_delay_seconds)
            if isinstance(error, TransportError) and error.retry_after:
                delay = max(delay, float(error.retry_after))
            meta["next_attempt_at"] = self.clock() + delay

            self.queue.update_status(entry.tenant_id, entry.queue_id, QueueStatus.RETRY, meta)
            logger.warning(
                f"Retry {entry.retry_count + 1}/{entry.max_retries} for {entry.queue_id} in {delay:.0f}s: "
                f"{format_error(error)}",
                extra={"tenant_id": entry.tenant_id, "queue_id": entry.queue_id},
            )
            return QueueStatus.RETRY

        self.queue.update_status(entry.tenant_id, entry.queue_id, QueueStatus.FAILED, meta)
        logger.error(f"Failed {entry.queue_id} after {entry.retry_count} retries: {format_error(error)}",
                     extra={"tenant_id": entry.tenant_id, "queue_id": entry.queue_id})
        return QueueStatus.FAILED

    def _check_ready(self, config: TenantConfig) -> None:
        if config.enabled and (not config.telegram.bot_token or not config.telegram.chat_id):
            raise ConfigError("Telegram bot token and chat id are required")
