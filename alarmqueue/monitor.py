"""Read-only queue and rate-limit samples for dashboards."""
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict

from alarmqueue.errors import ConfigError, StoreError
from alarmqueue.logging_conf import logger
from alarmqueue.queue.queue_core import QueueCore
from alarmqueue.rate_limiter import RateLimiter, RateLimitSnapshot
from alarmqueue.tenant_config import TenantConfigStore


@dataclass
class MonitorSample:
    queue_depth_priority_1: int
    queue_depth_priority_2: int
    queue_depth_priority_3: int
    queue_depth_priority_4: int
    total_queue_depth: int
    pending_count: int
    sending_count: int
    retry_count: int
    sent_count: int
    failed_count: int
    average_dispatch_delay_seconds: float
    time_since_last_dispatch_seconds: int
    can_send_now: int
    wait_time_seconds: int
    batch_count: int
    monitor_timestamp: int  # epoch ms

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Monitor:
    """Builds a MonitorSample per tenant. Never writes to the store."""

    def __init__(self, queue: QueueCore, rate_limiter: RateLimiter, config_store: TenantConfigStore,
                 clock: Callable[[], float] = time.time):
        self.queue = queue
        self.rate_limiter = rate_limiter
        self.config_store = config_store
        self.clock = clock

    def sample(self, tenant_id: str) -> MonitorSample:
        try:
            config = self.config_store.load(tenant_id)
        except (ConfigError, StoreError) as e:
            logger.warning(f"Monitor using default interval for tenant {tenant_id}: {e}",
                           extra={"tenant_id": tenant_id})
            config = self.config_store.defaults()

        stats = self.queue.get_stats(tenant_id)
        try:
            rate = self.rate_limiter.snapshot(tenant_id, config.rate_control.min_interval_seconds)
        except StoreError as e:
            logger.warning(f"Monitor using empty rate limit stats for tenant {tenant_id}: {e}",
                           extra={"tenant_id": tenant_id})
            rate = RateLimitSnapshot(None, 0, 0, True, 0)

        return MonitorSample(
            queue_depth_priority_1=stats.queue_depth[1],
            queue_depth_priority_2=stats.queue_depth[2],
            queue_depth_priority_3=stats.queue_depth[3],
            queue_depth_priority_4=stats.queue_depth[4],
            total_queue_depth=stats.total_queue_depth,
            pending_count=stats.pending_count,
            sending_count=stats.sending_count,
            retry_count=stats.retry_count,
            sent_count=stats.sent_count,
            failed_count=stats.failed_count,
            average_dispatch_delay_seconds=stats.average_dispatch_delay_seconds,
            time_since_last_dispatch_seconds=rate.time_since_last_dispatch_seconds,
            can_send_now=1 if rate.can_send_now else 0,
            wait_time_seconds=rate.wait_time_seconds,
            batch_count=rate.batch_count,
            monitor_timestamp=int(self.clock() * 1000),
        )
