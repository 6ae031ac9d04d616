"""Per-tenant dispatch gate and retry backoff."""
import json
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from alarmqueue.errors import StoreError
from alarmqueue.kv_store import KeyValueStore
from alarmqueue.logging_conf import logger

RATE_LIMIT_KEY = "telegram_queue_ratelimit"


@dataclass
class RateLimitState:
    last_dispatch_at: Optional[float] = None  # epoch seconds
    batch_count: int = 0
    last_batch_size: int = 0
    updated_at: Optional[float] = None

    def to_json(self) -> str:
        return json.dumps({
            "lastDispatchAt": int(self.last_dispatch_at * 1000) if self.last_dispatch_at else 0,
            "batchCount": self.batch_count,
            "lastBatchSize": self.last_batch_size,
            "updatedAt": int(self.updated_at * 1000) if self.updated_at else None,
        })

    @classmethod
    def from_json(cls, blob: Optional[str]) -> "RateLimitState":
        if not blob:
            return cls()
        try:
            data = json.loads(blob)
        except ValueError as e:
            raise StoreError(f"Rate limit state is corrupt: {e}") from e
        if not isinstance(data, dict):
            raise StoreError("Rate limit state is not an object")
        try:
            last = float(data.get("lastDispatchAt") or 0)
            updated = float(data.get("updatedAt") or 0)
            return cls(
                last_dispatch_at=last / 1000.0 if last else None,
                batch_count=int(data.get("batchCount") or 0),
                last_batch_size=int(data.get("lastBatchSize") or 0),
                updated_at=updated / 1000.0 if updated else None,
            )
        except (TypeError, ValueError) as e:
            raise StoreError(f"Rate limit state is corrupt: {e}") from e


@dataclass
class RateLimitSnapshot:
    last_dispatch_at: Optional[float]
    batch_count: int
    time_since_last_dispatch_seconds: int
    can_send_now: bool
    wait_time_seconds: int


def calculate_retry_delay(retry_count: int, strategy: str, base_delay_seconds: float) -> float:
    """Seconds to wait before retry number retry_count (0-based)."""
    retry_count = max(retry_count, 0)
    if base_delay_seconds < 0:
        base_delay_seconds = 0

    if strategy == "exponential":
        return base_delay_seconds * (2 ** retry_count)
    if strategy != "linear":
        logger.warning(f"Unknown backoff strategy: {strategy}, using linear")
    return base_delay_seconds * (retry_count + 1)


class RateLimiter:
    """
    Fixed-interval gate between dispatch cycles.

    Only the gap between cycles is enforced; bursts inside a batch are not
    smoothed. The state is written by the dispatcher only.
    """

    def __init__(self, store: KeyValueStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def get_state(self, tenant_id: str) -> RateLimitState:
        return RateLimitState.from_json(self.store.get(tenant_id, RATE_LIMIT_KEY))

    def can_dispatch(self, tenant_id: str, min_interval_seconds: float) -> bool:
        try:
            state = self.get_state(tenant_id)
        except StoreError as e:
            # Fail open: a broken state read must not stall the queue
            logger.error(f"Rate limit state unreadable for tenant {tenant_id}, allowing dispatch: {e}",
                         extra={"tenant_id": tenant_id})
            return True

        if state.last_dispatch_at is None:
            return True
        return self.clock() - state.last_dispatch_at >= min_interval_seconds

    def get_wait_time(self, tenant_id: str, min_interval_seconds: float) -> float:
        """Seconds until the next cycle may dispatch; 0 when it may now."""
        try:
            state = self.get_state(tenant_id)
        except StoreError as e:
            logger.error(f"Rate limit state unreadable for tenant {tenant_id}: {e}", extra={"tenant_id": tenant_id})
            return 0.0

        if state.last_dispatch_at is None:
            return 0.0
        return max(0.0, min_interval_seconds - (self.clock() - state.last_dispatch_at))

    def record_dispatch(self, tenant_id: str, batch_size: int) -> RateLimitState:
        now = self.clock()
        recorded = {}

        def bump(blob: Optional[str]) -> str:
            try:
                state = RateLimitState.from_json(blob)
            except StoreError as e:
                # Overwrite so the gate closes again after a corrupt write
                logger.error(f"Replacing unreadable rate limit state for tenant {tenant_id}: {e}",
                             extra={"tenant_id": tenant_id})
                state = RateLimitState()
            state.last_dispatch_at = now
            state.batch_count += 1
            state.last_batch_size = batch_size
            state.updated_at = now
            recorded["state"] = state
            return state.to_json()

        self.store.update(tenant_id, RATE_LIMIT_KEY, bump)
        logger.info(f"Recorded batch dispatch for tenant {tenant_id}: {batch_size} messages",
                    extra={"tenant_id": tenant_id})
        return recorded["state"]

    def reset(self, tenant_id: str) -> None:
        self.store.set_many(tenant_id, {RATE_LIMIT_KEY: RateLimitState(updated_at=self.clock()).to_json()})
        logger.info(f"Reset rate limit state for tenant {tenant_id}", extra={"tenant_id": tenant_id})

    def snapshot(self, tenant_id: str, min_interval_seconds: float) -> RateLimitSnapshot:
        state = self.get_state(tenant_id)
        now = self.clock()
        since = now - state.last_dispatch_at if state.last_dispatch_at is not None else 0.0
        wait = max(0.0, min_interval_seconds - since) if state.last_dispatch_at is not None else 0.0
        return RateLimitSnapshot(
            last_dispatch_at=state.last_dispatch_at,
            batch_count=state.batch_count,
            time_since_last_dispatch_seconds=int(since),
            can_send_now=wait == 0.0,
            wait_time_seconds=math.ceil(wait),
        )
