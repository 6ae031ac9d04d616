import pytest

from alarmqueue.errors import TransportError
from alarmqueue.kv_store import InMemoryKeyValueStore
from alarmqueue.queue.queue_core import QueueCore
from alarmqueue.rate_limiter import RateLimiter
from alarmqueue.tenant_config import RateControl, TelegramConfig, TenantConfig, TenantConfigStore

TENANT = "tenant-a"


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeSender:
    """Records payloads; fails with queued errors first."""

    def __init__(self, errors=None):
        self.sent = []
        self.errors = list(errors or [])

    def send(self, payload):
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        self.sent.append(payload)
        return {"ok": True}

    def is_retryable(self, error):
        if not isinstance(error, TransportError):
            return False
        return error.status_code is None or error.status_code == 429 or error.status_code >= 500


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def queue(store, clock):
    return QueueCore(store, clock=clock)


@pytest.fixture
def rate_limiter(store, clock):
    return RateLimiter(store, clock=clock)


@pytest.fixture
def config_store(store):
    return TenantConfigStore(store)


@pytest.fixture
def tenant_config(config_store):
    config = TenantConfig(
        rate_control=RateControl(batch_size=5, min_interval_seconds=60, max_retries=3,
                                 retry_backoff="exponential", retry_base_delay_seconds=10),
        telegram=TelegramConfig(bot_token="123456789:test-token", chat_id="-1001"),
    )
    config_store.save(TENANT, config)
    return config


@pytest.fixture
def sender():
    return FakeSender()


def make_raw(text="Alarm", device_id="dev-1", device_type="GENERIC", ts=None):
    metadata = {"customerId": TENANT, "deviceId": device_id, "deviceType": device_type}
    if ts is not None:
        metadata["ts"] = str(ts)
    return {"msg": {"text": text}, "metadata": metadata}
