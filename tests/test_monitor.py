from alarmqueue.monitor import Monitor
from alarmqueue.queue.models import QueueStatus
from alarmqueue.rate_limiter import RATE_LIMIT_KEY
from alarmqueue.tenant_config import CONFIG_KEY

from conftest import TENANT, make_raw


def _enqueue(queue, priority):
    entry = queue.normalize(make_raw())
    entry.priority = priority
    return queue.enqueue(entry)


def test_sample_reports_depth_and_rate_state(tenant_config, queue, rate_limiter, config_store, store, clock):
    _enqueue(queue, 1)
    _enqueue(queue, 1)
    sent = _enqueue(queue, 3)
    queue.update_status(TENANT, sent, QueueStatus.SENDING)
    clock.advance(4)
    queue.update_status(TENANT, sent, QueueStatus.SENT)
    rate_limiter.record_dispatch(TENANT, 1)
    clock.advance(15)
    before = dict(store._data[TENANT])

    sample = Monitor(queue, rate_limiter, config_store, clock=clock).sample(TENANT)

    assert sample.queue_depth_priority_1 == 2
    assert sample.queue_depth_priority_3 == 0
    assert sample.total_queue_depth == 2
    assert sample.pending_count == 2
    assert sample.sent_count == 1
    assert sample.average_dispatch_delay_seconds == 4.0
    assert sample.time_since_last_dispatch_seconds == 15
    assert sample.can_send_now == 0
    assert sample.wait_time_seconds == 45
    assert sample.batch_count == 1
    assert sample.monitor_timestamp == int(clock.now * 1000)
    assert store._data[TENANT] == before


def test_sample_for_idle_tenant(queue, rate_limiter, config_store, clock):
    data = Monitor(queue, rate_limiter, config_store, clock=clock).sample("idle").to_dict()

    assert data["total_queue_depth"] == 0
    assert data["can_send_now"] == 1
    assert data["wait_time_seconds"] == 0
    assert set(data) >= {"queue_depth_priority_4", "failed_count", "monitor_timestamp"}


def test_broken_config_uses_default_interval(queue, rate_limiter, config_store, store, clock):
    store.set_many(TENANT, {CONFIG_KEY: "{"})
    rate_limiter.record_dispatch(TENANT, 1)

    sample = Monitor(queue, rate_limiter, config_store, clock=clock).sample(TENANT)

    assert sample.wait_time_seconds == 60


def test_corrupt_rate_state_reports_empty_gate(tenant_config, queue, rate_limiter, config_store, store, clock):
    _enqueue(queue, 2)
    store.set_many(TENANT, {RATE_LIMIT_KEY: "{"})

    sample = Monitor(queue, rate_limiter, config_store, clock=clock).sample(TENANT)

    assert sample.total_queue_depth == 1
    assert sample.can_send_now == 1
    assert sample.wait_time_seconds == 0
    assert sample.batch_count == 0
