import json

import pytest

from alarmqueue.errors import ValidationError
from alarmqueue.intake import Intake
from alarmqueue.priority_resolver import PriorityResolver
from alarmqueue.queue.models import QueueStatus
from alarmqueue.tenant_config import CONFIG_KEY, RateControl, TelegramConfig, TenantConfig

from conftest import TENANT, make_raw


@pytest.fixture
def intake(queue, config_store):
    return Intake(queue, PriorityResolver(config_store), config_store)


def test_submit_resolves_priority_and_retry_limit(intake, queue, config_store):
    config_store.save(TENANT, TenantConfig(
        rate_control=RateControl(max_retries=5),
        telegram=TelegramConfig(bot_token="123456789:abc", chat_id="1"),
    ))

    queue_id = intake.submit(make_raw(text="Breaker open", device_type="TRAFO_01"))

    entry = queue.get_entry(TENANT, queue_id)
    assert entry.priority == 1
    assert entry.max_retries == 5
    assert entry.status == QueueStatus.PENDING
    assert queue.get_index(TENANT, 1) == [queue_id]


def test_submit_with_broken_config_still_enqueues(intake, queue, store):
    store.set_many(TENANT, {CONFIG_KEY: json.dumps({"rateControl": "bad"})})

    queue_id = intake.submit(make_raw(device_type="TRAFO"))

    assert queue.get_entry(TENANT, queue_id).priority == 4


def test_submit_rejects_empty_text(intake, store):
    with pytest.raises(ValidationError):
        intake.submit(make_raw(text=""))

    assert store.scan(TENANT, "") == {}
