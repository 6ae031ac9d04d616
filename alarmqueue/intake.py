"""Producer-side entry point: normalize, prioritize, enqueue."""
from typing import Any, Dict, Optional

from alarmqueue.errors import ConfigError
from alarmqueue.logging_conf import logger
from alarmqueue.priority_resolver import PriorityResolver
from alarmqueue.queue.queue_core import QueueCore
from alarmqueue.tenant_config import TenantConfigStore


class Intake:
    """Accepts notifications from producers and puts them on the queue."""

    def __init__(self, queue: QueueCore, resolver: PriorityResolver, config_store: TenantConfigStore):
        self.queue = queue
        self.resolver = resolver
        self.config_store = config_store

    def submit(self, raw: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> str:
        """
        Enqueue one notification and return its queue id.

        ValidationError and StoreError propagate to the producer; a broken
        tenant config only falls back to defaults.
        """
        entry = self.queue.normalize(raw, context)

        try:
            config = self.config_store.load(entry.tenant_id)
        except ConfigError as e:
            logger.warning(f"Using default retry limit for tenant {entry.tenant_id}: {e}",
                           extra={"tenant_id": entry.tenant_id})
            config = self.config_store.defaults()

        entry.max_retries = config.rate_control.max_retries
        entry.priority = self.resolver.resolve(entry.tenant_id, entry.origin_id, entry.origin_class)
        return self.queue.enqueue(entry)
