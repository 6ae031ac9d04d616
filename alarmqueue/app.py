"""Main application - ticks the dispatcher for every configured tenant."""
import argparse
import json
import signal
import sys
import time
from typing import List, Optional

from alarmqueue.logging_conf import logger
from alarmqueue import settings
from alarmqueue.db import PostgresKeyValueStore
from alarmqueue.dispatcher import DispatchResult, DispatchScheduler
from alarmqueue.intake import Intake
from alarmqueue.kv_store import InMemoryKeyValueStore, KeyValueStore
from alarmqueue.monitor import Monitor
from alarmqueue.priority_resolver import PriorityResolver
from alarmqueue.queue.queue_core import QueueCore
from alarmqueue.rate_limiter import RateLimiter
from alarmqueue.tenant_config import TenantConfigStore
from alarmqueue.thingsboard_client import ThingsboardAttributeStore


def build_store(backend: Optional[str] = None) -> KeyValueStore:
    """Create the key-value store selected by STORE_BACKEND."""
    backend = backend or settings.STORE_BACKEND
    if backend == "postgres":
        store = PostgresKeyValueStore()
        store.ensure_schema()
        return store
    if backend == "thingsboard":
        return ThingsboardAttributeStore()
    if backend != "memory":
        raise ValueError(f"Unknown store backend: {backend}")
    logger.warning("Using the in-memory store; queued notifications are lost on restart")
    return InMemoryKeyValueStore()


class Application:
    """Wires the queue components together and runs dispatch ticks."""

    def __init__(self, store: Optional[KeyValueStore] = None, tenant_ids: Optional[List[str]] = None):
        self.store = store
        self.tenant_ids = tenant_ids if tenant_ids is not None else settings.TENANT_IDS
        self.running = False

        self.queue = None
        self.rate_limiter = None
        self.config_store = None
        self.resolver = None
        self.scheduler = None
        self.monitor = None
        self.intake = None

    def start(self):
        """Validate config and build the components."""
        logger.info("=" * 50)
        logger.info("Alarm Notification Queue")
        logger.info("=" * 50)
        logger.info(f"Store backend: {settings.STORE_BACKEND}")
        logger.info(f"Tenants: {', '.join(self.tenant_ids) or '-'}")
        logger.info(f"Dispatch interval: {settings.DISPATCH_INTERVAL}s")
        logger.info("=" * 50)

        if self.store is None:
            settings.validate_config()
            self.store = build_store()

        self.queue = QueueCore(self.store)
        self.rate_limiter = RateLimiter(self.store)
        self.config_store = TenantConfigStore(self.store)
        self.resolver = PriorityResolver(self.config_store, ttl_seconds=settings.PRIORITY_CACHE_TTL)
        self.scheduler = DispatchScheduler(self.queue, self.rate_limiter, self.config_store)
        self.monitor = Monitor(self.queue, self.rate_limiter, self.config_store)
        self.intake = Intake(self.queue, self.resolver, self.config_store)

        self.running = True
        logger.info("Started - dispatching queued notifications")

    def stop(self):
        """Stop the application."""
        if not self.running:
            return
        self.running = False
        self.store.close()
        logger.info("Stopped")

    def run(self):
        """Main loop."""
        self.start()

        while self.running:
            try:
                self.tick()
            except KeyboardInterrupt:
                break
            except Exception as e:
                logger.error(f"Error in main loop: {e}", exc_info=True)

            # Sleep in one-second steps so a stop is noticed promptly
            for _ in range(settings.DISPATCH_INTERVAL):
                if not self.running:
                    break
                time.sleep(1)

        self.stop()

    def tick(self) -> List[DispatchResult]:
        """Run one dispatch cycle per tenant, then log a monitor sample."""
        results = []
        for tenant_id in self.tenant_ids:
            if not self.running:
                break
            try:
                result = self.scheduler.run_cycle(tenant_id)
            except Exception as e:
                logger.error(f"Dispatch cycle failed for tenant {tenant_id}: {e}", exc_info=True,
                             extra={"tenant_id": tenant_id})
                continue
            results.append(result)

            try:
                sample = self.monitor.sample(tenant_id)
            except Exception as e:
                logger.error(f"Monitor sample failed for tenant {tenant_id}: {e}", extra={"tenant_id": tenant_id})
                continue
            logger.info(
                f"Tenant {tenant_id} - depth: {sample.total_queue_depth}, sent: {sample.sent_count}, "
                f"failed: {sample.failed_count}, wait: {sample.wait_time_seconds}s",
                extra={"tenant_id": tenant_id, "monitor": sample.to_dict()},
            )
        return results

    def samples(self) -> dict:
        return {tenant_id: self.monitor.sample(tenant_id).to_dict() for tenant_id in self.tenant_ids}


def main(argv: Optional[List[str]] = None):
    """Entry point."""
    parser = argparse.ArgumentParser(description="Priority alarm notification dispatcher")
    parser.add_argument("--once", action="store_true", help="run a single dispatch tick and exit")
    parser.add_argument("--monitor", action="store_true", help="print monitor samples as JSON and exit")
    args = parser.parse_args(argv)

    app = Application()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        app.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if args.once or args.monitor:
            app.start()
            if args.once:
                for result in app.tick():
                    print(json.dumps(result.to_dict()))
            if args.monitor:
                print(json.dumps(app.samples(), indent=2))
            app.stop()
        else:
            app.run()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
