"""Priority-indexed notification queue over a key-value store."""
import json
import time
from typing import Any, Callable, Dict, List, Optional

from alarmqueue import settings
from alarmqueue.errors import EntryNotFound, InvalidTransition, StoreError, ValidationError
from alarmqueue.kv_store import KeyValueStore
from alarmqueue.logging_conf import logger
from alarmqueue.queue.models import (
    Priority,
    QueueEntry,
    QueueStats,
    QueueStatus,
    TERMINAL_STATUSES,
)

ENTRY_PREFIX = "telegram_queue_entry_"
INDEX_PREFIX = "telegram_queue_index_priority_"

ALLOWED_TRANSITIONS = {
    QueueStatus.PENDING: {QueueStatus.SENDING},
    QueueStatus.RETRY: {QueueStatus.SENDING},
    # SENDING -> SENDING re-claims an entry orphaned by a failed status write
    QueueStatus.SENDING: {QueueStatus.SENDING, QueueStatus.SENT, QueueStatus.RETRY, QueueStatus.FAILED},
}


def entry_key(queue_id: str) -> str:
    return f"{ENTRY_PREFIX}{queue_id}"


def index_key(priority: int) -> str:
    return f"{INDEX_PREFIX}{priority}"


def should_retry(entry: QueueEntry) -> bool:
    return entry.retry_count < entry.max_retries


class QueueCore:
    """
    Notification queue keyed per tenant.

    Each priority tier has an index (a JSON list of queue ids, oldest first).
    The index is the work queue: an id stays in it while the entry is
    PENDING, SENDING or RETRY and leaves it on SENT or FAILED.
    """

    def __init__(self, store: KeyValueStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def normalize(self, raw: Dict[str, Any], context: Optional[Dict[str, Any]] = None,
                  max_retries: Optional[int] = None) -> QueueEntry:
        """
        Build a pending QueueEntry from a producer message.

        Accepts the rule-chain shape ``{"msg": {"text": ...}, "metadata": {...}}``
        or a flat ``{"text": ...}``. The priority is left unset.
        """
        if not isinstance(raw, dict):
            raise ValidationError("Notification must be a mapping")

        context = context or {}
        msg = raw.get("msg") if isinstance(raw.get("msg"), dict) else raw
        metadata = raw.get("metadata") if isinstance(raw.get("metadata"), dict) else {}

        text = msg.get("text")
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Notification text is empty")

        tenant_id = context.get("tenantId") or context.get("customerId") or metadata.get("customerId")
        origin_id = context.get("originId") or context.get("deviceId") or metadata.get("deviceId")
        missing = [name for name, value in (("tenant", tenant_id), ("origin", origin_id)) if not value]
        if missing:
            raise ValidationError(f"Notification context lacks {' and '.join(missing)}")

        origin_class = context.get("originClass") or metadata.get("deviceType") or "unknown"

        payload = {k: v for k, v in msg.items() if k not in ("text", "msg", "metadata")}
        payload["text"] = text
        if metadata.get("deviceName"):
            payload["originName"] = metadata["deviceName"]

        return QueueEntry.create(
            tenant_id=str(tenant_id),
            origin_id=str(origin_id),
            origin_class=str(origin_class),
            payload=payload,
            created_at=self._parse_ts(metadata.get("ts")),
            max_retries=settings.DEFAULT_MAX_RETRIES if max_retries is None else max_retries,
        )

    def enqueue(self, entry: QueueEntry) -> str:
        """Persist the entry and append its id to the end of its tier index."""
        self._validate_for_enqueue(entry)

        # Entry blob first so an indexed id always has a blob behind it
        self.store.set_many(entry.tenant_id, {entry_key(entry.queue_id): entry.to_json()})

        def append(blob: Optional[str]) -> Optional[str]:
            ids = self._parse_index(blob, entry.priority)
            if entry.queue_id in ids:
                return None
            ids.append(entry.queue_id)
            return json.dumps(ids)

        self.store.update(entry.tenant_id, index_key(entry.priority), append)

        logger.info(
            f"Enqueued {entry.queue_id} - tenant: {entry.tenant_id}, origin: {entry.origin_id}, "
            f"priority: {entry.priority}",
            extra={"tenant_id": entry.tenant_id, "queue_id": entry.queue_id},
        )
        return entry.queue_id

    def dequeue(self, tenant_id: str, max_count: int) -> List[QueueEntry]:
        """
        Return up to max_count dispatchable entries, tier 1 first, oldest first.

        Nothing is removed from the indexes here; only update_status does that.
        SENDING entries found in an index are returned again: the dispatcher
        holds its lock while dequeuing, so they were left behind by an earlier
        cycle whose status write failed.
        """
        if max_count is None or max_count <= 0:
            raise ValidationError("Batch size must be positive")

        now = self.clock()
        batch: List[QueueEntry] = []

        for tier in Priority.TIERS:
            if len(batch) >= max_count:
                break

            ids = self._read_index(tenant_id, tier)
            if not ids:
                continue

            blobs = self.store.get_many(tenant_id, [entry_key(queue_id) for queue_id in ids])
            for queue_id in ids:
                if len(batch) >= max_count:
                    break

                blob = blobs.get(entry_key(queue_id))
                if blob is None:
                    logger.warning(f"Indexed entry {queue_id} has no stored blob, skipping",
                                   extra={"tenant_id": tenant_id, "queue_id": queue_id})
                    continue

                try:
                    entry = QueueEntry.from_json(blob)
                except ValidationError as e:
                    logger.warning(f"Skipping unreadable entry {queue_id}: {e}",
                                   extra={"tenant_id": tenant_id, "queue_id": queue_id})
                    continue

                if entry.status in TERMINAL_STATUSES:
                    logger.warning(f"Entry {queue_id} is {entry.status.value} but still indexed",
                                   extra={"tenant_id": tenant_id, "queue_id": queue_id})
                    continue

                if entry.status == QueueStatus.RETRY and entry.next_attempt_at and entry.next_attempt_at > now:
                    continue

                batch.append(entry)

        return batch

    def update_status(self, tenant_id: str, queue_id: str, status, meta: Optional[Dict[str, Any]] = None) -> QueueEntry:
        """
        Move an entry to a new status; the only way status changes.

        meta may carry status_code, error_message, sent_at and next_attempt_at.
        Entering RETRY increments retry_count. Entering SENT or FAILED removes
        the id from its priority index.
        """
        try:
            status = QueueStatus(status)
        except ValueError as e:
            raise ValidationError(f"Invalid status: {status}") from e

        meta = meta or {}
        now = self.clock()
        updated: Dict[str, QueueEntry] = {}

        def apply(blob: Optional[str]) -> str:
            if blob is None:
                raise EntryNotFound(f"Entry not found: {queue_id}")
            entry = QueueEntry.from_json(blob)
            self._apply_transition(entry, status, meta, now)
            updated["entry"] = entry
            return entry.to_json()

        self.store.update(tenant_id, entry_key(queue_id), apply)
        entry = updated["entry"]

        if status in TERMINAL_STATUSES:
            self._remove_from_index(tenant_id, entry.priority, queue_id)

        return entry

    def get_entry(self, tenant_id: str, queue_id: str) -> Optional[QueueEntry]:
        blob = self.store.get(tenant_id, entry_key(queue_id))
        return QueueEntry.from_json(blob) if blob is not None else None

    def get_index(self, tenant_id: str, priority: int) -> List[str]:
        return self._read_index(tenant_id, priority)

    def get_stats(self, tenant_id: str) -> QueueStats:
        """Recompute counts from index membership and stored entries."""
        stats = QueueStats()
        statuses: Dict[str, QueueStatus] = {}
        total_delay = 0.0
        sent_with_delay = 0

        for key, blob in self.store.scan(tenant_id, ENTRY_PREFIX).items():
            try:
                entry = QueueEntry.from_json(blob)
            except ValidationError as e:
                logger.warning(f"Failed to parse {key}: {e}", extra={"tenant_id": tenant_id})
                continue

            statuses[entry.queue_id] = entry.status
            if entry.status == QueueStatus.PENDING:
                stats.pending_count += 1
            elif entry.status == QueueStatus.SENDING:
                stats.sending_count += 1
            elif entry.status == QueueStatus.RETRY:
                stats.retry_count += 1
            elif entry.status == QueueStatus.FAILED:
                stats.failed_count += 1
            elif entry.status == QueueStatus.SENT:
                stats.sent_count += 1
                if entry.sent_at and entry.created_at:
                    total_delay += entry.sent_at - entry.created_at
                    sent_with_delay += 1

        for tier in Priority.TIERS:
            stats.queue_depth[tier] = sum(
                1 for queue_id in self._read_index(tenant_id, tier)
                if queue_id in statuses and statuses[queue_id] not in TERMINAL_STATUSES
            )

        if sent_with_delay:
            stats.average_dispatch_delay_seconds = round(total_delay / sent_with_delay, 3)

        return stats

    def _apply_transition(self, entry: QueueEntry, status: QueueStatus, meta: Dict[str, Any], now: float) -> None:
        allowed = ALLOWED_TRANSITIONS.get(entry.status, set())
        if status not in allowed:
            raise InvalidTransition(f"{entry.queue_id}: {entry.status.value} -> {status.value} not allowed")

        if status == QueueStatus.SENDING:
            entry.last_attempt_at = now
        elif status == QueueStatus.SENT:
            entry.sent_at = meta.get("sent_at", now)
            entry.next_attempt_at = None
            entry.last_error = None
        elif status == QueueStatus.RETRY:
            if not should_retry(entry):
                raise InvalidTransition(
                    f"{entry.queue_id}: retries exhausted ({entry.retry_count}/{entry.max_retries})"
                )
            entry.retry_count += 1
            entry.next_attempt_at = meta.get("next_attempt_at")
            entry.last_error = self._error_from_meta(meta)
        elif status == QueueStatus.FAILED:
            entry.next_attempt_at = None
            entry.last_error = self._error_from_meta(meta)

        entry.status = status

    def _remove_from_index(self, tenant_id: str, priority: int, queue_id: str) -> None:
        def remove(blob: Optional[str]) -> Optional[str]:
            ids = self._parse_index(blob, priority)
            if queue_id not in ids:
                return None
            return json.dumps([i for i in ids if i != queue_id])

        self.store.update(tenant_id, index_key(priority), remove)

    def _read_index(self, tenant_id: str, priority: int) -> List[str]:
        return self._parse_index(self.store.get(tenant_id, index_key(priority)), priority)

    def _parse_index(self, blob: Optional[str], priority: int) -> List[str]:
        if not blob:
            return []
        try:
            ids = json.loads(blob)
        except ValueError as e:
            raise StoreError(f"Priority index {priority} is corrupt: {e}") from e
        if not isinstance(ids, list):
            raise StoreError(f"Priority index {priority} is not a list")
        return ids

    def _validate_for_enqueue(self, entry: QueueEntry) -> None:
        errors = []
        if not entry.queue_id:
            errors.append("queue_id is required")
        if not entry.tenant_id:
            errors.append("tenant_id is required")
        if not entry.origin_id:
            errors.append("origin_id is required")
        if entry.priority not in Priority.TIERS:
            errors.append(f"priority must be one of {Priority.TIERS}, got {entry.priority}")
        if entry.status != QueueStatus.PENDING:
            errors.append(f"status must be PENDING, got {entry.status.value}")
        if not entry.text.strip():
            errors.append("payload text is required")
        if entry.max_retries < 0:
            errors.append("max_retries must be non-negative")
        if errors:
            raise ValidationError("Invalid queue entry: " + ", ".join(errors))

    def _error_from_meta(self, meta: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if meta.get("status_code") is None and not meta.get("error_message"):
            return None
        return {"statusCode": meta.get("status_code"), "message": meta.get("error_message")}

    def _parse_ts(self, ts) -> float:
        """Rule-chain timestamps are epoch milliseconds, often as strings."""
        if ts is None:
            return self.clock()
        try:
            return int(ts) / 1000.0
        except (TypeError, ValueError):
            return self.clock()
