"""Queue data models."""
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional

from alarmqueue.errors import ValidationError


class QueueStatus(str, Enum):
    PENDING = "PENDING"
    SENDING = "SENDING"
    SENT = "SENT"
    RETRY = "RETRY"
    FAILED = "FAILED"


class Priority:
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4

    TIERS = (1, 2, 3, 4)


# Statuses that take an entry out of its priority index
TERMINAL_STATUSES = frozenset({QueueStatus.SENT, QueueStatus.FAILED})


def _to_ms(value: Optional[float]) -> Optional[int]:
    return int(round(value * 1000)) if value is not None else None


def _from_ms(value) -> Optional[float]:
    return value / 1000.0 if value is not None else None


@dataclass
class QueueEntry:
    """One notification job."""

    queue_id: str
    tenant_id: str
    origin_id: str
    origin_class: str
    payload: Dict[str, Any]  # Text plus transport fields, never interpreted here
    created_at: float  # epoch seconds
    priority: Optional[int] = None  # set once before enqueue
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    last_attempt_at: Optional[float] = None
    sent_at: Optional[float] = None
    next_attempt_at: Optional[float] = None
    last_error: Optional[Dict[str, Any]] = None

    @classmethod
    def create(
        cls,
        tenant_id: str,
        origin_id: str,
        origin_class: str,
        payload: Dict[str, Any],
        created_at: float,
        priority: Optional[int] = None,
        max_retries: int = 3,
    ):
        """Factory method to create a pending QueueEntry with a fresh id."""
        return cls(
            queue_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            origin_id=origin_id,
            origin_class=origin_class,
            payload=payload,
            priority=priority,
            created_at=created_at,
            max_retries=max_retries,
        )

    @property
    def text(self) -> str:
        return self.payload.get("text", "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queueId": self.queue_id,
            "tenantId": self.tenant_id,
            "originId": self.origin_id,
            "originClass": self.origin_class,
            "payload": self.payload,
            "priority": self.priority,
            "status": self.status.value,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "createdAt": _to_ms(self.created_at),
            "lastAttemptAt": _to_ms(self.last_attempt_at),
            "sentAt": _to_ms(self.sent_at),
            "nextAttemptAt": _to_ms(self.next_attempt_at),
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        try:
            return cls(
                queue_id=data["queueId"],
                tenant_id=data["tenantId"],
                origin_id=data["originId"],
                origin_class=data.get("originClass") or "unknown",
                payload=data.get("payload") or {},
                priority=int(data["priority"]) if data.get("priority") is not None else None,
                created_at=_from_ms(data["createdAt"]),
                status=QueueStatus(data.get("status", QueueStatus.PENDING.value)),
                retry_count=int(data.get("retryCount", 0)),
                max_retries=int(data.get("maxRetries", 3)),
                last_attempt_at=_from_ms(data.get("lastAttemptAt")),
                sent_at=_from_ms(data.get("sentAt")),
                next_attempt_at=_from_ms(data.get("nextAttemptAt")),
                last_error=data.get("lastError"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed queue entry: {e}") from e

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, blob: str):
        try:
            data = json.loads(blob)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Malformed queue entry JSON: {e}") from e
        return cls.from_dict(data)


@dataclass
class QueueStats:
    """Counts derived from the stored entries. Never persisted."""

    queue_depth: Dict[int, int] = field(default_factory=lambda: {tier: 0 for tier in Priority.TIERS})
    pending_count: int = 0
    sending_count: int = 0
    retry_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    average_dispatch_delay_seconds: float = 0.0

    @property
    def total_queue_depth(self) -> int:
        return sum(self.queue_depth.values())
