"""Resolve a notification's priority tier from tenant rules."""
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from alarmqueue.errors import ConfigError, StoreError
from alarmqueue.logging_conf import logger
from alarmqueue.queue.models import Priority


def _check_tier(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value not in Priority.TIERS:
        raise ConfigError(f"{where} must be a tier in {Priority.TIERS}, got {value!r}")
    return value


@dataclass(frozen=True)
class PriorityRule:
    """A rule matches when every predicate it sets matches."""

    tier: int
    origin_id: Optional[str] = None
    origin_class: Optional[str] = None
    class_contains: Optional[str] = None

    def matches(self, origin_id: str, origin_class: str) -> bool:
        if self.origin_id is not None and self.origin_id != origin_id:
            return False
        if self.origin_class is not None and self.origin_class != origin_class:
            return False
        if self.class_contains is not None and self.class_contains.upper() not in (origin_class or "").upper():
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"tier": self.tier}
        if self.origin_id is not None:
            data["originId"] = self.origin_id
        if self.origin_class is not None:
            data["originClass"] = self.origin_class
        if self.class_contains is not None:
            data["classContains"] = self.class_contains
        return data


@dataclass(frozen=True)
class PriorityRuleSet:
    """Ordered rules; the first match wins, otherwise default_tier."""

    rules: List[PriorityRule] = field(default_factory=list)
    default_tier: int = Priority.MEDIUM

    def resolve(self, origin_id: str, origin_class: str) -> int:
        for rule in self.rules:
            if rule.matches(origin_id, origin_class):
                return rule.tier
        return self.default_tier

    def to_dict(self) -> Dict[str, Any]:
        return {"rules": [rule.to_dict() for rule in self.rules], "defaultTier": self.default_tier}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PriorityRuleSet":
        """
        Parse either an ordered ``rules`` list or the legacy shape
        ``{deviceOverrides, deviceProfiles, globalDefault}``.
        """
        if not isinstance(data, dict):
            raise ConfigError("priorityRules must be an object")

        rules: List[PriorityRule] = []
        if "rules" in data:
            if not isinstance(data["rules"], list):
                raise ConfigError("priorityRules.rules must be a list")
            for i, raw in enumerate(data["rules"]):
                if not isinstance(raw, dict):
                    raise ConfigError(f"priorityRules.rules[{i}] must be an object")
                rule = PriorityRule(
                    tier=_check_tier(raw.get("tier"), f"priorityRules.rules[{i}].tier"),
                    origin_id=raw.get("originId"),
                    origin_class=raw.get("originClass"),
                    class_contains=raw.get("classContains"),
                )
                if rule.origin_id is None and rule.origin_class is None and rule.class_contains is None:
                    raise ConfigError(f"priorityRules.rules[{i}] has no predicate")
                rules.append(rule)
            default = data.get("defaultTier", Priority.MEDIUM)
        else:
            overrides = data.get("deviceOverrides") or {}
            profiles = data.get("deviceProfiles") or {}
            if not isinstance(overrides, dict) or not isinstance(profiles, dict):
                raise ConfigError("deviceOverrides and deviceProfiles must be objects")
            # Device overrides outrank profile rules
            for origin_id, tier in overrides.items():
                rules.append(PriorityRule(tier=_check_tier(tier, f"deviceOverrides.{origin_id}"), origin_id=origin_id))
            for origin_class, tier in profiles.items():
                rules.append(PriorityRule(tier=_check_tier(tier, f"deviceProfiles.{origin_class}"),
                                          origin_class=origin_class))
            default = data.get("globalDefault", Priority.MEDIUM)

        return cls(rules=rules, default_tier=_check_tier(default, "default tier"))


def default_rule_set() -> PriorityRuleSet:
    """Built-in device-class heuristics used when a tenant has no rules."""
    rules = [PriorityRule(tier=Priority.CRITICAL, class_contains=c) for c in ("ENTRADA", "RELOGIO", "TRAFO", "SUBESTACAO")]
    rules += [PriorityRule(tier=Priority.HIGH, class_contains=c) for c in ("3F_MEDIDOR", "HIDROMETRO")]
    rules.append(PriorityRule(tier=Priority.LOW, class_contains="TERMOSTATO"))
    return PriorityRuleSet(rules=rules, default_tier=Priority.MEDIUM)


class PriorityResolver:
    """
    Maps (tenant, origin, origin class) to a tier.

    Rule sets are cached per tenant for the process lifetime, or for
    ttl_seconds when set. A failed load is not cached and resolves to the
    lowest urgency tier so enqueue is never blocked.
    """

    def __init__(self, config_store, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.time):
        self.config_store = config_store
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._cache: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def resolve(self, tenant_id: str, origin_id: str, origin_class: str) -> int:
        try:
            rule_set = self.load_rules(tenant_id)
        except (ConfigError, StoreError) as e:
            logger.warning(f"Priority rules unavailable for tenant {tenant_id}, using tier {Priority.LOW}: {e}",
                           extra={"tenant_id": tenant_id})
            return Priority.LOW

        tier = rule_set.resolve(origin_id, origin_class)
        logger.debug(f"Priority {tier} for origin {origin_id} ({origin_class})", extra={"tenant_id": tenant_id})
        return tier

    def load_rules(self, tenant_id: str) -> PriorityRuleSet:
        with self._lock:
            cached = self._cache.get(tenant_id)
            if cached is not None:
                rule_set, loaded_at = cached
                if self.ttl_seconds is None or self.clock() - loaded_at <= self.ttl_seconds:
                    return rule_set
                del self._cache[tenant_id]

        rule_set = self.config_store.load(tenant_id).priority_rules

        with self._lock:
            self._cache[tenant_id] = (rule_set, self.clock())
        logger.info(f"Loaded {len(rule_set.rules)} priority rules for tenant {tenant_id}",
                    extra={"tenant_id": tenant_id})
        return rule_set

    def invalidate(self, tenant_id: str) -> None:
        with self._lock:
            self._cache.pop(tenant_id, None)
        logger.info(f"Priority rule cache invalidated for tenant {tenant_id}")

    def clear_cache(self) -> None:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
        logger.info(f"Cleared {count} cached priority rule sets")

    def cache_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {"size": len(self._cache), "ttl_seconds": self.ttl_seconds, "tenant_ids": list(self._cache)}
