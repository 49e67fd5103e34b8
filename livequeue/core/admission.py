"""Admission control: bounded queue size with gift-protecting eviction."""

import math
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from livequeue.core.logging import get_logger
from livequeue.core.priority import DEFAULT_GIFT_EVENT_TYPES

if TYPE_CHECKING:
    from livequeue.core.config import QueueSettings
    from livequeue.stores.base import JobStore


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of an admission check.

    Attributes:
        accepted: Whether the event may be inserted.
        reason: Why the event was rejected, or None when accepted.
        evicted: Number of pending jobs removed to make room.
        current_size: Active queue size observed before eviction.
    """

    accepted: bool
    reason: str | None = None
    evicted: int = 0
    current_size: int = 0


class AdmissionController:
    """Enforces the maximum queue size before every insert.

    Under the limit everything is accepted. At or over the limit:

    - gift-like events evict ``ceil(max_size * gift_eviction_fraction)`` of
      the oldest pending non-gift jobs below ``gift_reservation_threshold``
      and are always accepted;
    - other events below ``min_admission_priority`` are rejected;
    - other events evict one such job and are accepted.
    """

    def __init__(
        self,
        store: "JobStore",
        max_size: int = 1000,
        gift_event_types: Iterable[str] | None = None,
        gift_eviction_fraction: float = 0.1,
        gift_reservation_threshold: int = 100,
        min_admission_priority: int = 50,
    ) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        if not 0 < gift_eviction_fraction <= 1:
            raise ValueError(
                f"gift_eviction_fraction must be in (0, 1], got {gift_eviction_fraction}"
            )
        self.store = store
        self.max_size = max_size
        self.gift_event_types: frozenset[str] = frozenset(
            DEFAULT_GIFT_EVENT_TYPES if gift_event_types is None else gift_event_types
        )
        self.gift_eviction_fraction = gift_eviction_fraction
        self.gift_reservation_threshold = gift_reservation_threshold
        self.min_admission_priority = min_admission_priority
        self._log = get_logger("livequeue.admission")

    @classmethod
    def from_settings(cls, store: "JobStore", settings: "QueueSettings") -> "AdmissionController":
        return cls(
            store,
            max_size=settings.max_size,
            gift_event_types=settings.gift_event_types,
            gift_eviction_fraction=settings.gift_eviction_fraction,
            gift_reservation_threshold=settings.gift_reservation_threshold,
            min_admission_priority=settings.min_admission_priority,
        )

    @property
    def gift_eviction_count(self) -> int:
        return math.ceil(self.max_size * self.gift_eviction_fraction)

    def is_gift_event(self, event_type: str) -> bool:
        return event_type in self.gift_event_types

    async def evict_low_priority(self, limit: int) -> int:
        """Remove up to ``limit`` of the oldest evictable pending jobs."""
        return await self.store.evict_oldest(
            limit,
            protected_event_types=self.gift_event_types,
            below_priority=self.gift_reservation_threshold,
        )

    async def admit(self, event_type: str, priority: int) -> AdmissionDecision:
        current_size = await self.store.count_active()

        if current_size < self.max_size:
            return AdmissionDecision(accepted=True, current_size=current_size)

        if self.is_gift_event(event_type):
            evicted = await self.evict_low_priority(self.gift_eviction_count)
            self._log.info(
                f"Queue full, removed {evicted} non-gift events to make room for gift",
                extra={
                    "event_type": event_type,
                    "priority": priority,
                    "evicted": evicted,
                    "current_size": current_size,
                    "max_size": self.max_size,
                },
            )
            return AdmissionDecision(accepted=True, evicted=evicted, current_size=current_size)

        if priority < self.min_admission_priority:
            reason = (
                f"Queue is full ({current_size}/{self.max_size}) and event priority "
                f"{priority} is below {self.min_admission_priority}"
            )
            self._log.debug(
                reason,
                extra={"event_type": event_type, "priority": priority},
            )
            return AdmissionDecision(accepted=False, reason=reason, current_size=current_size)

        evicted = await self.evict_low_priority(1)
        self._log.info(
            f"Queue full, removed {evicted} low-priority events",
            extra={
                "event_type": event_type,
                "priority": priority,
                "evicted": evicted,
                "current_size": current_size,
                "max_size": self.max_size,
            },
        )
        return AdmissionDecision(accepted=True, evicted=evicted, current_size=current_size)
