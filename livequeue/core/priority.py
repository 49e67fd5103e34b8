"""Priority resolution with per-consumer and per-gift overrides.

Resolution order, first match wins:

1. Gift-like event with a consumer gift profile: exact gift name
   (case-insensitive), then exact gift id, then the first cost range in
   ascending ``min`` order that contains the gift cost.
2. The consumer's default override for the event type.
3. The global default table, falling back to ``default_priority``.

Profiles are validated once at registration. The profile table is an
immutable mapping replaced wholesale on every registration, so a
resolution never observes a half-applied update.
"""

from collections.abc import Iterable, Mapping
from numbers import Real
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from livequeue.core.job import MAX_PRIORITY, MIN_PRIORITY
from livequeue.core.logging import get_logger

DEFAULT_PRIORITIES: Mapping[str, int] = MappingProxyType(
    {
        "gift": 100,
        "donation": 100,
        "follow": 50,
        "share": 15,
        "chat": 10,
        "like": 5,
        "viewerCount": 1,
    }
)

DEFAULT_PRIORITY = 0

DEFAULT_GIFT_EVENT_TYPES: frozenset[str] = frozenset({"gift", "donation"})

_log = get_logger("livequeue.priority")


def _check_priority(value: int) -> int:
    if not MIN_PRIORITY <= value <= MAX_PRIORITY:
        raise ValueError(f"priority must be within {MIN_PRIORITY}..{MAX_PRIORITY}, got {value}")
    return value


class CostRange(BaseModel):
    """Inclusive ``[min, max]`` gift cost band; ``max=None`` is open-ended."""

    min: float = Field(ge=0)
    max: float | None = None
    priority: int = Field(ge=MIN_PRIORITY, le=MAX_PRIORITY)

    model_config = {"extra": "forbid", "frozen": True}

    @model_validator(mode="after")
    def validate_bounds(self) -> "CostRange":
        if self.max is not None and self.max < self.min:
            raise ValueError(f"cost range max ({self.max}) is below min ({self.min})")
        return self

    def contains(self, cost: float) -> bool:
        return cost >= self.min and (self.max is None or cost <= self.max)


class GiftOverrides(BaseModel):
    """Gift-specific priority rules for one consumer."""

    by_name: dict[str, int] = Field(default_factory=dict, alias="byName")
    by_id: dict[str, int] = Field(default_factory=dict, alias="byId")
    by_cost_range: tuple[CostRange, ...] = Field(default=(), alias="byCostRange")

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    @field_validator("by_name", mode="before")
    @classmethod
    def normalize_names(cls, v: Any) -> Any:
        if isinstance(v, Mapping):
            return {str(name).strip().lower(): priority for name, priority in v.items()}
        return v

    @field_validator("by_id", mode="before")
    @classmethod
    def normalize_ids(cls, v: Any) -> Any:
        if isinstance(v, Mapping):
            return {str(gift_id): priority for gift_id, priority in v.items()}
        return v

    @field_validator("by_name", "by_id")
    @classmethod
    def validate_priorities(cls, v: dict[str, int]) -> dict[str, int]:
        for priority in v.values():
            _check_priority(priority)
        return v

    @field_validator("by_cost_range")
    @classmethod
    def sort_ranges(cls, v: tuple[CostRange, ...]) -> tuple[CostRange, ...]:
        # Stable: ranges sharing a min keep declaration order
        return tuple(sorted(v, key=lambda r: r.min))

    def match(self, payload: Mapping[str, Any]) -> int | None:
        """Return the override for the gift described by ``payload``, if any."""
        name = payload.get("giftName")
        if isinstance(name, str) and name.strip().lower() in self.by_name:
            return self.by_name[name.strip().lower()]

        gift_id = payload.get("giftId")
        if gift_id is not None and str(gift_id) in self.by_id:
            return self.by_id[str(gift_id)]

        cost = payload.get("cost", payload.get("diamondCount"))
        if isinstance(cost, Real) and not isinstance(cost, bool):
            for cost_range in self.by_cost_range:
                if cost_range.contains(float(cost)):
                    return cost_range.priority
        return None


class PriorityProfile(BaseModel):
    """Per-consumer priority overrides."""

    default_overrides: dict[str, int] = Field(default_factory=dict, alias="defaultOverrides")
    gift_overrides: GiftOverrides | None = Field(default=None, alias="giftOverrides")

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    @field_validator("default_overrides")
    @classmethod
    def validate_overrides(cls, v: dict[str, int]) -> dict[str, int]:
        for priority in v.values():
            _check_priority(priority)
        return v


class PriorityResolver:
    """Maps (event type, consumer id, payload) to an integer priority."""

    def __init__(
        self,
        default_priorities: Mapping[str, int] | None = None,
        default_priority: int = DEFAULT_PRIORITY,
        gift_event_types: Iterable[str] | None = None,
    ) -> None:
        table = dict(DEFAULT_PRIORITIES if default_priorities is None else default_priorities)
        for priority in table.values():
            _check_priority(priority)
        self._defaults: Mapping[str, int] = MappingProxyType(table)
        self.default_priority = _check_priority(default_priority)
        self.gift_event_types: frozenset[str] = frozenset(
            DEFAULT_GIFT_EVENT_TYPES if gift_event_types is None else gift_event_types
        )
        self._profiles: Mapping[str, PriorityProfile] = MappingProxyType({})

    @property
    def default_priorities(self) -> Mapping[str, int]:
        return self._defaults

    @property
    def profiles(self) -> Mapping[str, PriorityProfile]:
        return self._profiles

    def is_gift_event(self, event_type: str) -> bool:
        return event_type in self.gift_event_types

    def register_profile(
        self,
        consumer_id: str,
        default_overrides: PriorityProfile | Mapping[str, int] | None = None,
        gift_overrides: GiftOverrides | Mapping[str, Any] | None = None,
    ) -> PriorityProfile:
        """Create or replace the profile for ``consumer_id``.

        Accepts either a ready ``PriorityProfile`` or the raw override
        tables. Raises ``pydantic.ValidationError`` on invalid rules.
        """
        if isinstance(default_overrides, PriorityProfile):
            profile = default_overrides
        else:
            profile = PriorityProfile(
                default_overrides=dict(default_overrides or {}),
                gift_overrides=gift_overrides,
            )

        profiles = dict(self._profiles)
        profiles[consumer_id] = profile
        self._profiles = MappingProxyType(profiles)

        _log.info(
            f"Registered priority profile for {consumer_id}",
            extra={
                "consumer_id": consumer_id,
                "default_overrides": len(profile.default_overrides),
                "gift_overrides": profile.gift_overrides is not None,
            },
        )
        return profile

    def clear_profile(self, consumer_id: str) -> bool:
        if consumer_id not in self._profiles:
            return False
        profiles = dict(self._profiles)
        del profiles[consumer_id]
        self._profiles = MappingProxyType(profiles)
        _log.info(f"Cleared priority profile for {consumer_id}", extra={"consumer_id": consumer_id})
        return True

    def get_profile(self, consumer_id: str | None) -> PriorityProfile | None:
        if consumer_id is None:
            return None
        return self._profiles.get(consumer_id)

    def global_priority(self, event_type: str) -> int:
        return self._defaults.get(event_type, self.default_priority)

    def resolve(
        self,
        event_type: str,
        consumer_id: str | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> int:
        """Resolve the priority for an event. Pure with respect to its inputs."""
        profile = self.get_profile(consumer_id)

        if profile is not None:
            if profile.gift_overrides is not None and self.is_gift_event(event_type):
                matched = profile.gift_overrides.match(payload or {})
                if matched is not None:
                    return matched
            if event_type in profile.default_overrides:
                return profile.default_overrides[event_type]

        return self.global_priority(event_type)
