"""Handler sets and the Consumer base class.

A consumer is a downstream service (game server, overlay, TTS, ...) that
owns one handler per event type, an optional admission predicate and an
optional priority profile. Processors hold exactly one ``HandlerSet`` at
a time and replace it wholesale on a consumer swap.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, ClassVar

from livequeue.core.priority import PriorityProfile

# A handler receives the job payload. Raising or returning a SkipJob takes the
# skip path; raising or returning any other exception is a transient failure.
# Other return values are ignored.
Handler = Callable[[dict[str, Any]], Any | Awaitable[Any]]

# Returns False (or raises SkipJob) to skip a job without invoking its handler.
AdmissionPredicate = Callable[[str, dict[str, Any]], bool]


@dataclass(frozen=True)
class HandlerSet:
    """Immutable bundle of everything a processor needs from its consumer.

    Attributes:
        consumer_id: Identifies the consumer and its priority profile.
        handlers: Read-only mapping of event type to handler.
        should_process: Optional admission predicate run before the handler.
        profile: Priority overrides registered when the set becomes active.
    """

    consumer_id: str | None = None
    handlers: Mapping[str, Handler] = field(default_factory=lambda: MappingProxyType({}))
    should_process: AdmissionPredicate | None = None
    profile: PriorityProfile | None = None

    def __post_init__(self) -> None:
        for event_type, handler in self.handlers.items():
            if not isinstance(event_type, str) or not event_type:
                raise TypeError(f"handler keys must be non-empty strings, got {event_type!r}")
            if not callable(handler):
                raise TypeError(
                    f"handler for {event_type!r} must be callable, got {type(handler).__name__}"
                )
        object.__setattr__(self, "handlers", MappingProxyType(dict(self.handlers)))

    def get_handler(self, event_type: str) -> Handler | None:
        return self.handlers.get(event_type)

    def with_handler(self, event_type: str, handler: Handler) -> "HandlerSet":
        """Return a copy with ``handler`` registered for ``event_type``."""
        handlers = dict(self.handlers)
        handlers[event_type] = handler
        return replace(self, handlers=handlers)

    def without_handler(self, event_type: str) -> "HandlerSet":
        handlers = dict(self.handlers)
        handlers.pop(event_type, None)
        return replace(self, handlers=handlers)

    @property
    def event_types(self) -> list[str]:
        return sorted(self.handlers)


class Consumer(ABC):
    """Base class for downstream services fed by a JobProcessor.

    Subclasses declare their handled event types by returning handlers from
    ``handlers()``. ``should_process`` defaults to accepting everything.

    Class attributes:
        consumer_id: Defaults to the class name.
        priority_profile: Optional overrides applied while the consumer is active.
    """

    consumer_id: ClassVar[str | None] = None
    priority_profile: ClassVar[PriorityProfile | None] = None

    def __init__(self, consumer_id: str | None = None) -> None:
        self.consumer_id = consumer_id or self.consumer_id or self.__class__.__name__

    @abstractmethod
    def handlers(self) -> Mapping[str, Handler]:
        """Return the mapping of event type to handler."""
        ...

    def should_process(self, event_type: str, payload: dict[str, Any]) -> bool:
        return True

    def handler_set(self) -> HandlerSet:
        return HandlerSet(
            consumer_id=self.consumer_id,
            handlers=self.handlers(),
            should_process=self.should_process,
            profile=self.priority_profile,
        )
