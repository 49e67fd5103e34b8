"""Overlay consumer: renders alerts on the stream overlay."""

from collections.abc import Callable, Mapping
from typing import Any

from livequeue.core.consumer import Consumer, Handler
from livequeue.core.priority import CostRange, GiftOverrides, PriorityProfile


class Overlay(Consumer):
    """Browser overlay that shows an alert per event.

    Cheap gifts are demoted below follows, expensive ones jump ahead of
    everything else, and the "Lion" gift always gets top billing.
    """

    consumer_id = "overlay"
    priority_profile = PriorityProfile(
        default_overrides={"follow": 80},
        gift_overrides=GiftOverrides(
            by_name={"Lion": 500},
            by_cost_range=(
                CostRange(min=0, max=9, priority=60),
                CostRange(min=10, max=None, priority=300),
            ),
        ),
    )

    def __init__(
        self,
        consumer_id: str | None = None,
        output_callback: Callable[[str], Any] | None = None,
    ) -> None:
        super().__init__(consumer_id)
        self._output_callback = output_callback or print
        self.alerts: list[str] = []

    def handlers(self) -> Mapping[str, Handler]:
        return {
            "gift": self.on_gift,
            "donation": self.on_gift,
            "follow": self.on_follow,
            "chat": self.on_chat,
        }

    def _show(self, alert: str) -> None:
        self.alerts.append(alert)
        self._output_callback(f"[overlay] {alert}")

    async def on_gift(self, payload: dict[str, Any]) -> None:
        self._show(f"{payload.get('user', 'someone')} sent {payload.get('giftName', 'a gift')}")

    async def on_follow(self, payload: dict[str, Any]) -> None:
        self._show(f"{payload.get('user', 'someone')} followed")

    async def on_chat(self, payload: dict[str, Any]) -> None:
        self._show(f"{payload.get('user', 'someone')}: {payload.get('comment', '')}")
