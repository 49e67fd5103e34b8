"""GameServer consumer: turns stream events into avatar commands."""

import asyncio
from collections.abc import Callable, Mapping
from typing import Any

from livequeue.core.consumer import Consumer, Handler
from livequeue.core.errors import SkipJob
from livequeue.core.logging import get_logger
from livequeue.core.priority import PriorityProfile

_log = get_logger("livequeue.apps.game_server")


class GameServer(Consumer):
    """Simulated game server that makes an avatar dance for viewers.

    Gift streaks arrive as one event per repeat; only the final event of a
    streak (``repeatEnd`` true) is worth a dance, so the others are skipped
    by the admission predicate. Chat is skipped while the avatar is busy.
    """

    consumer_id = "game-server"
    priority_profile = PriorityProfile(default_overrides={"chat": 40, "like": 2})

    def __init__(
        self,
        consumer_id: str | None = None,
        dance_seconds: float = 0.01,
        output_callback: Callable[[str], Any] | None = None,
    ) -> None:
        super().__init__(consumer_id)
        self.dance_seconds = dance_seconds
        self._output_callback = output_callback or print
        self.busy = False
        self.commands: list[str] = []
        self.viewers = 0

    def handlers(self) -> Mapping[str, Handler]:
        return {
            "gift": self.on_gift,
            "donation": self.on_gift,
            "chat": self.on_chat,
            "follow": self.on_follow,
            "like": self.on_like,
            "share": self.on_share,
            "viewerCount": self.on_viewer_count,
        }

    def should_process(self, event_type: str, payload: dict[str, Any]) -> bool:
        if event_type in ("gift", "donation"):
            return payload.get("repeatEnd", True) is not False
        return True

    def _finish(self) -> None:
        self.busy = False

    async def _perform(self, command: str) -> None:
        # The avatar keeps dancing after the command is sent
        self.commands.append(command)
        self._output_callback(f"[game] {command}")
        if self.dance_seconds > 0:
            self.busy = True
            asyncio.get_running_loop().call_later(self.dance_seconds, self._finish)

    async def on_gift(self, payload: dict[str, Any]) -> None:
        user = payload.get("user", "someone")
        gift = payload.get("giftName", "gift")
        count = payload.get("repeatCount", 1)
        await self._perform(f"dance for {user} ({count}x {gift})")

    async def on_chat(self, payload: dict[str, Any]) -> None:
        if self.busy:
            raise SkipJob("avatar is busy")
        await self._perform(f"say {payload.get('user', 'someone')}: {payload.get('comment', '')}")

    async def on_follow(self, payload: dict[str, Any]) -> None:
        await self._perform(f"wave at {payload.get('user', 'someone')}")

    async def on_like(self, payload: dict[str, Any]) -> None:
        await self._perform(f"thumbs up x{payload.get('likeCount', 1)}")

    async def on_share(self, payload: dict[str, Any]) -> None:
        await self._perform(f"bow to {payload.get('user', 'someone')}")

    async def on_viewer_count(self, payload: dict[str, Any]) -> None:
        self.viewers = int(payload.get("viewerCount", 0))
        _log.debug(f"Viewer count is {self.viewers}", extra={"viewers": self.viewers})
