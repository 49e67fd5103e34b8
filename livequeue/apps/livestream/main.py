"""Live-stream demo application entrypoint.

A simulated stream produces gifts, chat, follows and likes. The game server
consumer handles the first half of the stream; the overlay consumer takes
over mid-stream through a consumer swap:

    producer → QueueManager.enqueue → store → JobProcessor → consumer

Usage:
    python -m livequeue.apps.livestream.main
    python -m livequeue.apps.livestream.main --redis --quiet
"""

import argparse
import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from livequeue.apps.livestream.consumers import GameServer, Overlay
from livequeue.core.config import QueueSettings
from livequeue.core.manager import HealthReport, QueueManager
from livequeue.core.priority import PriorityResolver
from livequeue.core.processor import JobProcessor, ProcessorStats
from livequeue.stores.base import JobStore
from livequeue.stores.memory import InMemoryJobStore
from livequeue.stores.redis_store import RedisJobStore

StreamEvent = tuple[str, dict[str, Any]]

GAME_SEGMENT: list[StreamEvent] = [
    ("viewerCount", {"viewerCount": 42}),
    ("chat", {"user": "ana", "comment": "hi!"}),
    ("gift", {"user": "bo", "giftName": "Rose", "giftId": 5655, "repeatCount": 1, "repeatEnd": False}),
    ("gift", {"user": "bo", "giftName": "Rose", "giftId": 5655, "repeatCount": 2, "repeatEnd": False}),
    ("gift", {"user": "bo", "giftName": "Rose", "giftId": 5655, "repeatCount": 3, "repeatEnd": True}),
    ("follow", {"user": "cy"}),
    ("like", {"user": "di", "likeCount": 15}),
    ("chat", {"user": "ed", "comment": "dance!"}),
]

OVERLAY_SEGMENT: list[StreamEvent] = [
    ("chat", {"user": "fi", "comment": "new scene"}),
    ("gift", {"user": "gu", "giftName": "Rose", "cost": 1}),
    ("follow", {"user": "ha"}),
    ("gift", {"user": "io", "giftName": "Lion", "cost": 29999}),
    ("donation", {"user": "jo", "giftName": "Galaxy", "cost": 1000}),
]


@dataclass
class LivestreamResult:
    stats: ProcessorStats
    commands: list[str] = field(default_factory=list)
    alerts: list[str] = field(default_factory=list)
    health: HealthReport | None = None


async def wait_until_drained(
    manager: QueueManager, poll_interval: float = 0.01, timeout: float = 10.0
) -> None:
    """Wait until no job is pending or processing."""
    async with asyncio.timeout(timeout):
        while await manager.store.count_active() > 0:
            await asyncio.sleep(poll_interval)


def demo_settings() -> QueueSettings:
    """Settings tuned for a stream that drains in well under a second."""
    return QueueSettings(idle_timeout=0.2, base_retry_delay=0.05)


async def run_livestream(
    game_segment: Sequence[StreamEvent] = GAME_SEGMENT,
    overlay_segment: Sequence[StreamEvent] = OVERLAY_SEGMENT,
    settings: QueueSettings | None = None,
    output_callback: Callable[[str], Any] | None = None,
    store: JobStore | None = None,
) -> LivestreamResult:
    """Stream both segments through one processor, swapping consumers in between.

    Runs on an in-memory store unless ``store`` is given.
    """
    settings = settings or demo_settings()
    if store is None:
        store = InMemoryJobStore(max_log_entries=settings.max_log_entries)
    resolver = PriorityResolver(gift_event_types=settings.gift_event_types)
    manager = QueueManager.from_settings(store, settings, resolver=resolver)

    game = GameServer(output_callback=output_callback)
    overlay = Overlay(output_callback=output_callback)

    processor = JobProcessor.from_settings(
        store, settings, handlers=game, resolver=resolver, name="stream"
    )
    manager.register_processor(processor)
    processor.start()

    try:
        for event_type, payload in game_segment:
            await manager.enqueue(event_type, payload)
        await wait_until_drained(manager)

        processor.swap_active_consumer(overlay)
        for event_type, payload in overlay_segment:
            await manager.enqueue(event_type, payload)
        await wait_until_drained(manager)
    finally:
        stats = await processor.shutdown()

    return LivestreamResult(
        stats=stats,
        commands=list(game.commands),
        alerts=list(overlay.alerts),
        health=await manager.get_health_status(),
    )


async def run_demo(use_redis: bool = False, quiet: bool = False) -> LivestreamResult:
    settings = demo_settings()
    output_callback = (lambda line: None) if quiet else None
    if not use_redis:
        return await run_livestream(settings=settings, output_callback=output_callback)

    store = RedisJobStore(
        redis_url=settings.redis_url,
        key_prefix=f"{settings.key_prefix}:demo",
        max_log_entries=settings.max_log_entries,
    )
    try:
        await store.drop()
        return await run_livestream(
            settings=settings, output_callback=output_callback, store=store
        )
    finally:
        await store.close()


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point for the live-stream demo."""
    parser = argparse.ArgumentParser(description="Live-stream event queue demo")
    parser.add_argument(
        "--redis", action="store_true", help="Use the Redis store at LIVEQUEUE_REDIS_URL"
    )
    parser.add_argument("--quiet", action="store_true", help="Only print the summary")
    args = parser.parse_args(argv)

    print("Starting live-stream demo\n")
    result = asyncio.run(run_demo(use_redis=args.redis, quiet=args.quiet))
    print(
        f"\nStream complete: {result.stats.jobs_processed} jobs processed, "
        f"{result.stats.jobs_skipped} skipped, health {result.health.status.value}"
    )


if __name__ == "__main__":
    main()
