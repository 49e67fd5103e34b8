"""Tests for HandlerSet and the Consumer base class."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from livequeue.apps.livestream.consumers import GameServer, Overlay
from livequeue.core.consumer import Consumer, HandlerSet
from livequeue.core.priority import PriorityResolver

# Strategy for generating valid class names (Python identifier style)
valid_class_names = st.from_regex(r"[A-Z][A-Za-z0-9_]{0,30}", fullmatch=True)


def create_consumer_class(class_name: str) -> type[Consumer]:
    """Dynamically create a Consumer subclass with the given name."""

    def handlers(self):
        return {"chat": lambda payload: None}

    return type(class_name, (Consumer,), {"handlers": handlers})


@given(class_name=valid_class_names)
def test_consumer_id_defaults_to_class_name(class_name: str):
    consumer = create_consumer_class(class_name)()
    assert consumer.consumer_id == class_name
    assert consumer.handler_set().consumer_id == class_name


def test_explicit_consumer_id_wins():
    assert GameServer(consumer_id="stage-left").consumer_id == "stage-left"
    assert GameServer().consumer_id == "game-server"


class TestHandlerSet:
    def test_handlers_are_read_only(self):
        handlers = {"chat": lambda p: None}
        handler_set = HandlerSet(consumer_id="game", handlers=handlers)

        handlers["gift"] = lambda p: None

        assert handler_set.event_types == ["chat"]
        with pytest.raises(TypeError):
            handler_set.handlers["gift"] = lambda p: None

    def test_copy_on_write(self):
        original = HandlerSet(handlers={"chat": lambda p: None})

        added = original.with_handler("gift", lambda p: None)
        removed = added.without_handler("chat")

        assert original.event_types == ["chat"]
        assert added.event_types == ["chat", "gift"]
        assert removed.event_types == ["gift"]
        assert removed.get_handler("chat") is None

    @pytest.mark.parametrize("handlers", [{"": lambda p: None}, {"chat": "not callable"}])
    def test_invalid_handlers_rejected(self, handlers):
        with pytest.raises(TypeError):
            HandlerSet(handlers=handlers)


class TestLivestreamConsumers:
    def test_game_server_skips_streak_in_progress(self):
        game = GameServer()
        assert not game.should_process("gift", {"repeatEnd": False})
        assert game.should_process("gift", {"repeatEnd": True})
        assert game.should_process("gift", {})
        assert game.should_process("chat", {"repeatEnd": False})

    def test_game_server_handler_set(self):
        handler_set = GameServer().handler_set()
        assert "viewerCount" in handler_set.event_types
        assert handler_set.should_process is not None
        assert handler_set.profile.default_overrides["chat"] == 40

    def test_overlay_profile_priorities(self):
        resolver = PriorityResolver()
        resolver.register_profile("overlay", Overlay.priority_profile)

        assert resolver.resolve("gift", "overlay", {"giftName": "Lion", "cost": 1}) == 500
        assert resolver.resolve("gift", "overlay", {"giftName": "Rose", "cost": 1}) == 60
        assert resolver.resolve("gift", "overlay", {"giftName": "Galaxy", "cost": 1000}) == 300
        assert resolver.resolve("follow", "overlay") == 80
        assert resolver.resolve("follow") == 50
