"""Consumers for the live-stream demo application."""

from livequeue.apps.livestream.consumers.game_server import GameServer
from livequeue.apps.livestream.consumers.overlay import Overlay

__all__ = ["GameServer", "Overlay"]
