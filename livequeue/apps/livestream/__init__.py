"""Live-stream demo: a simulated stream feeding a game server, then an overlay."""
