"""Real-time WebSocket services on Starlette with Redis Pub/Sub fan-out, token authentication and request coalescing."""

__version__ = "0.1.0"