"""TLS client streams, a chainable TLS link layer, URL parsing and a WebSocket client."""

__version__ = "0.1.0"

__all__ = ["debug", "engine", "tls_link", "stream", "http", "websocket"]