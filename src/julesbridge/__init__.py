"""JulesBridge — a chat front-end for Jules coding sessions."""

__version__ = "0.1.0"
