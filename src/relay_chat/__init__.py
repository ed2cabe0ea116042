"""Real-time one-to-one chat: presence tracking and live message delivery."""

__version__ = "0.1.0"
