"""Memory relay: long-term conversation memory in front of a chat-completion service."""

__version__ = "0.1.0"
