"""Parley: real-time chat session and message-delivery service."""

__version__ = "0.1.0"
