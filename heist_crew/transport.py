"""Outbound chat delivery."""
from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class ChatTransport(Protocol):
    def send(self, room_id: str, text: str) -> None:
        ...


class LoggingTransport:
    """Fallback used when no chat client is wired in."""

    def send(self, room_id: str, text: str) -> None:
        logger.info("[%s] %s", room_id, text)


__all__ = ["ChatTransport", "LoggingTransport"]
