from __future__ import annotations

import json
import logging
from typing import List, Protocol, Tuple


class ReplySender(Protocol):
    """Outbound side of the messaging transport (chat network connector)."""

    async def send_message(self, chat_id: str, text: str) -> None:
        ...


class LoggingReplySender:
    """Sender used when no transport is wired: logs instead of sending."""

    async def send_message(self, chat_id: str, text: str) -> None:
        logging.getLogger(__name__).info(
            json.dumps({"event": "reply_not_sent", "chat_id": chat_id, "chars": len(text)}, ensure_ascii=False)
        )


class RecordingReplySender:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, str]] = []

    async def send_message(self, chat_id: str, text: str) -> None:
        self.sent.append((chat_id, text))
