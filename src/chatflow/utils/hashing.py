from __future__ import annotations

import hashlib
from typing import Dict, Sequence

from chatflow.llm.types import Message


def hash_text_short(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]


def messages_fingerprint(messages: Sequence[Message]) -> Dict[str, object]:
    """Log-safe summary of a thread: roles, sizes and a digest, never the text."""
    parts = [f"{m.role}:{m.content}:{m.tool_call_id or ''}" for m in messages]
    return {
        "count": len(messages),
        "total_chars": sum(len(m.content) for m in messages),
        "roles": [m.role for m in messages],
        "tool_calls": sum(len(m.tool_calls or ()) for m in messages),
        "digest": hash_text_short("|".join(parts)),
    }
