from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from chatflow.config import Settings, get_settings
from chatflow.graph import ActionRegistry, Graph, GraphStore, JsonFileGraphStore
from chatflow.llm.client import CompletionClient, CompletionModel
from chatflow.llm.openai_provider import OpenAIProvider
from chatflow.secrets import get_secret
from chatflow.tools.redirect import register_redirect
from chatflow.transport import LoggingReplySender, ReplySender


@dataclass
class AppDeps:
    settings: Settings
    store: GraphStore
    llm: Optional[CompletionModel]
    tool_actions: ActionRegistry
    sender: ReplySender

    def new_graph(self) -> Graph:
        return Graph(
            llm=self.llm,
            tool_actions=self.tool_actions,
            default_model=self.settings.default_model,
        )


def build_deps(settings: Settings, *, sender: ReplySender | None = None) -> AppDeps:
    logger = logging.getLogger(__name__)
    sender = sender or LoggingReplySender()

    api_key = get_secret("OPENAI_API_KEY")
    llm = None
    if api_key:
        llm = CompletionClient(
            provider=OpenAIProvider(api_key=api_key),
            default_model=settings.default_model,
            debug_logging=settings.debug_logging,
        )
    else:
        logger.warning(json.dumps({"event": "llm_not_configured"}, ensure_ascii=False))

    tool_actions = ActionRegistry()
    notify_chat_id = get_secret("REDIRECT_NOTIFY_CHAT_ID")
    if notify_chat_id:
        register_redirect(tool_actions, sender, notify_chat_id=notify_chat_id, public_name=settings.public_name)

    return AppDeps(
        settings=settings,
        store=JsonFileGraphStore(settings.graphs_dir),
        llm=llm,
        tool_actions=tool_actions,
        sender=sender,
    )


@lru_cache
def get_deps() -> AppDeps:
    return build_deps(get_settings())
