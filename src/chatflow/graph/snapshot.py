from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field


class SnapshotNotFound(LookupError):
    code = "snapshot_not_found"


class MessageRecord(BaseModel):
    role: str
    content: str = ""
    name: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None


class EdgeRecord(BaseModel):
    from_id: str
    to_id: str
    label: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConditionalEdgeRecord(BaseModel):
    """A conditional edge without its function; `condition_key` names it instead."""

    from_id: str
    to_ids: List[str] = Field(default_factory=list)
    label: Optional[str] = None
    condition_key: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ToolRecord(BaseModel):
    name: str
    description: Optional[str] = None


class NodeRecord(BaseModel):
    id: str
    type: Optional[str] = None
    description: Optional[str] = None
    edges: List[EdgeRecord] = Field(default_factory=list)
    conditional_edges: List[ConditionalEdgeRecord] = Field(default_factory=list)
    model: Optional[str] = None
    role: Optional[str] = None
    tools: List[ToolRecord] = Field(default_factory=list)
    instructions: Optional[List[MessageRecord]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    visited: int = 0


class GraphSnapshot(BaseModel):
    id: str
    name: Optional[str] = None
    thread_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    messages: List[MessageRecord] = Field(default_factory=list)
    nodes: List[NodeRecord] = Field(default_factory=list)


class GraphStore(Protocol):
    async def load(self, graph_id: str) -> GraphSnapshot:
        ...

    async def save(self, snapshot: GraphSnapshot) -> None:
        ...


class InMemoryGraphStore:
    def __init__(self, snapshots: Optional[List[GraphSnapshot]] = None):
        self._snapshots: Dict[str, GraphSnapshot] = {}
        for snapshot in snapshots or []:
            self._snapshots[snapshot.id] = snapshot

    async def load(self, graph_id: str) -> GraphSnapshot:
        snapshot = self._snapshots.get(graph_id)
        if snapshot is None:
            raise SnapshotNotFound(f"Graph snapshot not found: {graph_id}")
        return snapshot.model_copy(deep=True)

    async def save(self, snapshot: GraphSnapshot) -> None:
        self._snapshots[snapshot.id] = snapshot.model_copy(deep=True)


_SAFE_ID = re.compile(r"^[A-Za-z0-9_.\-]+$")


class JsonFileGraphStore:
    """One `<graph_id>.json` file per snapshot under `base_dir`."""

    def __init__(self, base_dir: Path | str):
        self.base_dir = Path(base_dir)

    def _path(self, graph_id: str) -> Path:
        if not _SAFE_ID.match(graph_id) or graph_id.startswith("."):
            raise SnapshotNotFound(f"Invalid graph id: {graph_id!r}")
        return self.base_dir / f"{graph_id}.json"

    async def load(self, graph_id: str) -> GraphSnapshot:
        path = self._path(graph_id)
        if not path.is_file():
            raise SnapshotNotFound(f"Graph snapshot not found: {graph_id}")
        text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return GraphSnapshot.model_validate_json(text)

    async def save(self, snapshot: GraphSnapshot) -> None:
        path = self._path(snapshot.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        await asyncio.to_thread(tmp_path.write_text, snapshot.model_dump_json(indent=2), encoding="utf-8")
        tmp_path.replace(path)
        logging.getLogger(__name__).info(
            json.dumps(
                {"event": "graph_snapshot_saved", "graph_id": snapshot.id, "nodes": len(snapshot.nodes)},
                ensure_ascii=False,
            )
        )
