import argparse
import asyncio
import json
import logging
from pathlib import Path

from chatflow.api.deps import build_deps
from chatflow.config import get_settings
from chatflow.graph import GraphSnapshot


def load_snapshot(path: Path) -> GraphSnapshot:
    return GraphSnapshot.model_validate_json(path.read_text(encoding="utf-8"))


async def run(args) -> dict:
    settings = get_settings()
    deps = build_deps(settings)
    graph = deps.new_graph().restore(load_snapshot(Path(args.snapshot))).compile()

    events = []
    if args.stream:
        graph.on_state_change(lambda snap: events.append(snap["current_node_id"]))
        await graph.stream_events(
            prompt={"role": "user", "content": args.text},
            thread_id=args.thread_id,
            max_iterations=args.max_iterations or settings.max_iterations,
            node_timeout_s=settings.node_timeout_s,
        )
        result = None
    else:
        result = await graph.invoke(
            prompt={"role": "user", "content": args.text},
            thread_id=args.thread_id,
            max_iterations=args.max_iterations or settings.max_iterations,
            node_timeout_s=settings.node_timeout_s,
        )

    out = {
        "graph_id": graph.state.id,
        "termination": graph.state.termination.value if graph.state.termination else None,
        "visited": {n.id: n.visited for n in graph.get_graph_nodes() if n.visited},
        "messages": [m.to_dict() for m in graph.state.messages],
    }
    if result is not None:
        out["output"] = result.output
        out["errors"] = result.errors
    if events:
        out["events"] = events
    if args.save:
        await graph.save(deps.store)
    return out


async def main():
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    parser = argparse.ArgumentParser(description="Run a stored graph snapshot against one user message.")
    parser.add_argument("snapshot", type=str, help="path to a graph snapshot json file")
    parser.add_argument("--text", type=str, default="Hi! I'd like to talk to someone from the team.")
    parser.add_argument("--thread-id", type=str, default="cli-thread")
    parser.add_argument("--max-iterations", type=int, default=0)
    parser.add_argument("--stream", action="store_true", help="print the node id of every state event")
    parser.add_argument("--save", action="store_true", help="persist the graph to the configured data dir")
    args = parser.parse_args()

    out = await run(args)
    print(json.dumps(out, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    asyncio.run(main())
