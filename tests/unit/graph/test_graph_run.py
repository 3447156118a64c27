import asyncio

import pytest

from chatflow.graph import (
    END_NODE_ID,
    START_NODE_ID,
    Graph,
    MissingEntryNodeError,
    Termination,
    UnknownNodeError,
)


def chain(graph: Graph, *ids: str) -> Graph:
    path = [START_NODE_ID, *ids, END_NODE_ID]
    for from_id, to_id in zip(path, path[1:]):
        graph.add_edge(from_id, to_id)
    return graph


@pytest.mark.asyncio
async def test_model_node_answer_becomes_output():
    from tests.conftest import ScriptedLLM

    llm = ScriptedLLM(replies=["hello"])
    graph = Graph(llm=llm)
    graph.add_node("A", type="completion.model")
    chain(graph, "A").compile()

    out = await graph.run(prompt={"role": "user", "content": "hi"}, thread_id="t-1")

    assert out == "hello"
    assert [m.to_dict() for m in graph.state.messages] == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]
    sent = [m.to_dict() for m in llm.calls[0]["messages"]]
    assert sent[0] == {"role": "system", "content": "You are a helpful assistant."}
    assert sent[-1] == {"role": "user", "content": "hi"}
    assert llm.calls[0]["metadata"]["thread_id"] == "t-1"
    assert graph.state.active is False


@pytest.mark.asyncio
async def test_seed_messages_replace_transcript_and_prompt_is_appended():
    from tests.conftest import ScriptedLLM

    graph = Graph(llm=ScriptedLLM(replies=["second answer"]))
    graph.add_node("A", type="completion.model")
    chain(graph, "A").compile()

    result = await graph.invoke(
        [{"role": "user", "content": "q1"}, {"role": "assistant", "content": "a1"}],
        prompt={"role": "user", "content": "q2"},
    )

    assert result.output == "second answer"
    assert [m.content for m in graph.state.messages] == ["q1", "a1", "q2", "second answer"]


@pytest.mark.asyncio
async def test_reaching_end_terminates_regardless_of_budget():
    graph = Graph()
    graph.add_node("A")
    chain(graph, "A").compile()

    result = await graph.invoke(max_iterations=100)

    assert result.termination == Termination.END
    assert result.completed is True
    assert result.iterations == 2
    assert graph.get_node(END_NODE_ID).visited == 1


@pytest.mark.asyncio
async def test_self_cycle_stops_at_iteration_cap():
    graph = Graph()
    graph.add_node("A")
    graph.add_edge(START_NODE_ID, "A").add_edge("A", "A")
    graph.compile()

    result = await graph.invoke()

    assert result.termination == Termination.MAX_ITERATIONS
    assert result.completed is False
    total_visits = sum(n.visited for n in graph.get_graph_nodes())
    assert total_visits == 6
    assert graph.get_node("A").visited == 5
    assert graph.get_node(END_NODE_ID).visited == 0


@pytest.mark.asyncio
async def test_custom_iteration_cap():
    graph = Graph()
    graph.add_node("A")
    graph.add_edge(START_NODE_ID, "A").add_edge("A", "A")

    result = await graph.invoke(max_iterations=3)
    assert result.termination == Termination.MAX_ITERATIONS
    assert sum(n.visited for n in graph.get_graph_nodes()) == 3


@pytest.mark.asyncio
async def test_node_without_route_ends_run():
    graph = Graph()
    graph.add_node("A")
    graph.add_edge(START_NODE_ID, "A")

    result = await graph.invoke()
    assert result.termination == Termination.NO_ROUTE
    assert graph.state.current_node_id is None


@pytest.mark.asyncio
async def test_conditional_edges_are_tried_before_unconditional():
    graph = Graph()
    graph.add_node("A").add_node("B").add_node("C")
    graph.add_edge(START_NODE_ID, "A")
    graph.add_conditional_edge("A", ["B"], lambda state, node: "not-a-node")
    graph.add_conditional_edge("A", ["B"], lambda state, node: "B")
    graph.add_edge("A", "C")
    graph.add_edge("B", END_NODE_ID).add_edge("C", END_NODE_ID)
    graph.compile()

    await graph.run()

    assert graph.get_node("B").visited == 1
    assert graph.get_node("C").visited == 0


@pytest.mark.asyncio
async def test_async_condition_returning_nothing_falls_back_to_edge():
    async def no_choice(state, node):  # noqa: ARG001
        return None

    graph = Graph()
    graph.add_node("A").add_node("C")
    graph.add_edge(START_NODE_ID, "A")
    graph.add_conditional_edge("A", ["C"], no_choice)
    graph.add_edge("A", "C").add_edge("C", END_NODE_ID)

    result = await graph.invoke()
    assert result.termination == Termination.END
    assert graph.get_node("C").visited == 1


@pytest.mark.asyncio
async def test_raising_condition_routes_to_end():
    def broken(state, node):  # noqa: ARG001
        raise RuntimeError("boom")

    graph = Graph()
    graph.add_node("A").add_node("B")
    graph.add_edge(START_NODE_ID, "A")
    graph.add_conditional_edge("A", ["B"], broken)
    graph.add_edge("A", "B")

    result = await graph.invoke()
    assert result.termination == Termination.END
    assert graph.get_node("B").visited == 0


@pytest.mark.asyncio
async def test_failing_node_is_recorded_and_run_continues():
    async def explode(state, node):  # noqa: ARG001
        raise ValueError("node exploded")

    graph = Graph()
    graph.add_node("A", action=explode)
    chain(graph, "A").compile()

    result = await graph.invoke()

    assert result.termination == Termination.END
    assert result.errors == [{"node": "A", "type": None, "error": "node exploded"}]
    assert graph.get_node("A").is_active is False


@pytest.mark.asyncio
async def test_failing_node_with_halt_policy_stops_run():
    async def explode(state, node):  # noqa: ARG001
        raise ValueError("node exploded")

    graph = Graph()
    graph.add_node("A", action=explode, metadata={"on_error": "halt"})
    chain(graph, "A").compile()

    result = await graph.invoke()

    assert result.termination == Termination.HALTED
    assert graph.get_node(END_NODE_ID).visited == 0
    assert graph.state.active is False


@pytest.mark.asyncio
async def test_model_node_without_llm_fails_softly():
    graph = Graph()
    graph.add_node("A", type="completion.model")
    chain(graph, "A").compile()

    result = await graph.invoke(prompt={"role": "user", "content": "hi"})
    assert result.termination == Termination.END
    assert result.output is None
    assert result.errors[0]["node"] == "A"


@pytest.mark.asyncio
async def test_node_timeout_from_run_argument():
    async def slow(state, node):  # noqa: ARG001
        await asyncio.sleep(5)

    graph = Graph()
    graph.add_node("A", action=slow)
    chain(graph, "A").compile()

    result = await graph.invoke(node_timeout_s=0.01)
    assert result.termination == Termination.END
    assert "timed out" in result.errors[0]["error"]


@pytest.mark.asyncio
async def test_node_timeout_from_metadata_with_halt():
    async def slow(state, node):  # noqa: ARG001
        await asyncio.sleep(5)

    graph = Graph()
    graph.add_node("A", action=slow, metadata={"timeout_s": 0.01, "on_error": "halt"})
    chain(graph, "A").compile()

    result = await graph.invoke()
    assert result.termination == Termination.HALTED


@pytest.mark.asyncio
async def test_tool_node_messages_are_appended():
    from chatflow.graph import ActionRegistry, ToolAction

    async def lookup(state, node):  # noqa: ARG001
        return [{"role": "tool", "content": "42", "tool_call_id": "c1"}]

    registry = ActionRegistry()
    registry.register(ToolAction(name="lookup", action=lookup))
    graph = Graph(tool_actions=registry)
    graph.add_node("lookup", type="tool")
    chain(graph, "lookup").compile()

    result = await graph.invoke(prompt={"role": "user", "content": "answer?"})
    assert graph.state.messages[-1].to_dict() == {"role": "tool", "content": "42", "tool_call_id": "c1"}
    assert result.output is None


@pytest.mark.asyncio
async def test_missing_start_raises():
    graph = Graph()
    graph._nodes.pop(START_NODE_ID)
    with pytest.raises(MissingEntryNodeError):
        await graph.run()


@pytest.mark.asyncio
async def test_node_removed_mid_run_raises_unknown_node():
    graph = Graph()
    graph.add_node("A")
    chain(graph, "A").compile()

    def drop_a(snapshot):
        if snapshot["current_node_id"] == "A":
            graph._nodes.pop("A", None)

    graph.on_state_change(drop_a)
    with pytest.raises(UnknownNodeError):
        await graph.stream_events()
    assert graph.state.active is False


@pytest.mark.asyncio
async def test_stream_emits_one_event_per_mutation():
    graph = Graph()
    graph.add_node("A")
    chain(graph, "A").compile()
    events = []
    graph.on_state_change(events.append)

    await graph.stream_events([{"role": "user", "content": "hi"}])

    # seed, then activate / deactivate / route per node, END stops before routing, finish
    assert len(events) == 10
    assert all(a != b for a, b in zip(events, events[1:]))
    assert events[0]["messages"] == [{"role": "user", "content": "hi"}]
    assert events[0]["active"] is True
    assert events[-1]["active"] is False
    assert events[-1]["termination"] == "end"
    current = [e["current_node_id"] for e in events]
    assert current == [
        START_NODE_ID,
        START_NODE_ID,
        START_NODE_ID,
        "A",
        "A",
        "A",
        END_NODE_ID,
        END_NODE_ID,
        END_NODE_ID,
        END_NODE_ID,
    ]


@pytest.mark.asyncio
async def test_stream_without_seed_emits_run_start_once():
    graph = Graph()
    chain(graph).compile()
    events = []
    graph.on_state_change(events.append)

    await graph.stream_events()

    # start, START on and off, route, END on and off, finish
    assert len(events) == 7
    assert all(a != b for a, b in zip(events, events[1:]))


@pytest.mark.asyncio
async def test_run_emits_after_each_node_only():
    graph = Graph()
    graph.add_node("A")
    chain(graph, "A").compile()
    events = []
    graph.on_state_change(events.append)

    await graph.run([{"role": "user", "content": "hi"}])
    assert len(events) == 3


@pytest.mark.asyncio
async def test_off_state_change_stops_events():
    graph = Graph()
    chain(graph).compile()
    events = []
    listener = events.append
    graph.on_state_change(listener)
    graph.off_state_change(listener)

    await graph.stream_events()
    assert events == []


@pytest.mark.asyncio
async def test_listener_errors_propagate_to_caller():
    graph = Graph()
    chain(graph).compile()

    def broken(snapshot):  # noqa: ARG001
        raise RuntimeError("listener failed")

    graph.on_state_change(broken)
    with pytest.raises(RuntimeError, match="listener failed"):
        await graph.stream_events()
    assert graph.state.active is False


@pytest.mark.asyncio
async def test_listener_error_mid_run_leaves_no_active_node():
    graph = Graph()
    graph.add_node("A")
    chain(graph, "A").compile()

    def broken_on_a(snapshot):
        if snapshot["current_node_id"] == "A" and any(n["is_active"] for n in snapshot["nodes"]):
            raise RuntimeError("listener failed")

    graph.on_state_change(broken_on_a)
    with pytest.raises(RuntimeError):
        await graph.stream_events([{"role": "user", "content": "hi"}])

    assert graph.state.active is False
    assert graph.get_node("A").visited == 1
    assert not any(n.is_active for n in graph.get_graph_nodes())
    assert graph.get_state()["active"] is False
