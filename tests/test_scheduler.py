import pytest
from conftest import edge, node

from flowexec import Config, FlowDocument
from flowexec.context import ExecutionContext
from flowexec.dispatch import NodeDispatcher
from flowexec.entry import resolve_entry
from flowexec.scheduler import Scheduler


class RecordingDispatcher(NodeDispatcher):
    """Runs script nodes in-process by adding one to their input."""

    def __init__(self) -> None:
        super().__init__(engine=None, queue=None)
        self.calls: list[str] = []

    async def dispatch(self, node, value, ctx):
        self.calls.append(node.id)
        return await super().dispatch(node, value, ctx)

    async def _run_job(self, node, value, ctx):
        if isinstance(value, list):
            return sum(item or 0 for item in value)

        return (value or 0) + 1


def _context(nodes, edges=(), flow_input=None, config=None):
    document = FlowDocument.from_dict({"nodes": nodes, "edges": list(edges)}).resolve()
    return ExecutionContext(
        document=document,
        entry=resolve_entry(document),
        flow_input=flow_input,
        base_path=".",
        steps_left=(config or Config()).max_steps,
    )


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.mark.anyio
async def test_linear(dispatcher):
    ctx = _context(
        [node("a", "constant", value=5), node("b", "python"), node("c", "python")],
        [edge("a", "b"), edge("b", "c")],
    )

    assert await Scheduler(dispatcher, Config()).run(ctx) == 7
    assert dispatcher.calls == ["a", "b", "c"]


@pytest.mark.anyio
async def test_ancestors_run_first_and_once(dispatcher):
    ctx = _context(
        [
            node("a", "constant", value=1),
            node("b", "constant", value=2),
            node("s", "python", isStarterNode=True),
            node("t", "python"),
        ],
        [edge("a", "s"), edge("b", "s"), edge("s", "t")],
        flow_input=10,
    )

    output = await Scheduler(dispatcher, Config()).run(ctx)

    # the starter receives the flow input, not its predecessors' outputs
    assert ctx.results["s"] == 11
    assert output == 12
    assert dispatcher.calls == ["a", "b", "s", "t"]


@pytest.mark.anyio
async def test_fan_in_collects_outputs(dispatcher):
    ctx = _context(
        [
            node("a", "constant", value=1),
            node("b", "constant", value=2),
            node("sum", "python"),
        ],
        [edge("a", "sum"), edge("b", "sum")],
    )

    assert await Scheduler(dispatcher, Config()).run(ctx) == 3


@pytest.mark.anyio
async def test_ensure_executed_is_idempotent(dispatcher):
    ctx = _context(
        [node("a", "constant", value=1), node("b", "python")], [edge("a", "b")]
    )
    scheduler = Scheduler(dispatcher, Config())

    await scheduler.ensure_executed("b", ctx)
    await scheduler.ensure_executed("b", ctx)

    assert dispatcher.calls == ["a", "b"]
    assert ctx.executed == {"a", "b"}
    assert not ctx.executing

    await scheduler.ensure_executed("b", ctx, force=True)

    assert dispatcher.calls == ["a", "b", "b"]


@pytest.mark.anyio
async def test_staleness(dispatcher):
    ctx = _context(
        [node("a", "constant", value=1), node("b", "python")], [edge("a", "b")]
    )
    scheduler = Scheduler(dispatcher, Config())

    await scheduler.ensure_executed("b", ctx)
    assert not ctx.is_stale("b")

    await scheduler.ensure_executed("a", ctx, force=True)
    assert ctx.is_stale("b")


@pytest.mark.anyio
async def test_goto_forwards_input(dispatcher):
    ctx = _context(
        [
            node(
                "g",
                "goto",
                isStarterNode=True,
                conditions=[
                    {"expr": "input < 10", "goto": "x", "forwardInput": True},
                    {"expr": "input >= 10", "goto": "y", "forwardInput": True},
                ],
            ),
            node("x", "python"),
            node("y", "python"),
        ],
        flow_input=15,
    )

    assert await Scheduler(dispatcher, Config()).run(ctx) == 16
    assert dispatcher.calls == ["g", "y"]
    assert ctx.goto_decisions == {"g": "y"}


@pytest.mark.anyio
async def test_goto_without_match_follows_edges(dispatcher):
    ctx = _context(
        [
            node(
                "g",
                "goto",
                isStarterNode=True,
                conditions=[{"expr": "false", "goto": "x"}],
            ),
            node("x", "python"),
            node("next", "python"),
        ],
        [edge("g", "next")],
        flow_input=1,
    )

    assert await Scheduler(dispatcher, Config()).run(ctx) == 2
    assert "x" not in dispatcher.calls


@pytest.mark.anyio
async def test_step_budget(dispatcher):
    config = Config(max_steps=50)

    with pytest.warns(UserWarning):
        ctx = _context(
            [node("r", "constant", value=0), node("x", "python"), node("y", "python")],
            [edge("r", "x"), edge("x", "y"), edge("y", "x")],
            config=config,
        )

    await Scheduler(dispatcher, config).run(ctx)

    assert ctx.steps_left == 0
    assert len(ctx.run_log) == 1
    assert "Step budget exhausted" in ctx.run_log.lines[0]


@pytest.mark.anyio
async def test_visit_cap(dispatcher):
    config = Config(max_visits_per_node=3)

    with pytest.warns(UserWarning):
        ctx = _context(
            [node("r", "constant", value=0), node("x", "python"), node("y", "python")],
            [edge("r", "x"), edge("x", "y"), edge("y", "x")],
            config=config,
        )

    await Scheduler(dispatcher, config).run(ctx)

    assert ctx.visits == {"r": 1, "x": 4, "y": 3}
    assert ctx.steps_left > 0


def test_context_holds_only_traversal_state():
    ctx = _context([node("a", "constant", value=1)])

    assert "uuid" not in ExecutionContext.model_fields
    assert ctx.lineage == []
    assert ctx.final_result() is None
