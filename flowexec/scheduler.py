from typing import TYPE_CHECKING, Any

import structlog

from .document import NodeKind

if TYPE_CHECKING:  # pragma: no cover
    from .config import Config
    from .context import ExecutionContext
    from .dispatch import NodeDispatcher

logger = structlog.get_logger(__name__)


class Scheduler:
    """
    Walks a resolved flow document from its entry node.

    The walk is a depth first traversal over the outgoing edges. Before a node runs,
    all of its predecessors are brought up to date; a node whose predecessor ran
    more recently than itself is re-executed. Goto nodes that picked a jump target
    continue the walk at that target instead of at their own successors. Both
    drive loops keep explicit stacks, so deep graphs do not exhaust the Python
    call stack.
    """

    def __init__(self, dispatcher: "NodeDispatcher", config: "Config") -> None:
        self.dispatcher = dispatcher
        self.config = config

    async def run(self, ctx: "ExecutionContext") -> Any:
        await self.step_to(ctx.entry, ctx)
        return ctx.final_result()

    async def ensure_executed(
        self, node_id: str, ctx: "ExecutionContext", force: bool = False
    ) -> None:
        """
        Execute `node_id` after its predecessors, unless it already ran (and
        `force` is not set) or is being executed. Predecessors are never forced.
        """
        topology = ctx.document.topology
        # (node id, forced, predecessors already scheduled)
        frames: list[tuple[str, bool, bool]] = [(node_id, force, False)]

        while frames:
            current, forced, expanded = frames.pop()

            if expanded:
                await self._execute(current, ctx)
                continue

            if current in ctx.executing or (current in ctx.executed and not forced):
                continue
            elif ctx.document.node(current) is None:
                continue

            ctx.executing.add(current)
            frames.append((current, forced, True))
            preds = topology.predecessors(current)
            frames.extend((pred, False, False) for pred in reversed(preds))

    def _input_for(self, node_id: str, ctx: "ExecutionContext") -> Any:
        if node_id in ctx.injected_inputs:
            return ctx.injected_inputs.pop(node_id)

        starter = ctx.document.starter
        if starter is not None and starter.id == node_id:
            return ctx.flow_input

        if preds := ctx.document.topology.predecessors(node_id):
            values = [ctx.results.get(pred) for pred in preds]
            return values[0] if len(values) == 1 else values

        return ctx.flow_input

    async def _execute(self, node_id: str, ctx: "ExecutionContext") -> None:
        node = ctx.document.node(node_id)
        value = self._input_for(node_id, ctx)

        logger.debug("executing node", node_id=node_id, kind=node.kind)
        ctx.results[node_id] = await self.dispatcher.dispatch(node, value, ctx)

        if node.kind != NodeKind.GOTO:
            ctx.last_executed = node_id

        ctx.stamp(node_id)
        ctx.executing.discard(node_id)

    async def step_to(self, entry: str, ctx: "ExecutionContext") -> None:
        topology = ctx.document.topology
        pending = [entry]

        while pending:
            current = pending.pop()

            if ctx.steps_left <= 0:
                logger.warning("step budget exhausted", flow=str(ctx.document.path))
                ctx.run_log.warn("Step budget exhausted, stopping traversal")
                break

            ctx.steps_left -= 1

            ctx.visits[current] = ctx.visits.get(current, 0) + 1
            if ctx.visits[current] > self.config.max_visits_per_node:
                continue

            node = ctx.document.node(current)
            if node is None:
                continue

            await self.ensure_executed(current, ctx, force=ctx.is_stale(current))

            target = ctx.goto_decisions.get(current)
            if node.kind == NodeKind.GOTO and target:
                await self.ensure_executed(target, ctx, force=True)
                pending.append(target)
                continue

            pending.extend(reversed(topology.successors(current)))
