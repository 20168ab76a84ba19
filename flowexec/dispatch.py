from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from .conditions import choose_jump
from .document import NodeKind
from .exceptions import BackendError, DocumentError, JobCancelledError, JobTimeoutError
from .job import Job

if TYPE_CHECKING:  # pragma: no cover
    from .context import ExecutionContext
    from .document import Node
    from .engine import Engine
    from .queue import JobQueue

logger = structlog.get_logger(__name__)


class NodeDispatcher:
    """Computes the output of a single node from its input, according to its kind."""

    def __init__(self, engine: "Engine", queue: "JobQueue") -> None:
        self.engine = engine
        self.queue = queue

    async def dispatch(self, node: "Node", value: Any, ctx: "ExecutionContext") -> Any:
        if node.kind == NodeKind.CONSTANT:
            return node.data.value
        elif node.kind == NodeKind.GOTO:
            return self._jump(node, value, ctx)
        elif node.kind == NodeKind.FLOW:
            return await self._run_nested(node, value, ctx)

        return await self._run_job(node, value, ctx)

    def _jump(self, node: "Node", value: Any, ctx: "ExecutionContext") -> Any:
        target, forward = choose_jump(node.data.conditions, value)
        ctx.goto_decisions[node.id] = target

        if target is not None:
            ctx.run_log.info(f"Goto {node.display_name} jumps to {target}")
            if forward:
                ctx.injected_inputs[target] = value

        return value

    async def _run_nested(
        self, node: "Node", value: Any, ctx: "ExecutionContext"
    ) -> Any:
        reference = node.data.code_file_path or (node.data.code or "").strip()
        if not reference:
            raise DocumentError(f"Flow node {node.id} has no flow file path specified")

        path = Path(reference)
        if not path.is_absolute():
            path = ctx.document.directory / path

        ctx.run_log.info(f"Executing nested flow {node.display_name}: {path}")
        return await self.engine.execute(
            path,
            value,
            ancestry=ctx.lineage,
            timeout_ms=ctx.timeout_ms,
            run_log=ctx.run_log.nested(),
        )

    async def _run_job(self, node: "Node", value: Any, ctx: "ExecutionContext") -> Any:
        job = Job.create(
            code=node.data.code or "",
            code_file_path=node.data.code_file_path,
            type=node.kind,
            input=value,
            dont_wait_for_output=node.data.dont_wait_for_output,
            base_path=str(ctx.base_path),
            timeout=ctx.timeout_ms,
        )
        ctx.run_log.info(f"Executing node {node.display_name} ({node.kind})")

        try:
            result = await self.queue.run_job(job)
        except JobTimeoutError:
            ctx.run_log.error(
                f"Node {node.display_name} execution timed out after"
                f" {ctx.timeout_ms / 1000:g} seconds"
            )
            raise

        if result.log:
            ctx.run_log.info(result.log)

        if result.error:
            ctx.run_log.error(result.error)
            if result.was_terminated:
                raise JobCancelledError(job.id)

            raise BackendError(node.id, result.error)

        logger.debug(
            "node finished",
            node_id=node.id,
            job_id=job.id,
            execution_time=result.execution_time,
        )
        return result.output
