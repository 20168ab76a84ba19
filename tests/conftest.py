import json
from typing import Any

import pytest

from flowexec import Config
from flowexec.backends import Backend, Request
from flowexec.codec import RawResult
from flowexec.job import Result


@pytest.fixture(
    params=[
        pytest.param(("asyncio", {"use_uvloop": False}), id="asyncio"),
        pytest.param(
            ("trio", {"restrict_keyboard_interrupt_to_checkpoints": True}), id="trio"
        ),
    ],
    scope="session",
)
def anyio_backend(request):
    return request.param


@pytest.fixture
def config(tmp_path):
    return Config(
        working_root=tmp_path / "queue",
        poll_interval_ms=10,
        poll_max_interval_ms=50,
        result_poll_interval_ms=10,
        stop_check_interval_ms=20,
        kill_grace_period_ms=500,
        watch_files=False,
    )


def node(node_id: str, kind: str, **data: Any) -> dict[str, Any]:
    return {"id": node_id, "type": "custom", "data": {"type": kind, **data}}


def edge(source: str, target: str) -> dict[str, Any]:
    return {"id": f"{source}-{target}", "source": source, "target": target}


@pytest.fixture
def write_flow(tmp_path):
    def write(name: str, nodes: list[dict], edges: list[dict] | None = None):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"nodes": nodes, "edges": edges or []}))
        return path

    return write


class CountingBackend(Backend):
    """Doubles its input without leaving the process; remembers every input."""

    kinds = ("double",)

    def __init__(self) -> None:
        self.inputs: list[Any] = []

    def prepare(self, ctx):
        return Request(source=ctx.code)

    async def run(self, request, ctx):
        self.inputs.append(ctx.job.input)
        return RawResult(value=ctx.job.input * 2)

    def decode(self, raw, ctx):
        return Result(id=ctx.job.id, output=raw.value)


@pytest.fixture
def counting():
    return CountingBackend()
