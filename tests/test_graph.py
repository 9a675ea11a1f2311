from __future__ import annotations

import asyncio
import operator
from enum import Enum
from typing import Annotated, Any, Mapping, TypedDict

import pytest

from brief_factory.context import StageContext
from brief_factory.errors import GraphValidationError, StageExecutionError
from brief_factory.events import EventEmitter, RecordingCallbacks
from brief_factory.graph import TERMINAL, CompiledPipeline, PipelineGraph, RunOutcome
from brief_factory.retry import RetryPolicy
from brief_factory.settings import RuntimeSettings
from brief_factory.state import merge_dicts


class Step(str, Enum):
    START = "start"
    LEFT = "left"
    RIGHT = "right"
    JOIN = "join"
    LOOP = "loop"


class Route(str, Enum):
    AGAIN = "again"
    DONE = "done"


class DemoState(TypedDict, total=False):
    values: Annotated[dict[str, int], merge_dicts]
    count: int
    observed: list[str]
    completed_steps: Annotated[list[str], operator.add]
    quality_warning: bool
    error: str | None


async def no_sleep(_: float) -> None:
    return None


def make_context(**kwargs: Any) -> StageContext:
    return StageContext(settings=RuntimeSettings(), sleep=no_sleep, **kwargs)


def writer(key: str, value: int, delay: float = 0.0):
    async def handler(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
        if delay:
            await asyncio.sleep(delay)
        return {"values": {key: value}}

    return handler


async def observe_join(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
    return {"observed": sorted(state.get("values", {}))}


def diamond(left_delay: float, right_delay: float) -> PipelineGraph[Step]:
    graph: PipelineGraph[Step] = PipelineGraph(DemoState, Step)
    graph.add_stage(Step.START, writer("start", 0))
    graph.add_stage(Step.LEFT, writer("left", 1, left_delay), parallel_group="fan")
    graph.add_stage(Step.RIGHT, writer("right", 2, right_delay), parallel_group="fan")
    graph.add_stage(Step.JOIN, observe_join)
    graph.set_entry(Step.START)
    graph.add_edge(Step.START, Step.LEFT)
    graph.add_edge(Step.START, Step.RIGHT)
    graph.add_join([Step.LEFT, Step.RIGHT], Step.JOIN)
    graph.add_edge(Step.JOIN, TERMINAL)
    return graph


def test_unknown_stage_ids_are_rejected_at_construction() -> None:
    graph: PipelineGraph[Step] = PipelineGraph(DemoState, Step)
    with pytest.raises(GraphValidationError):
        graph.add_stage("nonexistent", writer("x", 1))
    with pytest.raises(GraphValidationError):
        graph.add_edge(Step.START, "also-missing")
    with pytest.raises(GraphValidationError):
        graph.set_entry("nope")
    graph.add_stage("start", writer("x", 1))
    with pytest.raises(GraphValidationError):
        graph.add_stage(Step.START, writer("x", 2))


def test_validate_rejects_malformed_graphs() -> None:
    no_entry: PipelineGraph[Step] = PipelineGraph(DemoState, Step)
    no_entry.add_stage(Step.START, writer("x", 1))
    no_entry.add_edge(Step.START, TERMINAL)
    with pytest.raises(GraphValidationError, match="entry"):
        no_entry.validate()

    unregistered: PipelineGraph[Step] = PipelineGraph(DemoState, Step)
    unregistered.add_stage(Step.START, writer("x", 1))
    unregistered.set_entry(Step.START)
    unregistered.add_edge(Step.START, Step.LEFT)
    with pytest.raises(GraphValidationError, match="unregistered"):
        unregistered.validate()

    dead_end: PipelineGraph[Step] = PipelineGraph(DemoState, Step)
    dead_end.add_stage(Step.START, writer("x", 1))
    dead_end.set_entry(Step.START)
    with pytest.raises(GraphValidationError, match="outgoing"):
        dead_end.validate()

    unreachable: PipelineGraph[Step] = PipelineGraph(DemoState, Step)
    unreachable.add_stage(Step.START, writer("x", 1))
    unreachable.add_stage(Step.LEFT, writer("y", 1))
    unreachable.set_entry(Step.START)
    unreachable.add_edge(Step.START, TERMINAL)
    unreachable.add_edge(Step.LEFT, TERMINAL)
    with pytest.raises(GraphValidationError, match="unreachable"):
        unreachable.validate()

    cyclic: PipelineGraph[Step] = PipelineGraph(DemoState, Step)
    cyclic.add_stage(Step.START, writer("x", 1))
    cyclic.add_stage(Step.LEFT, writer("y", 1))
    cyclic.set_entry(Step.START)
    cyclic.add_edge(Step.START, Step.LEFT)
    cyclic.add_edge(Step.LEFT, Step.START)
    with pytest.raises(GraphValidationError, match="cycle"):
        cyclic.validate()


def test_conditional_edges_must_map_every_route() -> None:
    graph: PipelineGraph[Step] = PipelineGraph(DemoState, Step)
    graph.add_stage(Step.LOOP, writer("x", 1))
    with pytest.raises(GraphValidationError, match="unmapped"):
        graph.add_conditional_edge(Step.LOOP, lambda state: Route.DONE, {Route.DONE: TERMINAL})

    mixed: PipelineGraph[Step] = PipelineGraph(DemoState, Step)
    mixed.add_stage(Step.LOOP, writer("x", 1))
    mixed.set_entry(Step.LOOP)
    mixed.add_edge(Step.LOOP, TERMINAL)
    mixed.add_conditional_edge(Step.LOOP, lambda state: Route.DONE, {Route.AGAIN: Step.LOOP, Route.DONE: TERMINAL})
    with pytest.raises(GraphValidationError, match="both fixed and conditional"):
        mixed.validate()


@pytest.mark.parametrize(("left_delay", "right_delay"), [(0.05, 0.0), (0.0, 0.05)])
def test_join_observes_both_branches_regardless_of_completion_order(left_delay: float, right_delay: float) -> None:
    pipeline = diamond(left_delay, right_delay).compile()
    result = asyncio.run(pipeline.run({"values": {}, "completed_steps": []}, context=make_context()))

    assert result.outcome == RunOutcome.SUCCESS
    assert result.state["values"] == {"start": 0, "left": 1, "right": 2}
    assert result.state["observed"] == ["left", "right", "start"]
    assert result.state["completed_steps"][0] == "start"
    assert result.state["completed_steps"][-1] == "join"
    assert sorted(result.state["completed_steps"][1:3]) == ["left", "right"]


def test_failure_aborts_run_and_keeps_last_committed_state() -> None:
    async def explode(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
        raise RuntimeError("generation service unavailable")

    graph: PipelineGraph[Step] = PipelineGraph(DemoState, Step)
    graph.add_stage(Step.START, writer("start", 0))
    graph.add_stage(Step.LEFT, explode)
    graph.add_stage(Step.RIGHT, writer("right", 2))
    graph.add_stage(Step.JOIN, observe_join)
    graph.set_entry(Step.START)
    graph.add_edge(Step.START, Step.LEFT)
    graph.add_edge(Step.START, Step.RIGHT)
    graph.add_join([Step.LEFT, Step.RIGHT], Step.JOIN)
    graph.add_edge(Step.JOIN, TERMINAL)

    callbacks = RecordingCallbacks()
    context = make_context(events=EventEmitter(callbacks))
    result = asyncio.run(graph.compile().run({"values": {}, "completed_steps": []}, context=context))

    assert result.outcome == RunOutcome.FAILED
    assert not result.succeeded
    assert result.error is not None
    assert result.error.stage == "left"
    assert isinstance(result.error.cause, StageExecutionError)
    assert "generation service unavailable" in result.state["error"]
    # The failing superstep commits nothing: the sibling's write and the join never land.
    assert result.state["values"] == {"start": 0}
    assert result.state["completed_steps"] == ["start"]
    assert "observed" not in result.state
    assert callbacks.names("error")


def test_stage_retry_policy_is_applied_at_the_stage_boundary() -> None:
    calls: list[int] = []

    async def flaky(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
        calls.append(1)
        if len(calls) < 3:
            raise TimeoutError("upstream timed out")
        return {"values": {"flaky": len(calls)}}

    graph: PipelineGraph[Step] = PipelineGraph(DemoState, Step)
    graph.add_stage(Step.START, flaky, retry=RetryPolicy(max_attempts=3, initial_delay=0.0))
    graph.set_entry(Step.START)
    graph.add_edge(Step.START, TERMINAL)
    result = asyncio.run(graph.compile().run({"values": {}}, context=make_context()))

    assert result.outcome == RunOutcome.SUCCESS
    assert result.state["values"] == {"flaky": 3}
    assert result.state["completed_steps"] == ["start"]


def test_conditional_loop_is_bounded_by_state_counter() -> None:
    async def increment(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
        return {"count": int(state.get("count", 0)) + 1}

    def route(state: Mapping[str, Any]) -> Route:
        return Route.AGAIN if state.get("count", 0) < 3 else Route.DONE

    graph: PipelineGraph[Step] = PipelineGraph(DemoState, Step)
    graph.add_stage(Step.LOOP, increment)
    graph.set_entry(Step.LOOP)
    graph.add_conditional_edge(Step.LOOP, route, {Route.AGAIN: Step.LOOP, Route.DONE: TERMINAL})
    result = asyncio.run(graph.compile().run({"count": 0, "completed_steps": []}, context=make_context()))

    assert result.outcome == RunOutcome.SUCCESS
    assert result.state["count"] == 3
    assert result.state["completed_steps"] == ["loop", "loop", "loop"]


def test_quality_warning_yields_success_with_warning() -> None:
    async def warn(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
        return {"quality_warning": True}

    graph: PipelineGraph[Step] = PipelineGraph(DemoState, Step)
    graph.add_stage(Step.START, warn)
    graph.set_entry(Step.START)
    graph.add_edge(Step.START, TERMINAL)
    result = asyncio.run(graph.compile().run({}, context=make_context()))

    assert result.outcome == RunOutcome.SUCCESS_WITH_WARNING
    assert result.succeeded


def test_cancellation_discards_outputs_and_aborts_in_flight_stage() -> None:
    interrupted: list[bool] = []

    async def slow(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            interrupted.append(True)
            raise
        return {"values": {"slow": 1}}

    graph: PipelineGraph[Step] = PipelineGraph(DemoState, Step)
    graph.add_stage(Step.START, writer("start", 0))
    graph.add_stage(Step.LEFT, slow)
    graph.set_entry(Step.START)
    graph.add_edge(Step.START, Step.LEFT)
    graph.add_edge(Step.LEFT, TERMINAL)
    pipeline = graph.compile()
    initial = {"values": {}, "completed_steps": []}

    async def run_and_cancel() -> Any:
        context = make_context()
        task = asyncio.ensure_future(pipeline.run(initial, context=context))
        await asyncio.sleep(0.1)
        context.cancel_token.cancel("superseded by a newer run")
        return await task

    result = asyncio.run(run_and_cancel())

    assert result.outcome == RunOutcome.CANCELLED
    assert not result.succeeded
    assert result.state == initial
    assert result.error is not None
    assert result.error.message == "superseded by a newer run"
    assert interrupted == [True]


class CancelOnExhaustion:
    """Runnable whose stream sets the cancel token in the same step it finishes."""

    def __init__(self, context: StageContext) -> None:
        self.context = context

    async def astream(self, state: dict[str, Any], **_: Any) -> Any:
        yield {**state, "values": {"start": 0}, "completed_steps": ["start"]}
        self.context.cancel_token.cancel("arrived after the last stage")


def test_cancel_after_completion_keeps_the_real_outcome() -> None:
    context = make_context()
    pipeline = CompiledPipeline(
        runnable=CancelOnExhaustion(context),
        recursion_limit=25,
        warning_key="quality_warning",
        error_key="error",
    )
    result = asyncio.run(pipeline.run({"values": {}, "completed_steps": []}, context=context))

    assert context.cancel_token.cancelled
    assert result.outcome == RunOutcome.SUCCESS
    assert result.error is None
    assert result.state["completed_steps"] == ["start"]


def test_callback_and_logger_failures_never_fail_the_run() -> None:
    class ExplodingCallbacks:
        def on_stage_changed(self, stage_name: str, active_stages: Any) -> None:
            raise RuntimeError("ui disconnected")

        def on_agent_started(self, name: str, stage: str) -> None:
            raise RuntimeError("ui disconnected")

    class ExplodingLogger:
        def start(self, stage_name: str, context: Mapping[str, Any]) -> Any:
            raise RuntimeError("log store down")

        def complete(self, handle: Any, output_size_hint: int | None = None) -> None:
            raise RuntimeError("log store down")

        def fail(self, handle: Any, error: Any) -> None:
            raise RuntimeError("log store down")

        def record(self, entry: Any) -> None:
            raise RuntimeError("log store down")

    context = make_context(events=EventEmitter(ExplodingCallbacks()), execution_logger=ExplodingLogger())
    result = asyncio.run(diamond(0.0, 0.0).compile().run({"values": {}}, context=context))

    assert result.outcome == RunOutcome.SUCCESS
    assert result.state["values"] == {"start": 0, "left": 1, "right": 2}


def test_stage_events_are_emitted_per_group() -> None:
    callbacks = RecordingCallbacks()
    context = make_context(events=EventEmitter(callbacks))
    asyncio.run(diamond(0.0, 0.0).compile().run({"values": {}}, context=context))

    stages = [payload[0] for payload in callbacks.names("stage_changed")]
    assert stages[0] == "start"
    assert stages[-1] == "join"
    assert "fan" in stages
    fan = next(payload for payload in callbacks.names("stage_changed") if payload[0] == "fan")
    assert sorted(fan[1]) == ["left", "right"]
    started = sorted(payload[0] for payload in callbacks.names("agent_started"))
    assert started == ["join", "left", "right", "start"]
    assert len(callbacks.names("agent_completed")) == 4
