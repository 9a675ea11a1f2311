from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Mapping, Sequence, TypeVar

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from .context import StageContext
from .errors import GraphValidationError, StageExecutionError
from .execution_log import estimate_token_count
from .retry import RetryPolicy, with_smart_retry

logger = logging.getLogger(__name__)

StageT = TypeVar("StageT", bound=Enum)
StageHandler = Callable[[Mapping[str, Any], StageContext], Awaitable[Mapping[str, Any]]]
Router = Callable[[Mapping[str, Any]], Enum]

TERMINAL = END
_CONTEXT_KEY = "stage_context"


class RunOutcome(str, Enum):
    SUCCESS = "success"
    SUCCESS_WITH_WARNING = "success_with_warning"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StageSpec:
    stage_id: Enum
    handler: StageHandler
    retry: RetryPolicy | None
    parallel_group: str | None
    event_stage: str

    @property
    def name(self) -> str:
        return str(self.stage_id.value)


@dataclass(frozen=True)
class ConditionalEdge:
    source: Enum
    router: Router
    path_map: Mapping[Enum, Enum | str]


@dataclass(frozen=True)
class PipelineError:
    message: str
    stage: str | None = None
    cause: BaseException | None = None


@dataclass
class RunResult:
    outcome: RunOutcome
    state: dict[str, Any]
    run_id: str
    error: PipelineError | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in {RunOutcome.SUCCESS, RunOutcome.SUCCESS_WITH_WARNING}


def _best_effort(label: str, func: Callable[..., Any], *args: Any) -> Any:
    try:
        return func(*args)
    except Exception as exc:  # noqa: BLE001 - execution logging never fails a stage.
        logger.warning("Execution logger %s failed: %s", label, exc)
        return None


def _output_size(update: Mapping[str, Any]) -> int:
    try:
        text = json.dumps(update, default=str)
    except (TypeError, ValueError):
        text = str(update)
    return estimate_token_count(text)


class PipelineGraph(Generic[StageT]):
    """Typed builder for a stage graph executed on LangGraph.

    Stage identifiers are members of one closed ``Enum``. Anything else
    (including strings that do not name a member) is rejected while the graph
    is being built. Reducers come from the ``Annotated`` fields of
    ``state_schema``, so concurrent branches merge exactly as the schema
    declares.

    Edges:
        ``add_edge(a, b)``: b runs after a.
        ``add_join([a, b], c)``: c runs once, after both a and b have committed.
        ``add_conditional_edge(a, router, {Route.X: b, Route.Y: TERMINAL})``:
            router reads the committed state after a and picks a route; every
            member of the route enum must be mapped.
    """

    def __init__(
        self,
        state_schema: type,
        stage_ids: type[StageT],
        *,
        completed_key: str | None = "completed_steps",
        warning_key: str | None = "quality_warning",
        error_key: str | None = "error",
        recursion_limit: int = 100,
    ) -> None:
        self.state_schema = state_schema
        self.stage_ids = stage_ids
        self.completed_key = completed_key
        self.warning_key = warning_key
        self.error_key = error_key
        self.recursion_limit = recursion_limit
        self._stages: dict[StageT, StageSpec] = {}
        self._entry: StageT | None = None
        self._edges: list[tuple[StageT, StageT | str]] = []
        self._joins: list[tuple[tuple[StageT, ...], StageT]] = []
        self._conditional: dict[StageT, ConditionalEdge] = {}

    # -- construction -------------------------------------------------------

    def _coerce(self, stage: StageT | str) -> StageT:
        if isinstance(stage, self.stage_ids):
            return stage
        try:
            return self.stage_ids(stage)
        except ValueError as exc:
            valid = ", ".join(str(member.value) for member in self.stage_ids)
            raise GraphValidationError(f"Unknown stage {stage!r}; valid stages: {valid}") from exc

    def _coerce_target(self, target: StageT | str) -> StageT | str:
        if target == TERMINAL:
            return TERMINAL
        return self._coerce(target)

    def add_stage(
        self,
        stage: StageT | str,
        handler: StageHandler,
        *,
        retry: RetryPolicy | None = None,
        parallel_group: str | None = None,
        event_stage: str | None = None,
    ) -> "PipelineGraph[StageT]":
        stage_id = self._coerce(stage)
        if stage_id in self._stages:
            raise GraphValidationError(f"Stage {stage_id.value!r} registered twice")
        if not callable(handler):
            raise GraphValidationError(f"Handler for {stage_id.value!r} is not callable")
        self._stages[stage_id] = StageSpec(
            stage_id=stage_id,
            handler=handler,
            retry=retry,
            parallel_group=parallel_group,
            event_stage=event_stage or parallel_group or str(stage_id.value),
        )
        return self

    def set_entry(self, stage: StageT | str) -> "PipelineGraph[StageT]":
        self._entry = self._coerce(stage)
        return self

    def add_edge(self, source: StageT | str, target: StageT | str) -> "PipelineGraph[StageT]":
        self._edges.append((self._coerce(source), self._coerce_target(target)))
        return self

    def add_join(self, sources: Sequence[StageT | str], target: StageT | str) -> "PipelineGraph[StageT]":
        coerced = tuple(self._coerce(source) for source in sources)
        if len(coerced) < 2:
            raise GraphValidationError("A join needs at least two source stages")
        if len(set(coerced)) != len(coerced):
            raise GraphValidationError(f"Join sources repeat a stage: {[s.value for s in coerced]}")
        self._joins.append((coerced, self._coerce(target)))
        return self

    def add_conditional_edge(
        self,
        source: StageT | str,
        router: Router,
        path_map: Mapping[Enum, StageT | str],
    ) -> "PipelineGraph[StageT]":
        source_id = self._coerce(source)
        if source_id in self._conditional:
            raise GraphValidationError(f"Stage {source_id.value!r} already has a conditional edge")
        if not path_map:
            raise GraphValidationError("Conditional edge needs a non-empty path map")
        route_types = {type(route) for route in path_map}
        if len(route_types) != 1 or not issubclass(next(iter(route_types)), Enum):
            raise GraphValidationError("Conditional routes must all be members of one Enum")
        route_type = next(iter(route_types))
        unmapped = [route for route in route_type if route not in path_map]
        if unmapped:
            raise GraphValidationError(
                f"Conditional edge from {source_id.value!r} leaves routes unmapped: {[r.value for r in unmapped]}"
            )
        self._conditional[source_id] = ConditionalEdge(
            source=source_id,
            router=router,
            path_map={route: self._coerce_target(target) for route, target in path_map.items()},
        )
        return self

    # -- validation ---------------------------------------------------------

    def _fixed_successors(self) -> dict[StageT, set[StageT]]:
        successors: dict[StageT, set[StageT]] = defaultdict(set)
        for source, target in self._edges:
            if target != TERMINAL:
                successors[source].add(target)
        for sources, target in self._joins:
            for source in sources:
                successors[source].add(target)
        return successors

    def _all_successors(self) -> dict[StageT, set[StageT]]:
        successors = self._fixed_successors()
        for source, edge in self._conditional.items():
            for target in edge.path_map.values():
                if target != TERMINAL:
                    successors[source].add(target)
        return successors

    def validate(self) -> None:
        """Raise ``GraphValidationError`` unless the graph is runnable.

        Checks: an entry stage, every referenced stage registered, every stage
        reachable from the entry and able to leave, no stage mixing fixed and
        conditional exits, and fixed edges free of cycles. Loops are only
        possible through conditional edges, whose routers read a state-carried
        bound.
        """
        if self._entry is None:
            raise GraphValidationError("No entry stage set")
        referenced = {self._entry}
        for source, target in self._edges:
            referenced.add(source)
            if target != TERMINAL:
                referenced.add(target)
        for sources, target in self._joins:
            referenced.update(sources)
            referenced.add(target)
        for source, edge in self._conditional.items():
            referenced.add(source)
            referenced.update(t for t in edge.path_map.values() if t != TERMINAL)
        missing = sorted(str(stage.value) for stage in referenced if stage not in self._stages)
        if missing:
            raise GraphValidationError(f"Edges reference unregistered stages: {missing}")

        exits: dict[StageT, int] = defaultdict(int)
        for source, _ in self._edges:
            exits[source] += 1
        for sources, _ in self._joins:
            for source in sources:
                exits[source] += 1
        for source in self._conditional:
            if exits[source]:
                raise GraphValidationError(
                    f"Stage {source.value!r} has both fixed and conditional outgoing edges"
                )
        dead_ends = sorted(
            str(stage.value) for stage in self._stages if not exits[stage] and stage not in self._conditional
        )
        if dead_ends:
            raise GraphValidationError(f"Stages without an outgoing edge (route them to TERMINAL): {dead_ends}")

        successors = self._all_successors()
        seen = {self._entry}
        queue: deque[StageT] = deque([self._entry])
        while queue:
            for nxt in successors.get(queue.popleft(), ()):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        unreachable = sorted(str(stage.value) for stage in self._stages if stage not in seen)
        if unreachable:
            raise GraphValidationError(f"Stages unreachable from entry: {unreachable}")

        fixed = self._fixed_successors()
        indegree: dict[StageT, int] = {stage: 0 for stage in self._stages}
        for targets in fixed.values():
            for target in targets:
                indegree[target] += 1
        ready = deque(stage for stage, degree in indegree.items() if degree == 0)
        ordered = 0
        while ready:
            stage = ready.popleft()
            ordered += 1
            for target in fixed.get(stage, ()):
                indegree[target] -= 1
                if indegree[target] == 0:
                    ready.append(target)
        if ordered != len(self._stages):
            cyclic = sorted(str(stage.value) for stage, degree in indegree.items() if degree > 0)
            raise GraphValidationError(f"Fixed edges form a cycle through: {cyclic}")

    # -- compilation --------------------------------------------------------

    def _group_members(self, spec: StageSpec) -> list[str]:
        return [other.name for other in self._stages.values() if other.event_stage == spec.event_stage]

    def _node(self, spec: StageSpec) -> Callable[..., Awaitable[dict[str, Any]]]:
        members = self._group_members(spec)
        completed_key = self.completed_key

        async def node(state: dict[str, Any], config: RunnableConfig) -> dict[str, Any]:
            ctx: StageContext = config["configurable"][_CONTEXT_KEY]
            ctx.cancel_token.raise_if_cancelled()
            ctx.events.stage_changed(spec.event_stage, members)
            ctx.events.agent_started(spec.name, spec.event_stage)
            handle = _best_effort(
                "start",
                ctx.execution_logger.start,
                spec.name,
                {
                    "document_id": ctx.document_id,
                    "run_id": ctx.run_id,
                    "parallel_group": spec.parallel_group,
                },
            )
            started = time.monotonic()
            try:
                if spec.retry is not None:
                    update = await with_smart_retry(
                        lambda: spec.handler(state, ctx),
                        policy=spec.retry,
                        name=spec.name,
                        sleep=ctx.sleep,
                    )
                else:
                    update = await spec.handler(state, ctx)
            except asyncio.CancelledError:
                if handle is not None:
                    _best_effort("fail", ctx.execution_logger.fail, handle, "cancelled")
                raise
            except Exception as exc:
                if handle is not None:
                    _best_effort("fail", ctx.execution_logger.fail, handle, exc)
                logger.error("Stage %s failed: %s", spec.name, exc)
                raise StageExecutionError(spec.name, exc) from exc

            duration_ms = int((time.monotonic() - started) * 1000)
            result = dict(update or {})
            if handle is not None:
                _best_effort("complete", ctx.execution_logger.complete, handle, _output_size(result))
            ctx.events.agent_completed(spec.name, spec.event_stage, duration_ms)
            if completed_key is not None:
                result[completed_key] = list(result.get(completed_key, [])) + [spec.name]
            logger.debug("Stage %s completed in %dms", spec.name, duration_ms)
            return result

        node.__name__ = spec.name
        return node

    @staticmethod
    def _route(edge: ConditionalEdge) -> Callable[[dict[str, Any]], str]:
        def route(state: dict[str, Any]) -> str:
            choice = edge.router(state)
            if choice not in edge.path_map:
                raise RuntimeError(f"Router for {edge.source.value!r} returned unmapped route {choice!r}")
            return str(choice.value)

        return route

    def compile(self) -> "CompiledPipeline":
        self.validate()
        assert self._entry is not None
        graph = StateGraph(self.state_schema)
        for spec in self._stages.values():
            graph.add_node(spec.name, self._node(spec))
        graph.add_edge(START, str(self._entry.value))
        for source, target in self._edges:
            graph.add_edge(str(source.value), target if target == TERMINAL else str(target.value))
        for sources, target in self._joins:
            graph.add_edge([str(source.value) for source in sources], str(target.value))
        for source, edge in self._conditional.items():
            graph.add_conditional_edges(
                str(source.value),
                self._route(edge),
                {
                    str(route.value): target if target == TERMINAL else str(target.value)
                    for route, target in edge.path_map.items()
                },
            )
        return CompiledPipeline(
            runnable=graph.compile(),
            recursion_limit=self.recursion_limit,
            warning_key=self.warning_key,
            error_key=self.error_key,
        )


class CompiledPipeline:
    """Runnable form of a ``PipelineGraph``.

    Every run resolves to exactly one ``RunOutcome``. Failures keep the last
    state LangGraph committed, so nothing from the failing superstep leaks
    in. Cancellation discards stage outputs and returns the initial state.
    """

    def __init__(
        self,
        *,
        runnable: Any,
        recursion_limit: int,
        warning_key: str | None,
        error_key: str | None,
    ) -> None:
        self.runnable = runnable
        self.recursion_limit = recursion_limit
        self.warning_key = warning_key
        self.error_key = error_key

    async def run(self, initial_state: Mapping[str, Any], *, context: StageContext) -> RunResult:
        config: RunnableConfig = {
            "configurable": {_CONTEXT_KEY: context},
            "recursion_limit": self.recursion_limit,
        }
        snapshots: list[dict[str, Any]] = [dict(initial_state)]

        async def _drive() -> None:
            async for snapshot in self.runnable.astream(dict(initial_state), config=config, stream_mode="values"):
                snapshots.append(snapshot)

        driver = asyncio.ensure_future(_drive())
        watcher = asyncio.ensure_future(context.cancel_token.wait())
        try:
            await asyncio.wait({driver, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            driver.cancel()
            watcher.cancel()
            raise

        finished = driver.done() and not driver.cancelled()
        if not finished:
            driver.cancel()
            watcher.cancel()
            await asyncio.gather(driver, watcher, return_exceptions=True)
            reason = context.cancel_token.reason or "cancelled"
            logger.info("Run %s cancelled: %s", context.run_id, reason)
            return RunResult(
                outcome=RunOutcome.CANCELLED,
                state=dict(initial_state),
                run_id=context.run_id,
                error=PipelineError(message=reason),
            )

        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)
        exc = driver.exception()
        last_state = dict(snapshots[-1])
        if exc is not None:
            stage = exc.stage if isinstance(exc, StageExecutionError) else None
            message = str(exc)
            if self.error_key is not None:
                last_state[self.error_key] = message
            logger.error("Run %s failed%s: %s", context.run_id, f" at {stage}" if stage else "", message)
            context.events.error(message)
            return RunResult(
                outcome=RunOutcome.FAILED,
                state=last_state,
                run_id=context.run_id,
                error=PipelineError(message=message, stage=stage, cause=exc),
            )

        warned = bool(self.warning_key and last_state.get(self.warning_key))
        return RunResult(
            outcome=RunOutcome.SUCCESS_WITH_WARNING if warned else RunOutcome.SUCCESS,
            state=last_state,
            run_id=context.run_id,
        )
