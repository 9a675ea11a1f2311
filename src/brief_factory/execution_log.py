from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Iterable, Mapping, Protocol

from .models import (
    ConsensusResult,
    ExecutionLogEntry,
    ExecutionMode,
    ExecutionStatus,
)
from .state_store import DocumentStore

logger = logging.getLogger(__name__)


def estimate_token_count(text: str) -> int:
    """Rough token estimate: four characters per token."""
    return math.ceil(len(text) / 4)


class DetachedTasks:
    """Owner of fire-and-forget side effects.

    Spawned coroutines are never awaited by the caller that spawns them.
    Strong references are held until each task finishes so none is dropped
    by the garbage collector, and failures are reported through the module
    logger instead of propagating. ``drain`` lets the owner of the event
    loop wait for outstanding work before shutting down.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self.failures: list[tuple[str, BaseException]] = []

    def spawn(self, coro: Awaitable[Any], *, label: str) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        task.set_name(label)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug("Detached task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            self.failures.append((task.get_name(), exc))
            logger.warning("Detached task %s failed: %s", task.get_name(), exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every outstanding task; cancel whatever is still running at the timeout."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _, not_done = await asyncio.wait(tasks, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)
            logger.warning("Cancelled %d detached task(s) still running after %.1fs", len(not_done), timeout or 0.0)


@dataclass
class ExecutionHandle:
    entry_id: str
    stage_name: str
    started_at: datetime
    started_monotonic: float
    mode: ExecutionMode
    parallel_group: str | None
    document_id: str | None
    run_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)


class ExecutionLogger(Protocol):
    def start(self, stage_name: str, context: Mapping[str, Any]) -> ExecutionHandle:
        ...

    def complete(self, handle: ExecutionHandle, output_size_hint: int | None = None) -> None:
        ...

    def fail(self, handle: ExecutionHandle, error: BaseException | str) -> None:
        ...

    def record(self, entry: ExecutionLogEntry) -> None:
        ...


def _new_handle(stage_name: str, context: Mapping[str, Any]) -> ExecutionHandle:
    group = context.get("parallel_group")
    return ExecutionHandle(
        entry_id=uuid.uuid4().hex,
        stage_name=stage_name,
        started_at=datetime.now(UTC),
        started_monotonic=time.monotonic(),
        mode=ExecutionMode.PARALLEL if group else ExecutionMode.SEQUENTIAL,
        parallel_group=group,
        document_id=context.get("document_id"),
        run_id=context.get("run_id"),
        metadata=dict(context.get("metadata") or {}),
    )


class NullExecutionLogger:
    """Logger that keeps timing handles but writes nothing."""

    def start(self, stage_name: str, context: Mapping[str, Any]) -> ExecutionHandle:
        return _new_handle(stage_name, context)

    def complete(self, handle: ExecutionHandle, output_size_hint: int | None = None) -> None:
        return None

    def fail(self, handle: ExecutionHandle, error: BaseException | str) -> None:
        return None

    def record(self, entry: ExecutionLogEntry) -> None:
        return None


class StoreExecutionLogger:
    """Writes execution entries to the persistence collaborator as detached tasks.

    Every public method returns immediately; the write itself happens on a
    task owned by ``detached``.
    """

    def __init__(self, store: DocumentStore, detached: DetachedTasks) -> None:
        self.store = store
        self.detached = detached

    def _write(self, entry: ExecutionLogEntry) -> None:
        self.detached.spawn(
            self.store.append_execution_log(entry),
            label=f"execution-log:{entry.stage_name}:{entry.status.value}",
        )

    def _entry(self, handle: ExecutionHandle, status: ExecutionStatus, **extra: Any) -> ExecutionLogEntry:
        return ExecutionLogEntry(
            entry_id=handle.entry_id,
            document_id=handle.document_id,
            run_id=handle.run_id,
            stage_name=handle.stage_name,
            status=status,
            mode=handle.mode,
            parallel_group=handle.parallel_group,
            started_at=handle.started_at,
            metadata=handle.metadata,
            **extra,
        )

    def start(self, stage_name: str, context: Mapping[str, Any]) -> ExecutionHandle:
        handle = _new_handle(stage_name, context)
        self._write(self._entry(handle, ExecutionStatus.RUNNING))
        return handle

    def complete(self, handle: ExecutionHandle, output_size_hint: int | None = None) -> None:
        self._write(
            self._entry(
                handle,
                ExecutionStatus.COMPLETED,
                completed_at=datetime.now(UTC),
                duration_ms=handle.elapsed_ms(),
                output_tokens_estimate=output_size_hint,
            )
        )

    def fail(self, handle: ExecutionHandle, error: BaseException | str) -> None:
        self._write(
            self._entry(
                handle,
                ExecutionStatus.FAILED,
                completed_at=datetime.now(UTC),
                duration_ms=handle.elapsed_ms(),
                error_message=str(error),
            )
        )

    def record(self, entry: ExecutionLogEntry) -> None:
        self._write(entry)


@dataclass(frozen=True)
class PerformanceSummary:
    total_duration_ms: int
    stage_count: int
    parallel_executions: int
    sequential_executions: int
    failed_stages: tuple[str, ...]


def summarize_execution(entries: Iterable[ExecutionLogEntry]) -> PerformanceSummary:
    """Fold terminal execution entries into per-run totals; ``running`` entries are ignored."""
    terminal = [entry for entry in entries if entry.status != ExecutionStatus.RUNNING]
    return PerformanceSummary(
        total_duration_ms=sum(entry.duration_ms or 0 for entry in terminal),
        stage_count=len(terminal),
        parallel_executions=sum(1 for entry in terminal if entry.mode == ExecutionMode.PARALLEL),
        sequential_executions=sum(1 for entry in terminal if entry.mode == ExecutionMode.SEQUENTIAL),
        failed_stages=tuple(entry.stage_name for entry in terminal if entry.status == ExecutionStatus.FAILED),
    )


# ---------------------------------------------------------------------------
# Consensus audit trail
# ---------------------------------------------------------------------------


def _audit_entry(
    *,
    stage_name: str,
    document_id: str | None,
    run_id: str | None,
    duration_ms: int,
    metadata: dict[str, Any],
) -> ExecutionLogEntry:
    now = datetime.now(UTC)
    return ExecutionLogEntry(
        entry_id=uuid.uuid4().hex,
        document_id=document_id,
        run_id=run_id,
        stage_name=stage_name,
        status=ExecutionStatus.COMPLETED,
        started_at=now,
        completed_at=now,
        duration_ms=duration_ms,
        metadata=metadata,
    )


def consensus_audit_entries(
    result: ConsensusResult, *, document_id: str | None, run_id: str | None = None
) -> list[ExecutionLogEntry]:
    """Break one scoring pass into typed audit entries (verdicts, disagreement, discussion, tiebreak, final)."""
    entries: list[ExecutionLogEntry] = []
    for verdict in result.verdicts:
        entries.append(
            _audit_entry(
                stage_name=f"consensus_evaluator:{verdict.role}",
                document_id=document_id,
                run_id=run_id,
                duration_ms=result.evaluator_durations_ms.get(verdict.role, 0),
                metadata={
                    "type": "evaluator_verdict",
                    "evaluator_role": verdict.role,
                    "overall_score": verdict.overall_score,
                    "confidence": verdict.confidence,
                    "dimension_scores": {k.value: v for k, v in verdict.scores_by_dimension().items()},
                    "issue_count": len(verdict.issues),
                    "issues": [
                        {
                            "dimension": issue.dimension.value,
                            "severity": issue.severity.value,
                            "description": issue.description[:200],
                        }
                        for issue in verdict.issues
                    ],
                    "critique_length": len(verdict.critique),
                    "is_fallback": verdict.is_fallback,
                },
            )
        )

    if result.disagreement is not None:
        disagreement = result.disagreement
        entries.append(
            _audit_entry(
                stage_name="consensus_disagreement_detection",
                document_id=document_id,
                run_id=run_id,
                duration_ms=0,
                metadata={
                    "type": "disagreement_detection",
                    "has_disagreement": disagreement.has_disagreement,
                    "disagreeing_dimensions": [d.value for d in disagreement.disagreeing_dimensions],
                    "max_spread": disagreement.max_spread,
                    "evaluator_positions": [
                        position.model_dump(mode="json") for position in disagreement.evaluator_positions
                    ],
                },
            )
        )

    if result.discussion is not None:
        discussion = result.discussion
        by_evaluator: dict[str, int] = {}
        for revision in discussion.revisions:
            by_evaluator[revision.role] = by_evaluator.get(revision.role, 0) + 1
        entries.append(
            _audit_entry(
                stage_name="consensus_discussion_round",
                document_id=document_id,
                run_id=run_id,
                duration_ms=discussion.duration_ms,
                metadata={
                    "type": "discussion_round",
                    "changes_count": discussion.changes_count,
                    "revisions_by_evaluator": by_evaluator,
                    "discussion_summary_length": len(discussion.discussion_summary),
                    "resolved_disagreement": result.tiebreaker is None,
                },
            )
        )

    if result.tiebreaker is not None:
        tiebreaker = result.tiebreaker
        entries.append(
            _audit_entry(
                stage_name="consensus_tiebreaker",
                document_id=document_id,
                run_id=run_id,
                duration_ms=tiebreaker.duration_ms,
                metadata={
                    "type": "tiebreaker",
                    "arbiter_score": tiebreaker.verdict.overall_score,
                    "disputed_dimensions_resolved": [d.value for d in tiebreaker.disputed_dimensions],
                    "resolution_summary_length": len(tiebreaker.resolution_summary),
                },
            )
        )

    score = result.clarity_score
    entries.append(
        _audit_entry(
            stage_name="consensus_final_score",
            document_id=document_id,
            run_id=run_id,
            duration_ms=0,
            metadata={
                "type": "final_consensus_score",
                "overall_score": score.overall,
                "consensus_method": score.consensus_method.value,
                "confidence": score.confidence,
                "dimension_breakdown": {k.value: v for k, v in score.dimension_breakdown.items()},
                "has_disagreement": bool(result.disagreement and result.disagreement.has_disagreement),
                "needs_human_review": result.needs_human_review,
                "review_reason": result.human_review_reason,
                "evaluator_count": score.evaluator_count,
                "issue_count": result.aggregated_critique.total_issue_count,
            },
        )
    )
    return entries
