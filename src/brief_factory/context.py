from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping

from .events import EventEmitter, GenerationCallbacks
from .execution_log import DetachedTasks, ExecutionLogger, NullExecutionLogger, StoreExecutionLogger
from .retry import Sleep
from .settings import RuntimeSettings
from .state_store import DocumentStore

if TYPE_CHECKING:
    from .consensus import ConsensusScorer
    from .llm import GenerationService

logger = logging.getLogger(__name__)


class CancellationToken:
    """Caller-held cancel switch for one pipeline run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError(self.reason)


@dataclass
class StageContext:
    """Service handles and run-scoped identifiers handed to every stage invocation.

    Stages receive this explicitly instead of reaching for module-level
    clients, so a test can swap any collaborator without patching.
    """

    settings: RuntimeSettings
    generator: "GenerationService | None" = None
    scorer: "ConsensusScorer | None" = None
    store: DocumentStore | None = None
    detached: DetachedTasks = field(default_factory=DetachedTasks)
    execution_logger: ExecutionLogger = field(default_factory=NullExecutionLogger)
    events: EventEmitter = field(default_factory=EventEmitter)
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    document_id: str | None = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    sleep: Sleep = asyncio.sleep

    @classmethod
    def create(
        cls,
        *,
        settings: RuntimeSettings,
        generator: "GenerationService | None" = None,
        scorer: "ConsensusScorer | None" = None,
        store: DocumentStore | None = None,
        callbacks: GenerationCallbacks | None = None,
        document_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        detached: DetachedTasks | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> "StageContext":
        """Wire the standard collaborators: a store-backed execution logger when a store is given."""
        tasks = detached or DetachedTasks()
        execution_logger: ExecutionLogger = (
            StoreExecutionLogger(store, tasks) if store is not None else NullExecutionLogger()
        )
        return cls(
            settings=settings,
            generator=generator,
            scorer=scorer,
            store=store,
            detached=tasks,
            execution_logger=execution_logger,
            events=EventEmitter(callbacks),
            document_id=document_id,
            cancel_token=cancel_token or CancellationToken(),
            sleep=sleep,
        )

    def require_generator(self) -> "GenerationService":
        if self.generator is None:
            raise RuntimeError("StageContext has no generation service configured")
        return self.generator

    def require_scorer(self) -> "ConsensusScorer":
        if self.scorer is None:
            raise RuntimeError("StageContext has no consensus scorer configured")
        return self.scorer

    def persist(self, partial_update: Mapping[str, Any], *, label: str) -> None:
        """Checkpoint to the store without waiting; failures are logged by the detached task owner."""
        if self.store is None or self.document_id is None:
            return
        self.detached.spawn(self.store.put(self.document_id, dict(partial_update)), label=f"persist:{label}")
