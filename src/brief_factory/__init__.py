from importlib.metadata import PackageNotFoundError, version

from .consensus import ConsensusScorer
from .context import CancellationToken, StageContext
from .errors import (
    DocumentNotFoundError,
    GraphValidationError,
    MalformedOutputError,
    PermanentError,
    RetryExhaustedError,
    StageExecutionError,
)
from .events import EventEmitter, GenerationCallbacks, NullCallbacks
from .execution_log import DetachedTasks, ExecutionLogger, StoreExecutionLogger
from .graph import TERMINAL, CompiledPipeline, PipelineGraph, RunOutcome, RunResult
from .models import (
    ClarityScore,
    ConsensusMethod,
    ConsensusResult,
    Dimension,
    DisagreementResult,
    DiscussionRoundOutput,
    EvaluatorVerdict,
    RefinementAttempt,
    TiebreakerOutput,
)
from .pipeline import StageId, build_pipeline, compile_pipeline, generate_document
from .refinement import RefinementRoute, route_after_scoring
from .retry import RetryPolicy, is_retryable_error, with_retry, with_smart_retry
from .scoring import calculate_final_score, detect_disagreement
from .settings import RuntimeSettings
from .state import PipelineState, initial_state
from .state_store import FileDocumentStore, InMemoryDocumentStore


def get_version() -> str:
    try:
        return version("brief-factory")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "CancellationToken",
    "ClarityScore",
    "CompiledPipeline",
    "ConsensusMethod",
    "ConsensusResult",
    "ConsensusScorer",
    "DetachedTasks",
    "Dimension",
    "DisagreementResult",
    "DiscussionRoundOutput",
    "DocumentNotFoundError",
    "EvaluatorVerdict",
    "EventEmitter",
    "ExecutionLogger",
    "FileDocumentStore",
    "GenerationCallbacks",
    "GraphValidationError",
    "InMemoryDocumentStore",
    "MalformedOutputError",
    "NullCallbacks",
    "PermanentError",
    "PipelineGraph",
    "PipelineState",
    "RefinementAttempt",
    "RefinementRoute",
    "RetryExhaustedError",
    "RetryPolicy",
    "RunOutcome",
    "RunResult",
    "RuntimeSettings",
    "StageContext",
    "StageExecutionError",
    "StageId",
    "StoreExecutionLogger",
    "TERMINAL",
    "TiebreakerOutput",
    "build_pipeline",
    "calculate_final_score",
    "compile_pipeline",
    "detect_disagreement",
    "generate_document",
    "get_version",
    "initial_state",
    "is_retryable_error",
    "route_after_scoring",
    "with_retry",
    "with_smart_retry",
]
