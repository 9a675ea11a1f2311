from __future__ import annotations

from typing import Sequence


class MalformedOutputError(RuntimeError):
    """Generation output could not be decoded into the stage's expected schema."""


class PermanentError(RuntimeError):
    """External failure that retrying cannot fix (bad credentials, missing resource)."""


class RetryExhaustedError(RuntimeError):
    """Raised once a retried operation has no attempts left.

    Carries every attempt's underlying error so callers can report the full
    history rather than only the last failure.
    """

    def __init__(self, name: str, errors: Sequence[BaseException], *, permanent: bool = False) -> None:
        self.name = name
        self.errors = list(errors)
        self.permanent = permanent
        last = self.errors[-1] if self.errors else None
        reason = "permanent error" if permanent else f"{len(self.errors)} attempt(s)"
        super().__init__(f"{name} failed after {reason}: {last}")

    @property
    def attempts(self) -> int:
        return len(self.errors)

    @property
    def last_error(self) -> BaseException | None:
        return self.errors[-1] if self.errors else None


class GraphValidationError(ValueError):
    """Pipeline graph is malformed; raised while building, never while running."""


class StageExecutionError(RuntimeError):
    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"Stage '{stage}' failed: {cause}")


class DocumentNotFoundError(LookupError):
    def __init__(self, document_id: str) -> None:
        self.document_id = document_id
        super().__init__(f"Document not found: {document_id}")
