from __future__ import annotations

import logging
from typing import Protocol, Sequence

logger = logging.getLogger(__name__)


class GenerationCallbacks(Protocol):
    """Progress callbacks; any subset may be implemented."""

    def on_stage_changed(self, stage_name: str, active_stages: Sequence[str]) -> None:
        ...

    def on_agent_started(self, name: str, stage: str) -> None:
        ...

    def on_agent_completed(self, name: str, stage: str, duration_ms: int) -> None:
        ...

    def on_error(self, message: str) -> None:
        ...


class NullCallbacks:
    def on_stage_changed(self, stage_name: str, active_stages: Sequence[str]) -> None:
        return None

    def on_agent_started(self, name: str, stage: str) -> None:
        return None

    def on_agent_completed(self, name: str, stage: str, duration_ms: int) -> None:
        return None

    def on_error(self, message: str) -> None:
        return None


class EventEmitter:
    """Invokes callbacks synchronously and contains their failures.

    A missing collaborator, a missing method, or a raising callback is logged
    and otherwise ignored so progress reporting can never fail a run.
    """

    def __init__(self, callbacks: GenerationCallbacks | None = None) -> None:
        self.callbacks = callbacks
        self.current_stage: str | None = None

    def _call(self, method: str, *args: object) -> None:
        if self.callbacks is None:
            return
        handler = getattr(self.callbacks, method, None)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception as exc:  # noqa: BLE001 - callback errors must not escape.
            logger.warning("Callback %s raised and was ignored: %s", method, exc)

    def stage_changed(self, stage_name: str, active_stages: Sequence[str]) -> None:
        if stage_name == self.current_stage:
            return
        self.current_stage = stage_name
        self._call("on_stage_changed", stage_name, list(active_stages))

    def agent_started(self, name: str, stage: str) -> None:
        self._call("on_agent_started", name, stage)

    def agent_completed(self, name: str, stage: str, duration_ms: int) -> None:
        self._call("on_agent_completed", name, stage, duration_ms)

    def error(self, message: str) -> None:
        self._call("on_error", message)


class RecordingCallbacks:
    """Collects every event in order; handy for CLIs and tests that replay progress."""

    def __init__(self) -> None:
        self.events: list[tuple[str, tuple[object, ...]]] = []

    def on_stage_changed(self, stage_name: str, active_stages: Sequence[str]) -> None:
        self.events.append(("stage_changed", (stage_name, tuple(active_stages))))

    def on_agent_started(self, name: str, stage: str) -> None:
        self.events.append(("agent_started", (name, stage)))

    def on_agent_completed(self, name: str, stage: str, duration_ms: int) -> None:
        self.events.append(("agent_completed", (name, stage, duration_ms)))

    def on_error(self, message: str) -> None:
        self.events.append(("error", (message,)))

    def names(self, kind: str) -> list[tuple[object, ...]]:
        return [payload for event_kind, payload in self.events if event_kind == kind]
