"""Entry point for `python -m brief_factory` and the `brief-factory` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import uuid
from pathlib import Path

from brief_factory.execution_log import DetachedTasks
from brief_factory.graph import RunOutcome, RunResult
from brief_factory.pipeline import (
    build_llm_generator,
    build_llm_scorer,
    build_offline_scorer,
    generate_document,
)
from brief_factory.settings import RuntimeSettings
from brief_factory.state_store import FileDocumentStore
from brief_factory.templates import TemplateGenerationService


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a scored analytical brief for a question")
    parser.add_argument("--question", default=None, help="Question to analyze")
    parser.add_argument("--question-file", type=Path, default=None, help="Read the question from a text file")
    parser.add_argument(
        "--use-llm",
        action="store_true",
        help="Call OpenAI models for generation and evaluation (default: offline templates and scripted panel)",
    )
    parser.add_argument("--document-id", default=None, help="Persist checkpoints and execution logs under this id")
    parser.add_argument(
        "--state-store-root",
        type=Path,
        default=None,
        help="Directory for persisted documents and execution logs (default: BRIEF_STATE_STORE_ROOT)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_question(*, question: str | None, question_file: Path | None) -> str:
    if question is not None and question_file is not None:
        raise ValueError("--question and --question-file are mutually exclusive")
    if question_file is not None:
        if not question_file.is_file():
            raise FileNotFoundError(f"Question file does not exist: {question_file}")
        question = question_file.read_text(encoding="utf-8")
    if question is None or not question.strip():
        raise ValueError("A non-empty question is required (--question or --question-file)")
    return question.strip()


def _details(result: RunResult) -> dict[str, object]:
    state = result.state
    consensus = state.get("consensus_result")
    return {
        "run_id": result.run_id,
        "completed_steps": state.get("completed_steps", []),
        "refinement_attempts": state.get("refinement_attempts", 0),
        "refinement_history": [attempt.model_dump(mode="json") for attempt in state.get("refinement_history", [])],
        "consensus": consensus.model_dump(mode="json", exclude={"verdicts"}) if consensus is not None else None,
        "error": result.error.message if result.error is not None else None,
    }


async def _run(args: argparse.Namespace, question: str, settings: RuntimeSettings) -> RunResult:
    detached = DetachedTasks()
    store = None
    document_id = args.document_id
    if document_id is not None or args.state_store_root is not None:
        root = args.state_store_root or settings.state_store_path(Path.cwd())
        store = FileDocumentStore(root)
        document_id = document_id or uuid.uuid4().hex

    if args.use_llm:
        generator = build_llm_generator(settings, repo_root=Path.cwd())
        scorer = build_llm_scorer(settings, generator)
    else:
        generator = TemplateGenerationService()
        scorer = build_offline_scorer(settings)

    try:
        return await generate_document(
            question,
            settings=settings,
            generator=generator,
            scorer=scorer,
            store=store,
            document_id=document_id,
            detached=detached,
        )
    finally:
        await detached.drain(timeout=30.0)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        question = load_question(question=args.question, question_file=args.question_file)
    except (OSError, ValueError) as exc:
        logging.error("Unable to load input: %s", exc)
        return 1

    try:
        result = asyncio.run(_run(args, question, settings))
    except Exception as exc:  # noqa: BLE001
        logging.exception("Brief generation failed: %s", exc)
        return 1

    print(f"outcome={result.outcome.value}")
    consensus = result.state.get("consensus_result")
    if consensus is not None:
        print(f"score={consensus.final_score:.1f}")
    if result.state.get("quality_warning"):
        print(f"quality_warning={result.state.get('quality_warning_reason')}")
    print("details:")
    print(json.dumps(_details(result), indent=2, default=str))

    return 0 if result.outcome in {RunOutcome.SUCCESS, RunOutcome.SUCCESS_WITH_WARNING} else 1


if __name__ == "__main__":
    raise SystemExit(main())
