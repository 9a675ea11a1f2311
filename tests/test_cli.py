from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from brief_factory.__main__ import load_question, main, parse_args

REPO_ROOT = Path(__file__).resolve().parents[1]


def _subprocess_env() -> dict[str, str]:
    env = os.environ.copy()
    src = str(REPO_ROOT / "src")
    env["PYTHONPATH"] = src + (os.pathsep + env["PYTHONPATH"] if env.get("PYTHONPATH") else "")
    return env


def test_cli_end_to_end_runs_offline() -> None:
    result = subprocess.run(
        [sys.executable, "-m", "brief_factory", "--question", "How does a tariff change consumer prices?"],
        cwd=REPO_ROOT,
        env=_subprocess_env(),
        capture_output=True,
        text=True,
        check=False,
    )

    assert result.returncode == 0, result.stderr
    assert "outcome=success" in result.stdout
    assert "score=8.5" in result.stdout
    assert "details:" in result.stdout


def test_cli_reads_question_file(tmp_path: Path) -> None:
    question_file = tmp_path / "question.txt"
    question_file.write_text("Why did the minimum wage debate change after 2015?\n", encoding="utf-8")

    result = subprocess.run(
        [sys.executable, "-m", "brief_factory", "--question-file", str(question_file), "--log-level", "WARNING"],
        cwd=REPO_ROOT,
        env=_subprocess_env(),
        capture_output=True,
        text=True,
        check=False,
    )

    assert result.returncode == 0, result.stderr
    assert "outcome=" in result.stdout


def test_main_without_question_exits_nonzero(capsys: pytest.CaptureFixture[str]) -> None:
    assert main([]) == 1
    assert "outcome=" not in capsys.readouterr().out


def test_main_persists_document_and_logs(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = main(
        [
            "--question",
            "How does a tariff change consumer prices?",
            "--document-id",
            "doc-cli",
            "--state-store-root",
            str(tmp_path),
        ]
    )

    out = capsys.readouterr().out
    assert exit_code == 0
    assert "outcome=success" in out
    details = json.loads(out.split("details:\n", 1)[1])
    assert details["refinement_attempts"] == 1
    assert details["completed_steps"][-1] == "finalize"
    assert details["error"] is None

    document = json.loads((tmp_path / "documents" / "doc-cli.json").read_text(encoding="utf-8"))
    assert document["id"] == "doc-cli"
    assert document["status"] == "completed"
    assert document["final_score"] == 8.5
    assert (tmp_path / "execution_logs" / "doc-cli.jsonl").is_file()


def test_load_question_validation(tmp_path: Path) -> None:
    assert load_question(question="  What is a carbon tax?  ", question_file=None) == "What is a carbon tax?"
    with pytest.raises(ValueError):
        load_question(question=None, question_file=None)
    with pytest.raises(ValueError):
        load_question(question="a", question_file=tmp_path / "q.txt")
    with pytest.raises(FileNotFoundError):
        load_question(question=None, question_file=tmp_path / "missing.txt")


def test_parse_args_defaults() -> None:
    args = parse_args(["--question", "q"])
    assert args.use_llm is False
    assert args.document_id is None
    assert args.state_store_root is None
    assert args.log_level == "INFO"
