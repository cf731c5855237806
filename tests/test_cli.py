from __future__ import annotations

import json
import time
from pathlib import Path

import pytest
from rich.console import Console

from code_trainer.quiz import _main
from code_trainer.quiz.models import Difficulty
from code_trainer.quiz.provider import ProviderError
from code_trainer.quiz.store import QuizStore

from fixtures import (
    ScriptedProvider,
    delayed,
    make_question,
    make_quiz,
)

_FAST_CONFIG = """
[acquisition]
start_delay_seconds = 0
manual_start = false
"""

_OFFER_CONFIG = """
[acquisition]
start_delay_seconds = 0
early_start_delay_seconds = false
manual_start = true
"""


@pytest.fixture
def home(tmp_path: Path) -> Path:
    return tmp_path / "home"


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "code_trainer.toml"
    path.write_text(_FAST_CONFIG, encoding="utf-8")
    return path


@pytest.fixture
def provider(monkeypatch: pytest.MonkeyPatch) -> ScriptedProvider:
    scripted = ScriptedProvider()
    monkeypatch.setattr(_main, "_build_provider", lambda cfg: scripted)
    return scripted


@pytest.fixture
def cli(home: Path, config_file: Path, inputs):
    """Run the CLI against a temp workspace; returns ``(code, output)``."""

    def _run(*argv: str, lines=(), config: Path | None = config_file):
        console = Console(record=True, width=100)
        prefix = ["--data-home", str(home)]
        if config is not None:
            prefix += ["--config", str(config)]
        code = _main.run(
            [*prefix, *argv],
            console=console,
            input_provider=inputs(list(lines)),
            env={},
        )
        return code, console.export_text()

    return _run


def _store(home: Path) -> QuizStore:
    return QuizStore(home / "quizzes" / "quizzes.json")


def test_init_writes_template_once(cli, home: Path) -> None:
    code, output = cli("init", config=None)
    target = home / "config" / "code_trainer.toml"

    assert code == 0
    assert target.exists()
    assert "Created template" in output

    code, output = cli("init", config=None)
    assert code == 1
    assert "Config already exists" in output

    code, _ = cli("init", "--overwrite", config=None)
    assert code == 0


def test_list_empty_and_populated(cli, home: Path) -> None:
    code, output = cli("list")
    assert code == 0
    assert "No saved quizzes." in output

    _store(home).create(make_quiz(3, topic="Rust ownership"))
    code, output = cli("list")
    assert code == 0
    assert "Rust ownership" in output
    assert "3 question(s)" in output


def test_invalid_config_exits_with_usage_code(cli, tmp_path: Path) -> None:
    bad = tmp_path / "bad.toml"
    bad.write_text("[quiz]\ndefault_count = 0\n", encoding="utf-8")

    code, output = cli("list", config=bad)

    assert code == 2
    assert "Error:" in output


def test_missing_explicit_config(cli, tmp_path: Path) -> None:
    code, output = cli("list", config=tmp_path / "absent.toml")

    assert code == 2
    assert "not found" in output


def test_delete_with_confirmation(cli, home: Path) -> None:
    quiz_id = _store(home).create(make_quiz(1))

    code, output = cli("delete", str(quiz_id), lines=["n"])
    assert code == 1
    assert "Aborted." in output
    assert _store(home).get(quiz_id) is not None

    code, output = cli("delete", str(quiz_id), "--yes")
    assert code == 0
    assert f"Deleted quiz {quiz_id}." in output
    assert _store(home).get(quiz_id) is None

    code, output = cli("delete", str(quiz_id), "--yes")
    assert code == 1
    assert "not found" in output


def test_new_plays_through_to_summary(
    cli, home: Path, provider: ScriptedProvider
) -> None:
    code, output = cli(
        "new",
        "Python lists",
        "--difficulty",
        "intermediate",
        "--num",
        "2",
        lines=["a", "", "b", "", "h"],
    )

    assert code == 0
    assert "Correct!" in output
    assert "Incorrect." in output
    assert "Quiz Complete" in output
    assert "Score more than half to unlock the next level." in output

    saved = _store(home).list()
    assert len(saved) == 1
    quiz = saved[0]
    assert quiz.topic == "Python lists"
    assert quiz.difficulty is Difficulty.INTERMEDIATE
    assert len(quiz.questions) == 2
    assert (quiz.high_score, quiz.high_streak) == (1, 1)
    assert provider.requests[0].difficulty is Difficulty.INTERMEDIATE


def test_new_reports_first_question_failure(
    cli, home: Path, provider: ScriptedProvider
) -> None:
    provider.script.append(ProviderError("quota", status=429))

    code, output = cli("new", "Python lists", "--num", "2")

    assert code == 1
    assert "Rate limit exceeded." in output
    assert _store(home).list() == []


def test_new_rejects_out_of_range_count(cli, provider) -> None:
    code, output = cli("new", "Python lists", "--num", "0")

    assert code == 2
    assert "Enter a number between 1 and" in output
    assert provider.requests == []


def test_new_followup_from_summary(
    cli, home: Path, provider: ScriptedProvider
) -> None:
    code, output = cli(
        "new",
        "Python lists",
        "--num",
        "1",
        lines=["a", "", "f", "a", "", "h"],
    )

    assert code == 0
    assert output.count("Quiz Complete") == 2
    levels = sorted(q.difficulty.value for q in _store(home).list())
    assert levels == ["Beginner", "Intermediate"]
    assert provider.requests[-1].is_followup


def test_attempt_saved_quiz_and_restart(cli, home: Path, provider) -> None:
    quiz_id = _store(home).create(make_quiz(1))

    code, output = cli(
        "attempt", str(quiz_id), lines=["b", "", "r", "a", "", "h"]
    )

    assert code == 0
    assert output.count("Quiz Complete") == 2
    saved = _store(home).get(quiz_id)
    assert (saved.high_score, saved.high_streak) == (1, 1)
    assert provider.requests == []


def test_attempt_unknown_quiz(cli, provider) -> None:
    code, output = cli("attempt", "42")

    assert code == 1
    assert "Error:" in output


def test_play_menu_creates_and_deletes(
    cli, home: Path, provider: ScriptedProvider
) -> None:
    code, output = cli(
        "play",
        lines=[
            "n",
            "Python",
            "",
            "1",
            "a",
            "",
            "h",
            "d 1",
            "d 1",
            "q",
        ],
    )

    assert code == 0
    assert "Saved quizzes" in output
    assert "Press d 1 again within 2 seconds to delete." in output
    assert "Deleted quiz 1." in output
    assert _store(home).list() == []


def test_play_stops_when_input_runs_out(cli, home: Path, provider) -> None:
    _store(home).create(make_quiz(2))

    code, output = cli("play", lines=["a 1", "a"])

    assert code == 0
    assert "Session interrupted." in output


def test_commands_are_logged_as_json(cli, home: Path) -> None:
    code, _ = cli("list")

    assert code == 0
    log_path = home / "logs" / "code_trainer.log"
    records = [
        json.loads(line)
        for line in log_path.read_text(encoding="utf-8").splitlines()
    ]
    started = [r for r in records if r["message"] == "Command started"]
    assert started and started[0]["extra"]["command"] == "list"


@pytest.fixture
def offer_config(tmp_path: Path) -> Path:
    path = tmp_path / "offer.toml"
    path.write_text(_OFFER_CONFIG, encoding="utf-8")
    return path


def test_enter_starts_before_remaining_questions_arrive(
    cli, home: Path, provider: ScriptedProvider, offer_config: Path
) -> None:
    provider.script.extend(
        [make_question(0), delayed(1.0, make_question(1))]
    )

    code, output = cli(
        "new",
        "Python lists",
        "--num",
        "2",
        lines=["", "a", "", "a", "", "h"],
        config=offer_config,
    )

    assert code == 0
    assert "Question 1 ready!" in output
    assert "Question 2 is still being generated" in output
    assert output.count("Correct!") == 2
    quiz = _store(home).list()[0]
    assert len(quiz.questions) == 2
    assert quiz.high_score == 2


def test_line_typed_during_loading_answers_first_question(
    home: Path, provider: ScriptedProvider, offer_config: Path
) -> None:
    provider.script.extend(
        [make_question(0), delayed(0.2, make_question(1))]
    )
    lines = ["a", "", "a", "", "h"]

    def _slow_first_line() -> str:
        if len(lines) == 5:
            time.sleep(0.8)
        if not lines:
            raise EOFError
        return lines.pop(0)

    console = Console(record=True, width=100)
    code = _main.run(
        [
            "--data-home",
            str(home),
            "--config",
            str(offer_config),
            "new",
            "Python lists",
            "--num",
            "2",
        ],
        console=console,
        input_provider=_slow_first_line,
        env={},
    )
    output = console.export_text()

    assert code == 0
    assert "Question 1 ready!" in output
    assert "Question 2 is still being generated" not in output
    assert _store(home).list()[0].high_score == 2
