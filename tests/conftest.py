from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Callable, Iterator, Sequence

import pytest

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

ROOT = TESTS_DIR.parent
if str(ROOT / "src") not in sys.path:
    sys.path.insert(0, str(ROOT / "src"))

from code_trainer.core import ai  # noqa: E402
from code_trainer.quiz.store import QuizStore  # noqa: E402

from fixtures import FakeOpenAIFactory  # noqa: E402


@pytest.fixture
def openai_factory(monkeypatch: pytest.MonkeyPatch) -> FakeOpenAIFactory:
    """Replace the ``OpenAI`` class used by ``load_client`` with a fake."""

    factory = FakeOpenAIFactory()
    monkeypatch.setattr(ai, "OpenAI", factory)
    monkeypatch.setattr(ai, "load_dotenv", lambda *a, **k: False)
    return factory


@pytest.fixture
def store(tmp_path: Path) -> QuizStore:
    return QuizStore(tmp_path / "quizzes" / "quizzes.json")


@pytest.fixture
def inputs() -> Callable[[Sequence[str]], Callable[[], str]]:
    """Build an input provider that replays lines, then raises EOFError."""

    def _build(lines: Sequence[str]) -> Callable[[], str]:
        pending = list(lines)

        def _provider() -> str:
            if not pending:
                raise EOFError
            return pending.pop(0)

        return _provider

    return _build


@pytest.fixture(autouse=True)
def _reset_trainer_logger() -> Iterator[None]:
    yield
    logger = logging.getLogger("code_trainer")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
