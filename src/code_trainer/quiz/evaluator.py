"""Answer scoring and per-option display marks."""

from __future__ import annotations

from dataclasses import dataclass

from .models import BLANK_MARKER, Option, Question

__all__ = [
    "Evaluation",
    "OptionMark",
    "evaluate",
    "fill_blank",
    "option_is_correct",
]


@dataclass(frozen=True)
class OptionMark:
    """How an option should be shown once the question is answered."""

    correct: bool
    selected: bool

    @property
    def incorrect(self) -> bool:
        return self.selected and not self.correct


@dataclass(frozen=True)
class Evaluation:
    is_correct: bool
    score: int
    streak: int
    max_streak: int
    chosen_index: int
    marks: tuple[OptionMark, ...]


def option_is_correct(option: Option) -> bool:
    """Resolve correctness, preferring ``isCorrect`` over legacy markers.

    Older records flag the right answer with ``is_best``, ``is_correct`` or
    ``answer_type == "best"`` instead of ``isCorrect``.
    """

    if option.is_correct is not None:
        return option.is_correct
    extras = option.extras
    return bool(
        extras.get("is_best")
        or extras.get("is_correct")
        or extras.get("answer_type") == "best"
    )


def evaluate(
    question: Question,
    chosen_index: int,
    *,
    score: int = 0,
    streak: int = 0,
    max_streak: int = 0,
) -> Evaluation:
    """Score ``chosen_index`` against ``question`` from the given counters.

    Pure: callers own the counters and must apply the result once per
    question.
    """

    if not 0 <= chosen_index < len(question.options):
        raise IndexError(
            f"Option {chosen_index} out of range for question {question.id}"
        )
    is_correct = option_is_correct(question.options[chosen_index])
    if is_correct:
        score += 1
        streak += 1
        max_streak = max(max_streak, streak)
    else:
        streak = 0
    marks = tuple(
        OptionMark(correct=option_is_correct(option), selected=i == chosen_index)
        for i, option in enumerate(question.options)
    )
    return Evaluation(
        is_correct=is_correct,
        score=score,
        streak=streak,
        max_streak=max_streak,
        chosen_index=chosen_index,
        marks=marks,
    )


def fill_blank(code_snippet: str, text: str) -> str:
    """Render ``text`` in place of every blank marker."""

    return code_snippet.replace(BLANK_MARKER, text)
