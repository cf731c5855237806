"""Quiz session state machine.

Phases and the transitions allowed between them::

    SETUP ──start-new──▶ ACQUIRING ──▶ ACTIVE ──▶ COMPLETE
      │                                  ▲          │  │
      └────────continue-saved────────────┘◀─restart─┘  │
                                         ▲             │
                          ACQUIRING ◀────┼──follow-up──┘
                                         │
    any phase ──go-home──▶ SETUP

A failed acquisition returns to the phase it was started from. While the
question at ``current_index`` is still being generated the session is
*pending*; it subscribes to the acquisition and leaves pending as soon as the
question is appended.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from ..core.logging import get_logger
from .acquisition import Acquisition, AcquisitionController
from .evaluator import Evaluation, evaluate
from .models import Difficulty, Question, Quiz
from .store import QuizStore, StoreError

__all__ = [
    "CompletionSummary",
    "Phase",
    "QuizSession",
    "SessionState",
    "SessionTransitionError",
    "followup_unlocked",
]


class Phase(str, Enum):
    SETUP = "setup"
    ACQUIRING = "acquiring"
    ACTIVE = "active"
    COMPLETE = "complete"


_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.SETUP: frozenset({Phase.ACQUIRING, Phase.ACTIVE}),
    Phase.ACQUIRING: frozenset({Phase.ACTIVE}),
    Phase.ACTIVE: frozenset({Phase.COMPLETE}),
    Phase.COMPLETE: frozenset({Phase.ACTIVE, Phase.ACQUIRING}),
}


class SessionTransitionError(RuntimeError):
    """An action was requested that the current phase does not allow."""


@dataclass
class SessionState:
    """Per-attempt counters. ``answers`` maps question index to result."""

    current_index: int = 0
    score: int = 0
    streak: int = 0
    max_streak: int = 0
    answers: dict[int, Evaluation] = field(default_factory=dict)

    def reset(self) -> None:
        self.current_index = 0
        self.score = 0
        self.streak = 0
        self.max_streak = 0
        self.answers.clear()


@dataclass(frozen=True)
class CompletionSummary:
    score: int
    answered: int
    total: int
    max_streak: int
    followup_unlocked: bool

    @property
    def accuracy(self) -> float:
        if self.answered == 0:
            return 0.0
        return self.score / self.answered

    @property
    def still_loading(self) -> int:
        """Questions that never arrived before the quiz ended."""

        return max(0, self.total - self.answered)


def followup_unlocked(score: int, answered: int) -> bool:
    """The next level opens on a strict majority of answered questions."""

    return score > answered / 2


class QuizSession:
    """Owns the current quiz, its counters and the phase."""

    def __init__(
        self,
        controller: AcquisitionController,
        store: QuizStore,
        *,
        cancel_on_leave: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self._controller = controller
        self._store = store
        self._cancel_on_leave = cancel_on_leave
        self._logger = logger or get_logger("session")
        self._phase = Phase.SETUP
        self._quiz: Optional[Quiz] = None
        self._acquisition: Optional[Acquisition] = None
        self._running: list[Acquisition] = []
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._pending = False
        self._summary: Optional[CompletionSummary] = None
        self.state = SessionState()
        self.warnings: list[str] = []

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def quiz(self) -> Optional[Quiz]:
        return self._quiz

    @property
    def acquisition(self) -> Optional[Acquisition]:
        """The most recently begun acquisition, finished or not."""

        return self._acquisition

    @property
    def pending(self) -> bool:
        """True while the current question is still being generated."""

        return self._pending

    @property
    def summary(self) -> Optional[CompletionSummary]:
        return self._summary

    @property
    def current_question(self) -> Optional[Question]:
        if self._quiz is None or self._phase is not Phase.ACTIVE:
            return None
        return self._quiz.question_at(self.state.current_index)

    @property
    def total_questions(self) -> int:
        return self._quiz.expected_total if self._quiz else 0

    # Commands.

    async def start_new(
        self, topic: str, difficulty: Difficulty, count: int
    ) -> Quiz:
        """Acquire a fresh quiz and enter ACTIVE once it has started.

        Raises ``AcquisitionError`` (and stays in SETUP) when the first
        question cannot be generated.
        """

        self._require(Phase.SETUP, "start a new quiz")
        return await self._acquire(topic, Difficulty.parse(difficulty), count)

    def continue_saved(self, quiz_id: int) -> Quiz:
        """Attempt a stored quiz from the first question."""

        self._require(Phase.SETUP, "continue a saved quiz")
        live = self._live_acquisition(quiz_id)
        if live is not None:
            quiz = live.quiz
        else:
            stored = self._store.get(quiz_id)
            if stored is None:
                raise SessionTransitionError(f"Quiz {quiz_id} is not saved.")
            quiz = stored
            live = None
        if not quiz.questions:
            raise SessionTransitionError(f"Quiz {quiz_id} has no questions.")
        self._enter_active(quiz, live)
        self._logger.info(
            "Continuing saved quiz",
            extra={"quiz_id": quiz_id, "questions": len(quiz.questions)},
        )
        return quiz

    def answer(self, choice_index: int) -> Evaluation:
        """Score the current question once; repeats return the first result."""

        self._require(Phase.ACTIVE, "answer")
        index = self.state.current_index
        previous = self.state.answers.get(index)
        if previous is not None:
            return previous
        question = self.current_question
        if question is None:
            raise SessionTransitionError(
                f"Question {index + 1} has not been generated yet."
            )
        state = self.state
        result = evaluate(
            question,
            choice_index,
            score=state.score,
            streak=state.streak,
            max_streak=state.max_streak,
        )
        state.score = result.score
        state.streak = result.streak
        state.max_streak = result.max_streak
        state.answers[index] = result
        self._logger.debug(
            "Answered question",
            extra={
                "quiz_id": self._quiz.id if self._quiz else None,
                "index": index,
                "correct": result.is_correct,
                "score": state.score,
                "streak": state.streak,
            },
        )
        return result

    def advance(self) -> Phase:
        """Move past the answered current question."""

        self._require(Phase.ACTIVE, "advance")
        if self.state.current_index not in self.state.answers:
            raise SessionTransitionError(
                "Answer the current question before moving on."
            )
        self.state.current_index += 1
        if self.state.current_index >= self.total_questions:
            self._complete()
        else:
            self._refresh_pending()
        return self._phase

    async def wait_for_current(self) -> Optional[Question]:
        """Wait for the current question; completes early if it never comes."""

        if self._phase is not Phase.ACTIVE or self._quiz is None:
            return None
        question = self.current_question
        if question is not None:
            self._pending = False
            return question
        if self._acquisition is not None:
            question = await self._acquisition.wait_for_question(
                self.state.current_index
            )
        if self._phase is not Phase.ACTIVE:
            return None
        if question is None:
            self._complete()
            return None
        self._pending = False
        return question

    def restart(self) -> None:
        """Replay the same questions from the start."""

        self._require(Phase.COMPLETE, "restart")
        self.state.reset()
        self._summary = None
        self._transition(Phase.ACTIVE)
        self._refresh_pending()

    def go_home(self) -> None:
        """Return to SETUP from any phase, dropping the current quiz.

        A running acquisition keeps going in the background (its questions
        are still persisted) unless the session cancels on leave.
        """

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if (
            self._cancel_on_leave
            and self._acquisition is not None
            and not self._acquisition.done
        ):
            self._acquisition.cancel()
        self._phase = Phase.SETUP
        self._quiz = None
        self._pending = False
        self._summary = None
        self.state.reset()

    async def advance_to_followup(self) -> Quiz:
        """Acquire the next-level quiz seeded with the completed one."""

        self._require(Phase.COMPLETE, "start a follow-up quiz")
        if self._summary is None or not self._summary.followup_unlocked:
            raise SessionTransitionError(
                "Score more than half to unlock the next level."
            )
        previous = self._quiz
        assert previous is not None
        return await self._acquire(
            previous.topic,
            previous.difficulty.next(),
            len(previous.questions),
            previous_quiz=previous,
        )

    # Internals.

    async def _acquire(
        self,
        topic: str,
        difficulty: Difficulty,
        count: int,
        previous_quiz: Optional[Quiz] = None,
    ) -> Quiz:
        origin = self._phase
        self._transition(Phase.ACQUIRING)
        acquisition = self._controller.begin(
            topic, difficulty, count, previous_quiz=previous_quiz
        )
        self._acquisition = acquisition
        self._running = [a for a in self._running if not a.done]
        self._running.append(acquisition)
        try:
            quiz = await acquisition.wait_started()
        except Exception:
            if self._phase is Phase.ACQUIRING:
                self._phase = origin
            raise
        if self._phase is not Phase.ACQUIRING:
            # The user went home while waiting; the quiz stays saved.
            self._logger.info(
                "Quiz started after leaving the session",
                extra={"quiz_id": quiz.id, "phase": self._phase.value},
            )
            return quiz
        self._enter_active(quiz, acquisition)
        return quiz

    def _live_acquisition(self, quiz_id: int) -> Optional[Acquisition]:
        """Return the unfinished acquisition still filling ``quiz_id``."""

        for acquisition in self._running:
            if acquisition.quiz.id == quiz_id and not acquisition.done:
                return acquisition
        return None

    def _enter_active(
        self, quiz: Quiz, acquisition: Optional[Acquisition]
    ) -> None:
        self._transition(Phase.ACTIVE)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._quiz = quiz
        if acquisition is not None:
            self._acquisition = acquisition
            self._unsubscribe = acquisition.subscribe(self._on_question)
        self._summary = None
        self.state.reset()
        self._refresh_pending()

    def _on_question(self, index: int, question: Question) -> None:
        if self._pending and index == self.state.current_index:
            self._pending = False

    def _refresh_pending(self) -> None:
        quiz = self._quiz
        if quiz is None:
            return
        if quiz.question_at(self.state.current_index) is not None:
            self._pending = False
            return
        acquisition = self._acquisition
        live = (
            acquisition is not None
            and acquisition.quiz is quiz
            and not acquisition.done
        )
        if live:
            self._pending = True
        else:
            self._complete()

    def _complete(self) -> None:
        quiz = self._quiz
        assert quiz is not None
        state = self.state
        answered = min(state.current_index, len(quiz.questions))
        summary = CompletionSummary(
            score=state.score,
            answered=answered,
            total=quiz.expected_total,
            max_streak=state.max_streak,
            followup_unlocked=followup_unlocked(state.score, answered),
        )
        self._transition(Phase.COMPLETE)
        self._pending = False
        self._summary = summary
        self._logger.info(
            "Quiz complete",
            extra={
                "quiz_id": quiz.id,
                "score": summary.score,
                "answered": summary.answered,
                "total": summary.total,
                "max_streak": summary.max_streak,
            },
        )
        if quiz.id is None:
            return
        try:
            saved = self._store.record_attempt(
                quiz.id, state.score, state.max_streak
            )
        except StoreError as exc:
            message = f"Could not save your best score: {exc}"
            self.warnings.append(message)
            self._logger.warning(
                "Failed to record attempt",
                extra={"quiz_id": quiz.id, "error": str(exc)},
            )
            return
        quiz.high_score = saved.high_score
        quiz.high_streak = saved.high_streak

    def _require(self, phase: Phase, action: str) -> None:
        if self._phase is not phase:
            raise SessionTransitionError(
                f"Cannot {action} while the session is {self._phase.value}."
            )

    def _transition(self, target: Phase) -> None:
        if target not in _TRANSITIONS[self._phase]:
            raise SessionTransitionError(
                f"Invalid transition {self._phase.value} -> {target.value}."
            )
        self._logger.debug(
            "Session transition",
            extra={"from": self._phase.value, "to": target.value},
        )
        self._phase = target
