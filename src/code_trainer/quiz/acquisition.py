"""Incremental quiz acquisition.

Questions are requested one index at a time, in order, while the user may
already be answering the first ones. The quiz becomes startable as soon as
question 0 is accepted; starting persists it, and every later append is
written back to the store under the same id.

Failure policy: a failure on index 0 fails the whole acquisition (nothing is
persisted). Any later failure is recorded and the index is skipped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from ..core.logging import get_logger
from .models import Difficulty, Question, Quiz
from .provider import (
    ProviderError,
    QuestionProvider,
    QuestionRequest,
    QuestionValidationError,
    validate_question,
)
from .store import QuizStore, StoreError

__all__ = [
    "Acquisition",
    "AcquisitionController",
    "AcquisitionError",
    "AcquisitionFailure",
    "QuestionListener",
]

QuestionListener = Callable[[int, Question], None]

_TIMEOUT_MESSAGE = (
    "The question service did not respond in time. Please try again."
)


class AcquisitionError(RuntimeError):
    """The acquisition produced nothing to start."""

    def __init__(self, message: str, *, user_message: str | None = None):
        super().__init__(message)
        self.user_message = user_message or message


@dataclass(frozen=True)
class AcquisitionFailure:
    """A skipped (or, for index 0, fatal) question request."""

    index: int
    reason: str
    user_message: str
    status: Optional[int] = None


def _describe_failure(index: int, exc: BaseException) -> AcquisitionFailure:
    if isinstance(exc, ProviderError):
        return AcquisitionFailure(
            index=index,
            reason=str(exc),
            user_message=exc.user_message,
            status=exc.status,
        )
    if isinstance(exc, QuestionValidationError):
        return AcquisitionFailure(index, str(exc), str(exc))
    if isinstance(exc, TimeoutError):
        return AcquisitionFailure(index, "request timed out", _TIMEOUT_MESSAGE)
    return AcquisitionFailure(
        index,
        f"{type(exc).__name__}: {exc}",
        "Failed to generate quiz. Please try again.",
    )


class Acquisition:
    """Handle on one in-flight acquisition.

    ``quiz`` is live: the background task appends to ``quiz.questions`` and
    never touches questions already appended.
    """

    def __init__(
        self,
        quiz: Quiz,
        *,
        previous_quiz: Optional[Quiz],
        store: QuizStore,
        logger: logging.Logger,
    ) -> None:
        self.quiz = quiz
        self.previous_quiz = previous_quiz
        self.failures: list[AcquisitionFailure] = []
        self.status = ""
        self.resolved = 0
        self._store = store
        self._logger = logger
        self._listeners: list[QuestionListener] = []
        self._started = asyncio.Event()
        self._changed = asyncio.Event()
        self._persist_lock = asyncio.Lock()
        self._start_task: Optional[asyncio.Task] = None
        self._task: Optional[asyncio.Task] = None
        self._error: Optional[AcquisitionError] = None
        self._cancelled = False
        self._done = False

    @property
    def is_followup(self) -> bool:
        return self.previous_quiz is not None

    @property
    def started(self) -> bool:
        return self._started.is_set()

    @property
    def done(self) -> bool:
        return self._done

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def error(self) -> Optional[AcquisitionError]:
        return self._error

    @property
    def progress(self) -> float:
        total = self.quiz.total_questions
        return self.resolved / total if total else 1.0

    def subscribe(self, listener: QuestionListener) -> Callable[[], None]:
        """Call ``listener(index, question)`` for every appended question.

        Returns a callable that removes the subscription.
        """

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def start(self) -> bool:
        """Start the session now (explicit user action or auto-start).

        Returns ``False`` while no question is available yet, or when the
        acquisition failed or was cancelled before starting.
        """

        if self.started:
            return True
        if not self.quiz.questions or self._error or self._cancelled:
            return False
        self._started.set()
        self._logger.info(
            "Quiz started",
            extra={
                "topic": self.quiz.topic,
                "available": len(self.quiz.questions),
                "requested": self.quiz.total_questions,
            },
        )
        self._start_task = asyncio.ensure_future(self._persist())
        self._notify()
        return True

    def cancel(self) -> None:
        """Stop requesting further questions at the next suspension point."""

        if not self._done:
            self._cancelled = True
            self._logger.info(
                "Acquisition cancelled",
                extra={"quiz_id": self.quiz.id, "topic": self.quiz.topic},
            )
            self._notify()

    async def wait_started(self) -> Quiz:
        """Wait until the quiz is started and persisted, then return it."""

        while not self.started:
            if self._error is not None:
                raise self._error
            if self._done:
                raise AcquisitionError("Acquisition ended before starting.")
            await self._wait_change()
        if self._start_task is not None:
            await self._start_task
        return self.quiz

    async def wait_for_question(self, index: int) -> Optional[Question]:
        """Return the question at ``index`` once it exists.

        Returns ``None`` when acquisition finished without producing it.
        """

        while True:
            question = self.quiz.question_at(index)
            if question is not None or self._done:
                return question
            await self._wait_change()

    async def wait_done(self) -> None:
        if self._task is not None:
            await self._task

    # Background task internals.

    async def _wait_change(self) -> None:
        await self._changed.wait()

    def _notify(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    def _append(self, question: Question) -> None:
        index = len(self.quiz.questions)
        self.quiz.questions.append(question)
        for listener in list(self._listeners):
            try:
                listener(index, question)
            except Exception:
                self._logger.exception(
                    "Question listener failed", extra={"index": index}
                )
        self._notify()

    def _fail(self, failure: AcquisitionFailure) -> None:
        self._error = AcquisitionError(
            f"Question {failure.index + 1} failed: {failure.reason}",
            user_message=failure.user_message,
        )

    async def _persist(self) -> None:
        """Write the live quiz to the store; create it on first write.

        Failures are logged and retried on the next append.
        """

        async with self._persist_lock:
            record = self.quiz.to_dict()
            try:
                if self.quiz.id is None:
                    stored = await asyncio.to_thread(self._store.insert, record)
                    self.quiz.id = stored["id"]
                    self.quiz.date = stored.get("date")
                    self.quiz.high_score = 0
                    self.quiz.high_streak = 0
                else:
                    await asyncio.to_thread(self._store.upsert, record)
            except StoreError as exc:
                self._logger.warning(
                    "Failed to persist quiz",
                    extra={
                        "quiz_id": self.quiz.id,
                        "questions": len(record.get("questions", [])),
                        "error": str(exc),
                    },
                )
            except Exception:
                self._logger.exception(
                    "Unexpected failure persisting quiz",
                    extra={"quiz_id": self.quiz.id},
                )


class AcquisitionController:
    """Drive a question provider to fill quizzes incrementally."""

    def __init__(
        self,
        provider: QuestionProvider,
        store: QuizStore,
        *,
        request_timeout: float = 60.0,
        start_delay: float = 0.5,
        early_start_delay: Optional[float] = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._request_timeout = request_timeout
        self._start_delay = start_delay
        self._early_start_delay = early_start_delay
        self._logger = logger or get_logger("acquisition")

    def begin(
        self,
        topic: str,
        difficulty: Difficulty,
        count: int,
        previous_quiz: Optional[Quiz] = None,
    ) -> Acquisition:
        """Start the background acquisition task and return its handle.

        Must be called from a running event loop.
        """

        if count < 1:
            raise ValueError("A quiz needs at least one question.")
        quiz = Quiz(
            topic=topic,
            difficulty=Difficulty.parse(difficulty),
            total_questions=count,
            is_loading=True,
        )
        acquisition = Acquisition(
            quiz,
            previous_quiz=previous_quiz,
            store=self._store,
            logger=self._logger,
        )
        acquisition._task = asyncio.get_running_loop().create_task(
            self._run(acquisition)
        )
        return acquisition

    async def acquire(
        self,
        topic: str,
        difficulty: Difficulty,
        count: int,
        previous_quiz: Optional[Quiz] = None,
    ) -> Quiz:
        """Return the live quiz once it has started.

        Raises :class:`AcquisitionError` when the first question fails.
        """

        acquisition = self.begin(topic, difficulty, count, previous_quiz)
        return await acquisition.wait_started()

    async def _run(self, acquisition: Acquisition) -> None:
        quiz = acquisition.quiz
        count = quiz.total_questions
        noun = "follow-up question" if acquisition.is_followup else "question"
        early_start: Optional[asyncio.TimerHandle] = None
        self._logger.info(
            "Acquisition started",
            extra={
                "topic": quiz.topic,
                "difficulty": quiz.difficulty.value,
                "count": count,
                "followup": acquisition.is_followup,
            },
        )
        try:
            for index in range(count):
                if acquisition.cancelled:
                    break
                acquisition.status = f"Generating {noun} {index + 1} of {count}..."
                question = await self._request(acquisition, index)
                acquisition.resolved += 1
                if acquisition.cancelled:
                    break
                if question is None:
                    if index == 0:
                        return
                    continue

                acquisition._append(question)
                if index == 0 and not acquisition.started:
                    acquisition.status = (
                        "Question 1 ready! Loading remaining questions..."
                    )
                    if self._early_start_delay is not None:
                        early_start = asyncio.get_running_loop().call_later(
                            self._early_start_delay, acquisition.start
                        )
                if acquisition.started:
                    await acquisition._persist()

            quiz.is_loading = False
            if acquisition.cancelled and not acquisition.started:
                acquisition._error = AcquisitionError(
                    "Acquisition cancelled before the quiz started.",
                    user_message="Quiz generation was cancelled.",
                )
                return
            if not acquisition.started:
                acquisition.status = f"All {count} questions ready!"
                await asyncio.sleep(self._start_delay)
                acquisition.start()
            else:
                await acquisition._persist()
        finally:
            if early_start is not None:
                early_start.cancel()
            quiz.is_loading = False
            acquisition._done = True
            acquisition._notify()
            self._logger.info(
                "Acquisition finished",
                extra={
                    "quiz_id": quiz.id,
                    "acquired": len(quiz.questions),
                    "requested": count,
                    "skipped": [f.index for f in acquisition.failures],
                    "cancelled": acquisition.cancelled,
                },
            )

    async def _request(
        self, acquisition: Acquisition, index: int
    ) -> Optional[Question]:
        quiz = acquisition.quiz
        request = QuestionRequest(
            topic=quiz.topic,
            difficulty=quiz.difficulty,
            question_index=index,
            total_questions=quiz.total_questions,
            previous_questions=tuple(quiz.questions),
            previous_quiz=acquisition.previous_quiz,
        )
        try:
            question = await asyncio.wait_for(
                self._provider.fetch_question(request),
                timeout=self._request_timeout,
            )
            validate_question(question)
        except (ProviderError, QuestionValidationError, TimeoutError) as exc:
            failure = _describe_failure(index, exc)
        except Exception as exc:
            self._logger.exception(
                "Unexpected provider failure", extra={"index": index}
            )
            failure = _describe_failure(index, exc)
        else:
            if question.blank_count != 1:
                self._logger.warning(
                    "Question has an unexpected number of blanks",
                    extra={"index": index, "blanks": question.blank_count},
                )
            return question

        acquisition.failures.append(failure)
        if index == 0:
            self._logger.error(
                "First question failed; aborting acquisition",
                extra={"reason": failure.reason, "status": failure.status},
            )
            acquisition._fail(failure)
        else:
            self._logger.warning(
                "Skipping question after failure",
                extra={
                    "index": index,
                    "reason": failure.reason,
                    "status": failure.status,
                },
            )
        return None
