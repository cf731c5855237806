from __future__ import annotations

import asyncio

import pytest

from code_trainer.config import load_config
from code_trainer.core.workspace import ensure_workspace
from code_trainer.quiz.acquisition import (
    AcquisitionController,
    AcquisitionError,
)
from code_trainer.quiz.models import Difficulty
from code_trainer.quiz.provider import ProviderError
from code_trainer.quiz.store import QuizStore, StoreError

from fixtures import (
    ScriptedProvider,
    delayed,
    gated,
    make_question,
    make_quiz,
)


def _controller(provider, store: QuizStore, **kwargs) -> AcquisitionController:
    kwargs.setdefault("start_delay", 0)
    return AcquisitionController(provider, store, **kwargs)


def test_acquires_every_question_then_starts(store: QuizStore) -> None:
    provider = ScriptedProvider([make_question(i) for i in range(3)])
    controller = _controller(provider, store)

    async def scenario():
        acquisition = controller.begin("Python lists", Difficulty.BEGINNER, 3)
        quiz = await acquisition.wait_started()
        await acquisition.wait_done()
        return acquisition, quiz

    acquisition, quiz = asyncio.run(scenario())

    assert [q.id for q in quiz.questions] == [1, 2, 3]
    assert quiz.is_loading is False
    assert quiz.id == 1
    assert acquisition.status == "All 3 questions ready!"
    assert acquisition.progress == 1.0
    assert acquisition.failures == []
    assert [r.question_index for r in provider.requests] == [0, 1, 2]
    assert [len(r.previous_questions) for r in provider.requests] == [0, 1, 2]

    saved = store.get(1)
    assert saved is not None
    assert len(saved.questions) == 3
    assert saved.total_questions == 3
    assert saved.is_loading is False


def test_first_question_failure_aborts_and_saves_nothing(
    store: QuizStore,
) -> None:
    provider = ScriptedProvider([ProviderError("limited", status=429)])
    controller = _controller(provider, store)

    async def scenario():
        acquisition = controller.begin("Python lists", "Beginner", 3)
        with pytest.raises(AcquisitionError) as exc:
            await acquisition.wait_started()
        await acquisition.wait_done()
        return acquisition, exc.value

    acquisition, error = asyncio.run(scenario())

    assert error.user_message == "Rate limit exceeded. Please try again later."
    assert len(provider.requests) == 1
    assert acquisition.failures[0].status == 429
    assert acquisition.started is False
    assert store.list() == []


def test_invalid_first_question_is_reported(store: QuizStore) -> None:
    provider = ScriptedProvider([make_question(0, options=("a", "b", "c"))])
    controller = _controller(provider, store)

    with pytest.raises(AcquisitionError) as exc:
        asyncio.run(controller.acquire("Python lists", "Beginner", 2))

    assert "exactly 4 options" in exc.value.user_message
    assert store.list() == []


def test_later_failures_are_skipped(store: QuizStore) -> None:
    provider = ScriptedProvider(
        [
            make_question(0),
            ProviderError("down", status=503),
            make_question(2),
        ]
    )
    controller = _controller(provider, store)

    async def scenario():
        acquisition = controller.begin("Python lists", "Beginner", 3)
        await acquisition.wait_started()
        await acquisition.wait_done()
        return acquisition

    acquisition = asyncio.run(scenario())

    assert [q.id for q in acquisition.quiz.questions] == [1, 3]
    assert [f.index for f in acquisition.failures] == [1]
    assert acquisition.quiz.total_questions == 3
    saved = store.get(acquisition.quiz.id)
    assert saved is not None
    assert len(saved.questions) == 2


def test_slow_request_times_out_and_is_skipped(store: QuizStore) -> None:
    provider = ScriptedProvider(
        [make_question(0), delayed(5, make_question(1))]
    )
    controller = _controller(provider, store, request_timeout=0.05)

    async def scenario():
        acquisition = controller.begin("Python lists", "Beginner", 2)
        await acquisition.wait_started()
        await acquisition.wait_done()
        return acquisition

    acquisition = asyncio.run(scenario())

    assert len(acquisition.quiz.questions) == 1
    assert acquisition.failures[0].reason == "request timed out"


def test_early_start_persists_and_keeps_appending(store: QuizStore) -> None:
    async def scenario():
        gate = asyncio.Event()
        provider = ScriptedProvider(
            [make_question(0), gated(gate, make_question(1))]
        )
        controller = _controller(provider, store, early_start_delay=0)
        acquisition = controller.begin("Python lists", "Beginner", 2)
        quiz = await acquisition.wait_started()

        assert len(quiz.questions) == 1
        assert quiz.is_loading is True
        early = store.get(quiz.id)
        assert early is not None and len(early.questions) == 1
        assert early.is_loading is True

        gate.set()
        await acquisition.wait_done()
        return quiz

    quiz = asyncio.run(scenario())

    saved = store.get(quiz.id)
    assert saved is not None
    assert len(saved.questions) == 2
    assert saved.is_loading is False
    assert len(store.list()) == 1


def test_default_config_starts_without_waiting_for_slow_tail(
    store: QuizStore, tmp_path
) -> None:
    defaults = load_config(
        ensure_workspace(path=tmp_path / "home"), env={}
    ).acquisition
    gate = asyncio.Event()
    provider = ScriptedProvider(
        [make_question(0), gated(gate, make_question(1))]
    )
    controller = AcquisitionController(
        provider,
        store,
        request_timeout=defaults.request_timeout_seconds,
        start_delay=defaults.start_delay_seconds,
        early_start_delay=defaults.early_start_delay_seconds,
    )

    async def scenario():
        acquisition = controller.begin("Python lists", Difficulty.BEGINNER, 2)
        quiz = await asyncio.wait_for(acquisition.wait_started(), timeout=5)
        available = len(quiz.questions)
        gate.set()
        await acquisition.wait_done()
        return quiz, available

    quiz, available = asyncio.run(scenario())

    assert available == 1
    assert len(quiz.questions) == 2
    assert len(store.get(quiz.id).questions) == 2


def test_explicit_start_needs_a_question(store: QuizStore) -> None:
    async def scenario():
        gate = asyncio.Event()
        provider = ScriptedProvider(
            [make_question(0), gated(gate, make_question(1))]
        )
        controller = _controller(provider, store)
        acquisition = controller.begin("Python lists", "Beginner", 2)

        assert acquisition.start() is False
        await acquisition.wait_for_question(0)
        assert acquisition.start() is True
        quiz = await acquisition.wait_started()
        assert quiz.id is not None

        gate.set()
        await acquisition.wait_done()
        return quiz

    quiz = asyncio.run(scenario())

    assert len(quiz.questions) == 2


def test_cancel_after_start_stops_requests(store: QuizStore) -> None:
    async def scenario():
        gate = asyncio.Event()
        provider = ScriptedProvider(
            [make_question(0), gated(gate, make_question(1))]
        )
        controller = _controller(provider, store, early_start_delay=0)
        acquisition = controller.begin("Python lists", "Beginner", 4)
        await acquisition.wait_started()
        acquisition.cancel()
        gate.set()
        await acquisition.wait_done()
        return acquisition, provider

    acquisition, provider = asyncio.run(scenario())

    assert acquisition.cancelled
    assert len(acquisition.quiz.questions) == 1
    assert len(provider.requests) == 2
    saved = store.get(acquisition.quiz.id)
    assert saved is not None and saved.is_loading is False


def test_cancel_before_start_fails_acquisition(store: QuizStore) -> None:
    async def scenario():
        gate = asyncio.Event()
        provider = ScriptedProvider([gated(gate, make_question(0))])
        controller = _controller(provider, store)
        acquisition = controller.begin("Python lists", "Beginner", 2)
        await asyncio.sleep(0)
        acquisition.cancel()
        gate.set()
        with pytest.raises(AcquisitionError):
            await acquisition.wait_started()
        await acquisition.wait_done()

    asyncio.run(scenario())

    assert store.list() == []


def test_wait_for_question_returns_none_for_skipped_tail(
    store: QuizStore,
) -> None:
    provider = ScriptedProvider([make_question(0), ProviderError("x")])
    controller = _controller(provider, store)

    async def scenario():
        acquisition = controller.begin("Python lists", "Beginner", 2)
        await acquisition.wait_started()
        return await acquisition.wait_for_question(1)

    assert asyncio.run(scenario()) is None


def test_listeners_see_each_append_and_followup_status(
    store: QuizStore,
) -> None:
    previous = make_quiz(2)
    provider = ScriptedProvider()
    controller = _controller(provider, store)
    seen = []

    async def scenario():
        acquisition = controller.begin(
            "Python lists", "Intermediate", 2, previous_quiz=previous
        )

        def _listener(index, question):
            seen.append((index, acquisition.status))

        def _broken(index, question):
            raise RuntimeError("listener bug")

        acquisition.subscribe(_broken)
        unsubscribe = acquisition.subscribe(_listener)
        await acquisition.wait_started()
        await acquisition.wait_done()
        unsubscribe()
        return acquisition

    acquisition = asyncio.run(scenario())

    assert acquisition.is_followup
    assert seen == [
        (0, "Generating follow-up question 1 of 2..."),
        (1, "Generating follow-up question 2 of 2..."),
    ]
    assert all(r.previous_quiz is previous for r in provider.requests)
    assert len(acquisition.quiz.questions) == 2


def test_begin_rejects_empty_quiz(store: QuizStore) -> None:
    controller = _controller(ScriptedProvider(), store)
    with pytest.raises(ValueError):
        controller.begin("Python lists", "Beginner", 0)


def test_unreadable_store_does_not_stop_acquisition(store: QuizStore) -> None:
    async def scenario():
        gate = asyncio.Event()
        provider = ScriptedProvider(
            [make_question(0), gated(gate, make_question(1)), make_question(2)]
        )
        controller = _controller(provider, store, early_start_delay=0)
        acquisition = controller.begin("Python lists", "Beginner", 3)
        quiz = await acquisition.wait_started()

        store.path.write_bytes(b"\xff\xfe garbage")
        gate.set()
        await acquisition.wait_done()
        return provider, acquisition, quiz

    provider, acquisition, quiz = asyncio.run(scenario())

    assert [r.question_index for r in provider.requests] == [0, 1, 2]
    assert [q.id for q in quiz.questions] == [1, 2, 3]
    assert acquisition.done and acquisition.failures == []
    assert sorted(p.name for p in store.path.parent.iterdir()) == [
        "quizzes.json"
    ]


def test_failed_first_write_is_retried_on_next_append(
    store: QuizStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    real_insert = store.insert
    inserts = []

    def flaky_insert(record):
        inserts.append(record)
        if len(inserts) == 1:
            raise StoreError("disk full")
        return real_insert(record)

    monkeypatch.setattr(store, "insert", flaky_insert)

    async def scenario():
        gate = asyncio.Event()
        provider = ScriptedProvider(
            [make_question(0), gated(gate, make_question(1))]
        )
        controller = _controller(provider, store, early_start_delay=0)
        acquisition = controller.begin("Python lists", "Beginner", 2)
        quiz = await acquisition.wait_started()
        assert quiz.id is None
        assert store.list() == []

        gate.set()
        await acquisition.wait_done()
        return quiz

    quiz = asyncio.run(scenario())

    assert len(inserts) == 2
    assert quiz.id == 1
    saved = store.get(1)
    assert saved is not None and len(saved.questions) == 2


def test_unexpected_persist_error_is_logged_and_skipped(
    store: QuizStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken_upsert(record):
        raise TypeError("Object of type object is not JSON serializable")

    monkeypatch.setattr(store, "upsert", broken_upsert)

    async def scenario():
        gate = asyncio.Event()
        provider = ScriptedProvider(
            [make_question(0), gated(gate, make_question(1)), make_question(2)]
        )
        controller = _controller(provider, store, early_start_delay=0)
        acquisition = controller.begin("Python lists", "Beginner", 3)
        quiz = await acquisition.wait_started()
        gate.set()
        await acquisition.wait_done()
        return quiz

    quiz = asyncio.run(scenario())

    assert len(quiz.questions) == 3
    saved = store.get(quiz.id)
    assert saved is not None and len(saved.questions) == 1
