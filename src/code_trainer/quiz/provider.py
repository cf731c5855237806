"""Question providers: produce one validated question per request.

Two transports share the same request/response contract:

* :class:`OpenAIQuestionProvider` prompts the model directly and shapes the
  structured answer into a question with four shuffled options.
* :class:`HttpQuestionProvider` posts the request to a question function
  (the hosted proxy) and reads ``{"question": {...}}`` back.
"""

from __future__ import annotations

import asyncio
import json
import random
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, MutableMapping, Optional, Protocol, Sequence

import httpx

from ..core.ai import AIClientError, load_client
from .evaluator import option_is_correct
from .models import BLANK_MARKER, Difficulty, Option, Question, Quiz

__all__ = [
    "HttpQuestionProvider",
    "OpenAIQuestionProvider",
    "ProviderError",
    "QuestionProvider",
    "QuestionRequest",
    "QuestionValidationError",
    "describe_status",
    "parse_question_payload",
    "validate_question",
]

QUESTION_SCHEMA: Mapping[str, Any] = {
    "type": "object",
    "properties": {
        "prompt": {"type": "string"},
        "code_snippet": {"type": "string"},
        "correct_answer": {"type": "string"},
        "wrong_answers": {
            "type": "array",
            "minItems": 3,
            "maxItems": 3,
            "items": {"type": "string"},
        },
        "explanation": {"type": "string"},
    },
    "required": [
        "prompt",
        "code_snippet",
        "correct_answer",
        "wrong_answers",
        "explanation",
    ],
    "additionalProperties": False,
}

_STATUS_MESSAGES = {
    401: "Invalid API key configuration. Please contact support.",
    429: "Rate limit exceeded. Please try again later.",
    402: "Service temporarily unavailable. Please try again later.",
    503: "Service temporarily unavailable. Please try again later.",
}


def describe_status(status: Optional[int], detail: Optional[str] = None) -> str:
    """Map a provider status to the message shown to the user."""

    if status in _STATUS_MESSAGES:
        return _STATUS_MESSAGES[status]
    if detail:
        return detail
    if status is None:
        return "Server error. Please try again."
    return f"Server error: {status}. Please try again."


class ProviderError(RuntimeError):
    """A question request failed (transport, status or payload)."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.detail = detail

    @property
    def user_message(self) -> str:
        if self.status is None:
            return self.detail or str(self)
        return describe_status(self.status, self.detail)


class QuestionValidationError(ValueError):
    """A received question violates the question schema."""


@dataclass(frozen=True)
class QuestionRequest:
    topic: str
    difficulty: Difficulty
    question_index: int
    total_questions: int
    previous_questions: Sequence[Question] = ()
    previous_quiz: Optional[Quiz] = None

    @property
    def is_followup(self) -> bool:
        return self.previous_quiz is not None

    def to_payload(self) -> MutableMapping[str, Any]:
        payload: MutableMapping[str, Any] = {
            "topic": self.topic,
            "difficulty": self.difficulty.value,
            "questionIndex": self.question_index,
            "totalQuestions": self.total_questions,
            "previousQuestions": [q.to_dict() for q in self.previous_questions],
        }
        if self.previous_quiz is not None:
            payload["previousQuiz"] = self.previous_quiz.to_dict()
        return payload


class QuestionProvider(Protocol):
    async def fetch_question(self, request: QuestionRequest) -> Question:
        ...


def validate_question(question: Question) -> None:
    """Raise :class:`QuestionValidationError` unless the question is usable."""

    if not question.prompt.strip():
        raise QuestionValidationError("Question is missing a prompt.")
    if not question.code_snippet.strip():
        raise QuestionValidationError("Question is missing a code snippet.")
    if len(question.options) != 4:
        raise QuestionValidationError(
            "Invalid question format - must have exactly 4 options, "
            f"found {len(question.options)}."
        )
    correct = sum(1 for option in question.options if option_is_correct(option))
    if correct != 1:
        raise QuestionValidationError(
            f"Question {question.id}: Must have exactly one correct option, "
            f"found {correct}."
        )


def parse_question_payload(
    payload: Any, *, index: int, rng: Optional[random.Random] = None
) -> Question:
    """Build a question from a provider response body.

    Accepts the wire shape ``{"question": {...}}``, a bare question object,
    or a ``{"questions": [...]}`` batch (first entry used). Questions may
    carry ready-made ``options`` or ``correct_answer``/``wrong_answers``.
    """

    if not isinstance(payload, Mapping):
        raise ProviderError("Provider returned a non-object payload.")
    raw = payload.get("question", payload)
    if isinstance(payload.get("questions"), list) and "question" not in payload:
        batch = payload["questions"]
        raw = batch[0] if batch else None
    if not isinstance(raw, Mapping):
        raise ProviderError("Failed to generate question. Please try again.")

    if "options" not in raw and "correct_answer" in raw:
        wrong = raw.get("wrong_answers") or []
        if not isinstance(wrong, list):
            wrong = []
        options = _shuffle_options(
            str(raw.get("correct_answer")), [str(w) for w in wrong], rng
        )
        raw = {
            key: value
            for key, value in raw.items()
            if key not in {"correct_answer", "wrong_answers"}
        }
        raw["options"] = [option.to_dict() for option in options]
    question = Question.from_dict(raw, position=index)
    if question.id != index + 1:
        question = Question(
            id=index + 1,
            prompt=question.prompt,
            code_snippet=question.code_snippet,
            options=question.options,
            explanation=question.explanation,
            extras=question.extras,
        )
    return question


def _shuffle_options(
    correct: str, wrong: Sequence[str], rng: Optional[random.Random]
) -> list[Option]:
    options = [Option(correct, True)] + [Option(text, False) for text in wrong]
    (rng or random).shuffle(options)
    return options


@dataclass
class OpenAIQuestionProvider:
    """Generate questions with an OpenAI chat completion per request."""

    client: Any = None
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 1000
    timeout: Optional[float] = None
    rng: random.Random = field(default_factory=random.Random)

    async def fetch_question(self, request: QuestionRequest) -> Question:
        content = await asyncio.to_thread(self._complete, request)
        data = _extract_json_object(content)
        if data is None:
            raise ProviderError(
                "Failed to parse question data from model response."
            )
        return parse_question_payload(
            data, index=request.question_index, rng=self.rng
        )

    def _complete(self, request: QuestionRequest) -> str:
        if self.client is None:
            try:
                self.client = load_client(timeout=self.timeout)
            except AIClientError as exc:
                raise ProviderError(str(exc), status=401) from exc
        system_prompt, user_prompt = build_prompts(request)
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": "quiz_question",
                        "schema": QUESTION_SCHEMA,
                        "strict": True,
                    },
                },
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except Exception as exc:
            status = getattr(exc, "status_code", None)
            raise ProviderError(
                f"OpenAI API error: {status or exc}",
                status=status if isinstance(status, int) else None,
            ) from exc
        raw_content = resp.choices[0].message.content
        return (raw_content or "").strip()


class HttpQuestionProvider:
    """POST question requests to a hosted question function."""

    def __init__(
        self,
        endpoint: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ) -> None:
        self._endpoint = endpoint
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def fetch_question(self, request: QuestionRequest) -> Question:
        try:
            resp = await self._client.post(
                self._endpoint, json=request.to_payload()
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"Request failed: {exc}") from exc
        if resp.status_code >= 400:
            detail = _error_detail(resp)
            raise ProviderError(
                detail or f"Server error: {resp.status_code}",
                status=resp.status_code,
                detail=detail,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise ProviderError("Provider returned invalid JSON.") from exc
        return parse_question_payload(body, index=request.question_index)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_detail(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, Mapping) and body.get("error"):
        return str(body["error"])
    return None


def _extract_json_object(content: str) -> Optional[Mapping[str, Any]]:
    if not content:
        return None
    fenced = re.search(r"```(?:json)?\s*(.+?)```", content, re.DOTALL)
    payload = fenced.group(1) if fenced else content
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, Mapping) else None


def _previous_quiz_context(quiz: Quiz) -> str:
    return json.dumps(
        {
            "topic": quiz.topic,
            "difficulty": quiz.difficulty.value,
            "questions": [
                {
                    "prompt": q.prompt,
                    "code_snippet": q.code_snippet,
                    "explanation": q.explanation,
                }
                for q in quiz.questions
            ],
        }
    )


_RULES = (
    "Each question must have exactly one \"{blank}\" (4 underscores) "
    "placeholder in the code_snippet that the student fills.\n"
    "1. Give a clear, specific prompt asking what fills the blank. It must "
    "not be ambiguous or give away the answer.\n"
    "2. Provide one correct_answer and exactly 3 wrong_answers. Wrong "
    "answers must not be partially correct or technically accurate.\n"
    "3. Include a helpful explanation.\n"
    "4. Use a realistic, practical coding scenario.\n"
    "5. The code_snippet must be syntactically correct once the "
    "correct_answer fills the blank.\n"
    "6. There must always be a change required to the code. Do not return "
    "complete code."
).format(blank=BLANK_MARKER)


def build_prompts(request: QuestionRequest) -> tuple[str, str]:
    """Return ``(system_prompt, user_prompt)`` for one question."""

    topic = request.topic
    level = request.difficulty.value
    position = (
        f"question {request.question_index + 1} of "
        f"{request.total_questions}"
    )
    if request.previous_quiz is not None:
        previous = request.previous_quiz
        system_prompt = (
            "You are a code quiz generator creating follow-up quizzes. "
            "Given a previous quiz, create new programming questions that "
            "build upon or complement it without repeating the same "
            "concepts.\n" + _RULES
        )
        user_prompt = (
            f"Create {position} of a {level} level follow-up quiz about "
            f'"{topic}".\n\nPREVIOUS QUIZ COVERED:\n'
            f"{_previous_quiz_context(previous)}\n\n"
            "Do NOT repeat the same scenarios or code patterns, and increase "
            f"complexity compared to the previous {previous.difficulty.value} "
            "level quiz."
        )
    else:
        system_prompt = (
            "You are a code quiz generator. Create fill-in-the-blank "
            "programming questions where students complete code snippets.\n"
            + _RULES
        )
        user_prompt = (
            f'Create {position} of a {level} level quiz about "{topic}". '
            f"Cover a different aspect of {topic} than earlier questions."
        )
    if request.previous_questions:
        asked = "\n".join(
            f"- {q.prompt}" for q in request.previous_questions
        )
        user_prompt += f"\n\nAlready asked in this quiz (avoid repeats):\n{asked}"
    return system_prompt, user_prompt
