"""Quiz, question and option records plus their stored dict shape.

Stored records use camelCase field names
(``totalQuestions``, ``highScore``, ``isCorrect`` ...). Records written by
older versions may lack fields or use legacy names; ``from_dict`` fills the
gaps with defaults and keeps unrecognised keys in ``extras`` so they survive a
round trip.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, MutableMapping, Optional

__all__ = [
    "BLANK_MARKER",
    "Difficulty",
    "Option",
    "Question",
    "Quiz",
]

BLANK_MARKER = "____"


class Difficulty(str, Enum):
    BEGINNER = "Beginner"
    INTERMEDIATE = "Intermediate"
    ADVANCED = "Advanced"

    @classmethod
    def parse(cls, value: "str | Difficulty") -> "Difficulty":
        if isinstance(value, Difficulty):
            return value
        wanted = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == wanted:
                return member
        choices = ", ".join(member.value for member in cls)
        raise ValueError(f"Unknown difficulty '{value}' (expected {choices}).")

    def next(self) -> "Difficulty":
        """Return the next tier, staying at the top one."""

        members = list(Difficulty)
        position = members.index(self)
        return members[min(position + 1, len(members) - 1)]


@dataclass(frozen=True)
class Option:
    """One answer choice. ``is_correct`` is ``None`` for legacy records."""

    option: str
    is_correct: Optional[bool] = None
    extras: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> MutableMapping[str, Any]:
        payload: MutableMapping[str, Any] = dict(self.extras)
        payload["option"] = self.option
        if self.is_correct is not None:
            payload["isCorrect"] = self.is_correct
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Option":
        extras = {
            key: value
            for key, value in payload.items()
            if key not in {"option", "isCorrect"}
        }
        text = payload.get("option")
        if text is None:
            text = payload.get("text", "")
        flag = payload.get("isCorrect")
        return cls(
            option=str(text),
            is_correct=flag if isinstance(flag, bool) else None,
            extras=extras,
        )


@dataclass(frozen=True)
class Question:
    """A fill-in-the-blank question. ``id`` is its 1-based position."""

    id: int
    prompt: str
    code_snippet: str
    options: tuple[Option, ...]
    explanation: str = ""
    extras: Mapping[str, Any] = field(default_factory=dict)

    @property
    def blank_count(self) -> int:
        return self.code_snippet.count(BLANK_MARKER)

    def to_dict(self) -> MutableMapping[str, Any]:
        payload: MutableMapping[str, Any] = dict(self.extras)
        payload.update(
            {
                "id": self.id,
                "prompt": self.prompt,
                "code_snippet": self.code_snippet,
                "options": [option.to_dict() for option in self.options],
                "explanation": self.explanation,
            }
        )
        return payload

    @classmethod
    def from_dict(
        cls, payload: Mapping[str, Any], *, position: int = 0
    ) -> "Question":
        known = {"id", "prompt", "code_snippet", "options", "explanation"}
        raw_options = payload.get("options") or []
        if not isinstance(raw_options, list):
            raw_options = []
        raw_id = payload.get("id")
        return cls(
            id=raw_id if isinstance(raw_id, int) else position + 1,
            prompt=str(payload.get("prompt") or ""),
            code_snippet=str(payload.get("code_snippet") or ""),
            options=tuple(
                Option.from_dict(item)
                for item in raw_options
                if isinstance(item, Mapping)
            ),
            explanation=str(payload.get("explanation") or ""),
            extras={k: v for k, v in payload.items() if k not in known},
        )


@dataclass
class Quiz:
    """A quiz session's questions and persisted bookkeeping.

    The same object is shared by the acquisition task (which appends to
    ``questions``) and the session (which reads it), and is the object written
    back to the store so the assigned ``id`` is never lost.
    """

    topic: str
    difficulty: Difficulty
    total_questions: int
    questions: list[Question] = field(default_factory=list)
    is_loading: bool = False
    id: Optional[int] = None
    date: Optional[str] = None
    high_score: int = 0
    high_streak: int = 0
    extras: MutableMapping[str, Any] = field(default_factory=dict)

    @property
    def expected_total(self) -> int:
        return self.total_questions or len(self.questions)

    def question_at(self, index: int) -> Optional[Question]:
        if 0 <= index < len(self.questions):
            return self.questions[index]
        return None

    def to_dict(self) -> MutableMapping[str, Any]:
        payload: MutableMapping[str, Any] = dict(self.extras)
        payload.update(
            {
                "topic": self.topic,
                "difficulty": self.difficulty.value,
                "questions": [q.to_dict() for q in self.questions],
                "totalQuestions": self.total_questions,
                "isLoading": self.is_loading,
                "date": self.date,
                "highScore": self.high_score,
                "highStreak": self.high_streak,
            }
        )
        if self.id is not None:
            payload["id"] = self.id
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Quiz":
        known = {
            "id",
            "topic",
            "difficulty",
            "questions",
            "totalQuestions",
            "isLoading",
            "date",
            "created",
            "highScore",
            "highStreak",
        }
        raw_questions = payload.get("questions") or []
        questions = [
            Question.from_dict(item, position=index)
            for index, item in enumerate(raw_questions)
            if isinstance(item, Mapping)
        ]
        raw_id = payload.get("id")
        date = payload.get("date")
        if date is None:
            date = payload.get("created")
        return cls(
            topic=str(payload.get("topic") or ""),
            difficulty=Difficulty.parse(
                payload.get("difficulty") or Difficulty.BEGINNER
            ),
            total_questions=_as_int(payload.get("totalQuestions"))
            or len(questions),
            questions=questions,
            is_loading=bool(payload.get("isLoading", False)),
            id=raw_id if isinstance(raw_id, int) else None,
            date=None if date is None else str(date),
            high_score=_as_int(payload.get("highScore")),
            high_streak=_as_int(payload.get("highStreak")),
            extras={k: v for k, v in payload.items() if k not in known},
        )


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0
