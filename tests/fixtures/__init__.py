"""Shared testing fixtures and fakes for the code_trainer test suite."""

from .openai import FakeAPIError, FakeOpenAIClient, FakeOpenAIFactory  # noqa: F401
from .providers import ScriptedProvider, delayed, gated  # noqa: F401
from .questions import make_question, make_quiz, question_payload  # noqa: F401

__all__ = [
    "FakeAPIError",
    "FakeOpenAIClient",
    "FakeOpenAIFactory",
    "ScriptedProvider",
    "delayed",
    "gated",
    "make_question",
    "make_quiz",
    "question_payload",
]
