"""OpenAI client construction for question generation."""

from __future__ import annotations

import os
from typing import Any, Mapping

from dotenv import load_dotenv

try:  # Allow module import even when the OpenAI dependency is absent.
    from openai import OpenAI  # type: ignore
except Exception:  # pragma: no cover - optional dependency guard
    OpenAI = None  # type: ignore

__all__ = ["AIClientError", "API_KEY_ENV", "BASE_URL_ENV", "load_client"]

API_KEY_ENV = "OPENAI_API_KEY"
BASE_URL_ENV = "OPENAI_BASE_URL"


class AIClientError(RuntimeError):
    """The OpenAI client cannot be built (missing package or credentials)."""


def load_client(
    *,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
) -> Any:
    """Build an OpenAI client from ``OPENAI_API_KEY`` (``.env`` aware).

    ``OPENAI_BASE_URL`` points the client at a compatible proxy. Retries are
    disabled: a failed request is reported to the acquisition, which skips
    that question instead of stalling the quiz.
    """

    if OpenAI is None:
        raise AIClientError(
            "The 'openai' package is required to generate questions. "
            "Install it and retry."
        )
    if env is None:
        load_dotenv()
        env = os.environ
    api_key = (env.get(API_KEY_ENV) or "").strip()
    if not api_key:
        raise AIClientError(
            f"{API_KEY_ENV} not found in environment. Set it or add to .env"
        )
    kwargs: dict[str, Any] = {"api_key": api_key, "max_retries": 0}
    base_url = (env.get(BASE_URL_ENV) or "").strip()
    if base_url:
        kwargs["base_url"] = base_url
    if timeout is not None:
        kwargs["timeout"] = timeout
    return OpenAI(**kwargs)
