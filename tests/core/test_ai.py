from __future__ import annotations

import pytest

from code_trainer.core import ai
from code_trainer.core.ai import AIClientError, load_client


def test_load_client_requires_openai_dependency(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(ai, "OpenAI", None)
    with pytest.raises(AIClientError) as exc:
        load_client()
    assert "openai" in str(exc.value).lower()


def test_load_client_requires_api_key(
    monkeypatch: pytest.MonkeyPatch, openai_factory
) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(AIClientError) as exc:
        load_client()
    assert "OPENAI_API_KEY" in str(exc.value)
    assert openai_factory.last is None


def test_blank_key_in_explicit_env_is_missing(openai_factory) -> None:
    with pytest.raises(AIClientError):
        load_client(env={"OPENAI_API_KEY": "   "})


def test_load_client_passes_key_and_timeout(
    monkeypatch: pytest.MonkeyPatch, openai_factory
) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.delenv("OPENAI_BASE_URL", raising=False)

    plain = load_client()
    timed = load_client(timeout=12.5)

    assert plain is openai_factory.instances[0]
    assert plain.init_kwargs == {"api_key": "test-key", "max_retries": 0}
    assert timed.init_kwargs["timeout"] == 12.5


def test_load_client_honours_base_url(openai_factory) -> None:
    client = load_client(
        env={
            "OPENAI_API_KEY": "k",
            "OPENAI_BASE_URL": "https://proxy.test/v1",
        }
    )

    assert client.init_kwargs["base_url"] == "https://proxy.test/v1"
