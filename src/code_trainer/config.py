"""TOML configuration for code-trainer.

The file is optional: every key has a default, and a user file only needs to
set what it changes. Unknown keys are rejected so typos surface early.
"""

from __future__ import annotations

import copy
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

from .core.workspace import WorkspaceLayout
from .quiz.models import Difficulty


CONFIG_PATH_ENV = "CODE_TRAINER_CONFIG"
CONFIG_FILENAME = "code_trainer.toml"


class ConfigError(RuntimeError):
    """Raised when configuration parsing or validation fails."""


@dataclass(frozen=True)
class QuizDefaults:
    default_difficulty: Difficulty
    default_count: int
    max_count: int


@dataclass(frozen=True)
class AcquisitionConfig:
    request_timeout_seconds: float
    start_delay_seconds: float
    early_start_delay_seconds: Optional[float]
    manual_start: bool
    cancel_on_leave: bool


@dataclass(frozen=True)
class ProviderConfig:
    kind: str
    model: str
    temperature: float
    max_tokens: int
    endpoint: Optional[str]


@dataclass(frozen=True)
class StorageConfig:
    path: Optional[Path]
    delete_confirm_seconds: float


@dataclass(frozen=True)
class LoggingConfig:
    level: str
    verbose: bool


@dataclass(frozen=True)
class TrainerConfig:
    quiz: QuizDefaults
    acquisition: AcquisitionConfig
    provider: ProviderConfig
    storage: StorageConfig
    logging: LoggingConfig

    def store_path(self, layout: WorkspaceLayout) -> Path:
        """Return the quiz store file, honouring ``storage.path``."""

        if self.storage.path is not None:
            return self.storage.path
        return layout.path_for("quizzes") / "quizzes.json"


def _merge_dict(
    base: MutableMapping[str, Any],
    override: Mapping[str, Any],
    *,
    path: str = "",
) -> None:
    for key, value in override.items():
        dotted = f"{path}{key}"
        if key not in base:
            raise ConfigError(f"Unknown configuration key '{dotted}'.")
        base_value = base[key]
        if isinstance(base_value, MutableMapping):
            if not isinstance(value, Mapping):
                raise ConfigError(
                    "Expected table for '{0}', found {1}.".format(
                        dotted,
                        type(value).__name__,
                    )
                )
            _merge_dict(base_value, value, path=f"{dotted}.")
        else:
            base[key] = value


def _require_positive_int(value: Any, *, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"'{field}' must be a positive integer.")
    return value


def _require_non_negative_number(value: Any, *, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{field}' must be a number.")
    if value < 0:
        raise ConfigError(f"'{field}' must not be negative.")
    return float(value)


def _require_bool(value: Any, *, field: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"'{field}' must be a boolean.")
    return value


def _require_string(value: Any, *, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"'{field}' must be a non-empty string.")
    return value.strip()


def _build_quiz(section: Mapping[str, Any]) -> QuizDefaults:
    raw_difficulty = _require_string(
        section.get("default_difficulty"), field="quiz.default_difficulty"
    )
    try:
        difficulty = Difficulty.parse(raw_difficulty)
    except ValueError as exc:
        raise ConfigError(f"quiz.default_difficulty: {exc}") from exc
    default_count = _require_positive_int(
        section.get("default_count"), field="quiz.default_count"
    )
    max_count = _require_positive_int(
        section.get("max_count"), field="quiz.max_count"
    )
    if default_count > max_count:
        raise ConfigError("quiz.default_count must not exceed quiz.max_count.")
    return QuizDefaults(
        default_difficulty=difficulty,
        default_count=default_count,
        max_count=max_count,
    )


def _build_acquisition(section: Mapping[str, Any]) -> AcquisitionConfig:
    timeout = _require_non_negative_number(
        section.get("request_timeout_seconds"),
        field="acquisition.request_timeout_seconds",
    )
    if timeout == 0:
        raise ConfigError(
            "'acquisition.request_timeout_seconds' must be greater than 0."
        )
    start_delay = _require_non_negative_number(
        section.get("start_delay_seconds"),
        field="acquisition.start_delay_seconds",
    )
    raw_early = section.get("early_start_delay_seconds")
    early = (
        None
        if raw_early is None or raw_early is False
        else _require_non_negative_number(
            raw_early, field="acquisition.early_start_delay_seconds"
        )
    )
    manual_start = _require_bool(
        section.get("manual_start"), field="acquisition.manual_start"
    )
    cancel_on_leave = _require_bool(
        section.get("cancel_on_leave"), field="acquisition.cancel_on_leave"
    )
    return AcquisitionConfig(
        request_timeout_seconds=timeout,
        start_delay_seconds=start_delay,
        early_start_delay_seconds=early,
        manual_start=manual_start,
        cancel_on_leave=cancel_on_leave,
    )


def _build_provider(section: Mapping[str, Any]) -> ProviderConfig:
    kind = _require_string(section.get("kind"), field="provider.kind").lower()
    if kind not in {"openai", "http"}:
        raise ConfigError("provider.kind must be 'openai' or 'http'.")
    model = _require_string(section.get("model"), field="provider.model")
    temperature = _require_non_negative_number(
        section.get("temperature"), field="provider.temperature"
    )
    if temperature > 2.0:
        raise ConfigError("'provider.temperature' must be between 0 and 2.")
    max_tokens = _require_positive_int(
        section.get("max_tokens"), field="provider.max_tokens"
    )
    endpoint = section.get("endpoint")
    if endpoint is not None:
        endpoint = _require_string(endpoint, field="provider.endpoint")
    if kind == "http" and endpoint is None:
        raise ConfigError("provider.endpoint is required when kind = 'http'.")
    return ProviderConfig(
        kind=kind,
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        endpoint=endpoint,
    )


def _build_storage(section: Mapping[str, Any]) -> StorageConfig:
    raw_path = section.get("path")
    path = None
    if raw_path is not None:
        path = Path(
            _require_string(raw_path, field="storage.path")
        ).expanduser()
    window = _require_non_negative_number(
        section.get("delete_confirm_seconds"),
        field="storage.delete_confirm_seconds",
    )
    return StorageConfig(path=path, delete_confirm_seconds=window)


def _build_logging(section: Mapping[str, Any]) -> LoggingConfig:
    level = _require_string(section.get("level"), field="logging.level").upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigError(
            "logging.level must be one of "
            "DEBUG, INFO, WARNING, ERROR, CRITICAL."
        )
    verbose = _require_bool(section.get("verbose"), field="logging.verbose")
    return LoggingConfig(level=level, verbose=verbose)


def _build_config(tree: Mapping[str, Any]) -> TrainerConfig:
    return TrainerConfig(
        quiz=_build_quiz(tree["quiz"]),
        acquisition=_build_acquisition(tree["acquisition"]),
        provider=_build_provider(tree["provider"]),
        storage=_build_storage(tree["storage"]),
        logging=_build_logging(tree["logging"]),
    )


def _load_toml(path: Path) -> Mapping[str, Any]:
    try:
        with path.open("rb") as fh:
            return tomllib.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse config TOML: {exc}") from exc


def resolve_config_path(
    layout: WorkspaceLayout,
    *,
    explicit_path: Optional[Path] = None,
    env: Mapping[str, str] | None = None,
) -> tuple[Path, bool]:
    """Return the config path and whether the user asked for it explicitly."""

    env_map = os.environ if env is None else env
    if explicit_path is not None:
        return explicit_path.expanduser().resolve(), True
    env_override = env_map.get(CONFIG_PATH_ENV)
    if env_override:
        return Path(env_override).expanduser().resolve(), True
    return layout.path_for("config") / CONFIG_FILENAME, False


def load_config(
    layout: WorkspaceLayout,
    *,
    explicit_path: Optional[Path] = None,
    env: Mapping[str, str] | None = None,
) -> TrainerConfig:
    """Load the TOML config, applying defaults and validation.

    A missing file at the default location yields the defaults; a missing
    file the user pointed at explicitly is an error.
    """

    path, explicit = resolve_config_path(
        layout, explicit_path=explicit_path, env=env
    )
    tree = default_tree()
    if explicit or path.exists():
        toml_data = _load_toml(path)
        _merge_dict(tree, toml_data)
    return _build_config(tree)


def default_tree() -> Dict[str, Any]:
    """Return a copy of the default configuration tree."""

    return copy.deepcopy(_DEFAULTS)


def config_template() -> str:
    """Return the TOML template written by ``code-trainer init``."""

    return _CONFIG_TEMPLATE.strip() + "\n"


def write_template(
    path: Path, *, overwrite: bool = False, mode: int = 0o600
) -> Path:
    """Write the default template to ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists() and not overwrite:
        raise ConfigError(f"Config already exists: {path}")
    with path.open("w", encoding="utf-8") as fh:
        fh.write(config_template())
    try:
        path.chmod(mode)
    except PermissionError:
        pass
    return path


_DEFAULTS: Dict[str, Any] = {
    "quiz": {
        "default_difficulty": "Beginner",
        "default_count": 5,
        "max_count": 20,
    },
    "acquisition": {
        "request_timeout_seconds": 60,
        "start_delay_seconds": 0.5,
        "early_start_delay_seconds": 1.0,
        "manual_start": True,
        "cancel_on_leave": False,
    },
    "provider": {
        "kind": "openai",
        "model": "gpt-4o-mini",
        "temperature": 0.7,
        "max_tokens": 1000,
        "endpoint": None,
    },
    "storage": {
        "path": None,
        "delete_confirm_seconds": 2.0,
    },
    "logging": {
        "level": "INFO",
        "verbose": False,
    },
}


_CONFIG_TEMPLATE = """
# code-trainer configuration

[quiz]
# Beginner, Intermediate or Advanced
default_difficulty = "Beginner"
default_count = 5
max_count = 20

[acquisition]
# Give up on a single question request after this many seconds
request_timeout_seconds = 60
# Delay before auto-starting once every question request has resolved
start_delay_seconds = 0.5
# Auto-start this long after the first question arrives (false = wait)
early_start_delay_seconds = 1.0
# Offer to start with Enter as soon as the first question is ready
manual_start = true
# Stop generating questions when leaving a quiz before it finished loading
cancel_on_leave = false

[provider]
# "openai" calls the model directly; "http" posts to a question function
kind = "openai"
model = "gpt-4o-mini"
temperature = 0.7
max_tokens = 1000
# endpoint = "https://example.org/.netlify/functions/responses"

[storage]
# Defaults to <data home>/quizzes/quizzes.json
# path = "~/quizzes.json"
# Seconds the first delete request stays armed
delete_confirm_seconds = 2.0

[logging]
level = "INFO"
verbose = false
"""
