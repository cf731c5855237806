"""Data directory layout for code-trainer (config, logs, saved quizzes)."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping


WORKSPACE_ENV = "CODE_TRAINER_DATA_HOME"
DEFAULT_WORKSPACE = Path.home() / ".code-trainer-data"

_SUBDIRS = {
    "config": "config",
    "logs": "logs",
    "quizzes": "quizzes",
}


class WorkspaceError(RuntimeError):
    """Raised when the workspace layout cannot be prepared."""


@dataclass(frozen=True)
class WorkspaceLayout:
    """Resolved workspace directories."""

    home: Path
    directories: Mapping[str, Path]

    def path_for(self, key: str) -> Path:
        try:
            return self.directories[key]
        except KeyError as exc:
            raise KeyError(f"Unknown workspace directory '{key}'.") from exc


def ensure_workspace(
    *,
    env: Mapping[str, str] | None = None,
    path: Path | None = None,
    create: bool = True,
) -> WorkspaceLayout:
    """Resolve the workspace home and (optionally) create its directories.

    ``path`` wins over ``$CODE_TRAINER_DATA_HOME``, which wins over
    ``~/.code-trainer-data``. When the default home is not writable a
    directory under the system temp dir is used instead.
    """

    env_map = os.environ if env is None else env
    base, has_override = _resolve_base(env_map, override=path)

    candidates = [base]
    if create and not has_override:
        candidates.append(Path(tempfile.gettempdir()) / "code-trainer-data")

    last_error: Exception | None = None
    for candidate in candidates:
        try:
            return _materialize_layout(candidate, create=create)
        except PermissionError as exc:
            last_error = exc
    raise WorkspaceError(
        f"Unable to prepare workspace at {base}"
    ) from last_error


def _resolve_base(
    env: Mapping[str, str], *, override: Path | None
) -> tuple[Path, bool]:
    if override is not None:
        return override.expanduser().absolute(), True
    custom = (env.get(WORKSPACE_ENV) or "").strip()
    if custom:
        return Path(custom).expanduser().absolute(), True
    return DEFAULT_WORKSPACE, False


def _materialize_layout(base: Path, *, create: bool) -> WorkspaceLayout:
    if base.exists() and not base.is_dir():
        raise WorkspaceError(
            f"Configured workspace exists and is not a directory: {base}"
        )
    directories = {key: base / name for key, name in _SUBDIRS.items()}
    if create:
        for directory in (base, *directories.values()):
            directory.mkdir(parents=True, exist_ok=True)
            if not directory.is_dir():
                raise WorkspaceError(
                    f"Expected directory but found a file: {directory}"
                )
            try:
                directory.chmod(0o700)
            except (PermissionError, NotImplementedError):
                pass
    return WorkspaceLayout(
        home=base,
        directories=MappingProxyType(directories),
    )
