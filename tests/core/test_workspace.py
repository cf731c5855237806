from __future__ import annotations

import pytest

from code_trainer.core import workspace


def test_ensure_workspace_creates_directories(tmp_path):
    root = tmp_path / "data"

    layout = workspace.ensure_workspace(
        env={workspace.WORKSPACE_ENV: str(root)}
    )

    assert layout.home == root.absolute()
    for key in ("config", "logs", "quizzes"):
        assert layout.path_for(key).is_dir()


def test_ensure_workspace_is_idempotent(tmp_path):
    env = {workspace.WORKSPACE_ENV: str(tmp_path / "existing")}

    first = workspace.ensure_workspace(env=env)
    second = workspace.ensure_workspace(env=env)

    assert first == second


def test_explicit_path_beats_environment(tmp_path):
    custom = tmp_path / "custom-root"

    layout = workspace.ensure_workspace(
        env={workspace.WORKSPACE_ENV: str(tmp_path / "ignored")},
        path=custom,
    )

    assert layout.home == custom.absolute()
    assert not (tmp_path / "ignored").exists()


def test_ensure_workspace_without_create(tmp_path):
    root = tmp_path / "deferred"

    layout = workspace.ensure_workspace(
        env={workspace.WORKSPACE_ENV: str(root)}, create=False
    )

    assert layout.path_for("quizzes") == root.absolute() / "quizzes"
    assert not root.exists()


def test_workspace_rejects_file_in_place_of_home(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")

    with pytest.raises(workspace.WorkspaceError):
        workspace.ensure_workspace(path=blocker)


def test_unknown_directory_key(tmp_path):
    layout = workspace.ensure_workspace(path=tmp_path / "home")

    with pytest.raises(KeyError):
        layout.path_for("cache")
