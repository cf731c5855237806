"""Shared helpers: AI client, logging and workspace layout."""

from __future__ import annotations

from .ai import AIClientError, load_client
from .logging import JsonLogFormatter, configure_logger, get_logger
from .workspace import (
    WORKSPACE_ENV,
    WorkspaceError,
    WorkspaceLayout,
    ensure_workspace,
)

__all__ = [
    "AIClientError",
    "load_client",
    "configure_logger",
    "get_logger",
    "JsonLogFormatter",
    "ensure_workspace",
    "WorkspaceLayout",
    "WorkspaceError",
    "WORKSPACE_ENV",
]
