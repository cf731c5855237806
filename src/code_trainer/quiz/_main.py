"""Command-line entry point for code-trainer."""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Optional, Sequence

from rich.console import Console
from rich.text import Text

from .. import config as config_mod
from ..core import WorkspaceError, WorkspaceLayout, configure_logger
from ..core import ensure_workspace
from . import view
from .acquisition import Acquisition, AcquisitionController, AcquisitionError
from .models import Difficulty, Quiz
from .provider import (
    HttpQuestionProvider,
    OpenAIQuestionProvider,
    QuestionProvider,
)
from .session import Phase, QuizSession, SessionTransitionError
from .store import DeleteConfirmation, QuizStore, StoreError

InputProvider = Callable[[], str]

_HOME = {"h", "home"}


@dataclass
class AppContext:
    """Everything a command needs once config and logging are set up."""

    layout: WorkspaceLayout
    config: config_mod.TrainerConfig
    store: QuizStore
    logger: logging.Logger
    console: Console
    input_provider: InputProvider
    pending_read: Optional[asyncio.Future] = None


def _build_provider(
    cfg: config_mod.TrainerConfig,
) -> QuestionProvider:
    provider = cfg.provider
    if provider.kind == "http":
        assert provider.endpoint is not None
        return HttpQuestionProvider(
            provider.endpoint,
            timeout=cfg.acquisition.request_timeout_seconds,
        )
    return OpenAIQuestionProvider(
        model=provider.model,
        temperature=provider.temperature,
        max_tokens=provider.max_tokens,
        timeout=cfg.acquisition.request_timeout_seconds,
    )


def _build_session(ctx: AppContext, provider: QuestionProvider) -> QuizSession:
    acquisition = ctx.config.acquisition
    controller = AcquisitionController(
        provider,
        ctx.store,
        request_timeout=acquisition.request_timeout_seconds,
        start_delay=acquisition.start_delay_seconds,
        early_start_delay=acquisition.early_start_delay_seconds,
        logger=ctx.logger.getChild("acquisition"),
    )
    return QuizSession(
        controller,
        ctx.store,
        cancel_on_leave=acquisition.cancel_on_leave,
        logger=ctx.logger.getChild("session"),
    )


async def _close_provider(provider: QuestionProvider) -> None:
    close = getattr(provider, "close", None)
    if close is not None:
        await close()


async def _ask(ctx: AppContext, prompt: str) -> Optional[str]:
    """Read one line without blocking background acquisition."""

    ctx.console.print(Text(prompt, style="bold"), end=" ")
    read, ctx.pending_read = ctx.pending_read, None
    if read is None:
        read = asyncio.ensure_future(asyncio.to_thread(ctx.input_provider))
    try:
        return await read
    except (EOFError, KeyboardInterrupt):
        ctx.console.print()
        ctx.console.print("[bold yellow]Session interrupted.[/]")
        return None


def _error(ctx: AppContext, message: str) -> None:
    ctx.console.print(Text(message, style="red"))


async def _acquire_with_status(
    ctx: AppContext, session: QuizSession, pending: Awaitable[Quiz]
) -> Optional[Quiz]:
    task = asyncio.ensure_future(pending)
    offer = ctx.config.acquisition.manual_start
    while not task.done():
        with ctx.console.status("Preparing quiz...") as status:
            while not task.done():
                acquisition = session.acquisition
                if acquisition is not None and acquisition.status:
                    status.update(acquisition.status)
                if offer and _startable(acquisition):
                    break
                await asyncio.wait({task}, timeout=0.1)
        if offer and not task.done():
            offer = False
            await _offer_start(ctx, session.acquisition, task)
    try:
        return task.result()
    except AcquisitionError as exc:
        _error(ctx, exc.user_message)
        return None


def _startable(acquisition: Optional[Acquisition]) -> bool:
    return (
        acquisition is not None
        and bool(acquisition.quiz.questions)
        and not acquisition.started
    )


async def _offer_start(
    ctx: AppContext, acquisition: Acquisition, task: asyncio.Future
) -> None:
    """Start on Enter once question 1 exists; the rest keeps loading.

    When the quiz starts on its own first, the line being read is left in
    ``ctx.pending_read`` for the next prompt.
    """

    ctx.console.print(
        Text(
            "Question 1 ready! Press Enter to start now; "
            "the rest keeps loading.",
            style="bold",
        )
    )
    read = asyncio.ensure_future(asyncio.to_thread(ctx.input_provider))
    await asyncio.wait({read, task}, return_when=asyncio.FIRST_COMPLETED)
    if not read.done():
        ctx.pending_read = read
        return
    try:
        read.result()
    except (EOFError, KeyboardInterrupt):
        return
    acquisition.start()


async def _run_session(ctx: AppContext, session: QuizSession) -> bool:
    """Drive the session screens until the user goes home.

    Returns ``False`` when input ran out, so callers stop as well.
    """

    console = ctx.console
    while True:
        if session.phase is Phase.ACTIVE:
            question = session.current_question
            if question is None:
                view.render_pending(console, session)
                await session.wait_for_current()
                continue
            view.render_question(console, session, question)
            raw = await _ask(ctx, "Your answer:")
            if raw is None:
                session.go_home()
                return False
            command = raw.strip().lower()
            if command in _HOME:
                session.go_home()
                return True
            index = view.choice_index(command, len(question.options))
            if index is None:
                _error(ctx, "Choose one of the listed options.")
                continue
            evaluation = session.answer(index)
            view.render_question(console, session, question, evaluation)
            view.render_feedback(console, question, evaluation)
            raw = await _ask(ctx, ">")
            if raw is None:
                session.go_home()
                return False
            if raw.strip().lower() in _HOME:
                session.go_home()
                return True
            session.advance()
        elif session.phase is Phase.COMPLETE:
            for warning in session.warnings:
                console.print(Text(warning, style="yellow"))
            session.warnings.clear()
            summary = session.summary
            assert summary is not None
            view.render_summary(console, summary, session.quiz)
            raw = await _ask(ctx, ">")
            if raw is None:
                session.go_home()
                return False
            command = raw.strip().lower()
            if command in _HOME:
                session.go_home()
                return True
            if command in {"r", "restart"}:
                session.restart()
            elif command in {"f", "followup", "follow-up"}:
                if not summary.followup_unlocked:
                    _error(ctx, "Score more than half to unlock the next level.")
                    continue
                await _acquire_with_status(
                    ctx, session, session.advance_to_followup()
                )
            else:
                _error(ctx, "Unrecognized command. Try again.")
        else:
            return True


async def _prompt_new(ctx: AppContext, session: QuizSession) -> bool:
    defaults = ctx.config.quiz
    topic = await _ask(ctx, "Topic:")
    if topic is None or not topic.strip():
        return False
    raw_level = await _ask(
        ctx, f"Difficulty [{defaults.default_difficulty.value}]:"
    )
    if raw_level is None:
        return False
    try:
        difficulty = (
            Difficulty.parse(raw_level)
            if raw_level.strip()
            else defaults.default_difficulty
        )
    except ValueError as exc:
        _error(ctx, str(exc))
        return False
    raw_count = await _ask(ctx, f"Questions [{defaults.default_count}]:")
    if raw_count is None:
        return False
    raw_count = raw_count.strip() or str(defaults.default_count)
    count = _parse_count(ctx, raw_count)
    if count is None:
        return False
    quiz = await _acquire_with_status(
        ctx, session, session.start_new(topic.strip(), difficulty, count)
    )
    return quiz is not None


def _parse_count(ctx: AppContext, raw: str) -> Optional[int]:
    limit = ctx.config.quiz.max_count
    try:
        count = int(raw.strip())
    except ValueError:
        _error(ctx, f"Enter a number between 1 and {limit}.")
        return None
    if not 1 <= count <= limit:
        _error(ctx, f"Enter a number between 1 and {limit}.")
        return None
    return count


def _parse_id(parts: Sequence[str]) -> Optional[int]:
    if len(parts) != 1:
        return None
    try:
        return int(parts[0])
    except ValueError:
        return None


async def _play(ctx: AppContext, session: QuizSession) -> int:
    console = ctx.console
    window = ctx.config.storage.delete_confirm_seconds
    confirm = DeleteConfirmation(ctx.store, window=window)
    while True:
        quizzes = ctx.store.list()
        armed = [
            q.id for q in quizzes if q.id is not None and confirm.is_armed(q.id)
        ]
        view.render_home(console, quizzes, armed=armed)
        raw = await _ask(ctx, ">")
        if raw is None:
            return 0
        parts = raw.split()
        if not parts:
            continue
        command, rest = parts[0].lower(), parts[1:]
        if command in {"q", "quit", "exit"}:
            return 0
        if command in {"n", "new"}:
            if await _prompt_new(ctx, session):
                if not await _run_session(ctx, session):
                    return 0
            continue
        if command in {"a", "attempt", "d", "delete"}:
            quiz_id = _parse_id(rest)
            if quiz_id is None:
                _error(ctx, f"Usage: {command} <id>")
                continue
            if command.startswith("a"):
                try:
                    session.continue_saved(quiz_id)
                except SessionTransitionError as exc:
                    _error(ctx, str(exc))
                    continue
                if not await _run_session(ctx, session):
                    return 0
            elif confirm.request(quiz_id):
                console.print(f"Deleted quiz {quiz_id}.")
            else:
                console.print(
                    f"Press d {quiz_id} again within {window:g} seconds "
                    "to delete."
                )
            continue
        _error(ctx, "Unrecognized command. Try again.")


async def _with_session(
    ctx: AppContext,
    body: Callable[[QuizSession], Awaitable[int]],
) -> int:
    provider = _build_provider(ctx.config)
    try:
        return await body(_build_session(ctx, provider))
    finally:
        await _close_provider(provider)


def _cmd_init(
    args: argparse.Namespace,
    layout: WorkspaceLayout,
    console: Console,
    env: Mapping[str, str] | None,
) -> int:
    path, _ = config_mod.resolve_config_path(
        layout, explicit_path=_optional_path(args.config), env=env
    )
    try:
        config_mod.write_template(path, overwrite=args.overwrite)
    except config_mod.ConfigError as exc:
        console.print(Text(f"Error: {exc}", style="red"))
        return 1
    console.print(f"Created template {path}")
    return 0


def _cmd_list(args: argparse.Namespace, ctx: AppContext) -> int:
    view.render_saved_list(ctx.console, ctx.store.list())
    return 0


def _cmd_new(args: argparse.Namespace, ctx: AppContext) -> int:
    defaults = ctx.config.quiz
    try:
        difficulty = (
            Difficulty.parse(args.difficulty)
            if args.difficulty
            else defaults.default_difficulty
        )
    except ValueError as exc:
        _error(ctx, f"Error: {exc}")
        return 2
    num = defaults.default_count if args.num is None else args.num
    count = _parse_count(ctx, str(num))
    if count is None:
        return 2

    async def _body(session: QuizSession) -> int:
        quiz = await _acquire_with_status(
            ctx, session, session.start_new(args.topic, difficulty, count)
        )
        if quiz is None:
            return 1
        await _run_session(ctx, session)
        return 0

    return asyncio.run(_with_session(ctx, _body))


def _cmd_attempt(args: argparse.Namespace, ctx: AppContext) -> int:
    async def _body(session: QuizSession) -> int:
        try:
            session.continue_saved(args.id)
        except SessionTransitionError as exc:
            _error(ctx, f"Error: {exc}")
            return 1
        await _run_session(ctx, session)
        return 0

    return asyncio.run(_with_session(ctx, _body))


def _cmd_delete(args: argparse.Namespace, ctx: AppContext) -> int:
    quiz = ctx.store.get(args.id)
    if quiz is None:
        _error(ctx, f"Quiz {args.id} not found.")
        return 1
    if not args.yes:
        ctx.console.print(
            Text(f"Delete quiz {args.id} ({quiz.topic})? [y/N]", style="bold"),
            end=" ",
        )
        try:
            answer = ctx.input_provider()
        except (EOFError, KeyboardInterrupt):
            answer = ""
        if answer.strip().lower() not in {"y", "yes"}:
            ctx.console.print("Aborted.")
            return 1
    ctx.store.delete(args.id)
    ctx.console.print(f"Deleted quiz {args.id}.")
    return 0


def _cmd_play(args: argparse.Namespace, ctx: AppContext) -> int:
    async def _body(session: QuizSession) -> int:
        return await _play(ctx, session)

    return asyncio.run(_with_session(ctx, _body))


_COMMANDS = {
    "list": _cmd_list,
    "new": _cmd_new,
    "attempt": _cmd_attempt,
    "delete": _cmd_delete,
    "play": _cmd_play,
}


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="code-trainer",
        description="Practice programming topics with generated code quizzes",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--config", help="Path to code_trainer.toml")
    p.add_argument("--data-home", help="Override the workspace directory")
    p.add_argument(
        "--verbose",
        action="store_true",
        help="Mirror log output to stderr",
    )
    sub = p.add_subparsers(dest="command", required=True)

    sp_init = sub.add_parser("init", help="Write the config template")
    sp_init.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace an existing config file",
    )

    sub.add_parser("list", help="List saved quizzes, newest first")

    sp_new = sub.add_parser("new", help="Generate a quiz and start it")
    sp_new.add_argument("topic")
    sp_new.add_argument(
        "--difficulty",
        choices=[d.value for d in Difficulty],
        type=lambda value: Difficulty.parse(value).value,
    )
    sp_new.add_argument("--num", type=int, help="Number of questions")

    sp_attempt = sub.add_parser("attempt", help="Attempt a saved quiz")
    sp_attempt.add_argument("id", type=int)

    sp_delete = sub.add_parser("delete", help="Delete a saved quiz")
    sp_delete.add_argument("id", type=int)
    sp_delete.add_argument(
        "--yes", action="store_true", help="Skip the confirmation prompt"
    )

    sub.add_parser("play", help="Open the interactive home menu")
    return p


def _optional_path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None


def run(
    argv: Optional[Sequence[str]] = None,
    *,
    console: Console | None = None,
    input_provider: InputProvider | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    """Parse ``argv`` and run the command; returns the exit code."""

    parser = build_arg_parser()
    args = parser.parse_args(argv)
    console = console or Console()
    try:
        layout = ensure_workspace(env=env, path=_optional_path(args.data_home))
    except WorkspaceError as exc:
        console.print(Text(f"Error: {exc}", style="red"))
        return 2
    if args.command == "init":
        return _cmd_init(args, layout, console, env)

    try:
        cfg = config_mod.load_config(
            layout, explicit_path=_optional_path(args.config), env=env
        )
    except config_mod.ConfigError as exc:
        console.print(Text(f"Error: {exc}", style="red"))
        return 2
    logger, log_path = configure_logger(
        log_dir=layout.path_for("logs"),
        level=cfg.logging.level,
        verbose=cfg.logging.verbose or args.verbose,
    )
    logger.info(
        "Command started",
        extra={"command": args.command, "log_path": str(log_path)},
    )
    ctx = AppContext(
        layout=layout,
        config=cfg,
        store=QuizStore(cfg.store_path(layout), logger=logger.getChild("store")),
        logger=logger,
        console=console,
        input_provider=input_provider or input,
    )
    handler = _COMMANDS[args.command]
    try:
        return handler(args, ctx)
    except StoreError as exc:
        logger.error("Store failure", extra={"error": str(exc)})
        console.print(Text(f"Error: {exc}", style="red"))
        return 1


def main(argv: Optional[Sequence[str]] = None) -> None:
    raise SystemExit(run(argv))
