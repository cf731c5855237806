"""Rich rendering for the home list and the quiz session screens."""

from __future__ import annotations

from typing import Sequence

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from .evaluator import Evaluation, fill_blank
from .models import Question, Quiz
from .session import CompletionSummary, QuizSession
from .store import parse_timestamp

OPTION_KEYS = "ABCD"


def option_key(index: int) -> str:
    return OPTION_KEYS[index] if index < len(OPTION_KEYS) else str(index + 1)


def choice_index(raw: str, count: int) -> int | None:
    """Map ``a``-``d`` (or ``1``-``4``) to an option index."""

    text = raw.strip().upper()
    if len(text) != 1:
        return None
    if text in OPTION_KEYS[:count]:
        return OPTION_KEYS.index(text)
    if text.isdigit() and 1 <= int(text) <= count:
        return int(text) - 1
    return None


def format_date(value: object) -> str:
    stamp = parse_timestamp(value)
    if stamp is None:
        return str(value or "")
    return stamp.astimezone().strftime("%Y-%m-%d %H:%M")


def render_home(
    console: Console,
    quizzes: Sequence[Quiz],
    *,
    armed: Sequence[int] = (),
) -> None:
    console.print()
    console.rule(Text("Code Trainer", style="bold cyan"))
    if not quizzes:
        console.print(
            Panel(
                "No saved quizzes yet. Press n to generate one.",
                title="Saved quizzes",
                border_style="yellow",
            )
        )
    else:
        table = Table(title="Saved quizzes", box=box.SIMPLE, expand=True)
        table.add_column("ID", justify="right", style="cyan")
        table.add_column("Topic", overflow="fold")
        table.add_column("Level")
        table.add_column("Questions", justify="right")
        table.add_column("High score", justify="right")
        table.add_column("Best streak", justify="right")
        table.add_column("Created")
        for quiz in quizzes:
            available = len(quiz.questions)
            count = str(available)
            if quiz.is_loading or available < quiz.expected_total:
                count = f"{available}/{quiz.expected_total}"
            topic = Text(quiz.topic)
            if quiz.id in armed:
                topic = Text(f"{quiz.topic} (press d again to delete)", "red")
            table.add_row(
                str(quiz.id),
                topic,
                quiz.difficulty.value,
                count,
                f"{quiz.high_score}/{available}",
                str(quiz.high_streak),
                format_date(quiz.date),
            )
        console.print(table)
    console.print(
        Text(
            "Commands: n (new quiz), a <id> (attempt), d <id> (delete), "
            "q (quit)",
            style="dim",
        )
    )


def render_saved_list(console: Console, quizzes: Sequence[Quiz]) -> None:
    if not quizzes:
        console.print("No saved quizzes.")
        return
    for quiz in quizzes:
        console.print(
            f"{quiz.id:>4}  {quiz.topic} [{quiz.difficulty.value}]  "
            f"{len(quiz.questions)} question(s)  "
            f"best {quiz.high_score}, streak {quiz.high_streak}  "
            f"{format_date(quiz.date)}",
            markup=False,
            highlight=False,
        )


def _header(session: QuizSession) -> Text:
    state = session.state
    return Text.assemble(
        (f"Question {state.current_index + 1}", "bold cyan"),
        (f" of {session.total_questions}", "dim"),
        "  |  ",
        (f"Streak: {state.streak}", "magenta"),
        "  |  ",
        (f"Score: {state.score}", "green"),
    )


def render_question(
    console: Console,
    session: QuizSession,
    question: Question,
    evaluation: Evaluation | None = None,
) -> None:
    console.print()
    console.rule(_header(session))
    console.print(Text(question.prompt, style="bold"))
    snippet = question.code_snippet
    if evaluation is not None:
        chosen = question.options[evaluation.chosen_index].option
        snippet = fill_blank(snippet, chosen)
    console.print(
        Panel(
            Syntax(snippet, "python", word_wrap=True),
            box=box.ROUNDED,
            border_style="blue",
        )
    )

    table = Table(show_header=False, box=box.SIMPLE, expand=True)
    table.add_column("Key", justify="center", style="cyan")
    table.add_column("Option")
    for index, option in enumerate(question.options):
        text = Text(option.option)
        if evaluation is not None:
            mark = evaluation.marks[index]
            if mark.correct:
                text.stylize("bold green")
                text.append("  ✓", style="green")
            elif mark.incorrect:
                text.stylize("bold red")
                text.append("  ✗", style="red")
            else:
                text.stylize("dim")
        table.add_row(option_key(index), text)
    console.print(table)
    if evaluation is None:
        keys = ", ".join(option_key(i) for i in range(len(question.options)))
        console.print(
            Text(f"Commands: [{keys}] answer, h (home)", style="dim")
        )


def render_feedback(
    console: Console, question: Question, evaluation: Evaluation
) -> None:
    if evaluation.is_correct:
        title, border = "Correct!", "green"
    else:
        title, border = "Incorrect.", "red"
    body = question.explanation or ""
    console.print(Panel(body, title=title, border_style=border))
    console.print(
        Text("Press Enter for the next question, h for home.", style="dim")
    )


def render_pending(console: Console, session: QuizSession) -> None:
    index = session.state.current_index
    acquisition = session.acquisition
    status = acquisition.status if acquisition is not None else ""
    message = f"Question {index + 1} is still being generated..."
    if status:
        message = f"{message}\n{status}"
    console.print(Panel(message, title="Please wait", border_style="yellow"))


def render_summary(
    console: Console, summary: CompletionSummary, quiz: Quiz | None
) -> None:
    console.print()
    console.rule(Text("Quiz Complete", style="bold magenta"))
    overview = Table(
        show_header=False,
        box=box.MINIMAL_DOUBLE_HEAD,
        expand=False,
    )
    overview.add_column("Metric", style="bold")
    overview.add_column("Value", justify="right")
    overview.add_row("Score", f"{summary.score}/{summary.answered}")
    overview.add_row("Accuracy", f"{summary.accuracy * 100:.1f}%")
    overview.add_row("Max streak", str(summary.max_streak))
    if quiz is not None and quiz.id is not None:
        overview.add_row("High score", str(quiz.high_score))
        overview.add_row("Best streak", str(quiz.high_streak))
    console.print(overview)
    if summary.still_loading:
        console.print(
            Text(
                f"{summary.still_loading} question(s) were still loading or "
                "could not be generated.",
                style="yellow",
            )
        )
    commands = "r (restart), h (home)"
    if summary.followup_unlocked:
        commands = "r (restart), f (next level), h (home)"
    else:
        console.print(
            Text(
                "Score more than half to unlock the next level.",
                style="dim",
            )
        )
    console.print(Text(f"Commands: {commands}", style="dim"))

