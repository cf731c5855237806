"""Local quiz history store.

All quizzes live in one JSON document::

    {"next_id": 3, "quizzes": [{"id": 1, "topic": ..., ...}, ...]}

Every operation takes an exclusive lock file, reads the document, and writes
it back atomically, so the last write for a given id wins.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, MutableMapping, Optional

from ..core.logging import get_logger
from .models import Quiz

__all__ = [
    "DeleteConfirmation",
    "QuizNotFoundError",
    "QuizStore",
    "StoreError",
    "parse_timestamp",
    "ratchet",
]

_LOCK_SUFFIX = ".lock"
_LOCK_TIMEOUT_SECONDS = 5.0

_JS_DATE_STRING = re.compile(
    r"^\w{3} (\w{3} \d{1,2} \d{4} \d{2}:\d{2}:\d{2}) GMT([+-]\d{4})"
)
_LOCAL_FORMATS = (
    "%m/%d/%Y, %I:%M:%S %p",
    "%d/%m/%Y, %H:%M:%S",
    "%d.%m.%Y, %H:%M:%S",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%b %d, %Y",
    "%d %b %Y",
)


class StoreError(RuntimeError):
    """Raised when the quiz store cannot be read or written."""


class QuizNotFoundError(StoreError):
    """Raised when an update targets an id that is not stored."""


class QuizStore:
    """Create, list, update and delete saved quizzes."""

    def __init__(
        self, path: Path, *, logger: logging.Logger | None = None
    ) -> None:
        self._path = path
        self._lock_path = path.with_name(path.name + _LOCK_SUFFIX)
        self._logger = logger or get_logger("store")

    @property
    def path(self) -> Path:
        return self._path

    # Record-level API (used from worker threads by the acquisition task).

    def insert(self, record: Mapping[str, Any]) -> MutableMapping[str, Any]:
        """Store ``record`` under a new id and return the stored copy.

        Scores never carry over into a fresh quiz, whatever the caller set.
        """

        with self._transaction() as document:
            quiz_id = int(document["next_id"])
            document["next_id"] = quiz_id + 1
            stored = dict(record)
            stored["id"] = quiz_id
            stored["highScore"] = 0
            stored["highStreak"] = 0
            if not stored.get("date") and not stored.get("created"):
                stored["date"] = _now().isoformat()
            document["quizzes"].append(stored)
        self._logger.info("Saved quiz", extra={"quiz_id": quiz_id})
        return dict(stored)

    def upsert(self, record: Mapping[str, Any]) -> None:
        """Replace the stored record with the same id, or add it.

        Best-score fields never go down through an upsert; only
        :meth:`record_attempt` moves them.
        """

        quiz_id = record.get("id")
        if not isinstance(quiz_id, int):
            raise StoreError("Cannot upsert a quiz record without an id.")
        with self._transaction() as document:
            quizzes = document["quizzes"]
            for index, existing in enumerate(quizzes):
                if existing.get("id") == quiz_id:
                    replacement = dict(record)
                    for key in ("highScore", "highStreak"):
                        replacement[key] = max(
                            int(existing.get(key) or 0),
                            int(record.get(key) or 0),
                        )
                    quizzes[index] = replacement
                    break
            else:
                quizzes.append(dict(record))
            document["next_id"] = max(int(document["next_id"]), quiz_id + 1)

    # Quiz-level API.

    def create(self, quiz: Quiz) -> int:
        """Persist a new quiz, assigning its id on the passed object."""

        stored = self.insert(quiz.to_dict())
        quiz.id = stored["id"]
        quiz.date = stored.get("date") or stored.get("created")
        quiz.high_score = 0
        quiz.high_streak = 0
        return quiz.id

    def put(self, quiz: Quiz) -> None:
        self.upsert(quiz.to_dict())

    def get(self, quiz_id: int) -> Optional[Quiz]:
        for record in self._read()["quizzes"]:
            if record.get("id") == quiz_id:
                return Quiz.from_dict(record)
        return None

    def list(self) -> list[Quiz]:
        """Return every stored quiz, newest first."""

        records = self._read()["quizzes"]
        now = _now()
        keyed = []
        for record in records:
            raw = record.get("date")
            if raw is None:
                raw = record.get("created")
            stamp = parse_timestamp(raw)
            if stamp is None:
                self._logger.warning(
                    "Invalid date format in saved quiz",
                    extra={"quiz_id": record.get("id"), "date": raw},
                )
                stamp = now
            keyed.append((stamp, record))
        keyed.sort(key=lambda item: item[0], reverse=True)
        return [Quiz.from_dict(record) for _, record in keyed]

    def update(self, quiz_id: int, patch: Mapping[str, Any]) -> Quiz:
        """Merge serialized fields from ``patch`` into the stored record."""

        with self._transaction() as document:
            record = _find(document, quiz_id)
            record.update(patch)
            record["id"] = quiz_id
            updated = dict(record)
        return Quiz.from_dict(updated)

    def record_attempt(self, quiz_id: int, score: int, streak: int) -> Quiz:
        """Apply the best-score and best-streak ratchet after a completion."""

        with self._transaction() as document:
            record = _find(document, quiz_id)
            record["highScore"] = ratchet(record.get("highScore"), score)
            record["highStreak"] = ratchet(record.get("highStreak"), streak)
            updated = dict(record)
        self._logger.info(
            "Recorded attempt",
            extra={
                "quiz_id": quiz_id,
                "score": score,
                "streak": streak,
                "high_score": updated["highScore"],
                "high_streak": updated["highStreak"],
            },
        )
        return Quiz.from_dict(updated)

    def delete(self, quiz_id: int) -> bool:
        """Remove the quiz; returns ``False`` when it was not stored."""

        with self._transaction() as document:
            quizzes = document["quizzes"]
            remaining = [q for q in quizzes if q.get("id") != quiz_id]
            removed = len(remaining) != len(quizzes)
            document["quizzes"] = remaining
        if removed:
            self._logger.info("Deleted quiz", extra={"quiz_id": quiz_id})
        return removed

    @contextmanager
    def _transaction(self) -> Iterator[MutableMapping[str, Any]]:
        with _StoreLock(self._lock_path):
            document = self._read()
            yield document
            _atomic_write_json(self._path, document)

    def _read(self) -> MutableMapping[str, Any]:
        if not self._path.exists():
            return {"next_id": 1, "quizzes": []}
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise StoreError(
                f"Failed to parse quiz store: {self._path}"
            ) from exc
        except OSError as exc:
            raise StoreError(f"Failed to read quiz store: {exc}") from exc
        if not isinstance(document, dict) or not isinstance(
            document.get("quizzes"), list
        ):
            raise StoreError(f"Unexpected quiz store layout: {self._path}")
        ids = [
            q.get("id") for q in document["quizzes"] if isinstance(q, dict)
        ]
        highest = max((i for i in ids if isinstance(i, int)), default=0)
        try:
            next_id = int(document.get("next_id") or 1)
        except (TypeError, ValueError) as exc:
            raise StoreError(
                f"Invalid next_id in quiz store: {self._path}"
            ) from exc
        document["next_id"] = max(next_id, highest + 1)
        return document


class DeleteConfirmation:
    """Two-step delete: the first request arms, a second one within
    ``window`` seconds deletes. An armed request reverts after the window.
    """

    def __init__(
        self,
        store: QuizStore,
        *,
        window: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._window = window
        self._clock = clock
        self._armed: dict[int, float] = {}

    def is_armed(self, quiz_id: int) -> bool:
        armed_at = self._armed.get(quiz_id)
        if armed_at is None:
            return False
        if self._clock() - armed_at > self._window:
            del self._armed[quiz_id]
            return False
        return True

    def request(self, quiz_id: int) -> bool:
        """Return ``True`` when this request performed the delete."""

        if self.is_armed(quiz_id):
            del self._armed[quiz_id]
            self._store.delete(quiz_id)
            return True
        self._armed[quiz_id] = self._clock()
        return False


def ratchet(stored: Any, new: int) -> int:
    """Return the value to keep for a best-score style field.

    A stored ``0`` is indistinguishable from "never attempted", so it is
    overwritten unconditionally; otherwise only a higher value replaces it.
    """

    if not stored:
        return new
    return max(int(stored), new)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse stored creation dates into aware datetimes.

    Accepts ISO-8601 strings, epoch milliseconds, JavaScript
    ``Date.toString()`` output and a few locale date formats. Naive values
    are read as local time. Returns ``None`` when nothing matches.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _from_epoch_ms(value)
    text = str(value).strip()
    if not text:
        return None
    if text.isdigit():
        return _from_epoch_ms(int(text))
    try:
        return _aware(datetime.fromisoformat(text))
    except ValueError:
        pass
    match = _JS_DATE_STRING.match(text)
    if match:
        try:
            return datetime.strptime(
                f"{match.group(1)}{match.group(2)}", "%b %d %Y %H:%M:%S%z"
            )
        except ValueError:
            return None
    for pattern in _LOCAL_FORMATS:
        try:
            return _aware(datetime.strptime(text, pattern))
        except ValueError:
            continue
    return None


def _from_epoch_ms(value: float) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _aware(stamp: datetime) -> datetime:
    if stamp.tzinfo is None:
        return stamp.astimezone()
    return stamp


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _find(
    document: Mapping[str, Any], quiz_id: int
) -> MutableMapping[str, Any]:
    for record in document["quizzes"]:
        if record.get("id") == quiz_id:
            return record
    raise QuizNotFoundError(f"Quiz {quiz_id} not found.")


class _StoreLock:
    """Filesystem lock using exclusive file creation."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def __enter__(self) -> "_StoreLock":
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(f"Cannot create store directory: {exc}") from exc
        deadline = time.time() + _LOCK_TIMEOUT_SECONDS
        while True:
            try:
                fd = os.open(
                    self._path,
                    os.O_CREAT | os.O_EXCL | os.O_WRONLY,
                )
                os.close(fd)
                break
            except FileExistsError:
                if time.time() > deadline:
                    raise StoreError(
                        f"Timed out waiting for store lock: {self._path}"
                    )
                time.sleep(0.05)
            except OSError as exc:
                raise StoreError(f"Cannot lock quiz store: {exc}") from exc
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        self._path.unlink(missing_ok=True)


def _atomic_write_json(path: Path, payload: Mapping[str, Any]) -> None:
    try:
        handle = tempfile.NamedTemporaryFile(
            "w",
            delete=False,
            encoding="utf-8",
            dir=str(path.parent),
        )
    except OSError as exc:
        raise StoreError(f"Failed to write quiz store: {exc}") from exc
    try:
        try:
            json.dump(payload, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        finally:
            handle.close()
        os.replace(handle.name, path)
    except (OSError, TypeError, ValueError) as exc:
        Path(handle.name).unlink(missing_ok=True)
        raise StoreError(f"Failed to write quiz store: {exc}") from exc
    try:
        path.chmod(0o600)
    except PermissionError:  # pragma: no cover - depends on filesystem
        pass
