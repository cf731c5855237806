from .models import BLANK_MARKER, Difficulty, Option, Question, Quiz
from .evaluator import Evaluation, OptionMark, evaluate, fill_blank
from .store import (
    DeleteConfirmation,
    QuizNotFoundError,
    QuizStore,
    StoreError,
    parse_timestamp,
    ratchet,
)
from .provider import (
    HttpQuestionProvider,
    OpenAIQuestionProvider,
    ProviderError,
    QuestionProvider,
    QuestionRequest,
    QuestionValidationError,
    validate_question,
)
from .acquisition import (
    Acquisition,
    AcquisitionController,
    AcquisitionError,
    AcquisitionFailure,
)
from .session import (
    CompletionSummary,
    Phase,
    QuizSession,
    SessionState,
    SessionTransitionError,
)
from ._main import build_arg_parser, main, run

__all__ = [
    "build_arg_parser",
    "main",
    "run",
    "BLANK_MARKER",
    "Difficulty",
    "Option",
    "Question",
    "Quiz",
    "Evaluation",
    "OptionMark",
    "evaluate",
    "fill_blank",
    "DeleteConfirmation",
    "QuizNotFoundError",
    "QuizStore",
    "StoreError",
    "parse_timestamp",
    "ratchet",
    "HttpQuestionProvider",
    "OpenAIQuestionProvider",
    "ProviderError",
    "QuestionProvider",
    "QuestionRequest",
    "QuestionValidationError",
    "validate_question",
    "Acquisition",
    "AcquisitionController",
    "AcquisitionError",
    "AcquisitionFailure",
    "CompletionSummary",
    "Phase",
    "QuizSession",
    "SessionState",
    "SessionTransitionError",
]
