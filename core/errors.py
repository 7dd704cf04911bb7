from __future__ import annotations

from typing import Optional


class DiligenceError(RuntimeError):
    pass


class InvalidInput(DiligenceError):
    """Rejected synchronously; never retried."""


class QuestionInFlight(InvalidInput):
    def __init__(self, question_id: str) -> None:
        super().__init__(f"Question {question_id!r} already has an analysis in flight.")
        self.question_id = question_id


class RemoteCallError(DiligenceError):
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.attempts = 0
        if retryable is not None:
            self.retryable = retryable


class Unauthorized(RemoteCallError):
    retryable = False


class RateLimited(RemoteCallError):
    pass


class CallTimeout(RemoteCallError):
    pass


class ProviderError(RemoteCallError):
    pass


class DocumentLoadError(DiligenceError):
    """The document source could not produce the corpus."""


class ValidationFailure(DiligenceError):
    """Raised only when the fallback reformatter cannot recover any section."""


class StageError(DiligenceError):
    def __init__(self, stage_name: str, message: str) -> None:
        super().__init__(f"{stage_name}: {message}")
        self.stage_name = stage_name


_USER_MESSAGES = (
    (Unauthorized, "Authentication with the AI provider failed. Please check your API configuration."),
    (RateLimited, "The AI service is currently busy. Please try again in a moment."),
    (CallTimeout, "The request took too long to process. Try Fast Mode or a narrower question."),
    (ProviderError, "The AI provider returned an error while analyzing the documents."),
    (DocumentLoadError, "The uploaded documents could not be read. Check the document folder and try again."),
    (ValidationFailure, "The AI response could not be turned into a structured answer."),
    (InvalidInput, "The request was invalid."),
)


def user_message(exc: BaseException) -> str:
    for exc_type, message in _USER_MESSAGES:
        if isinstance(exc, exc_type):
            return message
    return "An unexpected error occurred while processing your request."
