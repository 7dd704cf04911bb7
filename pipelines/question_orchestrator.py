from __future__ import annotations

import asyncio
import functools
import logging
import time
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from core.context import BudgetSettings, ContextBudgeter
from core.errors import DiligenceError, InvalidInput, QuestionInFlight, ValidationFailure, user_message
from core.models import AnswerRecord, AnswerSet, AnswerShape, AnswerStatus, ContextBundle, Document, Question
from core.openai_client import Message, RemoteCallClient
from core.validation import DEFAULT_RULES, ValidationRules, reformat_answer, split_summary_details, strip_markup, validate_answer
from pipelines.prompts import AnswerPrompts

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "anthropic/claude-3.7-sonnet"

INSUFFICIENT_SUMMARY = "Insufficient information: the uploaded documents contain no readable text for this question."
INSUFFICIENT_DETAILS = "No document content was available to analyze. Upload documents with extractable text and regenerate."
BUDGET_TOO_SMALL_SUMMARY = (
    "Insufficient information: the context budget is too small to include any document text for this question."
)
BUDGET_TOO_SMALL_DETAILS = "Documents were available but none fit the character budget. Use a larger mode and regenerate."
RETRY_DETAILS = "No answer is available. Regenerate this question to try again."

PromptBuilder = Callable[[Question, ContextBundle, Optional[str], AnswerShape], List[Message]]
Subscriber = Callable[[AnswerRecord], None]


class DocumentSource(Protocol):
    # Called from a worker thread once per dispatch.
    def list_files(self) -> List[Document]:
        ...


@dataclass(frozen=True)
class ModeSettings:
    name: str
    max_chars: int
    max_files: int
    window_chars: int
    priority_sheet_chars: int
    sheet_sample_chars: int
    max_tokens: int

    def budget_settings(self) -> BudgetSettings:
        return BudgetSettings(
            head_chars=self.window_chars,
            window_chars=self.window_chars,
            tail_chars=self.window_chars,
            max_files=self.max_files,
            priority_sheet_chars=self.priority_sheet_chars,
            sheet_sample_chars=self.sheet_sample_chars,
        )


FAST_MODE = ModeSettings(
    name="fast",
    max_chars=40_000,
    max_files=3,
    window_chars=5_000,
    priority_sheet_chars=10_000,
    sheet_sample_chars=5_000,
    max_tokens=1_200,
)
THOROUGH_MODE = ModeSettings(
    name="thorough",
    max_chars=200_000,
    max_files=5,
    window_chars=25_000,
    priority_sheet_chars=40_000,
    sheet_sample_chars=20_000,
    max_tokens=2_500,
)
MODES: Dict[str, ModeSettings] = {mode.name: mode for mode in (FAST_MODE, THOROUGH_MODE)}


@dataclass
class AnalysisConfig:
    model: str = DEFAULT_MODEL
    mode: ModeSettings = THOROUGH_MODE
    answer_shape: AnswerShape = AnswerShape.SUMMARY_DETAILS
    temperature: float = 0.3
    max_concurrency: int = 5
    validation_rules: ValidationRules = field(default_factory=lambda: DEFAULT_RULES)


class Batch:
    """Handle for one dispatch of questions.

    Per-question progress is observed through the orchestrator (``get``/``subscribe``);
    ``wait`` is a convenience for callers that do want to block until everything settles.
    """

    def __init__(
        self,
        batch_id: str,
        tasks: Dict[str, "asyncio.Task[None]"],
        orchestrator: "QuestionOrchestrator",
        skipped: Sequence[str] = (),
    ) -> None:
        self.id = batch_id
        self._tasks = tasks
        self._orchestrator = orchestrator
        self.skipped: Tuple[str, ...] = tuple(skipped)

    @property
    def question_ids(self) -> List[str]:
        return list(self._tasks)

    def done(self) -> bool:
        return all(task.done() for task in self._tasks.values())

    def cancel(self) -> int:
        """Cancel unfinished questions; finished ones keep their records. Returns how many were cancelled."""
        cancelled = 0
        for task in self._tasks.values():
            if not task.done() and task.cancel():
                cancelled += 1
        if cancelled:
            logger.info("[batch] %s: cancelling %d pending question(s)", self.id, cancelled)
        return cancelled

    async def wait(self) -> Dict[str, AnswerRecord]:
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        return {qid: self._orchestrator.get(qid) for qid in self._tasks}


class QuestionOrchestrator:
    """Owns every per-question AnswerRecord and all of its state transitions.

    idle -> loading -> complete | error; any settled state -> loading on regenerate;
    complete -> edited on a manual edit. At most one call per question id is in flight.
    Calls run as asyncio tasks bounded by a semaphore; a failure only affects its own record.
    """

    def __init__(
        self,
        client: RemoteCallClient,
        document_source: DocumentSource,
        questions: Iterable[Question],
        config: Optional[AnalysisConfig] = None,
        *,
        budgeter: Optional[ContextBudgeter] = None,
        prompt_builder: Optional[PromptBuilder] = None,
    ) -> None:
        self.client = client
        self.document_source = document_source
        self.config = config or AnalysisConfig()
        self.budgeter = budgeter or ContextBudgeter(self.config.mode.budget_settings())
        self.prompt_builder: PromptBuilder = prompt_builder or AnswerPrompts().build
        self.model = client.config.model(self.config.model)
        self._questions: Dict[str, Question] = {}
        self._records: Dict[str, AnswerRecord] = {}
        self._inflight: Dict[str, "asyncio.Task[None]"] = {}
        self._subscribers: List[Subscriber] = []
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop: Optional[asyncio.AbstractEventLoop] = None
        for question in questions:
            self.add_question(question)

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------
    @property
    def questions(self) -> List[Question]:
        return list(self._questions.values())

    def get(self, question_id: str) -> AnswerRecord:
        self._require(question_id)
        return self._records[question_id]

    def snapshot(self) -> Dict[str, AnswerRecord]:
        return dict(self._records)

    def in_flight(self) -> List[str]:
        return list(self._inflight)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call ``callback(record)`` on every state change; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            with suppress(ValueError):
                self._subscribers.remove(callback)

        return unsubscribe

    def answer_set(
        self,
        label: str = "Analyst answers",
        question_ids: Optional[Sequence[str]] = None,
        is_follow_up: bool = False,
    ) -> AnswerSet:
        """Completed and edited answers, in question order, packaged for a review stage."""
        ids = list(question_ids) if question_ids is not None else list(self._questions)
        for qid in ids:
            self._require(qid)
        entries = tuple(
            (self._questions[qid], self._records[qid])
            for qid in ids
            if self._records[qid].status in (AnswerStatus.COMPLETE, AnswerStatus.EDITED)
        )
        return AnswerSet(label=label, entries=entries, is_follow_up=is_follow_up)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def add_question(self, question: Question) -> None:
        if not question.id or not question.text.strip():
            raise InvalidInput("A question needs an id and non-empty text.")
        if question.id in self._questions:
            raise InvalidInput(f"Duplicate question id: {question.id!r}")
        self._questions[question.id] = question
        self._records[question.id] = AnswerRecord(question_id=question.id)

    def analyze_subset(self, question_ids: Sequence[str], prompt_override: Optional[str] = None) -> Batch:
        """Dispatch the given questions concurrently.

        Unknown ids reject the whole batch before any state changes. Ids already in flight
        also reject the batch. Edited answers are skipped until regenerated explicitly.
        """
        ids = list(dict.fromkeys(question_ids))
        if not ids:
            raise InvalidInput("No questions selected for analysis.")
        missing = [qid for qid in ids if qid not in self._questions]
        if missing:
            raise InvalidInput(f"Some questions could not be found: {', '.join(missing)}")
        busy = [qid for qid in ids if qid in self._inflight]
        if busy:
            raise QuestionInFlight(busy[0])
        skipped = [qid for qid in ids if self._records[qid].is_edited]
        if skipped:
            logger.info("[batch] skipping %d edited answer(s): %s", len(skipped), ", ".join(skipped))
        runnable = [qid for qid in ids if qid not in skipped]
        return self._dispatch(runnable, prompt_override, skipped)

    def analyze_all(self) -> Batch:
        return self.analyze_subset(list(self._questions))

    def regenerate(self, question_id: str, prompt_override: Optional[str] = None) -> Batch:
        self._require(question_id)
        if question_id in self._inflight:
            raise QuestionInFlight(question_id)
        return self._dispatch([question_id], prompt_override)

    def edit_answer(self, question_id: str, summary: str, details: str) -> AnswerRecord:
        record = self.get(question_id)
        if question_id in self._inflight:
            raise QuestionInFlight(question_id)
        if record.status not in (AnswerStatus.COMPLETE, AnswerStatus.EDITED):
            raise InvalidInput(f"Question {question_id!r} has no completed answer to edit.")
        if not summary.strip() and not details.strip():
            raise InvalidInput("An edited answer needs a summary or details.")
        updated = record.evolve(status=AnswerStatus.EDITED, summary=summary.strip(), details=details.strip())
        self._set(updated)
        return updated

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _dispatch(self, ids: Sequence[str], prompt_override: Optional[str], skipped: Sequence[str] = ()) -> Batch:
        loop = asyncio.get_running_loop()
        batch_id = uuid.uuid4().hex[:8]
        tasks: Dict[str, "asyncio.Task[None]"] = {}
        if not ids:
            return Batch(batch_id, tasks, self, skipped)
        # One corpus read per batch, off the event loop; every question awaits the same result.
        documents = loop.create_task(asyncio.to_thread(self.document_source.list_files))
        for qid in ids:
            previous = self._records[qid]
            self._set(
                previous.evolve(
                    status=AnswerStatus.LOADING,
                    error=None,
                    error_detail=None,
                    prompt_override=prompt_override,
                )
            )
            task = loop.create_task(self._answer(self._questions[qid], documents, prompt_override))
            task.add_done_callback(functools.partial(self._settle, qid, previous))
            self._inflight[qid] = task
            tasks[qid] = task
        logger.info(
            "[batch] %s: dispatched %d question(s) (mode=%s, model=%s)",
            batch_id,
            len(tasks),
            self.config.mode.name,
            self.model.name,
        )
        return Batch(batch_id, tasks, self, skipped)

    def _limiter(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(max(self.config.max_concurrency, 1))
            self._semaphore_loop = loop
        return self._semaphore

    async def _answer(
        self,
        question: Question,
        documents: "asyncio.Future[List[Document]]",
        prompt_override: Optional[str],
    ) -> None:
        started = time.time()
        try:
            # Shielded so cancelling one question does not cancel the shared corpus read.
            corpus = await asyncio.shield(documents)
            async with self._limiter():
                record = await self._produce(question, corpus, prompt_override)
        except DiligenceError as exc:
            logger.warning("[batch] %s failed: %s: %s", question.id, type(exc).__name__, exc)
            record = self._failed(question.id, exc)
        except Exception as exc:
            logger.exception("[batch] %s failed unexpectedly", question.id)
            record = self._failed(question.id, exc)
        self._release(question.id)
        self._set(record.evolve(time_taken=round(time.time() - started, 2)))

    async def _produce(
        self, question: Question, documents: Sequence[Document], prompt_override: Optional[str]
    ) -> AnswerRecord:
        current = self._records[question.id]
        bundle = self.budgeter.select(documents, question, self.config.mode.max_chars)
        if not bundle.has_content:
            if bundle.truncated:
                logger.warning("[batch] %s: budget of %d chars fits no document text", question.id, self.config.mode.max_chars)
                summary, details, warning = BUDGET_TOO_SMALL_SUMMARY, BUDGET_TOO_SMALL_DETAILS, "Context budget too small"
            else:
                logger.info("[batch] %s: no document content; answering without a model call", question.id)
                summary, details, warning = INSUFFICIENT_SUMMARY, INSUFFICIENT_DETAILS, "No usable document content"
            return current.evolve(
                status=AnswerStatus.COMPLETE,
                summary=summary,
                details=details,
                model_used=None,
                warnings=(warning,),
                raw_output=None,
            )

        messages = self.prompt_builder(question, bundle, prompt_override, self.config.answer_shape)
        raw = await self.client.call(
            messages,
            self.model,
            temperature=self.config.temperature,
            max_tokens=self.config.mode.max_tokens,
            call_context=f"question-{question.id}",
        )
        summary, details, warnings = self._shape(raw)
        if bundle.truncated:
            warnings.append("Context was truncated to fit the request budget")
        return current.evolve(
            status=AnswerStatus.COMPLETE,
            summary=summary,
            details=details,
            model_used=self.model.name,
            warnings=tuple(warnings),
            raw_output=raw,
            error=None,
            error_detail=None,
        )

    def _shape(self, raw: str) -> Tuple[str, str, List[str]]:
        if self.config.answer_shape is AnswerShape.SOURCE_ANALYSIS_CONCLUSION:
            rules = self.config.validation_rules
            result = validate_answer(raw, rules)
            if result.is_valid:
                return strip_markup(result.sections.get("conclusion", "")), raw.strip(), list(result.warnings)
            rebuilt = reformat_answer(raw, rules)
            warnings = list(result.errors) + list(result.warnings)
            warnings.append("Answer was reformatted to the Source/Analysis/Conclusion structure")
            return strip_markup(rebuilt.sections.get("conclusion", "")), rebuilt.text, warnings

        summary, details = split_summary_details(raw)
        if not summary and not details:
            raise ValidationFailure("Model returned no usable answer text")
        return summary, details, []

    def _failed(self, question_id: str, exc: BaseException) -> AnswerRecord:
        # Any earlier answer is discarded; the record only carries the failure.
        message = user_message(exc)
        return self._records[question_id].evolve(
            status=AnswerStatus.ERROR,
            summary=message,
            details=RETRY_DETAILS,
            model_used=None,
            warnings=(),
            raw_output=None,
            error=message,
            error_detail=f"{type(exc).__name__}: {exc}",
        )

    def _release(self, question_id: str) -> None:
        if self._inflight.get(question_id) is asyncio.current_task():
            del self._inflight[question_id]

    def _settle(self, question_id: str, previous: AnswerRecord, task: "asyncio.Task[None]") -> None:
        if self._inflight.get(question_id) is task:
            del self._inflight[question_id]
        if task.cancelled():
            logger.info("[batch] %s: cancelled; restored to %s", question_id, previous.status.value)
            self._set(previous)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require(self, question_id: str) -> Question:
        question = self._questions.get(question_id)
        if question is None:
            raise InvalidInput(f"Unknown question id: {question_id!r}")
        return question

    def _set(self, record: AnswerRecord) -> None:
        self._records[record.question_id] = record
        for callback in list(self._subscribers):
            try:
                callback(record)
            except Exception:
                logger.exception("[batch] subscriber failed for %s", record.question_id)
