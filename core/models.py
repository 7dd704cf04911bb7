from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Document:
    id: str
    name: str
    text_content: str
    size_bytes: int = 0


@dataclass(frozen=True)
class Question:
    id: str
    text: str
    description: Optional[str] = None
    category: Optional[str] = None
    instructions: Optional[str] = None


@dataclass(frozen=True)
class ContextBundle:
    question_id: str
    excerpt: str
    truncated: bool
    source_document_ids: Tuple[str, ...] = ()

    @property
    def has_content(self) -> bool:
        return bool(self.excerpt.strip())

    @classmethod
    def empty(cls, question_id: str) -> "ContextBundle":
        return cls(question_id=question_id, excerpt="", truncated=False, source_document_ids=())


class AnswerShape(str, Enum):
    SUMMARY_DETAILS = "summary_details"
    SOURCE_ANALYSIS_CONCLUSION = "source_analysis_conclusion"


class AnswerStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    COMPLETE = "complete"
    ERROR = "error"
    EDITED = "edited"


@dataclass(frozen=True)
class AnswerRecord:
    question_id: str
    summary: str = ""
    details: str = ""
    status: AnswerStatus = AnswerStatus.IDLE
    model_used: Optional[str] = None
    error: Optional[str] = None
    error_detail: Optional[str] = None
    warnings: Tuple[str, ...] = ()
    time_taken: Optional[float] = None
    raw_output: Optional[str] = None
    prompt_override: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    @property
    def is_loading(self) -> bool:
        return self.status is AnswerStatus.LOADING

    @property
    def is_edited(self) -> bool:
        return self.status is AnswerStatus.EDITED

    def evolve(self, **changes: object) -> "AnswerRecord":
        changes.setdefault("updated_at", time.time())
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, object]:
        return {
            "question_id": self.question_id,
            "summary": self.summary,
            "details": self.details,
            "status": self.status.value,
            "is_edited": self.is_edited,
            "is_loading": self.is_loading,
            "model_used": self.model_used,
            "error": self.error,
            "warnings": list(self.warnings),
            "time_taken": self.time_taken,
            "updated_at": self.updated_at,
        }


@dataclass
class ValidationResult:
    sections: Dict[str, str]
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    analysis_bullets: List[str] = field(default_factory=list)
    citation_quality: str = "low"

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, object]:
        return {
            "sections": dict(self.sections),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "analysis_bullets": list(self.analysis_bullets),
            "citation_quality": self.citation_quality,
            "is_valid": self.is_valid,
        }


@dataclass(frozen=True)
class StageResult:
    stage_name: str
    input_refs: Tuple[str, ...]
    output_text: str
    model: str
    iteration: int = 1
    warnings: Tuple[str, ...] = ()
    reformatted: bool = False
    topic: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "stage_name": self.stage_name,
            "topic": self.topic,
            "iteration": self.iteration,
            "input_refs": list(self.input_refs),
            "output_text": self.output_text,
            "model": self.model,
            "warnings": list(self.warnings),
            "reformatted": self.reformatted,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class AnswerSet:
    """Question/answer pairs handed to a review stage as one labelled block."""

    label: str
    entries: Tuple[Tuple[Question, AnswerRecord], ...]
    is_follow_up: bool = False

    @property
    def question_ids(self) -> List[str]:
        return [question.id for question, _ in self.entries]
