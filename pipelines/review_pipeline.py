from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from core.context import ContextBudgeter, DocumentKind
from core.errors import InvalidInput, RemoteCallError, StageError, ValidationFailure, user_message
from core.models import AnswerRecord, AnswerSet, AnswerShape, Document, Question, StageResult
from core.openai_client import Message, RemoteCallClient
from core.utils import slugify, truncate_text
from core.validation import reformat_answer, split_summary_details, validate_answer

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "anthropic/claude-3.7-sonnet"
ANSWER_DIVIDER = "-------------------"
PITCH_DECK_CHARS = 3000


@dataclass(frozen=True)
class StageSpec:
    name: str
    system_prompt: str
    template: str
    model: Optional[str] = None
    temperature: float = 0.3
    max_tokens: int = 2000
    # Stages that must have produced at least one result before this one may run.
    requires: Tuple[str, ...] = ()
    # Stages whose latest result per topic is fed in when no prior ids are given.
    consumes: Tuple[str, ...] = ()
    contract: Optional[AnswerShape] = None
    required_headings: Tuple[str, ...] = ()


@dataclass
class StageInputs:
    answer_sets: Sequence[AnswerSet] = ()
    prior_result_ids: Sequence[str] = ()
    # Opaque reference blobs (benchmark data, pitch-deck excerpt) passed through unmodified.
    references: Dict[str, str] = field(default_factory=dict)
    topic: Optional[str] = None


class ReviewPrompts:
    ASSOCIATE_SYSTEM = (
        "You are a VC associate reviewing an analyst's due-diligence work. Give a structured review "
        "without conversational elements and focus only on the topic under review."
    )
    ASSOCIATE_TEMPLATE = """
The topic under review is: {topic}{follow_up_note}

Below are the analyst's findings based on the company's documents:
{answers}
{references}
Provide your review starting immediately with these headings:

## Sense Check
Assessment: [Good/Needs Improvement]
[Logical consistency of the findings, limited to {topic}]

## Completeness Check
Score: [1-10]/10
[Justify the score and list the specific information gaps]

## Quality Check
[Quality of evidence and reasoning, limited to {topic}]

## Recommended Next Steps
Recommend ONE of:
1. If the score is 8 or higher and the findings are consistent: "Proceed to Partner Review"
2. Otherwise: "Additional Analyst Research Required" followed by up to THREE numbered follow-up questions.
"""

    FOLLOW_UP_SYSTEM = (
        "You consolidate original investment research with follow-up analysis into one coherent document, "
        "keeping every key insight and avoiding repetition."
    )
    FOLLOW_UP_TEMPLATE = """
TOPIC: {topic}

{answers}
{prior}
Create a consolidated analysis that combines the original analysis with the follow-up information
and resolves any contradictions between them. For EACH original question use:

## CONSOLIDATED ANSWER FOR: [Original Question]
[Consolidated answer]
"""

    DECISION_SYSTEM = (
        "You are a VC partner and the final decision maker on investments. Be decisive; "
        "if the opportunity is not a clear yes, the answer is no."
    )
    DECISION_TEMPLATE = """
You have received these analyses from your team on a potential investment:

{prior}
{answers}
{references}
Structure your response as follows:

## Reasons to Move Forward
- 3-5 specific reasons, referencing the analyses

## Reasons Not to Move Forward
- 3-5 significant concerns or red flags

## Decision
A definitive "Yes" or "No" with a brief explanation.

## Risks & Mitigations
[Key risks and possible mitigations]

## Next Steps
[3-5 specific action items]

## Key Questions
[2-3 incisive questions to ask before committing]

Start directly with "Reasons to Move Forward".
"""

    FOLLOW_UP_NOTE = (
        "\nNOTE: The analyst has provided follow-up answers to earlier questions. "
        "Evaluate the complete set of original and follow-up answers."
    )


def default_stages() -> List[StageSpec]:
    return [
        StageSpec(
            name="associate",
            system_prompt=ReviewPrompts.ASSOCIATE_SYSTEM,
            template=ReviewPrompts.ASSOCIATE_TEMPLATE,
            required_headings=("Sense Check", "Completeness Check", "Quality Check", "Recommended Next Steps"),
        ),
        StageSpec(
            name="follow_up",
            system_prompt=ReviewPrompts.FOLLOW_UP_SYSTEM,
            template=ReviewPrompts.FOLLOW_UP_TEMPLATE,
            requires=("associate",),
            consumes=("associate",),
        ),
        StageSpec(
            name="decision",
            system_prompt=ReviewPrompts.DECISION_SYSTEM,
            template=ReviewPrompts.DECISION_TEMPLATE,
            temperature=0.4,
            requires=("associate",),
            consumes=("associate", "follow_up"),
            required_headings=("Reasons to Move Forward", "Reasons Not to Move Forward", "Decision"),
        ),
    ]


@dataclass
class ReviewConfig:
    model: str = DEFAULT_MODEL
    stages: List[StageSpec] = field(default_factory=default_stages)


class ReviewPipeline:
    """Ordered review stages, each one model call producing one immutable StageResult.

    History is append-only: re-running a stage adds a new iteration and never touches
    earlier results. Nothing runs automatically; every stage is triggered by the caller.
    """

    def __init__(self, client: RemoteCallClient, config: Optional[ReviewConfig] = None) -> None:
        self.client = client
        self.config = config or ReviewConfig()
        self._specs: Dict[str, StageSpec] = {}
        for spec in self.config.stages:
            if spec.name in self._specs:
                raise InvalidInput(f"Duplicate stage name: {spec.name!r}")
            self._specs[spec.name] = spec
        self._models = {name: client.config.model(spec.model or self.config.model) for name, spec in self._specs.items()}
        self._results: List[StageResult] = []

    @property
    def stage_names(self) -> List[str]:
        return list(self._specs)

    @property
    def results(self) -> List[StageResult]:
        return list(self._results)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    def history(self, stage_name: str, topic: Optional[str] = None) -> List[StageResult]:
        self._spec(stage_name)
        return [
            r for r in self._results if r.stage_name == stage_name and (topic is None or r.topic == topic)
        ]

    def latest(self, stage_name: str, topic: Optional[str] = None) -> Optional[StageResult]:
        results = self.history(stage_name, topic)
        return results[-1] if results else None

    def result(self, result_id: str) -> StageResult:
        for r in self._results:
            if r.id == result_id:
                return r
        raise InvalidInput(f"Unknown stage result id: {result_id!r}")

    def diff(self, stage_name: str, topic: Optional[str] = None) -> str:
        """Unified diff between the two most recent iterations; empty when there are fewer than two."""
        results = self.history(stage_name, topic)
        if len(results) < 2:
            return ""
        before, after = results[-2], results[-1]
        lines = difflib.unified_diff(
            before.output_text.splitlines(keepends=True),
            after.output_text.splitlines(keepends=True),
            fromfile=f"{stage_name} #{before.iteration}",
            tofile=f"{stage_name} #{after.iteration}",
        )
        return "".join(lines)

    # ------------------------------------------------------------------
    # Running stages
    # ------------------------------------------------------------------
    async def run_stage(self, stage_name: str, inputs: Optional[StageInputs] = None) -> StageResult:
        spec = self._spec(stage_name)
        inputs = inputs or StageInputs()
        for required in spec.requires:
            if not self.history(required):
                raise InvalidInput(f"Stage {stage_name!r} needs a {required!r} result first.")
        priors = self._resolve_priors(spec, inputs)
        answer_sets = [s for s in inputs.answer_sets if s.entries]
        if not answer_sets and not priors:
            raise InvalidInput(f"Stage {stage_name!r} has no answers or prior results to review.")

        model = self._models[stage_name]
        messages = self.build_messages(spec, answer_sets, priors, inputs)
        logger.info(
            "[stage] %s%s: %d answer set(s), %d prior result(s), %d reference(s)",
            stage_name,
            f" ({inputs.topic})" if inputs.topic else "",
            len(answer_sets),
            len(priors),
            len(inputs.references),
        )
        try:
            raw = await self.client.call(
                messages,
                model,
                temperature=spec.temperature,
                max_tokens=spec.max_tokens,
                call_context=f"stage-{stage_name}",
            )
        except RemoteCallError as exc:
            raise StageError(stage_name, user_message(exc)) from exc

        try:
            output, warnings, reformatted = self._apply_contract(spec, raw)
        except ValidationFailure as exc:
            raise StageError(stage_name, str(exc)) from exc

        input_refs = [r.id for r in priors]
        for answer_set in answer_sets:
            input_refs.extend(f"answer:{qid}" for qid in answer_set.question_ids)
        input_refs.extend(f"reference:{name}" for name in sorted(inputs.references))
        result = StageResult(
            stage_name=stage_name,
            input_refs=tuple(input_refs),
            output_text=output,
            model=model.name,
            iteration=len(self.history(stage_name, inputs.topic)) + 1,
            warnings=tuple(warnings),
            reformatted=reformatted,
            topic=inputs.topic,
        )
        self._results.append(result)
        logger.info("[stage] %s: iteration %d stored (%d chars)", stage_name, result.iteration, len(output))
        return result

    def build_messages(
        self,
        spec: StageSpec,
        answer_sets: Sequence[AnswerSet],
        priors: Sequence[StageResult],
        inputs: StageInputs,
    ) -> List[Message]:
        has_follow_up = any(s.is_follow_up for s in answer_sets)
        user_prompt = spec.template.format(
            topic=inputs.topic or "the overall investment opportunity",
            follow_up_note=ReviewPrompts.FOLLOW_UP_NOTE if has_follow_up else "",
            answers=format_answer_sets(answer_sets),
            prior=format_prior_results(priors),
            references=format_references(inputs.references),
        )
        return [
            {"role": "system", "content": spec.system_prompt},
            {"role": "user", "content": user_prompt.strip()},
        ]

    def _spec(self, stage_name: str) -> StageSpec:
        spec = self._specs.get(stage_name)
        if spec is None:
            raise InvalidInput(f"Unknown stage: {stage_name!r}")
        return spec

    def _resolve_priors(self, spec: StageSpec, inputs: StageInputs) -> List[StageResult]:
        if inputs.prior_result_ids:
            return [self.result(rid) for rid in inputs.prior_result_ids]
        # Latest result per topic across the consumed stages; a later stage result supersedes an earlier one.
        by_topic: Dict[Optional[str], StageResult] = {}
        for r in self._results:
            if r.stage_name in spec.consumes and (inputs.topic is None or r.topic == inputs.topic):
                by_topic[r.topic] = r
        return list(by_topic.values())

    def _apply_contract(self, spec: StageSpec, raw: str) -> Tuple[str, List[str], bool]:
        text = raw.strip()
        warnings = [
            f"Missing section: {heading}" for heading in spec.required_headings if heading.lower() not in text.lower()
        ]
        if spec.contract is AnswerShape.SOURCE_ANALYSIS_CONCLUSION:
            result = validate_answer(text)
            if not result.is_valid:
                rebuilt = reformat_answer(text)
                warnings.extend(result.errors)
                logger.warning("[stage] %s: output reformatted (%d error(s))", spec.name, len(result.errors))
                return rebuilt.text, warnings + list(result.warnings), rebuilt.reformatted
            return text, warnings + list(result.warnings), False
        if spec.contract is AnswerShape.SUMMARY_DETAILS:
            summary, details = split_summary_details(text)
            if not summary and not details:
                raise ValidationFailure("Stage output has no usable Summary/Details content")
            normalized = f"Summary:\n{summary}\n\nDetails:\n{details}".rstrip()
            return normalized, warnings, normalized != text
        return text, warnings, False


# ----------------------------------------------------------------------
# Input formatting
# ----------------------------------------------------------------------
def _answer_text(record: AnswerRecord) -> str:
    parts = [p for p in (record.summary, record.details) if p]
    return "\n\n".join(parts) or "No answer provided"


def format_answer_sets(answer_sets: Sequence[AnswerSet]) -> str:
    blocks: List[str] = []
    for answer_set in answer_sets:
        kind = "Follow-up" if answer_set.is_follow_up else "Original"
        lines = [f"## {answer_set.label.upper()}:" if answer_set.label else ""]
        for idx, (question, record) in enumerate(answer_set.entries, start=1):
            lines.append(f"{kind} Question {idx}: {question.text}")
            lines.append(f"{kind} Answer {idx}:\n{_answer_text(record)}")
            lines.append(ANSWER_DIVIDER)
        blocks.append("\n".join(line for line in lines if line))
    return "\n\n".join(blocks)


def format_prior_results(priors: Sequence[StageResult]) -> str:
    blocks = []
    for r in priors:
        title = r.stage_name.replace("_", " ").upper()
        if r.topic:
            title = f"{title} ({r.topic.upper()})"
        blocks.append(f"{title}:\n{r.output_text}")
    return "\n\n".join(blocks)


def format_references(references: Dict[str, str]) -> str:
    blocks = []
    for name in sorted(references):
        blocks.append(f"## {name.replace('_', ' ').upper()}\n{references[name]}")
    return "\n\n".join(blocks)


def pitch_deck_reference(documents: Sequence[Document], limit: int = PITCH_DECK_CHARS) -> Optional[str]:
    """Leading excerpt of the first pitch deck in the corpus, for stages that want deck context."""
    budgeter = ContextBudgeter()
    for doc in documents:
        if budgeter.classify(doc) is DocumentKind.PITCH_DECK and doc.text_content.strip():
            return f"Pitch Deck: {doc.name}\n{truncate_text(doc.text_content.strip(), limit)}"
    return None


# ----------------------------------------------------------------------
# Associate review parsing
# ----------------------------------------------------------------------
_ASSESSMENT_RE = re.compile(r"Assessment:\s*[*_]*\s*(Good|Needs Improvement)", re.IGNORECASE)
_SCORE_RE = re.compile(r"Score:\s*[*_]*\s*(\d{1,2})\s*/\s*10", re.IGNORECASE)
_NEXT_STEPS_RE = re.compile(r"^#*\s*[*_]*Recommended Next Steps[*_]*\s*$", re.IGNORECASE | re.MULTILINE)
_NUMBERED_RE = re.compile(r"^\s*\d+[.)]\s+(.+?)\s*$", re.MULTILINE)
PROCEED_MARKER = "proceed to partner review"
RESEARCH_MARKER = "additional analyst research required"
MAX_FOLLOW_UPS = 3


@dataclass
class AssociateReview:
    assessment: Optional[str]
    completeness_score: Optional[int]
    proceed: bool
    follow_up_questions: List[str] = field(default_factory=list)

    def to_questions(self, topic: str, category: Optional[str] = None) -> List[Question]:
        prefix = f"follow-up-{slugify(topic)}"
        return [
            Question(id=f"{prefix}-{idx}", text=text, category=category or topic)
            for idx, text in enumerate(self.follow_up_questions, start=1)
        ]


def parse_associate_review(text: str) -> AssociateReview:
    """Pull the assessment, score, and follow-up questions out of an associate review."""
    assessment_match = _ASSESSMENT_RE.search(text)
    score_match = _SCORE_RE.search(text)
    heading = _NEXT_STEPS_RE.search(text)
    next_steps = text[heading.end() :] if heading else text
    lowered = next_steps.lower()

    proceed = PROCEED_MARKER in lowered and RESEARCH_MARKER not in lowered
    questions: List[str] = []
    if not proceed:
        marker = lowered.find(RESEARCH_MARKER)
        tail = next_steps[marker + len(RESEARCH_MARKER) :] if marker != -1 else next_steps
        for match in _NUMBERED_RE.finditer(tail):
            question = match.group(1).strip().strip('"*_ ').strip()
            if question and question.lower() not in (PROCEED_MARKER, RESEARCH_MARKER):
                questions.append(question)
            if len(questions) == MAX_FOLLOW_UPS:
                break

    return AssociateReview(
        assessment=assessment_match.group(1).title() if assessment_match else None,
        completeness_score=int(score_match.group(1)) if score_match else None,
        proceed=proceed,
        follow_up_questions=questions,
    )
