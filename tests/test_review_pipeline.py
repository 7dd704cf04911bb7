"""Tests for the staged review pipeline and associate-review parsing."""

import asyncio

import pytest

from conftest import error_response, user_prompt
from core.errors import InvalidInput, StageError
from core.models import AnswerRecord, AnswerSet, AnswerShape, AnswerStatus, Document, Question
from pipelines.review_pipeline import (
    ReviewConfig,
    ReviewPipeline,
    StageInputs,
    StageSpec,
    format_answer_sets,
    parse_associate_review,
    pitch_deck_reference,
)

ASSOCIATE_REPLY = """## Sense Check
Assessment: Needs Improvement
Findings are mostly consistent.

## Completeness Check
Score: 6/10
Churn and CAC are missing.

## Quality Check
Evidence is thin.

## Recommended Next Steps
Additional Analyst Research Required
1. What is monthly logo churn?
2. What is blended CAC?
3. Who are the top three customers?
4. What is the sales cycle length?
"""


def _answers(label: str = "Finances", follow_up: bool = False) -> AnswerSet:
    entries = (
        (Question(id="arr", text="What is ARR?"), AnswerRecord(question_id="arr", summary="12.3M USD", details="Deck p5", status=AnswerStatus.COMPLETE)),
        (Question(id="burn", text="What is the burn rate?"), AnswerRecord(question_id="burn", summary="400k USD/month", status=AnswerStatus.EDITED)),
    )
    return AnswerSet(label=label, entries=entries, is_follow_up=follow_up)


def _run(pipeline: ReviewPipeline, stage: str, inputs=None):
    return asyncio.run(pipeline.run_stage(stage, inputs))


def test_associate_stage_records_result_with_input_refs(provider, make_client) -> None:
    provider.script = lambda body: ASSOCIATE_REPLY
    pipeline = ReviewPipeline(make_client())

    result = _run(pipeline, "associate", StageInputs(answer_sets=[_answers()], topic="Finances"))

    assert result.stage_name == "associate"
    assert result.iteration == 1
    assert result.topic == "Finances"
    assert result.input_refs == ("answer:arr", "answer:burn")
    assert result.warnings == ()
    assert result.model == "anthropic/claude-3.7-sonnet"
    prompt = user_prompt(provider.requests[0])
    assert "The topic under review is: Finances" in prompt
    assert "Original Question 1: What is ARR?" in prompt
    assert "400k USD/month" in prompt
    assert pipeline.results == [result]


def test_later_stages_require_an_associate_result(provider, make_client) -> None:
    pipeline = ReviewPipeline(make_client())

    for stage in ("follow_up", "decision"):
        with pytest.raises(InvalidInput, match="needs a 'associate' result"):
            _run(pipeline, stage, StageInputs(answer_sets=[_answers()]))
    with pytest.raises(InvalidInput, match="Unknown stage"):
        _run(pipeline, "partner", StageInputs(answer_sets=[_answers()]))
    with pytest.raises(InvalidInput, match="no answers or prior results"):
        _run(pipeline, "associate", StageInputs(answer_sets=[AnswerSet(label="empty", entries=())]))
    assert provider.requests == []


def test_rerunning_a_stage_appends_iterations(provider, make_client) -> None:
    replies = [ASSOCIATE_REPLY, ASSOCIATE_REPLY.replace("Score: 6/10", "Score: 8/10")]
    provider.script = lambda body: replies.pop(0)
    pipeline = ReviewPipeline(make_client())
    inputs = StageInputs(answer_sets=[_answers()], topic="Finances")

    first = _run(pipeline, "associate", inputs)
    second = _run(pipeline, "associate", inputs)

    assert [r.iteration for r in pipeline.history("associate", "Finances")] == [1, 2]
    assert first.id != second.id
    assert "Score: 6/10" in first.output_text
    assert pipeline.latest("associate", "Finances") is second
    diff = pipeline.diff("associate", "Finances")
    assert "-Score: 6/10" in diff and "+Score: 8/10" in diff
    assert pipeline.diff("decision") == ""


def test_decision_consumes_latest_result_per_topic(provider, make_client) -> None:
    def script(body):
        prompt = user_prompt(body)
        if "The topic under review is: Finances" in prompt:
            return "finance review"
        if "The topic under review is: Market Research" in prompt:
            return "market review"
        return "## Reasons to Move Forward\n- growth\n## Reasons Not to Move Forward\n- burn\n## Decision\nNo"

    provider.script = script
    pipeline = ReviewPipeline(make_client())
    finances = _run(pipeline, "associate", StageInputs(answer_sets=[_answers()], topic="Finances"))
    market = _run(pipeline, "associate", StageInputs(answer_sets=[_answers("Market Research")], topic="Market Research"))

    decision = _run(pipeline, "decision", StageInputs(references={"pitch_deck": "Deck summary here"}))

    assert decision.input_refs == (finances.id, market.id, "reference:pitch_deck")
    assert decision.warnings == ()
    prompt = user_prompt(provider.requests[-1])
    assert "ASSOCIATE (FINANCES):\nfinance review" in prompt
    assert "ASSOCIATE (MARKET RESEARCH):\nmarket review" in prompt
    assert "## PITCH DECK\nDeck summary here" in prompt
    assert provider.requests[-1]["temperature"] == 0.4


def test_missing_required_headings_are_warnings(provider, make_client) -> None:
    provider.script = lambda body: "Looks fine to me."
    pipeline = ReviewPipeline(make_client())

    result = _run(pipeline, "associate", StageInputs(answer_sets=[_answers()]))

    assert "Missing section: Sense Check" in result.warnings
    assert result.output_text == "Looks fine to me."


def test_failed_call_raises_stage_error_and_keeps_history(provider, make_client) -> None:
    provider.script = lambda body: ASSOCIATE_REPLY
    pipeline = ReviewPipeline(make_client(max_retries=0))
    _run(pipeline, "associate", StageInputs(answer_sets=[_answers()], topic="Finances"))
    provider.script = lambda body: error_response(401, "revoked")

    with pytest.raises(StageError) as excinfo:
        _run(pipeline, "associate", StageInputs(answer_sets=[_answers()], topic="Finances"))

    assert excinfo.value.stage_name == "associate"
    assert "Authentication" in str(excinfo.value)
    assert len(pipeline.history("associate")) == 1


def test_explicit_prior_ids_and_follow_up_note(provider, make_client) -> None:
    provider.script = lambda body: ASSOCIATE_REPLY
    pipeline = ReviewPipeline(make_client())
    associate = _run(pipeline, "associate", StageInputs(answer_sets=[_answers()], topic="Finances"))
    provider.script = lambda body: "consolidated"

    result = _run(
        pipeline,
        "follow_up",
        StageInputs(
            answer_sets=[_answers(), _answers("Follow-up", follow_up=True)],
            prior_result_ids=[associate.id],
            topic="Finances",
        ),
    )

    assert result.input_refs[0] == associate.id
    prompt = user_prompt(provider.requests[-1])
    assert "Follow-up Question 1: What is ARR?" in prompt
    with pytest.raises(InvalidInput):
        _run(pipeline, "follow_up", StageInputs(prior_result_ids=["missing"]))


def test_stage_contract_reformats_unstructured_output(provider, make_client) -> None:
    provider.script = lambda body: "Here are some thoughts. The market is fine."
    stages = [
        StageSpec(
            name="memo",
            system_prompt="Write a memo.",
            template="{topic}\n{answers}\n{prior}\n{references}{follow_up_note}",
            contract=AnswerShape.SOURCE_ANALYSIS_CONCLUSION,
        ),
        StageSpec(
            name="brief",
            system_prompt="Write a brief.",
            template="{answers}",
            contract=AnswerShape.SUMMARY_DETAILS,
        ),
    ]
    pipeline = ReviewPipeline(make_client(), ReviewConfig(model="vendor/reviewer", stages=stages))

    memo = _run(pipeline, "memo", StageInputs(answer_sets=[_answers()]))
    brief = _run(pipeline, "brief", StageInputs(answer_sets=[_answers()]))

    assert memo.reformatted
    assert "# Source" in memo.output_text and "# Conclusion" in memo.output_text
    assert any("missing or empty" in w for w in memo.warnings)
    assert memo.model == "vendor/reviewer"
    assert brief.reformatted
    assert brief.output_text.startswith("Summary:\nHere are some thoughts. The market is fine.")


def test_duplicate_stage_names_are_rejected(make_client) -> None:
    stage = StageSpec(name="x", system_prompt="s", template="{answers}")
    with pytest.raises(InvalidInput):
        ReviewPipeline(make_client(), ReviewConfig(stages=[stage, stage]))


def test_parse_associate_review_caps_follow_up_questions() -> None:
    review = parse_associate_review(ASSOCIATE_REPLY)

    assert review.assessment == "Needs Improvement"
    assert review.completeness_score == 6
    assert not review.proceed
    assert review.follow_up_questions == [
        "What is monthly logo churn?",
        "What is blended CAC?",
        "Who are the top three customers?",
    ]
    questions = review.to_questions("Market Research")
    assert [q.id for q in questions] == [
        "follow-up-market-research-1",
        "follow-up-market-research-2",
        "follow-up-market-research-3",
    ]
    assert questions[0].category == "Market Research"


def test_parse_associate_review_proceed() -> None:
    text = (
        "## Sense Check\nAssessment: **Good**\n\n## Completeness Check\nScore: 9/10\n\n"
        "## Recommended Next Steps\n1. \"Proceed to Partner Review\"\n"
    )

    review = parse_associate_review(text)

    assert review.proceed
    assert review.assessment == "Good"
    assert review.completeness_score == 9
    assert review.follow_up_questions == []


def test_format_answer_sets_numbers_each_set() -> None:
    text = format_answer_sets([_answers()])

    assert text.startswith("## FINANCES:\nOriginal Question 1: What is ARR?")
    assert "Original Answer 2:\n400k USD/month" in text
    assert text.count("-------------------") == 2


def test_pitch_deck_reference_uses_first_deck() -> None:
    docs = [
        Document(id="m", name="memo.txt", text_content="memo"),
        Document(id="d", name="Pitch Deck.pdf", text_content="D" * 5000),
    ]

    reference = pitch_deck_reference(docs, limit=100)

    assert reference.startswith("Pitch Deck: Pitch Deck.pdf\n")
    assert len(reference.split("\n", 1)[1]) == 100
    assert pitch_deck_reference(docs[:1]) is None
