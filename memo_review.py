from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from core.errors import DiligenceError, DocumentLoadError
from core.models import AnswerRecord, AnswerShape, Question
from core.openai_client import ClientConfig, RemoteCallClient
from core.utils import ensure_dir, write_json
from ingestion.text_ingestor import DirectoryDocumentSource
from pipelines.question_bank import DEFAULT_QUESTIONS, REVIEW_TOPICS, load_questions, questions_for_topic
from pipelines.question_orchestrator import DEFAULT_MODEL, MODES, AnalysisConfig, QuestionOrchestrator
from pipelines.review_pipeline import ReviewConfig, ReviewPipeline, StageInputs, parse_associate_review, pitch_deck_reference

DEFAULT_OUTPUT_DIR = Path("memo_outputs")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Answer due-diligence questions against a folder of extracted documents.")
    parser.add_argument("docs_dir", help="Directory of already-extracted text documents (.txt/.md/.csv).")
    parser.add_argument("--questions", help="JSON file of questions (default: built-in question bank).")
    parser.add_argument("--only", nargs="+", metavar="ID", help="Only analyze these question ids.")
    parser.add_argument("--mode", choices=sorted(MODES), default="thorough", help="Context budget preset (default: %(default)s).")
    parser.add_argument(
        "--answer-shape",
        choices=[shape.value for shape in AnswerShape],
        default=AnswerShape.SUMMARY_DETAILS.value,
        help="Answer structure requested from the model (default: %(default)s).",
    )
    parser.add_argument("--model", default=DEFAULT_MODEL, help="Model for question analysis (default: %(default)s).")
    parser.add_argument("--review-model", help="Model for review stages (default: same as --model).")
    parser.add_argument("--max-concurrency", type=int, default=5, help="Questions analyzed at once (default: %(default)s).")
    parser.add_argument("--review", action="store_true", help="Run associate reviews per topic, then the decision stage.")
    parser.add_argument("--follow-ups", action="store_true", help="Answer associate follow-up questions and consolidate them.")
    parser.add_argument("--benchmark", help="File with benchmark data passed to the decision stage as-is.")
    parser.add_argument("--output-dir", default=str(DEFAULT_OUTPUT_DIR), help="Where to write results (default: %(default)s).")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser.parse_args(argv)


def _print_progress(record: AnswerRecord) -> None:
    if record.is_loading:
        return
    status = record.status.value
    suffix = f" - {record.error}" if record.error else ""
    timing = f" in {record.time_taken:.1f}s" if record.time_taken is not None else ""
    print(f"[answer] {record.question_id}: {status}{timing}{suffix}")


def _answers_payload(questions: List[Question], records: Dict[str, AnswerRecord]) -> List[Dict[str, object]]:
    payload = []
    for question in questions:
        record = records.get(question.id)
        if record is None:
            continue
        item = record.to_dict()
        item["question"] = question.text
        item["category"] = question.category
        payload.append(item)
    return payload


async def run_review(
    client: RemoteCallClient,
    orchestrator: QuestionOrchestrator,
    source: DirectoryDocumentSource,
    args: argparse.Namespace,
    output_dir: Path,
) -> None:
    pipeline = ReviewPipeline(client, ReviewConfig(model=args.review_model or args.model))
    references: Dict[str, str] = {}
    deck = pitch_deck_reference(await asyncio.to_thread(source.list_files))
    if deck:
        references["pitch_deck"] = deck

    for topic in REVIEW_TOPICS:
        ids = [q.id for q in questions_for_topic(orchestrator.questions, topic)]
        answers = orchestrator.answer_set(label="Analyst answers", question_ids=ids)
        if not answers.entries:
            print(f"[review] {topic}: no completed answers; skipping")
            continue
        result = await pipeline.run_stage("associate", StageInputs(answer_sets=[answers], references=references, topic=topic))
        review = parse_associate_review(result.output_text)
        print(
            f"[review] {topic}: assessment={review.assessment or '?'} "
            f"score={review.completeness_score if review.completeness_score is not None else '?'}/10 "
            f"proceed={review.proceed}"
        )
        if not (args.follow_ups and review.follow_up_questions):
            continue
        follow_ups = review.to_questions(topic)
        for question in follow_ups:
            orchestrator.add_question(question)
        follow_ids = [q.id for q in follow_ups]
        print(f"[review] {topic}: answering {len(follow_ids)} follow-up question(s)")
        await orchestrator.analyze_subset(follow_ids).wait()
        follow_set = orchestrator.answer_set(label="Follow-up answers", question_ids=follow_ids, is_follow_up=True)
        await pipeline.run_stage("follow_up", StageInputs(answer_sets=[answers, follow_set], topic=topic))

    if not pipeline.history("associate"):
        print("[review] no associate reviews produced; skipping decision")
        return
    decision_refs = dict(references)
    if args.benchmark:
        decision_refs["benchmark"] = Path(args.benchmark).expanduser().read_text(encoding="utf-8")
    decision = await pipeline.run_stage("decision", StageInputs(references=decision_refs))
    (output_dir / "decision.md").write_text(decision.output_text, encoding="utf-8")
    write_json(output_dir / "review_stages.json", [r.to_dict() for r in pipeline.results])


async def run(args: argparse.Namespace) -> None:
    docs_dir = Path(args.docs_dir).expanduser().resolve()
    if not docs_dir.is_dir():
        raise DocumentLoadError(f"Document directory does not exist: {docs_dir}")
    output_dir = Path(args.output_dir).expanduser()
    ensure_dir(output_dir)
    questions = load_questions(Path(args.questions).expanduser()) if args.questions else list(DEFAULT_QUESTIONS)

    client = RemoteCallClient(ClientConfig.from_env())
    source = DirectoryDocumentSource(docs_dir)
    config = AnalysisConfig(
        model=args.model,
        mode=MODES[args.mode],
        answer_shape=AnswerShape(args.answer_shape),
        max_concurrency=args.max_concurrency,
    )
    orchestrator = QuestionOrchestrator(client, source, questions, config)
    orchestrator.subscribe(_print_progress)
    try:
        batch = orchestrator.analyze_subset(args.only) if args.only else orchestrator.analyze_all()
        records = await batch.wait()
        failed = sum(1 for r in records.values() if r.error)
        print(f"[answers] {len(records) - failed}/{len(records)} answered ({len(batch.skipped)} edited, skipped)")
        if args.review:
            await run_review(client, orchestrator, source, args, output_dir)
        write_json(output_dir / "answers.json", _answers_payload(orchestrator.questions, orchestrator.snapshot()))
        print(
            f"[tokens] {client.telemetry['calls']} call(s), {client.telemetry['attempts']} attempt(s), "
            f"in={client.telemetry['input_tokens']} out={client.telemetry['output_tokens']}"
        )
    finally:
        await client.aclose()
    print(f"Done. Outputs under {output_dir}")


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    try:
        asyncio.run(run(args))
    except DiligenceError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
