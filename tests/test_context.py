"""Tests for context budgeting over document corpora."""

from core.context import BudgetSettings, ContextBudgeter, DocumentKind
from core.models import Document, Question

FILLER = "lorem ipsum dolor sit amet consectetur adipiscing elit. "


def _sheet(name: str, body_chars: int, fill: str = "x") -> str:
    return f"--- Sheet: {name} ---\n" + (fill * body_chars) + "\n"


def test_tail_of_long_document_survives_budget() -> None:
    text = FILLER * 200 + "Closing note. ARR: $12.3M as of Q4 2024."
    doc = Document(id="d1", name="notes.txt", text_content=text)
    question = Question(id="arr", text="What is ARR?")

    bundle = ContextBudgeter().select([doc], question, max_chars=2000)

    assert len(text) > 2000
    assert "ARR: $12.3M" in bundle.excerpt
    assert len(bundle.excerpt) <= 2000
    assert bundle.truncated
    assert bundle.source_document_ids == ("d1",)


def test_keyword_windows_are_kept_from_the_middle() -> None:
    middle = "The burn rate is 400k USD per month and runway is 18 months. "
    text = FILLER * 100 + middle + FILLER * 100
    doc = Document(id="d1", name="memo.md", text_content=text)
    question = Question(id="runway", text="How much runway does the company have?", category="Financial")
    settings = BudgetSettings(head_chars=500, window_chars=300, tail_chars=500)

    bundle = ContextBudgeter(settings).select([doc], question, max_chars=3000)

    assert "runway is 18 months" in bundle.excerpt
    assert len(bundle.excerpt) <= 3000


def test_excerpt_never_exceeds_budget() -> None:
    long_text = FILLER * 400
    sheets = _sheet("Cover", 3000) + _sheet("Summary Metrics", 1500, "1") + _sheet("Notes", 3000)
    corpora = [
        [Document(id="a", name="deck.pdf", text_content=long_text)],
        [Document(id="b", name="model.xlsx", text_content=sheets)],
        [
            Document(id="a", name="deck.pdf", text_content=long_text),
            Document(id="b", name="model.xlsx", text_content=sheets),
            Document(id="c", name="memo.txt", text_content="short memo about revenue"),
        ],
    ]
    question = Question(id="arr", text="What is the current ARR?", category="Financial")
    budgeter = ContextBudgeter()

    for documents in corpora:
        for max_chars in (0, 1, 10, 60, 150, 500, 2_000, 9_999, 50_000):
            bundle = budgeter.select(documents, question, max_chars)
            assert len(bundle.excerpt) <= max(max_chars, 0), (max_chars, [d.id for d in documents])
            total = sum(len(d.text_content) for d in documents)
            if total > max_chars:
                assert bundle.truncated


def test_priority_sheets_fill_first() -> None:
    text = _sheet("Cover", 3000) + _sheet("Summary Metrics", 1500, "1") + _sheet("Notes", 3000)
    doc = Document(id="fin", name="financials.xlsx", text_content=text)
    question = Question(id="arr", text="What is the current ARR?", category="Financial")

    bundle = ContextBudgeter().select([doc], question, max_chars=3000)

    assert "--- Sheet: Summary Metrics ---" in bundle.excerpt
    assert "--- Sheet: Cover ---" not in bundle.excerpt
    assert bundle.truncated


def test_small_priority_sheets_fall_back_to_round_robin() -> None:
    text = _sheet("Cover", 3000) + _sheet("Summary Metrics", 50, "1") + _sheet("Notes", 3000)
    doc = Document(id="fin", name="financials.xlsx", text_content=text)
    question = Question(id="arr", text="What is the current ARR?", category="Financial")

    bundle = ContextBudgeter().select([doc], question, max_chars=3000)

    for name in ("Summary Metrics", "Cover", "Notes"):
        assert f"--- Sheet: {name} ---" in bundle.excerpt
    assert len(bundle.excerpt) <= 3000


def test_missing_content_yields_explicit_empty_bundle() -> None:
    docs = [Document(id="e", name="scan.pdf", text_content="   "), Document(id="f", name="blank.txt", text_content="")]

    bundle = ContextBudgeter().select(docs, Question(id="q", text="Who is the CEO?"), max_chars=1000)

    assert not bundle.has_content
    assert bundle.excerpt == ""
    assert bundle.source_document_ids == ()
    assert not ContextBudgeter().select([], Question(id="q", text="Who?"), 1000).has_content


def test_decks_come_first_and_max_files_is_respected() -> None:
    docs = [
        Document(id="memo", name="memo.txt", text_content="memo text"),
        Document(id="sheet", name="data.csv", text_content="a,b\n1,2"),
        Document(id="deck", name="Pitch Deck.pdf", text_content="deck text"),
    ]
    budgeter = ContextBudgeter(BudgetSettings(max_files=2))

    bundle = budgeter.select(docs, Question(id="q", text="What is the problem?"), max_chars=10_000)

    assert bundle.source_document_ids == ("deck", "sheet")
    assert bundle.excerpt.startswith("--- Content from pitch deck: Pitch Deck.pdf ---")
    assert bundle.truncated


def test_classify_uses_name_and_content() -> None:
    budgeter = ContextBudgeter()
    assert budgeter.classify(Document(id="1", name="Go1_Pitch.pptx", text_content="")) is DocumentKind.PITCH_DECK
    assert budgeter.classify(Document(id="2", name="model.xlsx", text_content="")) is DocumentKind.SPREADSHEET
    exported = Document(id="3", name="export.txt", text_content="--- Sheet: P&L ---\nrow")
    assert budgeter.classify(exported) is DocumentKind.SPREADSHEET
    assert budgeter.classify(Document(id="4", name="notes.md", text_content="hi")) is DocumentKind.TEXT


def test_keywords_follow_category_and_question_terms() -> None:
    budgeter = ContextBudgeter()

    team = budgeter.keywords_for(Question(id="t", text="Who leads engineering?", category="Team"))
    fallback = budgeter.keywords_for(Question(id="x", text="Describe the moat", category=None))

    assert "founder" in team and "leads" in team and "engineering" in team
    assert "runway" in fallback and "moat" in fallback and "describe" in fallback
