from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Sequence

from core.errors import InvalidInput
from core.models import Question
from core.utils import read_json

DEFAULT_QUESTIONS: List[Question] = [
    Question(
        id="arr",
        text="What is the current Annual Recurring Revenue (ARR) of the company?",
        description="Find the most recent ARR figure with currency.",
        category="Financial",
        instructions=(
            "Prefer KPI, dashboard, and revenue sheets over general statements and ignore forecasts. "
            "If ARR is not listed, derive it from MRR x 12 and show the calculation. "
            "State the period the figure refers to and always include the currency."
        ),
    ),
    Question(
        id="growth_rate",
        text="What is the Year-over-Year (YoY) growth rate?",
        description="Calculate the YoY growth percentage from the latest financial data.",
        category="Financial",
        instructions=(
            "Compare the same period across years, not sequential periods. "
            "Growth = (current - previous) / previous x 100%. Name the metric and periods compared."
        ),
    ),
    Question(
        id="valuation",
        text="What is the target valuation for the company?",
        description="Identify the valuation the company is seeking in this funding round.",
        category="Financial",
    ),
    Question(
        id="burn_rate",
        text="What is the current monthly cash burn rate?",
        description="Calculate the average monthly cash outflow from the financial statements.",
        category="Financial",
        instructions="Average the net cash outflow over the most recent three to six months of actuals.",
    ),
    Question(
        id="runway",
        text="How much runway does the company have?",
        description=(
            "Determine how many months of operations the company can fund with current cash reserves "
            "at the current burn rate."
        ),
        category="Financial",
        instructions="Runway = cash on hand / monthly net burn. State both inputs and their dates.",
    ),
    Question(
        id="business_model",
        text="What is the company's business model?",
        description="Summarize how the company generates revenue and its pricing structure.",
        category="Business",
    ),
    Question(
        id="customers",
        text="Who are the company's key customers?",
        description="Identify major customers and customer segments.",
        category="Market",
    ),
    Question(
        id="competition",
        text="Who are the main competitors?",
        description="List direct and indirect competitors and their market positions.",
        category="Market",
    ),
    Question(
        id="differentiation",
        text="What is the company's key differentiation?",
        description="Identify unique selling propositions and competitive advantages.",
        category="Business",
    ),
    Question(
        id="team",
        text="Who are the key members of the management team and what are their backgrounds?",
        description="Identify key executives and their relevant experience.",
        category="Team",
    ),
    Question(
        id="risks",
        text="What are the key risks to consider?",
        description="Identify business, market, financial, and regulatory risks.",
        category="Risk",
    ),
    Question(
        id="funding_history",
        text="What is the company's funding history?",
        description="List previous funding rounds, investors, and amounts raised.",
        category="Financial",
    ),
    Question(
        id="problem",
        text="What problem is this company trying to solve?",
        description="Identify the core customer problem the company addresses.",
        category="Business",
    ),
]

# Review topics and the question categories each associate review covers.
REVIEW_TOPICS: Dict[str, Sequence[str]] = {
    "Finances": ("Financial",),
    "Market Research": ("Market", "Business", "Team", "Risk"),
}


def load_questions(path: Path) -> List[Question]:
    """Read questions from a JSON list of objects with id/text (or question) and optional fields."""
    payload = read_json(path)
    if isinstance(payload, dict):
        payload = payload.get("questions", [])
    if not isinstance(payload, list):
        raise InvalidInput(f"{path}: expected a JSON list of questions")
    questions: List[Question] = []
    for idx, item in enumerate(payload, start=1):
        if not isinstance(item, dict):
            raise InvalidInput(f"{path}: question #{idx} is not an object")
        text = item.get("text") or item.get("question")
        if not item.get("id") or not text:
            raise InvalidInput(f"{path}: question #{idx} needs an id and text")
        questions.append(
            Question(
                id=str(item["id"]),
                text=str(text),
                description=item.get("description"),
                category=item.get("category"),
                instructions=item.get("instructions"),
            )
        )
    return questions


def questions_for_topic(questions: Sequence[Question], topic: str) -> List[Question]:
    categories = {c.lower() for c in REVIEW_TOPICS.get(topic, (topic,))}
    return [q for q in questions if q.category and q.category.lower() in categories]
