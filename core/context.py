from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .chunking import Segment, contains_any, rank_segments, salient_terms, split_segments, window_text
from .models import ContextBundle, Document, Question

logger = logging.getLogger(__name__)

SHEET_DELIMITER = r"--- Sheet: (.+?) ---"
GAP = "\n...\n"
SEGMENT_GAP = "\n\n"

DEFAULT_KEYWORDS = [
    "management team",
    "leadership team",
    "executive team",
    "founders",
    "annual recurring revenue",
    "arr",
    "burn rate",
    "runway",
    "financials",
    "financial summary",
    "metrics",
    "kpi",
    "key performance",
    "problem",
    "solution",
    "value proposition",
    "market opportunity",
]

CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    "financial": [
        "revenue", "arr", "mrr", "burn", "runway", "cash", "margin", "ebitda",
        "valuation", "funding", "raise", "profit", "growth", "forecast",
    ],
    "market": [
        "market", "tam", "sam", "som", "competitor", "competition", "customer",
        "segment", "industry", "share", "growth",
    ],
    "team": ["founder", "ceo", "cto", "cfo", "management", "team", "experience", "board", "advisor"],
    "business": [
        "business model", "pricing", "subscription", "product", "solution", "problem",
        "value proposition", "differentiation", "platform",
    ],
    "risk": ["risk", "regulation", "regulatory", "churn", "dependency", "competition", "litigation"],
}

PRIORITY_SHEET_KEYWORDS = [
    "summ metric",
    "summary metric",
    "historical metric",
    "financial",
    "finance",
    "cash flow",
    "burn",
    "runway",
    "kpi",
    "metrics",
    "performance",
    "summary",
    "revenue",
    "arr",
    "mrr",
    "dashboard",
]

SPREADSHEET_SUFFIXES = (".xlsx", ".xls", ".xlsm", ".csv", ".tsv")
DECK_MARKERS = ("pitch", "deck", "presentation")


class DocumentKind(str, Enum):
    PITCH_DECK = "pitch deck"
    SPREADSHEET = "spreadsheet"
    TEXT = "document"


_KIND_ORDER = {DocumentKind.PITCH_DECK: 0, DocumentKind.SPREADSHEET: 1, DocumentKind.TEXT: 2}


@dataclass
class BudgetSettings:
    head_chars: int = 25_000
    window_chars: int = 25_000
    tail_chars: int = 25_000
    max_files: int = 5
    priority_sheet_chars: int = 40_000
    sheet_sample_chars: int = 20_000
    # Priority sheets below this share of the budget are "too small"; switch to round-robin sampling.
    min_priority_share: float = 0.3
    # A keyword window cut shorter than this is dropped instead of kept as a stub.
    min_partial_window: int = 200
    sheet_delimiter: str = SHEET_DELIMITER
    default_keywords: List[str] = field(default_factory=lambda: list(DEFAULT_KEYWORDS))
    category_keywords: Dict[str, List[str]] = field(default_factory=lambda: {k: list(v) for k, v in CATEGORY_KEYWORDS.items()})
    priority_sheet_keywords: List[str] = field(default_factory=lambda: list(PRIORITY_SHEET_KEYWORDS))


class ContextBudgeter:
    """Selects a bounded, question-relevant excerpt from a document corpus.

    Long text keeps a head, the keyword-bearing windows of the middle, and a tail,
    so facts that conventionally sit at the end of a deck (team, appendix) survive.
    Sheet exports are split on their delimiter and filled priority-sheets-first.
    The excerpt never exceeds ``max_chars``; ``truncated`` records that source text was dropped.
    """

    def __init__(self, settings: Optional[BudgetSettings] = None) -> None:
        self.settings = settings or BudgetSettings()
        self._delimiter = re.compile(self.settings.sheet_delimiter)

    def classify(self, doc: Document) -> DocumentKind:
        name = doc.name.lower()
        if name.endswith(SPREADSHEET_SUFFIXES) or "excel" in name:
            return DocumentKind.SPREADSHEET
        if self._delimiter.search(doc.text_content or ""):
            return DocumentKind.SPREADSHEET
        if name.endswith(".pdf") or any(marker in name for marker in DECK_MARKERS):
            return DocumentKind.PITCH_DECK
        return DocumentKind.TEXT

    def keywords_for(self, question: Question) -> List[str]:
        keywords: Optional[List[str]] = None
        if question.category:
            category = question.category.lower()
            for key, values in self.settings.category_keywords.items():
                if key.lower() in category:
                    keywords = list(values)
                    break
        if keywords is None:
            keywords = list(self.settings.default_keywords)
        for term in salient_terms(question.text):
            if term not in keywords:
                keywords.append(term)
        return keywords

    def select(self, documents: Sequence[Document], question: Question, max_chars: int) -> ContextBundle:
        usable = [doc for doc in documents if doc.text_content and doc.text_content.strip()]
        if not usable:
            logger.info("[context] %s: no usable document content", question.id)
            return ContextBundle.empty(question.id)
        if max_chars <= 0:
            return ContextBundle(question_id=question.id, excerpt="", truncated=True, source_document_ids=())

        ordered = sorted(usable, key=lambda d: _KIND_ORDER[self.classify(d)])
        selected = ordered[: max(self.settings.max_files, 0)]
        truncated = len(selected) < len(ordered)
        keywords = self.keywords_for(question)

        blocks: List[str] = []
        used_ids: List[str] = []
        remaining = max_chars
        for i, doc in enumerate(selected):
            kind = self.classify(doc)
            joiner = "\n" if blocks else ""
            header = f"--- Content from {kind.value}: {doc.name} ---\n"
            footer = "\n--- End of excerpt ---"
            share = remaining // (len(selected) - i) - len(joiner) - len(header) - len(footer)
            if share <= 0:
                truncated = True
                continue
            body, cut = self._excerpt(doc, kind, keywords, share)
            truncated = truncated or cut
            if not body.strip():
                continue
            block = f"{joiner}{header}{body}{footer}"
            blocks.append(block)
            used_ids.append(doc.id)
            remaining -= len(block)

        excerpt = "".join(blocks)
        logger.debug(
            "[context] %s: %d chars from %d/%d documents (truncated=%s)",
            question.id,
            len(excerpt),
            len(used_ids),
            len(usable),
            truncated,
        )
        return ContextBundle(
            question_id=question.id,
            excerpt=excerpt,
            truncated=truncated,
            source_document_ids=tuple(used_ids),
        )

    def _excerpt(self, doc: Document, kind: DocumentKind, keywords: Sequence[str], budget: int) -> Tuple[str, bool]:
        text = doc.text_content
        if len(text) <= budget:
            return text, False
        if kind is DocumentKind.SPREADSHEET:
            segments = split_segments(text, self._delimiter)
            if segments:
                return self._sheet_excerpt(segments, budget), True
        return self._windowed_excerpt(text, keywords, budget), True

    def _windowed_excerpt(self, text: str, keywords: Sequence[str], budget: int) -> str:
        head_size = min(self.settings.head_chars, budget // 3)
        tail_size = min(self.settings.tail_chars, budget // 3)
        used = head_size + len(GAP) + tail_size
        if used > budget:
            return text[len(text) - budget :]

        pieces = [text[:head_size]]
        kept = 0
        windows = window_text(text, head_size, len(text) - tail_size, self.settings.window_chars)
        for window in windows:
            if not contains_any(window.text, keywords):
                continue
            cost = len(window.text) + len(GAP)
            if used + cost > budget:
                room = budget - used - len(GAP)
                if room >= self.settings.min_partial_window:
                    pieces.append(window.text[:room])
                    kept += 1
                break
            pieces.append(window.text)
            used += cost
            kept += 1
        pieces.append(text[len(text) - tail_size :])
        logger.debug("[context] kept %d/%d keyword windows", kept, len(windows))
        return GAP.join(pieces)

    def _sheet_excerpt(self, segments: List[Segment], budget: int) -> str:
        priority = rank_segments(segments, self.settings.priority_sheet_keywords)
        pieces: List[str] = []
        used = 0
        for segment in priority:
            gap = len(SEGMENT_GAP) if pieces else 0
            room = budget - used - gap
            if room <= 0:
                break
            chunk = segment.text[: min(self.settings.priority_sheet_chars, room)]
            pieces.append(chunk)
            used += gap + len(chunk)

        if used >= self.settings.min_priority_share * budget:
            return SEGMENT_GAP.join(pieces)

        logger.debug("[context] priority sheets too small (%d chars); sampling %d sheets round-robin", used, len(segments))
        priority_starts = {seg.start for seg in priority}
        order = priority + [seg for seg in segments if seg.start not in priority_starts]
        return self._round_robin(order, budget)

    def _round_robin(self, order: List[Segment], budget: int) -> str:
        while order and budget - len(SEGMENT_GAP) * (len(order) - 1) < len(order):
            order = order[:-1]
        available = budget - len(SEGMENT_GAP) * max(len(order) - 1, 0)
        taken = [0] * len(order)
        while available > 0:
            active = [i for i, segment in enumerate(order) if taken[i] < len(segment.text)]
            if not active:
                break
            # Equal share per round, capped at the per-sheet sample size.
            quantum = max(min(self.settings.sheet_sample_chars, available // len(active)), 1)
            for i in active:
                if available <= 0:
                    break
                step = min(quantum, len(order[i].text) - taken[i], available)
                taken[i] += step
                available -= step
        return SEGMENT_GAP.join(seg.text[:size] for seg, size in zip(order, taken) if size > 0)
