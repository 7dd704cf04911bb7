from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Pattern, Sequence

STOPWORDS = frozenset(
    {"what", "who", "where", "when", "why", "how", "the", "and", "but", "does", "have", "this", "that", "with", "from", "company"}
)


@dataclass
class TextWindow:
    text: str
    start: int
    end: int
    idx: int


@dataclass
class Segment:
    name: str
    text: str
    start: int


def window_text(text: str, start: int, stop: int, size: int) -> List[TextWindow]:
    """Split text[start:stop] into consecutive non-overlapping windows of `size` chars."""
    windows: List[TextWindow] = []
    size = max(size, 1)
    idx = 0
    pos = start
    while pos < stop:
        end = min(pos + size, stop)
        windows.append(TextWindow(text=text[pos:end], start=pos, end=end, idx=idx))
        idx += 1
        pos = end
    return windows


def contains_any(text: str, keywords: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(keyword.lower() in lowered for keyword in keywords if keyword)


def salient_terms(text: str, min_length: int = 4) -> List[str]:
    terms: List[str] = []
    for word in re.findall(r"[a-zA-Z][a-zA-Z0-9\-]*", text.lower()):
        if len(word) >= min_length and word not in STOPWORDS and word not in terms:
            terms.append(word)
    return terms


def split_segments(text: str, delimiter: Pattern[str]) -> List[Segment]:
    """Split delimited text (e.g. sheet exports) into named segments; text before the first delimiter is dropped."""
    matches = list(delimiter.finditer(text))
    segments: List[Segment] = []
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        name = match.group(1).strip() if match.groups() else f"segment {i + 1}"
        segments.append(Segment(name=name, text=text[match.start() : end], start=match.start()))
    return segments


def rank_segments(segments: Sequence[Segment], priority_keywords: Sequence[str]) -> List[Segment]:
    """Segments whose names hit a priority keyword, earliest keyword first; ties keep document order."""

    def rank(segment: Segment) -> int:
        lowered = segment.name.lower()
        for pos, keyword in enumerate(priority_keywords):
            if keyword.lower() in lowered:
                return pos
        return len(priority_keywords)

    hits = [seg for seg in segments if rank(seg) < len(priority_keywords)]
    return sorted(hits, key=rank)
