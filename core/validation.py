"""Answer contracts for model output.

Two shapes are supported and kept separate:

* Summary/Details: the informal split used for quick question answering.
* Source/Analysis/Conclusion: the stricter, citation-bearing contract used for
  document-grounded claims. ``validate_answer`` scores it; ``reformat_answer``
  rebuilds the shape from loose text instead of discarding the response.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Tuple

from .errors import ValidationFailure
from .models import ValidationResult

SECTION_NAMES = ("source", "analysis", "conclusion")

_HEADING_RE = re.compile(
    r"^[ \t]*(?:#{1,6}[ \t]*)?(?:\*\*|__)?[ \t]*(sources?|analysis|conclusion)[ \t]*(?:\*\*|__)?[ \t]*:?[ \t]*(?:\*\*|__)?[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)
# A marker is the word alone on its line, or the word followed by a colon.
_MARKER_TEMPLATE = (
    r"^[ \t]*(?:#{{1,6}}[ \t]*)?(?:\*\*|__)?[ \t]*{word}[ \t]*(?:\*\*|__)?[ \t]*"
    r"(?::[ \t]*(?:\*\*|__)?|(?=[ \t]*$))[ \t]*"
)
_SUMMARY_RE = re.compile(_MARKER_TEMPLATE.format(word="summary"), re.IGNORECASE | re.MULTILINE)
_DETAILS_RE = re.compile(_MARKER_TEMPLATE.format(word="details"), re.IGNORECASE | re.MULTILINE)
_LEFTOVER_MARKER_RE = re.compile(
    r"^[ \t]*(?:#{1,6}[ \t]*)?(?:summary|details)[ \t]*:?[ \t]*(?:\n|$)|^[ \t]*(?:summary|details)[ \t]*:[ \t]*",
    re.IGNORECASE | re.MULTILINE,
)
_BOLD_RE = re.compile(r"(\*\*|__)(.+?)\1", re.DOTALL)
_ITALIC_STAR_RE = re.compile(r"(?<![*\w])\*(?![\s*])([^*\n]+?)(?<![\s*])\*(?![*\w])")
_ITALIC_UNDERSCORE_RE = re.compile(r"(?<![_\w])_(?![\s_])([^_\n]+?)(?<![\s_])_(?![_\w])")
_BULLET_RE = re.compile(r"^[ \t]*(?:[-•*]|\d+[.)])[ \t]+(.+)$", re.MULTILINE)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")


@dataclass
class ValidationRules:
    document_keywords: Pattern[str] = re.compile(r"document|file|pdf|excel|xlsx?|deck|spreadsheet|sheet|page", re.I)
    locator_keywords: Pattern[str] = re.compile(r"page\s+\d+|slide\s+\d+|sheet|cell|column|row", re.I)
    cell_reference: Pattern[str] = re.compile(r"cell\s+[A-Z]{1,3}\d+|row\s+\d+|[A-Z]{1,3}\d+:[A-Z]{1,3}\d+", re.I)
    citation_document: Pattern[str] = re.compile(r"document|file|pdf|excel|xlsx?|deck|spreadsheet|\.\w{3,4}\b", re.I)
    citation_locator: Pattern[str] = re.compile(r"page\s+\d+|slide\s+\d+|sheet", re.I)
    evasive_patterns: Tuple[Pattern[str], ...] = (
        re.compile(r"analysis (?:was|were) performed", re.I),
        re.compile(r"excel analysis:?\s*(?:available|unavailable)", re.I),
        re.compile(r"pdf analysis:?\s*(?:available|unavailable)", re.I),
        re.compile(r"documents? (?:were|was) analy[sz]ed", re.I),
        re.compile(r"some document types? may have been", re.I),
    )
    banned_source_phrases: Tuple[str, ...] = (
        "combined results from available",
        "analysis was performed on available",
        "available document analyses",
    )
    figure_pattern: Pattern[str] = re.compile(r"\d")
    time_pattern: Pattern[str] = re.compile(
        r"\b(?:19|20)\d{2}\b|\d{1,2}/\d{1,2}/\d{2,4}|\bQ[1-4]\b|\bFY\s?\d{2,4}\b|quarter|year|month|annual", re.I
    )
    insight_keywords: Tuple[str, ...] = (
        "grew", "growth", "increased", "decreased", "declined", "accelerated", "decelerated",
        "exceeds", "above", "below", "indicating", "suggesting", "demonstrating", "trend",
        "compared", "comparison", "benchmark", "versus", "vs",
    )
    min_bullets: int = 3
    max_bullets: int = 7
    max_conclusion_sentences: int = 2
    max_fallback_bullets: int = 5


DEFAULT_RULES = ValidationRules()


# --- Summary / Details -----------------------------------------------------


def strip_markup(text: str) -> str:
    """Remove leftover Summary/Details markers and markdown emphasis.

    Applied to a fixed point, so strip_markup(strip_markup(x)) == strip_markup(x).
    """
    current = text
    while True:
        stripped = _strip_once(current)
        if stripped == current:
            return stripped
        current = stripped


def _strip_once(text: str) -> str:
    out = _LEFTOVER_MARKER_RE.sub("", text)
    out = _BOLD_RE.sub(r"\2", out)
    out = out.replace("**", "").replace("__", "")
    out = _ITALIC_STAR_RE.sub(r"\1", out)
    out = _ITALIC_UNDERSCORE_RE.sub(r"\1", out)
    return out.strip()


def _split_first_paragraph(text: str) -> Tuple[str, str]:
    parts = re.split(r"\n\s*\n", text.strip(), maxsplit=1)
    first = parts[0] if parts else ""
    rest = parts[1] if len(parts) > 1 else ""
    return first, rest


def split_summary_details(text: str) -> Tuple[str, str]:
    summary_match = _SUMMARY_RE.search(text)
    details_match = _DETAILS_RE.search(text)

    if summary_match and details_match:
        if summary_match.start() < details_match.start():
            summary = text[summary_match.end() : details_match.start()]
            details = text[details_match.end() :]
        else:
            details = text[details_match.end() : summary_match.start()]
            summary = text[summary_match.end() :]
    elif summary_match:
        summary, details = _split_first_paragraph(text[summary_match.end() :])
    elif details_match:
        summary = text[: details_match.start()]
        details = text[details_match.end() :]
        if not summary.strip():
            summary, details = _split_first_paragraph(details)
    else:
        summary, details = _split_first_paragraph(text)
    return strip_markup(summary), strip_markup(details)


# --- Source / Analysis / Conclusion ---------------------------------------------


def extract_sections(text: str) -> Dict[str, str]:
    headings = list(_HEADING_RE.finditer(text))
    sections: Dict[str, str] = {}
    for i, match in enumerate(headings):
        name = match.group(1).lower()
        if name == "sources":
            name = "source"
        end = headings[i + 1].start() if i + 1 < len(headings) else len(text)
        if name not in sections:
            sections[name] = text[match.end() : end].strip()
    return sections


def analysis_bullets(analysis: str) -> List[str]:
    bullets = [m.group(1).strip() for m in _BULLET_RE.finditer(analysis) if m.group(1).strip()]
    if bullets:
        return bullets
    return [p.strip() for p in re.split(r"\n\s*\n|\n", analysis) if p.strip()]


def _sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(text.strip()) if s.strip()]


def _validate_source(source: Optional[str], rules: ValidationRules, errors: List[str], warnings: List[str]) -> None:
    if not source:
        errors.append("Source section is missing or empty")
        return
    if not rules.document_keywords.search(source):
        warnings.append("Source section may not contain specific document references")
    if not rules.locator_keywords.search(source):
        warnings.append("Source section may not contain page/sheet/cell references")
    lowered = source.lower()
    for phrase in rules.banned_source_phrases:
        if phrase in lowered:
            errors.append(f'Source section contains banned generic phrase: "{phrase}" - use specific citations instead')


def _validate_analysis(
    analysis: Optional[str], rules: ValidationRules, errors: List[str], warnings: List[str]
) -> List[str]:
    if not analysis:
        errors.append("Analysis section is missing or empty")
        return []
    if any(pattern.search(analysis) for pattern in rules.evasive_patterns):
        errors.append(
            "Analysis section contains document availability status instead of insights - focus on what the data shows"
        )
    bullets = analysis_bullets(analysis)
    if len(bullets) < rules.min_bullets:
        warnings.append(f"Analysis section has fewer than {rules.min_bullets} bullet points (found {len(bullets)})")
    if len(bullets) > rules.max_bullets:
        warnings.append(f"Analysis section has more than {rules.max_bullets} bullet points (found {len(bullets)})")
    if not rules.figure_pattern.search(analysis):
        warnings.append("Analysis section may not contain specific figures or metrics")
    if not rules.time_pattern.search(analysis):
        warnings.append("Analysis section may not contain time references")
    words = set(re.findall(r"[a-z]+", analysis.lower()))
    if not any(keyword in words for keyword in rules.insight_keywords):
        warnings.append("Analysis section may lack insight-focused language (trends, comparisons, implications)")
    return bullets


def _validate_conclusion(conclusion: Optional[str], rules: ValidationRules, errors: List[str], warnings: List[str]) -> None:
    if not conclusion:
        errors.append("Conclusion section is missing or empty")
        return
    count = len(_sentences(conclusion))
    if count > rules.max_conclusion_sentences:
        warnings.append(f"Conclusion section has more than {rules.max_conclusion_sentences} sentences (found {count})")
    if not rules.figure_pattern.search(conclusion):
        warnings.append("Conclusion section may not contain specific figures")


def citation_quality(source: str, rules: ValidationRules = DEFAULT_RULES) -> str:
    has_document = bool(rules.citation_document.search(source))
    has_locator = bool(rules.citation_locator.search(source))
    has_cell = bool(rules.cell_reference.search(source))
    if has_document and has_locator and has_cell:
        return "high"
    if has_document and has_locator:
        return "medium"
    return "low"


def validate_answer(text: str, rules: ValidationRules = DEFAULT_RULES) -> ValidationResult:
    sections = extract_sections(text or "")
    errors: List[str] = []
    warnings: List[str] = []

    _validate_source(sections.get("source"), rules, errors, warnings)
    bullets = _validate_analysis(sections.get("analysis"), rules, errors, warnings)
    _validate_conclusion(sections.get("conclusion"), rules, errors, warnings)

    source = sections.get("source", "")
    quality = citation_quality(source, rules)
    if source and not rules.citation_document.search(source):
        warnings.append("No citations found in source section")
    elif source and quality == "low":
        warnings.append("Citation quality is low - consider adding page/sheet references")

    return ValidationResult(
        sections={name: sections[name] for name in SECTION_NAMES if sections.get(name)},
        errors=errors,
        warnings=warnings,
        analysis_bullets=bullets,
        citation_quality=quality,
    )


def validation_summary(result: ValidationResult) -> str:
    if result.is_valid and not result.warnings:
        return "Answer format is valid"
    parts: List[str] = []
    if not result.is_valid:
        parts.append(f"Errors: {len(result.errors)}")
    if result.warnings:
        parts.append(f"Warnings: {len(result.warnings)}")
    return ", ".join(parts)


# --- Fallback reformatter ---------------------------------------------------------


@dataclass
class ReformattedAnswer:
    text: str
    sections: Dict[str, str] = field(default_factory=dict)
    reformatted: bool = True


def _usable_paragraphs(text: str) -> List[str]:
    paragraphs: List[str] = []
    for block in re.split(r"\n\s*\n", text):
        lines = [ln for ln in block.splitlines() if ln.strip() and not _HEADING_RE.match(ln)]
        candidate = " ".join(ln.strip() for ln in lines).strip()
        if re.search(r"[A-Za-z0-9]", candidate):
            paragraphs.append(candidate)
    return paragraphs


def _longest_in_order(items: List[str], limit: int) -> List[str]:
    ranked = sorted(range(len(items)), key=lambda i: len(items[i]), reverse=True)[:limit]
    return [items[i] for i in sorted(ranked)]


def reformat_answer(text: str, rules: ValidationRules = DEFAULT_RULES) -> ReformattedAnswer:
    """Best-effort rebuild of Source/Analysis/Conclusion from loose text.

    Raises ValidationFailure only when no section can be recovered at all.
    """
    result = validate_answer(text, rules)
    if result.is_valid:
        return ReformattedAnswer(text=text, sections=dict(result.sections), reformatted=False)

    sections = dict(result.sections)
    body = _HEADING_RE.sub("", text or "")
    paragraphs = _usable_paragraphs(body)
    sentences = [s for s in _sentences(" ".join(paragraphs)) if len(s.split()) >= 2]

    source = sections.get("source") or (paragraphs[0] if paragraphs else "")

    if sections.get("analysis"):
        bullets = analysis_bullets(sections["analysis"])
    else:
        bullet_lines = [m.group(1).strip() for m in _BULLET_RE.finditer(body) if len(m.group(1).strip()) > 20]
        bullets = _longest_in_order(bullet_lines or sentences, rules.max_fallback_bullets)

    conclusion = sections.get("conclusion") or " ".join(sentences[-2:])

    if not (source or bullets or conclusion):
        raise ValidationFailure("Answer text contains no recoverable Source/Analysis/Conclusion content")

    source = source or "Based on the provided documents."
    bullets = bullets or ["Analysis of the provided information."]
    conclusion = conclusion or "Based on the available information."
    analysis = "\n".join(f"- {b}" for b in bullets)
    formatted = f"# Source\n{source}\n\n# Analysis\n{analysis}\n\n# Conclusion\n{conclusion}\n"
    return ReformattedAnswer(
        text=formatted,
        sections={"source": source, "analysis": analysis, "conclusion": conclusion},
        reformatted=True,
    )
