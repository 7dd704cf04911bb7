from __future__ import annotations

from typing import Dict, List, Optional

from core.models import AnswerShape, ContextBundle, Question


class AnswerPrompts:
    """Default request templates for per-question analysis.

    Any callable with the signature of ``build`` can replace this; the orchestrator
    treats the result as an opaque list of chat messages.
    """

    SYSTEM_PROMPT = (
        "You are an investment analyst performing due diligence on a company. "
        "Answer strictly from the documents provided. If a fact is not in the documents, say so plainly."
    )

    USER_TEMPLATE = """
Based on ALL the document excerpts in <documents>, answer this question:
{question}
{description}
<documents>
{context}
</documents>
{context_note}
{instructions}
{format_block}
"""

    SUMMARY_DETAILS_FORMAT = """
Your answer MUST use this format:

Summary:
A concise 1-2 sentence answer with the key facts.

Details:
Supporting explanation with figures, calculations, and the document name (plus page or sheet)
each fact came from. Prefer bullet points.
"""

    SOURCE_ANALYSIS_CONCLUSION_FORMAT = """
Your answer MUST use this format:

# Source
Exact document names with page numbers for PDFs and sheet names for spreadsheets.

# Analysis
- 3-5 bullet points with key findings
- include figures, dates, and currency codes where available

# Conclusion
A 1-2 sentence direct answer with exact figures when available.

Do not describe your approach. Output only the three sections.
"""

    TRUNCATED_NOTE = "Note: the excerpts above are partial; some document text was omitted to fit the request."

    def build(
        self,
        question: Question,
        bundle: ContextBundle,
        prompt_override: Optional[str] = None,
        answer_shape: AnswerShape = AnswerShape.SUMMARY_DETAILS,
    ) -> List[Dict[str, str]]:
        if answer_shape is AnswerShape.SOURCE_ANALYSIS_CONCLUSION:
            format_block = self.SOURCE_ANALYSIS_CONCLUSION_FORMAT
        else:
            format_block = self.SUMMARY_DETAILS_FORMAT
        instructions = prompt_override or question.instructions
        user_prompt = self.USER_TEMPLATE.format(
            question=question.text,
            description=f"({question.description})\n" if question.description else "",
            context=bundle.excerpt,
            context_note=self.TRUNCATED_NOTE if bundle.truncated else "",
            instructions=f"Instructions for this question:\n{instructions}\n" if instructions else "",
            format_block=format_block,
        )
        return [
            {"role": "system", "content": self.SYSTEM_PROMPT},
            {"role": "user", "content": user_prompt.strip()},
        ]
