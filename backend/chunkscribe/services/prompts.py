"""Fixed prompt texts for transcription and summary sections."""

from __future__ import annotations

from enum import Enum
from typing import List, Tuple


TRANSCRIPTION_PROMPT = (
    "Transcribe this audio file into text. "
    "Return only the transcription without any additional commentary."
)

SUMMARY_PREAMBLE = "You are an assistant creating meeting summaries."


class SummarySection(str, Enum):
    """Summary sections, in the order they are generated."""
    TITLE = "title"
    SUMMARY = "summary"
    ACTION_ITEMS = "action_items"
    KEY_POINTS = "key_points"


SECTION_INSTRUCTIONS: List[Tuple[SummarySection, str]] = [
    (SummarySection.TITLE, "Generate a concise meeting title based on the transcript. Respond with the title only."),
    (SummarySection.SUMMARY, "Provide a concise meeting summary in 3-4 sentences."),
    (
        SummarySection.ACTION_ITEMS,
        "List clear action items with owners when possible. Use bullet points. If none, respond with 'None'.",
    ),
    (SummarySection.KEY_POINTS, "List key decisions or important points as bullet points."),
]


def build_section_prompt(instruction: str, transcript: str) -> str:
    return f"{SUMMARY_PREAMBLE}\n{instruction}\n\nTranscript:\n{transcript}"
