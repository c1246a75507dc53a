"""Prompts for speaker role identification."""

from __future__ import annotations

import json

from pcit_pipeline.schemas import Utterance

ROLE_IDENTIFICATION_SYSTEM_PROMPT = """You are an expert in child language development and
parent-child interaction research.
Classify every diarized speaker in a recorded play session as ADULT or CHILD.

Evidence to weigh:
- Vocabulary, grammar, and sentence length relative to typical child speech.
- Who gives directions, praise, and descriptions of the other speaker's play.
- Who asks for help or reacts to the other speaker's comments.
- There may be more than two speakers; there may be more than one adult.

Return strict JSON with exactly this shape:
{
  "speaker_identification": {
    "<speaker id copied exactly from input>": {
      "role": "ADULT" | "CHILD",
      "confidence": <float between 0 and 1>,
      "utterance_count": <integer>,
      "reasoning": "<one sentence>"
    }
  }
}

Rules:
- Include exactly one entry per distinct speaker id in the input.
- Do not invent speaker ids and do not omit any.
- Keep speaker id values unchanged.
"""


def build_role_identification_user_prompt(utterances: list[Utterance]) -> str:
    """Render the ordered utterances (speaker, text, times) for role identification."""

    rows = [
        {
            "speaker": utterance.speaker,
            "text": utterance.text,
            "start": utterance.start,
            "end": utterance.end,
        }
        for utterance in utterances
    ]
    speakers = sorted({utterance.speaker for utterance in utterances})
    return (
        "Classify each speaker in this session transcript.\n\n"
        f"speaker_ids: {', '.join(speakers)}\n\n"
        "Utterances:\n"
        f"{json.dumps(rows, ensure_ascii=True, indent=2)}\n"
    )
