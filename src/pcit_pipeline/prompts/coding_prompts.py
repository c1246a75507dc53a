"""Prompts for DPICS behavior coding."""

from __future__ import annotations

import json

from pcit_pipeline.prompts.transcript import role_label
from pcit_pipeline.schemas import SessionMode, Utterance
from pcit_pipeline.taxonomy import CodingSchema

_CDI_GUIDANCE = """Session type: Child-Directed Interaction (child-led play).
When an utterance satisfies more than one category, list every matching code;
the category with the lower priority number wins.
A reflection (RF/RQ) must restate or paraphrase the child's immediately preceding
verbalization. Labeled praise names the specific behavior praised. Narration
describes what the child is doing right now without directing it."""

_PDI_GUIDANCE = """Session type: Parent-Directed Interaction (discipline practice).
Categories are mutually exclusive; choose the single best code.
An effective command is direct, positively stated, specific, and single-step.
Correct warnings and time-out statements follow the standard two-choice script
after non-compliance. A harsh tone overrides the content of the command."""


def build_coding_system_prompt(schema: CodingSchema) -> str:
    """Render the DPICS system prompt for one mode's closed vocabulary."""

    guidance = _CDI_GUIDANCE if schema.mode == SessionMode.CDI else _PDI_GUIDANCE
    rows: list[str] = []
    for tag in schema.tags:
        codes = "/".join(tag.codes)
        if schema.mode == SessionMode.CDI:
            rows.append(f"- {codes}: {tag.name} (priority {tag.rank}). {tag.description}")
        else:
            effect = ""
            if tag.effective is True:
                effect = " [effective]"
            elif tag.effective is False:
                effect = " [ineffective]"
            rows.append(f"- {codes}: {tag.name}{effect}. {tag.description}")
    categories = "\n".join(rows)

    return f"""You are a certified DPICS coder for Parent-Child Interaction Therapy sessions.
Assign a behavior code to every parent utterance you are asked to code.

{guidance}

Allowed codes:
{categories}

Return strict JSON with exactly this shape:
{{
  "codes": [
    {{
      "id": "<utterance id copied exactly from input>",
      "codes": ["<allowed code>", ...],
      "feedback": "<one warm, specific coaching sentence for the parent>"
    }}
  ]
}}

Rules:
- Include exactly one item per requested utterance id.
- Do not omit any requested id and do not add ids that were not requested.
- Only use the allowed codes listed above.
- Child utterances are context only; never code them.
"""


def build_coding_user_prompt(
    *,
    context: list[Utterance],
    targets: list[Utterance],
) -> str:
    """Render transcript context plus the ids that must be coded in this request."""

    rows = [
        {
            "id": utterance.utterance_id,
            "role": role_label(utterance).lower(),
            "text": utterance.text,
        }
        for utterance in context
    ]
    target_ids = [utterance.utterance_id for utterance in targets]
    return (
        "Code the requested parent utterances. The full transcript is provided in order "
        "for context.\n\n"
        "Transcript:\n"
        f"{json.dumps(rows, ensure_ascii=True, indent=2)}\n\n"
        f"Requested ids ({len(target_ids)}):\n"
        f"{json.dumps(target_ids, ensure_ascii=True)}\n"
    )
