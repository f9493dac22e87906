"""Prompt and response helpers for the vision extraction model."""

from __future__ import annotations

import json
import re

# v1: rows with rowNo/name/amount and optional per-cell hints
VISION_PROMPT_VERSION = "v1"

EXTRACTION_PROMPT = """You are digitizing one page of a church TITHES REGISTER book.

Each row has a row number (NO.), a member name and weekly amount columns.
Rows are grouped in SETs of 31 members and numbering continues across pages.

Return JSON only:
{{
  "isValidPage": true,
  "detectedYear": 2024,
  "pageNumber": 3,
  "entries": [
    {{"rowNo": 1, "name": "Kofi Mensah", "amount": "50", "confidence": 0.9,
      "legibility": 4, "inkColor": "blue", "cellCondition": "clean"}}
  ]
}}

Rules:
1. Set "isValidPage" to false if the image is not a tithe register page.
2. Copy amounts exactly as written; use "" for empty cells and "-" for dashes.
3. Do not read the red TOTAL column.
4. Include every row, even when the amount cell is empty.
{target}"""


def build_extraction_prompt(month: str | None = None, week: str | None = None) -> str:
    target = ""
    if month or week:
        parts = []
        if month:
            parts.append(f"month {month.upper()}")
        if week:
            parts.append(f"week column {week}")
        target = f"5. Read amounts from the {' and '.join(parts)} only.\n"
    return EXTRACTION_PROMPT.format(target=target)


def parse_json_response(content: str) -> dict:
    """Parse a JSON object from model output.

    Handles markdown code fences, text around the object and trailing
    commas.

    Raises:
        json.JSONDecodeError: If no JSON object can be recovered.
    """
    if not content:
        raise json.JSONDecodeError("Empty response", "", 0)

    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    content = content.strip()

    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        return data

    start, end = content.find("{"), content.rfind("}")
    if start != -1 and end > start:
        candidate = content[start : end + 1]
        # Trailing commas before } or ]
        candidate = re.sub(r",\s*([}\]])", r"\1", candidate)
        data = json.loads(candidate)
        if isinstance(data, dict):
            return data

    raise json.JSONDecodeError("No JSON object in response", content, 0)
