from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .constants import BEGIN_TOKEN, FINISHED_TOKEN

# Markers contain regex metacharacters ("[", "]"), so they are always escaped.
_BEGIN = re.escape(BEGIN_TOKEN)
_FINISH = re.escape(FINISHED_TOKEN)

# A begin marker directly followed by a backtick, period or space is treated as
# prose mentioning the marker rather than the start of the answer.
_FORMAL_STARTED_RE = re.compile(rf"^{_BEGIN}($|[^`. ])")
_COMPLETE_RE = re.compile(rf"{_FINISH}\s*$")
_LEADING_BEGIN_RE = re.compile(rf"^\s?{_BEGIN}\s?")
_TRAILING_FINISH_RE = re.compile(rf"\s?{_FINISH}\s*$")


@dataclass
class ParsedParts:
    thought_parts: List[Dict[str, Any]] = field(default_factory=list)
    response_text: str = ""
    function_call: Optional[Dict[str, Any]] = None
    has_thought: bool = False
    has_function_call: bool = False


def parse_parts(parts: Any) -> ParsedParts:
    """Split a candidate's parts into thought parts, formal answer text and a function call.

    Parts are visited in order; formal text is concatenated. A non-list input
    yields an empty result.
    """
    result = ParsedParts()
    if not isinstance(parts, list):
        return result
    for part in parts:
        if not isinstance(part, dict):
            continue
        text = part.get("text")
        if part.get("thought") is True and text:
            result.thought_parts.append(part)
            result.has_thought = True
        elif text and not part.get("thought"):
            result.response_text += text
        elif part.get("functionCall"):
            result.function_call = part["functionCall"]
            result.has_function_call = True
    return result


def candidate_parts(data: Any) -> List[Any]:
    """Return ``candidates[0].content.parts`` or an empty list."""
    try:
        parts = data["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        return []
    return parts if isinstance(parts, list) else []


def is_formal_response_started(text: str) -> bool:
    return bool(_FORMAL_STARTED_RE.search(text or ""))


def is_response_complete(text: str) -> bool:
    return bool(_COMPLETE_RE.search(text or ""))


def clean_final_text(text: str, clean_begin: bool = True, clean_finish: bool = True) -> str:
    """Strip one leading begin marker and/or one trailing finish marker."""
    cleaned = text or ""
    if clean_begin:
        cleaned = _LEADING_BEGIN_RE.sub("", cleaned, count=1)
    if clean_finish:
        cleaned = _TRAILING_FINISH_RE.sub("", cleaned, count=1)
    return cleaned
