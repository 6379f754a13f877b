from __future__ import annotations

import copy
import json
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from .constants import (
    API_KEY_HEADER,
    BEGIN_TOKEN,
    BEGIN_TOKEN_PROMPT,
    FINISH_TOKEN_PROMPT,
    FINISHED_TOKEN,
    PROMPT_SEPARATOR,
    REMINDER_PROMPT,
    THINKING_BUDGET_MAX,
    THINKING_BUDGET_MIN,
    UPSTREAM_USER_AGENT,
)
from .utils import log_debug


def normalize_system_instruction(body: Dict[str, Any]) -> Dict[str, Any]:
    """Reconcile ``systemInstruction`` and ``system_instruction`` in place.

    The camelCase field wins when both are present; the snake_case one is renamed
    when it is the only one.
    """
    if not body:
        return body
    if body.get("systemInstruction") and body.get("system_instruction"):
        del body["system_instruction"]
    elif not body.get("systemInstruction") and body.get("system_instruction"):
        body["systemInstruction"] = body.pop("system_instruction")
    return body


def _first_text_index(parts: List[Any]) -> int:
    for i, part in enumerate(parts):
        if isinstance(part, dict) and part.get("text"):
            return i
    return -1


def _last_text_index(parts: List[Any], non_blank: bool = False) -> int:
    for i in range(len(parts) - 1, -1, -1):
        part = parts[i]
        if not isinstance(part, dict):
            continue
        text = part.get("text")
        if text and (not non_blank or str(text).strip()):
            return i
    return -1


def _merge_system_prompt(body: Dict[str, Any], prompt: str) -> None:
    prompt_part = {"text": prompt}
    system = body.get("systemInstruction")
    if not isinstance(system, dict):
        body["systemInstruction"] = {"parts": [prompt_part]}
    elif not isinstance(system.get("parts"), list):
        system["parts"] = [prompt_part]
    elif not system["parts"] or not (isinstance(system["parts"][0], dict) and system["parts"][0].get("text")):
        if system["parts"]:
            system["parts"][0] = prompt_part
        else:
            system["parts"].append(prompt_part)
    else:
        system["parts"][0]["text"] += PROMPT_SEPARATOR + prompt


def inject_system_prompts(
    body: Dict[str, Any],
    settings: Any,
    inject_begin: bool = True,
    inject_finish: bool = True,
) -> Dict[str, Any]:
    """Return a copy of ``body`` carrying the completion protocol instructions."""
    log_debug(settings, "inject_system_prompts:", {"begin": inject_begin, "finish": inject_finish})
    new_body = copy.deepcopy(body)
    normalize_system_instruction(new_body)

    if inject_begin and inject_finish:
        prompt = BEGIN_TOKEN_PROMPT + FINISH_TOKEN_PROMPT
    elif inject_begin:
        prompt = BEGIN_TOKEN_PROMPT
    elif inject_finish:
        prompt = FINISH_TOKEN_PROMPT
    else:
        return new_body

    _merge_system_prompt(new_body, prompt)

    contents = new_body.get("contents")
    if not isinstance(contents, list):
        return new_body

    # Past model turns get the markers they would have carried had they followed the protocol
    for content in contents:
        if not isinstance(content, dict) or content.get("role") != "model":
            continue
        parts = content.get("parts")
        if not isinstance(parts, list):
            continue
        if inject_begin:
            idx = _first_text_index(parts)
            if idx != -1:
                parts[idx]["text"] = BEGIN_TOKEN + "\n" + parts[idx]["text"]
        if inject_finish:
            idx = _last_text_index(parts)
            if idx != -1:
                parts[idx]["text"] += "\n" + FINISHED_TOKEN

    last = contents[-1] if contents else None
    if isinstance(last, dict) and last.get("role") == "user":
        parts = last.get("parts")
        if isinstance(parts, list) and parts:
            idx = _last_text_index(parts, non_blank=True)
            if idx != -1:
                parts[idx]["text"] += PROMPT_SEPARATOR + REMINDER_PROMPT
                if inject_begin:
                    log_debug(settings, "Priming model turn with start-of-thought seed.")
                    contents.append({"role": "model", "parts": [{"text": settings.start_of_thought}]})

    return new_body


def build_retry_request(body: Dict[str, Any], new_text: str) -> Dict[str, Any]:
    """Return a continuation request with ``new_text`` appended as model output."""
    new_body = copy.deepcopy(body)
    normalize_system_instruction(new_body)
    if not isinstance(new_body.get("contents"), list):
        new_body["contents"] = []
    contents = new_body["contents"]

    last = contents[-1] if contents else None
    if isinstance(last, dict) and last.get("role") == "model":
        parts = last.get("parts")
        if not isinstance(parts, list) or not parts:
            last["parts"] = [{"text": new_text}]
            return new_body
        for part in reversed(parts):
            if isinstance(part, dict) and "text" in part:
                part["text"] = (part.get("text") or "") + new_text
                break
        else:
            parts.append({"text": new_text})
    else:
        contents.append({"role": "model", "parts": [{"text": new_text}]})
    return new_body


def build_upstream_request(
    url: str,
    headers: Mapping[str, str],
    body: Dict[str, Any],
    timeout: Optional[float] = None,
) -> httpx.Request:
    """Build the POST sent upstream, forwarding only Content-Type and the API key."""
    inbound = httpx.Headers(headers)
    out: Dict[str, str] = {}
    if "content-type" in inbound:
        out["Content-Type"] = inbound["content-type"]

    target = httpx.URL(url)
    if API_KEY_HEADER in inbound:
        out[API_KEY_HEADER] = inbound[API_KEY_HEADER]
    else:
        key = target.params.get("key")
        if key:
            out[API_KEY_HEADER] = key
            # Avoid sending the key twice
            target = target.copy_remove_param("key")
    out["User-Agent"] = UPSTREAM_USER_AGENT

    return httpx.Request(
        "POST",
        target,
        headers=out,
        content=json.dumps(body, ensure_ascii=False).encode(),
        extensions={"timeout": httpx.Timeout(timeout, connect=30.0).as_dict()},
    )


def is_structured_output_request(body: Dict[str, Any]) -> bool:
    gen = body.get("generationConfig") if isinstance(body, dict) else None
    return isinstance(gen, dict) and "responseSchema" in gen


def is_target_model(path: str, models: List[str], stream: bool) -> bool:
    method = "streamGenerateContent" if stream else "generateContent"
    return any(f"models/{model}:{method}" in path for model in models)


def apply_thinking_budget(body: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """Clamp ``thinkingConfig.thinkingBudget`` and decide whether to inject the begin marker.

    A budget of exactly 0 means the caller opted out of the thought phase. Any
    other budget is clamped into [128, 32768]. Returns ``(body, inject_begin)``
    where ``body`` is a copy whenever it had to change.
    """
    try:
        budget = body["generationConfig"]["thinkingConfig"]["thinkingBudget"]
    except (KeyError, TypeError):
        return body, True
    if budget is None or isinstance(budget, bool) or not isinstance(budget, (int, float)):
        return body, True
    if budget == 0:
        return body, False
    clamped = min(max(budget, THINKING_BUDGET_MIN), THINKING_BUDGET_MAX)
    if clamped != budget:
        body = copy.deepcopy(body)
        body["generationConfig"]["thinkingConfig"]["thinkingBudget"] = clamped
    return body, True


def is_cherry_request(headers: Mapping[str, str]) -> bool:
    """CherryStudio renders every thought frame, so keepalives must not be marked as thought."""
    return "CherryStudio" in httpx.Headers(headers).get("user-agent", "")
