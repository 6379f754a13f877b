from __future__ import annotations

from typing import Any, Dict, List, Mapping

import httpx
from fastapi.responses import JSONResponse

from .constants import (
    FATAL_STATUS_CODES,
    FINISH_REASON_MAX_RETRIES,
    INCOMPLETE_TOKEN,
    MAX_FETCH_RETRIES,
    MAX_NON_RETRYABLE_STATUS_RETRIES,
    RETRYABLE_STATUS_CODES,
)
from .protocol import candidate_parts, clean_final_text, parse_parts
from .schemas.gemini import Candidate, GenerateContentResponse, OutputContent, OutputPart
from .state import ResponseState
from .transform import build_retry_request, build_upstream_request, inject_system_prompts
from .utils import CORS_HEADERS, json_error, log_debug


def status_retry_limit(status: int, max_retries: int) -> int:
    """Attempts allowed before an upstream error status is surfaced to the caller."""
    if status in RETRYABLE_STATUS_CODES:
        return max_retries
    return min(MAX_NON_RETRYABLE_STATUS_RETRIES, max_retries)


def transport_retry_limit(max_retries: int) -> int:
    return min(MAX_FETCH_RETRIES, max_retries)


def _has_function_call(parts: List[Any]) -> bool:
    return parse_parts(parts).has_function_call


def _final_parts(state: ResponseState) -> List[Dict[str, Any]]:
    return [
        {"text": state.thought_text, "thought": True},
        {"text": clean_final_text(state.formal_text)},
    ]


def _incomplete_response(state: ResponseState) -> Dict[str, Any]:
    parts: List[OutputPart] = []
    if state.thought_text:
        parts.append(OutputPart(text=state.thought_text, thought=True))
    parts.append(OutputPart(text=f"{clean_final_text(state.formal_text)}\n{INCOMPLETE_TOKEN}"))
    resp = GenerateContentResponse(
        candidates=[Candidate(content=OutputContent(parts=parts), finishReason=FINISH_REASON_MAX_RETRIES)]
    )
    return resp.model_dump(exclude_none=True)


async def generate_content(
    client: httpx.AsyncClient,
    settings: Any,
    url: str,
    headers: Mapping[str, str],
    body: Dict[str, Any],
    inject_begin: bool = True,
) -> JSONResponse:
    """Run the one-shot generateContent call, resuming truncated answers.

    Each upstream reply is split into thought text (before the begin marker) and
    formal text. A reply whose formal text ends with the finish marker is
    returned with its parts replaced by exactly one thought part and one cleaned
    answer part. Otherwise the text produced by that attempt is appended to the
    request as model output and the call is repeated. Replies carrying a
    function call are returned untouched.
    """
    current = inject_system_prompts(body, settings, inject_begin, True)
    state = ResponseState(
        thought_finished=not inject_begin,
        thought_text=settings.start_of_thought if inject_begin else "",
    )
    attempts = 0
    log_debug(settings, "Starting non-streaming request handler.")

    while attempts <= settings.max_retries:
        attempts += 1
        log_debug(settings, f"Non-streaming attempt {attempts}/{settings.max_retries + 1}")
        request = build_upstream_request(url, headers, current, settings.upstream_timeout)
        try:
            resp = await client.send(request)
        except httpx.HTTPError as e:
            log_debug(settings, f"Fetch error during non-streaming attempt {attempts}: {type(e).__name__}: {e}")
            if attempts > transport_retry_limit(settings.max_retries):
                return json_error(500, "Internal Server Error after max retries.", str(e))
            continue

        if not resp.is_success:
            status = resp.status_code
            log_debug(settings, f"Non-streaming attempt {attempts} failed with status {status}")
            if status in FATAL_STATUS_CODES:
                return json_error(status, "Upstream API returned a fatal error.", resp.text)
            if attempts > status_retry_limit(status, settings.max_retries):
                return json_error(status, "Upstream API error after max retries.", resp.text)
            continue

        try:
            data = resp.json()
        except ValueError:
            log_debug(settings, "Upstream returned a non-JSON body, treating attempt as truncated.")
            continue
        parts = candidate_parts(data)

        if _has_function_call(parts):
            log_debug(settings, "Non-streaming response contains function call. Returning as is.")
            return JSONResponse(content=data, headers=CORS_HEADERS)

        attempt_text = ""
        for part in parts:
            if not isinstance(part, dict):
                continue
            text = part.get("text")
            if text and not part.get("thought"):
                if state.feed(text):
                    log_debug(settings, "Thought finished, formal response started.")
                attempt_text += text

        if state.is_complete():
            log_debug(settings, "Non-streaming response is complete.")
            candidate = data["candidates"][0]
            if not isinstance(candidate.get("content"), dict):
                candidate["content"] = {"role": "model"}
            candidate["content"]["parts"] = _final_parts(state)
            return JSONResponse(content=data, headers=CORS_HEADERS)

        log_debug(settings, "Non-streaming response is incomplete. Preparing for retry.")
        # Only this attempt's output is new; earlier output is already in `current`
        current = build_retry_request(current, attempt_text)

    log_debug(settings, "Max retries reached for non-streaming request.")
    return JSONResponse(content=_incomplete_response(state), headers=CORS_HEADERS)
