from __future__ import annotations

import asyncio
import json
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, Mapping, Optional

import httpx

from .constants import (
    BEGIN_TOKEN,
    FATAL_STATUS_CODES,
    FINISH_REASON_MAX_RETRIES,
    FINISH_REASON_STOP,
    FINISHED_TOKEN,
    INCOMPLETE_TOKEN,
    LOOKAHEAD_MARGIN,
)
from .handlers import status_retry_limit, transport_retry_limit
from .protocol import (
    candidate_parts,
    clean_final_text,
    is_formal_response_started,
    is_response_complete,
    parse_parts,
)
from .schemas.gemini import Candidate, GenerateContentResponse, OutputContent, OutputPart
from .state import ResponseState
from .transform import build_retry_request, build_upstream_request, inject_system_prompts
from .utils import log_debug, sse_data, sse_error

# SSE events are separated by a blank line; upstream may use CRLF.
_EVENT_SPLIT_RE = re.compile(r"\r?\n\r?\n")
# Frames buffered between the producer/keepalive tasks and the response body
_QUEUE_SIZE = 64


@dataclass
class _PendingEvent:
    raw: str
    text: str
    is_transition: bool = False
    # Begin marker repeated by the model at the start of a resumed answer
    repeats_begin: bool = False


@dataclass
class _Attempt:
    """Buffers for one upstream connection."""

    line_buffer: str = ""
    lookahead: str = ""
    pending: Deque[_PendingEvent] = field(default_factory=deque)
    # Text released to the caller during this attempt, replayed in the continuation request
    forwarded_text: str = ""
    # Transition frame detected but not yet released to the caller
    transition_pending: bool = False
    passthrough: bool = False


def _load_event(raw: str) -> Optional[Dict[str, Any]]:
    if not raw.startswith("data:"):
        return None
    try:
        data = json.loads(raw[5:].strip())
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _ensure_candidate(data: Dict[str, Any]) -> Dict[str, Any]:
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        data["candidates"] = [{"content": {"role": "model"}, "index": 0}]
    candidate = data["candidates"][0]
    if not isinstance(candidate.get("content"), dict):
        candidate["content"] = {"role": "model"}
    return candidate


class StreamSession:
    """Splices one or more upstream SSE streams into a single outbound stream.

    Formal answer text is held back in a lookahead window until it can no longer
    be the beginning of the finish marker. When an upstream stream ends without
    the marker, the text already sent to the caller is appended to the request as
    model output and a new upstream stream is opened. Everything destined for the
    caller goes through ``queue``; ``None`` marks the end of the stream.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Any,
        url: str,
        headers: Mapping[str, str],
        body: Dict[str, Any],
        inject_begin: bool = True,
        cherry: bool = False,
    ) -> None:
        self.client = client
        self.settings = settings
        self.url = url
        self.headers = headers
        self.body = body
        self.inject_begin = inject_begin
        self.cherry = cherry
        self.state = ResponseState(thought_finished=not inject_begin)
        self.queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue(maxsize=_QUEUE_SIZE)
        self.attempt = _Attempt()
        # The running request already ends with the begin marker
        self.resumed_after_begin = False

    async def _emit(self, chunk: bytes) -> None:
        await self.queue.put(chunk)

    async def _emit_raw_event(self, raw: str) -> None:
        await self._emit(f"{raw}\n\n".encode())

    async def run(self) -> None:
        try:
            await self._run_attempts()
        except Exception as e:
            log_debug(self.settings, f"Unhandled error in streaming process: {type(e).__name__}: {e}")
            await self._emit(sse_error(500, "Internal proxy error.", str(e)))
        await self.queue.put(None)

    async def keepalive(self) -> None:
        interval = self.settings.keepalive_interval
        while True:
            await asyncio.sleep(interval)
            if self.queue.full():
                continue
            part: Dict[str, Any] = {"text": ""}
            if not (self.cherry or self.state.thought_finished):
                part["thought"] = True
            log_debug(self.settings, "Sending SSE keepalive.")
            self.queue.put_nowait(sse_data({"candidates": [{"content": {"parts": [part], "role": "model"}, "index": 0}]}))

    async def _run_attempts(self) -> None:
        settings = self.settings
        max_retries = settings.max_retries
        current = inject_system_prompts(self.body, settings, self.inject_begin, True)
        attempts = 0

        while attempts <= max_retries:
            attempts += 1
            log_debug(settings, f"Streaming attempt {attempts}/{max_retries + 1}")
            self.attempt = _Attempt()
            if self.inject_begin and attempts == 1:
                seed = {"text": settings.start_of_thought, "thought": True}
                await self._emit(sse_data({"candidates": [{"content": {"parts": [seed], "role": "model"}, "index": 0}]}))

            request = build_upstream_request(self.url, self.headers, current, settings.upstream_timeout)
            try:
                upstream = await self.client.send(request, stream=True)
            except httpx.HTTPError as e:
                log_debug(settings, f"Fetch error during streaming attempt {attempts}: {type(e).__name__}: {e}")
                if attempts > transport_retry_limit(max_retries):
                    await self._emit(sse_error(500, "Internal Server Error after max retries.", str(e)))
                    return
                continue

            try:
                if not upstream.is_success:
                    status = upstream.status_code
                    details = (await upstream.aread()).decode("utf-8", errors="replace")
                    log_debug(settings, f"Streaming attempt {attempts} failed with status {status}")
                    if status in FATAL_STATUS_CODES:
                        await self._emit(sse_error(status, "Upstream API returned a fatal error.", details))
                        return
                    if attempts > status_retry_limit(status, max_retries):
                        await self._emit(sse_error(status, "Upstream API error after max retries.", details))
                        return
                    continue

                try:
                    finished = await self._consume(upstream)
                except httpx.HTTPError as e:
                    log_debug(settings, f"Upstream stream interrupted on attempt {attempts}: {type(e).__name__}: {e}")
                    if attempts > transport_retry_limit(max_retries):
                        await self._emit(sse_error(500, "Internal Server Error after max retries.", str(e)))
                        return
                    finished = False
                if finished:
                    return
            finally:
                await upstream.aclose()

            log_debug(settings, "Streaming response is incomplete. Preparing for retry. lookahead:", repr(self.attempt.lookahead))
            resume_text = self.attempt.forwarded_text
            if self.attempt.transition_pending:
                # The transition frame was never released; keep the marker in the model turn
                resume_text += BEGIN_TOKEN + "\n"
            if resume_text:
                self.resumed_after_begin = resume_text.endswith(BEGIN_TOKEN + "\n")
            current = build_retry_request(current, resume_text)

        log_debug(settings, "Max retries reached for streaming request.")
        await self._flush_pending()
        incomplete = GenerateContentResponse(
            candidates=[
                Candidate(
                    content=OutputContent(parts=[OutputPart(text=INCOMPLETE_TOKEN)]),
                    finishReason=FINISH_REASON_MAX_RETRIES,
                    index=0,
                )
            ]
        )
        await self._emit(sse_data(incomplete.model_dump(exclude_none=True)))

    async def _consume(self, upstream: httpx.Response) -> bool:
        """Read one upstream stream. Returns True when the outbound stream is finished."""
        att = self.attempt
        async for chunk in upstream.aiter_text():
            buf = att.line_buffer + chunk
            pos = 0
            for sep in _EVENT_SPLIT_RE.finditer(buf):
                if att.passthrough:
                    # Whole events only, separator included, so keepalives never split one
                    await self._emit(buf[pos:sep.end()].encode())
                else:
                    await self._handle_event(buf[pos:sep.start()])
                pos = sep.end()
            att.line_buffer = buf[pos:]
            if not att.passthrough:
                await self._release_safe()

        if att.passthrough:
            if att.line_buffer:
                await self._emit(att.line_buffer.encode())
        elif att.line_buffer.strip():
            # Upstream closed without the final blank line
            await self._handle_event(att.line_buffer.strip())
        att.line_buffer = ""

        if att.passthrough:
            log_debug(self.settings, "Passthrough stream ended.")
            return True
        if self.state.thought_finished and is_response_complete(att.lookahead):
            log_debug(self.settings, "Streaming response is complete. lookahead:", repr(att.lookahead))
            await self._emit_final()
            return True
        return False

    async def _handle_event(self, raw: str) -> None:
        att = self.attempt
        if not raw.startswith("data:"):
            if raw:
                await self._emit_raw_event(raw)
            return
        json_str = raw[5:].strip()
        if not json_str:
            return
        try:
            data = json.loads(json_str)
        except ValueError:
            log_debug(self.settings, "Could not parse SSE data line, forwarding as is:", raw[:100])
            await self._emit_raw_event(raw)
            return
        if not isinstance(data, dict):
            await self._emit_raw_event(raw)
            return

        parts = candidate_parts(data)
        parsed = parse_parts(parts)

        if parsed.has_thought and not parsed.response_text and not parsed.has_function_call:
            log_debug(self.settings, "Skipping thought-only frame.")
            return

        if parsed.has_function_call:
            log_debug(self.settings, "Function call detected. Switching to passthrough mode.")
            await self._flush_pending()
            await self._emit_raw_event(raw)
            att.passthrough = True
            return

        text = parsed.response_text
        is_transition = self.state.observe(text)
        repeats_begin = False
        if is_transition:
            log_debug(self.settings, "Thought finished. Transition frame detected.")
            att.transition_pending = True
        elif (
            self.resumed_after_begin
            and not att.lookahead
            and not att.forwarded_text
            and is_formal_response_started(text)
        ):
            log_debug(self.settings, "Begin marker repeated after resume.")
            repeats_begin = True

        line = raw
        processed = [p for p in parts if not (isinstance(p, dict) and p.get("thought"))]
        modified = len(processed) < len(parts)
        if not self.state.thought_finished:
            # Answer text arriving before the begin marker still belongs to the thought phase
            for part in processed:
                if isinstance(part, dict) and part.get("text"):
                    part["thought"] = True
                    modified = True
        if modified:
            data["candidates"][0]["content"]["parts"] = processed
            line = f"data: {json.dumps(data, ensure_ascii=False)}"

        att.pending.append(_PendingEvent(raw=line, text=text, is_transition=is_transition, repeats_begin=repeats_begin))
        att.lookahead += text

    async def _forward(self, event: _PendingEvent) -> None:
        att = self.attempt
        if event.is_transition or event.repeats_begin:
            data = _load_event(event.raw)
            cleaned = clean_final_text(event.text, True, False)
            if data is not None:
                _ensure_candidate(data)["content"]["parts"] = [{"text": cleaned}]
                await self._emit(sse_data(data))
            if event.is_transition:
                att.transition_pending = False
                att.forwarded_text += BEGIN_TOKEN + "\n"
            att.forwarded_text += cleaned
        else:
            await self._emit_raw_event(event.raw)
            att.forwarded_text += event.text

    async def _release_safe(self) -> None:
        """Forward queued frames whose text can no longer be part of the finish marker."""
        att = self.attempt
        hold = len(FINISHED_TOKEN) + LOOKAHEAD_MARGIN
        if len(att.lookahead) <= hold:
            return
        safe = len(att.lookahead) - hold
        released = 0
        while att.pending and released + len(att.pending[0].text) <= safe:
            event = att.pending.popleft()
            await self._forward(event)
            released += len(event.text)
        att.lookahead = att.lookahead[released:]

    async def _flush_pending(self) -> None:
        att = self.attempt
        while att.pending:
            await self._forward(att.pending.popleft())
        att.lookahead = ""

    async def _emit_final(self) -> None:
        att = self.attempt
        thought_text = ""
        response_text = ""
        template: Optional[Dict[str, Any]] = None
        for event in att.pending:
            data = _load_event(event.raw)
            if data is None:
                continue
            template = data
            for part in candidate_parts(data):
                if not isinstance(part, dict) or not part.get("text"):
                    continue
                if part.get("thought"):
                    thought_text += part["text"]
                else:
                    response_text += part["text"]
        att.pending.clear()
        att.lookahead = ""

        if template is None:
            template = {"candidates": [{"content": {"parts": [], "role": "model"}, "finishReason": FINISH_REASON_STOP, "index": 0}]}
        final_text = clean_final_text(response_text)
        final_parts = []
        if thought_text:
            final_parts.append({"text": thought_text, "thought": True})
        if final_text:
            final_parts.append({"text": final_text})
        candidate = _ensure_candidate(template)
        candidate["content"]["parts"] = final_parts
        candidate["finishReason"] = FINISH_REASON_STOP
        await self._emit(sse_data(template))


async def stream_generate_content(
    client: httpx.AsyncClient,
    settings: Any,
    url: str,
    headers: Mapping[str, str],
    body: Dict[str, Any],
    inject_begin: bool = True,
    cherry: bool = False,
) -> AsyncIterator[bytes]:
    """Yield the outbound SSE stream for a streamGenerateContent call."""
    session = StreamSession(client, settings, url, headers, body, inject_begin=inject_begin, cherry=cherry)
    tasks = [asyncio.create_task(session.run())]
    if settings.keepalive_interval > 0:
        tasks.append(asyncio.create_task(session.keepalive()))
    try:
        while True:
            chunk = await session.queue.get()
            if chunk is None:
                break
            yield chunk
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log_debug(settings, "Streaming response closed.")
