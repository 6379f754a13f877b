import pytest

from antitrunc.constants import BEGIN_TOKEN, FINISHED_TOKEN
from antitrunc.protocol import (
    candidate_parts,
    clean_final_text,
    is_formal_response_started,
    is_response_complete,
    parse_parts,
)
from antitrunc.state import ResponseState


@pytest.mark.parametrize(
    "text",
    [f"{BEGIN_TOKEN} Hello", BEGIN_TOKEN, f"{BEGIN_TOKEN}\nHello", f"{BEGIN_TOKEN}Hello"],
)
def test_formal_response_started(text):
    assert is_formal_response_started(text)


@pytest.mark.parametrize(
    "text",
    [f"{BEGIN_TOKEN}. ok", f"{BEGIN_TOKEN}`code`", f"Hello {BEGIN_TOKEN}", "", "RESPONSE_BEGIN] x"],
)
def test_formal_response_not_started(text):
    assert not is_formal_response_started(text)


def test_response_complete_allows_trailing_whitespace_only():
    assert is_response_complete(f"All done.{FINISHED_TOKEN}")
    assert is_response_complete(f"All done.{FINISHED_TOKEN}  \n")
    assert not is_response_complete(f"All done.{FINISHED_TOKEN}.")
    assert not is_response_complete(f"{FINISHED_TOKEN} and more")
    assert not is_response_complete("All done.[RESPONSE_FINISHED")


def test_markers_are_matched_literally():
    # "[RESPONSE_FINISHED]" as a character class would match a single "R"
    assert not is_response_complete("FINISHED R")
    assert not is_formal_response_started("R hello")


@pytest.mark.parametrize(
    "body",
    ["Hello world", "  padded body  ", "line one\nline two"],
)
def test_clean_final_text_round_trip(body):
    # Same framing the request mutator uses for past model turns
    assert clean_final_text(f"{BEGIN_TOKEN}\n{body}\n{FINISHED_TOKEN}") == body


@pytest.mark.parametrize(
    "marked",
    [
        f"{BEGIN_TOKEN}Hello world{FINISHED_TOKEN}",
        f" {BEGIN_TOKEN} Hello world {FINISHED_TOKEN}\n\n",
        f"{BEGIN_TOKEN}\nHello world{FINISHED_TOKEN}  ",
    ],
)
def test_clean_final_text_tolerates_single_adjacent_whitespace(marked):
    assert clean_final_text(marked) == "Hello world"


def test_clean_final_text_flags_are_independent():
    text = f"{BEGIN_TOKEN}\nAnswer{FINISHED_TOKEN}"
    assert clean_final_text(text, True, False) == f"Answer{FINISHED_TOKEN}"
    assert clean_final_text(text, False, True) == f"{BEGIN_TOKEN}\nAnswer"
    assert clean_final_text(text, False, False) == text


def test_clean_final_text_removes_only_one_marker():
    text = f"{BEGIN_TOKEN}{BEGIN_TOKEN}x"
    assert clean_final_text(text, True, False) == f"{BEGIN_TOKEN}x"


def test_parse_parts_splits_thought_answer_and_function_call():
    parts = [
        {"text": "pondering", "thought": True},
        {"text": "Hello "},
        {"text": ""},
        {"functionCall": {"name": "lookup", "args": {"q": "x"}}},
        {"text": "world", "thought": False},
        {"inlineData": {"mimeType": "image/png", "data": "AAAA"}},
    ]
    parsed = parse_parts(parts)
    assert parsed.has_thought is True
    assert parsed.thought_parts == [{"text": "pondering", "thought": True}]
    assert parsed.response_text == "Hello world"
    assert parsed.has_function_call is True
    assert parsed.function_call == {"name": "lookup", "args": {"q": "x"}}


def test_parse_parts_handles_non_list():
    parsed = parse_parts(None)
    assert parsed.response_text == ""
    assert parsed.has_thought is False
    assert parsed.has_function_call is False


def test_candidate_parts_tolerates_missing_fields():
    assert candidate_parts({}) == []
    assert candidate_parts({"candidates": []}) == []
    assert candidate_parts({"candidates": [{"finishReason": "SAFETY"}]}) == []
    assert candidate_parts({"candidates": [{"content": {"parts": [{"text": "a"}]}}]}) == [{"text": "a"}]


def test_response_state_transitions_once():
    state = ResponseState()
    assert state.feed("thinking about it ") is False
    assert state.feed(f"{BEGIN_TOKEN}\nThe answer") is True
    assert state.feed(f" continues {BEGIN_TOKEN}\n") is False
    assert state.thought_text == "thinking about it "
    assert state.formal_text.startswith(BEGIN_TOKEN)
    assert not state.is_complete()
    state.feed(FINISHED_TOKEN)
    assert state.is_complete()


def test_response_state_without_thought_phase():
    state = ResponseState(thought_finished=True)
    state.feed(f"Direct answer{FINISHED_TOKEN}")
    assert state.thought_text == ""
    assert state.is_complete()
