from types import SimpleNamespace

import pytest
from google.api_core import exceptions as google_exceptions

from chatcommerce.completion import ASSISTANT, SYSTEM, TOOL, USER, ChatMessage, ToolCall
from chatcommerce.errors import FatalCompletionError, TransientCompletionError
from chatcommerce.gemini_client import _classify_error, _normalize_model_name, parse_response, to_gemini_contents


def _response(parts, finish_reason=1, block_reason=0, tokens=42):
    candidate = SimpleNamespace(content=SimpleNamespace(parts=parts), finish_reason=finish_reason)
    return SimpleNamespace(
        candidates=[candidate],
        prompt_feedback=SimpleNamespace(block_reason=block_reason),
        usage_metadata=SimpleNamespace(total_token_count=tokens),
    )


def test_contents_map_roles_and_merge_tool_responses():
    messages = [
        ChatMessage(role=SYSTEM, content="You sell pizza."),
        ChatMessage(role=USER, content="Une pizza"),
        ChatMessage(
            role=ASSISTANT,
            tool_calls=[
                ToolCall(id="a", name="create_order", arguments={"items": []}),
                ToolCall(id="b", name="send_image", arguments={"product_name": "Pizza"}),
            ],
        ),
        ChatMessage(role=TOOL, name="create_order", tool_call_id="a", tool_result={"success": True}),
        ChatMessage(role=TOOL, name="send_image", tool_call_id="b", tool_result={"success": False}),
    ]

    system, contents = to_gemini_contents(messages)

    assert system == "You sell pizza."
    assert [content["role"] for content in contents] == ["user", "model", "user"]
    assert contents[1]["parts"][0] == {"function_call": {"name": "create_order", "args": {"items": []}}}
    responses = contents[2]["parts"]
    assert len(responses) == 2
    assert responses[0]["function_response"] == {"name": "create_order", "response": {"success": True}}


def test_empty_messages_are_skipped():
    _, contents = to_gemini_contents([ChatMessage(role=USER, content=""), ChatMessage(role=ASSISTANT, content="")])
    assert contents == []


def test_parse_text_and_usage():
    completion = parse_response(_response([SimpleNamespace(text="Bonjour ", function_call=None)]))

    assert completion.text == "Bonjour"
    assert completion.tool_calls == []
    assert completion.tokens_used == 42


def test_parse_function_calls():
    call = SimpleNamespace(name="find_order", args={"phone_number": "0707", "filters": {"limit": [1, 2]}})
    completion = parse_response(_response([SimpleNamespace(text="", function_call=call)]))

    assert completion.has_tool_calls
    assert completion.tool_calls[0].name == "find_order"
    assert completion.tool_calls[0].arguments == {"phone_number": "0707", "filters": {"limit": [1, 2]}}
    assert completion.tool_calls[0].id.startswith("call_0_")


def test_blocked_prompt_is_fatal():
    with pytest.raises(FatalCompletionError) as excinfo:
        parse_response(_response([], block_reason=2))
    assert excinfo.value.code == "content_policy"


def test_safety_stop_is_fatal():
    with pytest.raises(FatalCompletionError):
        parse_response(_response([], finish_reason=3))


def test_no_candidates_is_transient():
    with pytest.raises(TransientCompletionError):
        parse_response(SimpleNamespace(candidates=[], prompt_feedback=None, usage_metadata=None))


def test_error_classification():
    assert isinstance(_classify_error(google_exceptions.PermissionDenied("nope")), FatalCompletionError)
    assert isinstance(_classify_error(google_exceptions.InvalidArgument("API key not valid")), FatalCompletionError)
    assert isinstance(_classify_error(google_exceptions.ServiceUnavailable("down")), TransientCompletionError)
    assert isinstance(_classify_error(ValueError("odd")), TransientCompletionError)


def test_normalize_model_name():
    assert _normalize_model_name("models/gemini-2.5-flash") == "gemini-2.5-flash"
    assert _normalize_model_name(None) == ""
