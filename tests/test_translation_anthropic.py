"""Tests for copilot_pool/translation/anthropic.py — non-streaming translation."""

import json

from copilot_pool.translation.anthropic import (
    map_stop_reason,
    normalize_model_name,
    translate_to_anthropic,
    translate_to_openai,
)


def _tool_use_request() -> dict:
    return {
        "model": "claude-sonnet-4-20250514",
        "max_tokens": 1024,
        "system": [{"type": "text", "text": "Be terse."}],
        "messages": [
            {"role": "user", "content": "What's the weather in Paris?"},
            {
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "Checking."},
                    {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Paris"}},
                ],
            },
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": "toolu_1", "content": [{"type": "text", "text": "18C"}]},
                    {"type": "text", "text": "Thanks"},
                ],
            },
        ],
        "tools": [{
            "name": "get_weather",
            "description": "Weather lookup",
            "input_schema": {"type": "object", "properties": {"city": {"type": "string"}}},
        }],
        "tool_choice": {"type": "any"},
        "stream": True,
    }


class TestModelName:

    def test_strips_date_suffix(self):
        assert normalize_model_name("claude-sonnet-4-20250514") == "claude-sonnet-4"

    def test_leaves_other_names(self):
        assert normalize_model_name("gpt-4o") == "gpt-4o"


class TestTranslateToOpenAI:

    def test_system_and_options(self):
        result = translate_to_openai(_tool_use_request())
        assert result["model"] == "claude-sonnet-4"
        assert result["messages"][0] == {"role": "system", "content": "Be terse."}
        assert result["max_tokens"] == 1024
        assert result["stream"] is True

    def test_assistant_tool_use_becomes_tool_calls(self):
        assistant = translate_to_openai(_tool_use_request())["messages"][2]
        assert assistant["content"] == "Checking."
        call = assistant["tool_calls"][0]
        assert call["id"] == "toolu_1"
        assert call["function"]["name"] == "get_weather"
        assert json.loads(call["function"]["arguments"]) == {"city": "Paris"}

    def test_tool_result_precedes_user_text(self):
        messages = translate_to_openai(_tool_use_request())["messages"]
        assert messages[3] == {"role": "tool", "tool_call_id": "toolu_1", "content": "18C"}
        assert messages[4] == {"role": "user", "content": "Thanks"}

    def test_tools_and_choice(self):
        result = translate_to_openai(_tool_use_request())
        assert result["tools"][0]["type"] == "function"
        assert result["tools"][0]["function"]["parameters"]["properties"]["city"]["type"] == "string"
        assert result["tool_choice"] == "required"

    def test_named_tool_choice(self):
        payload = {**_tool_use_request(), "tool_choice": {"type": "tool", "name": "get_weather"}}
        assert translate_to_openai(payload)["tool_choice"] == {
            "type": "function",
            "function": {"name": "get_weather"},
        }

    def test_image_becomes_data_url(self):
        payload = {
            "model": "gpt-4o",
            "messages": [{"role": "user", "content": [
                {"type": "text", "text": "Describe"},
                {"type": "image", "source": {"type": "base64", "media_type": "image/jpeg", "data": "AAAA"}},
            ]}],
        }
        parts = translate_to_openai(payload)["messages"][0]["content"]
        assert parts[0] == {"type": "text", "text": "Describe"}
        assert parts[1]["image_url"]["url"] == "data:image/jpeg;base64,AAAA"

    def test_thinking_joined_with_text(self):
        payload = {
            "model": "claude-sonnet-4",
            "messages": [{"role": "assistant", "content": [
                {"type": "thinking", "thinking": "hmm"},
                {"type": "text", "text": "Answer"},
            ]}],
        }
        assert translate_to_openai(payload)["messages"][0]["content"] == "hmm\n\nAnswer"

    def test_stop_sequences_and_user(self):
        payload = {
            "model": "gpt-4o",
            "messages": [],
            "stop_sequences": ["END"],
            "metadata": {"user_id": "u-1"},
        }
        result = translate_to_openai(payload)
        assert result["stop"] == ["END"]
        assert result["user"] == "u-1"


class TestStopReason:

    def test_mapping(self):
        assert map_stop_reason("stop") == "end_turn"
        assert map_stop_reason("length") == "max_tokens"
        assert map_stop_reason("tool_calls") == "tool_use"
        assert map_stop_reason("content_filter") == "end_turn"
        assert map_stop_reason(None) is None


class TestTranslateToAnthropic:

    def test_text_response(self):
        result = translate_to_anthropic({
            "id": "chatcmpl-1",
            "model": "gpt-4o",
            "choices": [{"message": {"role": "assistant", "content": "Hi"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 10, "completion_tokens": 2},
        })
        assert result["type"] == "message"
        assert result["content"] == [{"type": "text", "text": "Hi"}]
        assert result["stop_reason"] == "end_turn"
        assert result["usage"] == {"input_tokens": 10, "output_tokens": 2}

    def test_cached_tokens_split_out(self):
        result = translate_to_anthropic({
            "choices": [],
            "usage": {"prompt_tokens": 10, "completion_tokens": 2, "prompt_tokens_details": {"cached_tokens": 4}},
        })
        assert result["usage"] == {"input_tokens": 6, "output_tokens": 2, "cache_read_input_tokens": 4}

    def test_bad_arguments_become_empty_input(self):
        result = translate_to_anthropic({"choices": [{
            "message": {"tool_calls": [{"id": "c1", "function": {"name": "f", "arguments": "{broken"}}]},
            "finish_reason": "tool_calls",
        }]})
        assert result["content"][0]["input"] == {}

    def test_round_trip_tool_use(self):
        """Anthropic tool_use -> OpenAI tool_call -> Anthropic tool_use keeps name and input."""
        openai_request = translate_to_openai(_tool_use_request())
        sent_call = openai_request["messages"][2]["tool_calls"][0]
        response = {
            "id": "chatcmpl-2",
            "model": openai_request["model"],
            "choices": [{
                "message": {"role": "assistant", "content": None, "tool_calls": [sent_call]},
                "finish_reason": "tool_calls",
            }],
        }
        result = translate_to_anthropic(response)
        (block,) = result["content"]
        assert block["type"] == "tool_use"
        assert block["name"] == "get_weather"
        assert block["input"] == {"city": "Paris"}
        assert result["stop_reason"] == "tool_use"

    def test_tool_use_wins_across_choices(self):
        result = translate_to_anthropic({"choices": [
            {"message": {"content": "Let me check"}, "finish_reason": "stop"},
            {"message": {"tool_calls": [{"id": "c1", "function": {"name": "f", "arguments": "{}"}}]},
             "finish_reason": "tool_calls"},
        ]})
        assert [b["type"] for b in result["content"]] == ["text", "tool_use"]
        assert result["stop_reason"] == "tool_use"
