"""
Tests for the chat-completion client.

Tests cover:
- Payload shape per model family
- Tool-call parsing
- Retry with exponential backoff
- Circuit breaker
- Statistics and cost estimate
"""

import json
import time
from unittest.mock import MagicMock, patch

import pytest
import requests

from src.llm import (
    ChatCompletion,
    ChatCompletionClient,
    CircuitBreaker,
    LLMError,
    LLMStats,
    TokenUsage,
    ToolCall,
    estimate_cost,
    is_new_style_model,
)


def raw_response(content="Olá!", tool_calls=None, usage=None, finish_reason="stop"):
    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "choices": [{"message": message, "finish_reason": finish_reason}],
        "usage": usage or {"prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120},
    }


MESSAGES = [{"role": "system", "content": "Você é a Ana."}, {"role": "user", "content": "oi"}]


class TestLLMStats:
    """Tests for LLMStats"""

    def test_success_rate_no_requests(self):
        assert LLMStats().success_rate == 100.0

    def test_success_rate_calculation(self):
        assert LLMStats(total_requests=10, successful_requests=8).success_rate == 80.0

    def test_average_response_time(self):
        stats = LLMStats(successful_requests=5, total_response_time_ms=500.0)
        assert stats.average_response_time_ms == 100.0


class TestPayload:
    """Request body per model family"""

    def test_classic_model(self):
        client = ChatCompletionClient(model="gpt-4o-mini")
        payload = client.build_payload(MESSAGES, max_tokens=300, temperature=0.2)
        assert payload["max_tokens"] == 300
        assert payload["temperature"] == 0.2
        assert "max_completion_tokens" not in payload
        assert "tools" not in payload

    def test_new_style_model(self):
        client = ChatCompletionClient()
        payload = client.build_payload(MESSAGES, model="gpt-5-mini", max_tokens=300, temperature=0.2)
        assert payload["max_completion_tokens"] == 300
        assert "temperature" not in payload
        assert "max_tokens" not in payload

    def test_tools_and_choice(self):
        tools = [{"type": "function", "function": {"name": "execute-action"}}]
        payload = ChatCompletionClient().build_payload(MESSAGES, tools=tools, tool_choice="required")
        assert payload["tools"] == tools
        assert payload["tool_choice"] == "required"

    def test_tool_choice_defaults_to_auto(self):
        tools = [{"type": "function", "function": {"name": "execute-action"}}]
        assert ChatCompletionClient().build_payload(MESSAGES, tools=tools)["tool_choice"] == "auto"

    def test_model_family_markers(self):
        assert is_new_style_model("gpt-5")
        assert is_new_style_model("o3-mini")
        assert not is_new_style_model("gpt-4o-mini")


class TestParsing:
    """Response -> ChatCompletion"""

    @patch.object(ChatCompletionClient, "_call_llm")
    def test_text_response(self, mock_call):
        mock_call.return_value = raw_response("  Olá, Maria!  ")
        completion = ChatCompletionClient().complete(MESSAGES)
        assert completion.content == "Olá, Maria!"
        assert completion.tool_calls == []
        assert completion.usage.total_tokens == 120

    @patch.object(ChatCompletionClient, "_call_llm")
    def test_tool_calls(self, mock_call):
        mock_call.return_value = raw_response(
            content=None,
            tool_calls=[{
                "id": "call_1",
                "type": "function",
                "function": {"name": "execute-action", "arguments": json.dumps({"kind": "tag", "value": "vip"})},
            }],
            finish_reason="tool_calls",
        )
        completion = ChatCompletionClient().complete(MESSAGES)
        assert completion.content == ""
        assert completion.tool_calls == [
            ToolCall(id="call_1", name="execute-action", arguments='{"kind": "tag", "value": "vip"}'),
        ]
        assert completion.finish_reason == "tool_calls"

    def test_assistant_message_echoes_tool_calls(self):
        completion = ChatCompletion(tool_calls=[ToolCall(id="c1", name="execute-action", arguments="{}")])
        message = completion.assistant_message()
        assert message["content"] is None
        assert message["tool_calls"][0]["function"]["name"] == "execute-action"

    @patch.object(ChatCompletionClient, "_call_llm")
    def test_per_call_api_key(self, mock_call):
        mock_call.return_value = raw_response()
        ChatCompletionClient(api_key="sk-default").complete(MESSAGES, api_key="sk-account")
        assert mock_call.call_args[0][1] == "sk-account"


class TestRetry:
    """Retry with exponential backoff"""

    @patch("time.sleep")
    @patch.object(ChatCompletionClient, "_call_llm")
    def test_retry_then_success(self, mock_call, mock_sleep):
        mock_call.side_effect = [requests.exceptions.Timeout(), raw_response("ok")]
        client = ChatCompletionClient()
        assert client.complete(MESSAGES).content == "ok"
        assert client.stats.total_retries == 1
        mock_sleep.assert_called_once_with(1.0)

    @patch("time.sleep")
    @patch.object(ChatCompletionClient, "_call_llm")
    def test_retries_exhausted(self, mock_call, mock_sleep):
        mock_call.side_effect = requests.exceptions.ConnectionError()
        client = ChatCompletionClient()
        with pytest.raises(LLMError):
            client.complete(MESSAGES)
        assert mock_call.call_count == ChatCompletionClient.MAX_RETRIES
        assert [c[0][0] for c in mock_sleep.call_args_list] == [1.0, 2.0]
        assert client.stats.failed_requests == 1

    @patch("time.sleep")
    @patch.object(ChatCompletionClient, "_call_llm")
    def test_client_error_is_not_retried(self, mock_call, mock_sleep):
        response = MagicMock(status_code=401)
        mock_call.side_effect = requests.exceptions.HTTPError(response=response)
        with pytest.raises(LLMError):
            ChatCompletionClient().complete(MESSAGES)
        assert mock_call.call_count == 1

    @patch("time.sleep")
    @patch.object(ChatCompletionClient, "_call_llm")
    def test_rate_limit_is_retried(self, mock_call, mock_sleep):
        response = MagicMock(status_code=429)
        mock_call.side_effect = [requests.exceptions.HTTPError(response=response), raw_response("ok")]
        assert ChatCompletionClient().complete(MESSAGES).content == "ok"

    @patch.object(ChatCompletionClient, "_call_llm")
    def test_empty_choices(self, mock_call):
        mock_call.return_value = {"choices": []}
        with pytest.raises(LLMError):
            ChatCompletionClient(enable_retry=False).complete(MESSAGES)


class TestCircuitBreaker:
    """Open / half-open / closed"""

    @patch.object(ChatCompletionClient, "_call_llm")
    def test_opens_after_threshold(self, mock_call):
        mock_call.side_effect = requests.exceptions.Timeout()
        client = ChatCompletionClient(enable_retry=False)
        for _ in range(ChatCompletionClient.CIRCUIT_BREAKER_THRESHOLD):
            with pytest.raises(LLMError):
                client.complete(MESSAGES)
        assert client.is_circuit_open

        calls = mock_call.call_count
        with pytest.raises(LLMError, match="circuit breaker open"):
            client.complete(MESSAGES)
        assert mock_call.call_count == calls

    @patch.object(ChatCompletionClient, "_call_llm")
    def test_recovers_after_timeout(self, mock_call):
        client = ChatCompletionClient(enable_retry=False)
        client._breaker.consecutive_failures = ChatCompletionClient.CIRCUIT_BREAKER_THRESHOLD
        client._breaker.opened_at = time.monotonic() - ChatCompletionClient.CIRCUIT_BREAKER_TIMEOUT - 1
        mock_call.return_value = raw_response("ok")
        assert client.complete(MESSAGES).content == "ok"
        assert not client.is_circuit_open

    def test_half_open_failure_reopens(self):
        breaker = CircuitBreaker(threshold=2, cooldown=60)
        assert breaker.on_failure() is False
        assert breaker.on_failure() is True
        assert not breaker.allows_call()
        breaker.opened_at -= 61
        assert breaker.allows_call()
        assert breaker.on_failure() is False
        assert not breaker.allows_call()

    def test_stats_dict(self):
        stats = ChatCompletionClient().get_stats_dict()
        assert stats["total_requests"] == 0
        assert stats["circuit_breaker_open"] is False


class TestCost:
    """Estimated cost per 1K tokens"""

    def test_known_model(self):
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=1000, total_tokens=2000)
        assert estimate_cost("gpt-4o-mini", usage) == pytest.approx(0.00075)

    def test_unknown_model_uses_default(self):
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=0, total_tokens=1000)
        assert estimate_cost("some-local-model", usage) == pytest.approx(0.001)

    def test_usage_add(self):
        total = TokenUsage()
        total.add(TokenUsage(1, 2, 3))
        total.add(TokenUsage(10, 20, 30))
        assert total.to_dict() == {"prompt_tokens": 11, "completion_tokens": 22, "total_tokens": 33}


class TestHealthCheck:
    """GET /models"""

    @patch("requests.get")
    def test_health_check_success(self, mock_get):
        mock_get.return_value = MagicMock(status_code=200)
        assert ChatCompletionClient().health_check() is True

    @patch("requests.get")
    def test_health_check_exception(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError()
        assert ChatCompletionClient().health_check() is False
