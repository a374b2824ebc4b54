from unittest.mock import Mock, patch

import httpx
import pytest

from app.services.llm import LLMProviderError, OpenAIProvider
from app.services.llm.openai_provider import extract_output_text


def make_response(status_code=200, data=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.text = text
    response.json.return_value = data or {}
    return response


CHAT_OK = {
    "id": "chatcmpl-1",
    "model": "gpt-4o",
    "choices": [{"message": {"role": "assistant", "content": "Здравствуйте!"}}],
    "usage": {"prompt_tokens": 120, "completion_tokens": 15},
}

RESPONSES_OK = {
    "id": "resp_1",
    "model": "gpt-4o",
    "output": [
        {"type": "file_search_call", "id": "fs_1"},
        {"type": "message", "content": [{"type": "output_text", "text": "Комиссия 2%."}]},
    ],
    "usage": {"input_tokens": 300, "output_tokens": 20},
}


@pytest.fixture
def http_client():
    with patch("app.services.llm.openai_provider.httpx.Client") as client_cls:
        yield client_cls.return_value.__enter__.return_value


@pytest.fixture
def provider():
    return OpenAIProvider(api_key="test-key", retry_delay_seconds=0, sleep_func=Mock())


class TestChat:
    def test_parses_content_and_usage(self, http_client, provider):
        http_client.post.return_value = make_response(data=CHAT_OK)

        result = provider.chat("system", [{"role": "user", "content": "Привет"}], max_tokens=100, temperature=0.0)

        assert result.content == "Здравствуйте!"
        assert result.response_id == "chatcmpl-1"
        assert result.prompt_tokens == 120
        assert result.completion_tokens == 15

        _, kwargs = http_client.post.call_args
        payload = kwargs["json"]
        assert payload["messages"][0] == {"role": "system", "content": "system"}
        assert payload["max_completion_tokens"] == 100
        assert payload["temperature"] == 0.0
        assert kwargs["headers"]["Authorization"] == "Bearer test-key"

    def test_retries_rate_limit(self, http_client, provider):
        http_client.post.side_effect = [make_response(429, text="slow down"), make_response(data=CHAT_OK)]

        result = provider.chat("system", [])

        assert result.content == "Здравствуйте!"
        assert http_client.post.call_count == 2
        provider.sleep_func.assert_called_once()

    def test_retries_transport_error(self, http_client, provider):
        http_client.post.side_effect = [httpx.ConnectError("refused"), make_response(data=CHAT_OK)]

        assert provider.chat("system", []).content == "Здравствуйте!"

    def test_client_error_raises(self, http_client, provider):
        http_client.post.return_value = make_response(400, text="bad request")

        with pytest.raises(LLMProviderError) as exc_info:
            provider.chat("system", [])

        assert exc_info.value.status_code == 400
        assert http_client.post.call_count == 1

    def test_exhausted_retries_raise(self, http_client, provider):
        http_client.post.return_value = make_response(503, text="unavailable")

        with pytest.raises(LLMProviderError):
            provider.chat("system", [])

        assert http_client.post.call_count == 3


class TestChatWithRag:
    def test_uses_responses_api(self, http_client, provider):
        http_client.post.return_value = make_response(data=RESPONSES_OK)

        result = provider.chat_with_rag("system", [], ["vs_1"], service_tier="flex")

        assert result.content == "Комиссия 2%."
        assert result.prompt_tokens == 300
        args, kwargs = http_client.post.call_args
        assert args[0].endswith("/responses")
        assert kwargs["json"]["tools"] == [{"type": "file_search", "vector_store_ids": ["vs_1"]}]
        assert kwargs["json"]["service_tier"] == "flex"

    def test_falls_back_to_chat_on_error(self, http_client, provider):
        http_client.post.side_effect = [make_response(500, text="oops"), make_response(data=CHAT_OK)]

        result = provider.chat_with_rag("system", [], ["vs_1"])

        assert result.content == "Здравствуйте!"
        second_url = http_client.post.call_args_list[1].args[0]
        assert second_url.endswith("/chat/completions")

    def test_falls_back_to_chat_on_empty_output(self, http_client, provider):
        http_client.post.side_effect = [make_response(data={"output": []}), make_response(data=CHAT_OK)]

        assert provider.chat_with_rag("system", [], ["vs_1"]).content == "Здравствуйте!"


class TestExtractOutputText:
    def test_joins_output_text_chunks(self):
        data = {
            "output": [
                {"type": "message", "content": [{"type": "output_text", "text": "Раз "}]},
                {"type": "message", "content": [{"type": "output_text", "text": "два"}, {"type": "refusal"}]},
            ]
        }

        assert extract_output_text(data) == "Раз два"

    def test_missing_output(self):
        assert extract_output_text({}) == ""
