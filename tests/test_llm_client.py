"""Tests for the OpenAI client wrapper."""

from types import SimpleNamespace
from unittest.mock import Mock

import httpx
import openai
import pytest

from substack_intel.core.config import LLMConfig
from substack_intel.core.exceptions import AuthError, ConfigurationError, ExtractionError, LLMRequestError
from substack_intel.intelligence.llm_client import OpenAILLMClient
from substack_intel.utils.reliability import AdaptiveRateLimiter, extraction_retry_policy

from sample_data import make_settings

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def api_status_error(cls, status):
    return cls("error", response=httpx.Response(status, request=REQUEST), body=None)


def completion(text, tokens=120):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        model="gpt-4o-mini-2024-07-18",
        usage=SimpleNamespace(total_tokens=tokens),
    )


class TestOpenAILLMClient:
    """Completion and embedding calls against a mocked SDK client."""

    def setup_method(self):
        self.sdk = Mock()
        self.config = LLMConfig(OPENAI_API_KEY="sk-test", EXTRACTION_MODEL="gpt-4o-mini")
        self.client = OpenAILLMClient(
            self.config,
            client=self.sdk,
            rate_limiter=AdaptiveRateLimiter(calls_per_second=1000, burst_size=100),
        )

    def test_complete(self):
        self.sdk.chat.completions.create.return_value = completion('{"companies": []}')

        response = self.client.complete("system", "user")

        assert response.text == '{"companies": []}'
        assert response.model == "gpt-4o-mini-2024-07-18"
        assert response.total_tokens == 120
        kwargs = self.sdk.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0] == {"role": "system", "content": "system"}

    def test_complete_without_json_mode(self):
        self.sdk.chat.completions.create.return_value = completion(None)

        assert self.client.complete("system", "user", json_mode=False).text == ""
        assert "response_format" not in self.sdk.chat.completions.create.call_args.kwargs

    @pytest.mark.parametrize(
        "error,expected",
        [
            (api_status_error(openai.AuthenticationError, 401), AuthError),
            (api_status_error(openai.PermissionDeniedError, 403), AuthError),
            (api_status_error(openai.RateLimitError, 429), ExtractionError),
            (api_status_error(openai.InternalServerError, 500), ExtractionError),
            (openai.APITimeoutError(request=REQUEST), ExtractionError),
            (openai.APIConnectionError(request=REQUEST), ExtractionError),
            (api_status_error(openai.BadRequestError, 400), LLMRequestError),
            (api_status_error(openai.NotFoundError, 404), LLMRequestError),
            (api_status_error(openai.UnprocessableEntityError, 422), LLMRequestError),
            (api_status_error(openai.ConflictError, 409), ExtractionError),
        ],
    )
    def test_errors_mapped(self, error, expected):
        self.sdk.chat.completions.create.side_effect = error

        with pytest.raises(expected) as exc_info:
            self.client.complete("system", "user")
        assert exc_info.value.details["operation"] == "chat.completions"
        assert exc_info.value.__cause__ is error

    def test_rejected_request_is_not_retried(self):
        self.sdk.chat.completions.create.side_effect = api_status_error(openai.BadRequestError, 400)
        policy = extraction_retry_policy(make_settings())

        with pytest.raises(LLMRequestError) as exc_info:
            policy.call(self.client.complete, "system", "user")
        assert exc_info.value.status_code == 400
        assert self.sdk.chat.completions.create.call_count == 1

    def test_server_error_is_retried(self):
        self.sdk.chat.completions.create.side_effect = [
            api_status_error(openai.InternalServerError, 503),
            completion('{"companies": []}'),
        ]

        response = extraction_retry_policy(make_settings()).call(self.client.complete, "system", "user")

        assert response.text == '{"companies": []}'
        assert self.sdk.chat.completions.create.call_count == 2

    def test_embed_orders_by_index(self):
        self.sdk.embeddings.create.return_value = SimpleNamespace(
            data=[
                SimpleNamespace(index=1, embedding=[0.0, 1.0]),
                SimpleNamespace(index=0, embedding=[1.0, 0.0]),
            ]
        )

        assert self.client.embed(["a", "b"]) == [[1.0, 0.0], [0.0, 1.0]]
        assert self.sdk.embeddings.create.call_args.kwargs["model"] == "text-embedding-3-small"

    def test_embed_nothing(self):
        assert self.client.embed([]) == []
        self.sdk.embeddings.create.assert_not_called()

    def test_missing_key(self):
        client = OpenAILLMClient(LLMConfig(OPENAI_API_KEY=""))

        with pytest.raises(ConfigurationError):
            client.complete("system", "user")
