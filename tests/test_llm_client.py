"""Tests for the OpenAI-backed scoring oracle."""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any

import pytest
from openai import APIError

from score_engine.adapters.llm_client import (
    OpenAIScoringOracle,
    prepare_activity_content,
    strip_html,
)
from score_engine.domain.exceptions import OracleError, ValidationError
from score_engine.domain.models import PromptConfig

PROMPT = PromptConfig(model="gpt-test", temperature=0.2, prompt="Rate it", max_chars=500)


class StubOpenAIClient:
    """Minimal stub for OpenAI client used in tests."""

    def __init__(self, content: str | None = None, error: Exception | None = None):
        self.requests: list[dict[str, Any]] = []
        self._error = error
        self._response = SimpleNamespace(
            id="chatcmpl-123",
            model="gpt-test-2024",
            choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
            usage=SimpleNamespace(prompt_tokens=42, completion_tokens=7),
        )
        self.chat = SimpleNamespace(
            completions=SimpleNamespace(create=self._create_response)
        )

    def _create_response(self, **kwargs: Any) -> Any:
        self.requests.append(kwargs)
        if self._error is not None:
            raise self._error
        return self._response


def _oracle(client: StubOpenAIClient) -> OpenAIScoringOracle:
    return OpenAIScoringOracle(api_key="test", client=client)  # type: ignore[arg-type]


def test_strip_html_removes_tags_and_entities() -> None:
    assert strip_html("<p>Fish &amp; chips</p>") == "Fish & chips"


def test_activity_content_is_truncated() -> None:
    content = prepare_activity_content([{"body": "x" * 100}], max_chars=20)

    assert len(content) == 20
    assert content.startswith('[{"body": "xxx')


def test_score_parses_json_response() -> None:
    client = StubOpenAIClient(
        json.dumps({"value": 7, "summary": "active", "explanation": "many posts"})
    )

    result = _oracle(client).score([{"body": "<b>hello</b>"}], PROMPT)

    assert result.value == 7
    assert result.summary == "active"
    assert result.request_id == "chatcmpl-123"
    assert result.model == "gpt-test-2024"
    assert result.tokens_used == 49
    assert json.loads(result.logs)["content_chars"] > 0

    request = client.requests[0]
    assert request["model"] == "gpt-test"
    assert request["temperature"] == 0.2
    assert request["response_format"] == {"type": "json_object"}
    assert request["messages"][0] == {"role": "system", "content": "Rate it"}
    assert "<b>" not in request["messages"][1]["content"]


@pytest.mark.parametrize("content", [None, "not json", json.dumps({"value": -1})])
def test_malformed_responses_raise_validation_error(content: str | None) -> None:
    with pytest.raises(ValidationError):
        _oracle(StubOpenAIClient(content)).score([], PROMPT)


def test_api_errors_become_oracle_errors(mocker) -> None:
    error = APIError("upstream failure", request=mocker.Mock(), body=None)

    with pytest.raises(OracleError):
        _oracle(StubOpenAIClient(error=error)).score([], PROMPT)
