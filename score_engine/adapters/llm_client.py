"""Scoring oracle adapter backed by OpenAI chat completions.

Implements ScoringOracleProtocol. Activity records are serialized to JSON,
stripped of HTML markup and truncated to the configured character budget
before being sent as the user message; the rendered prompt is the system
message.
"""

import html
import json
import re
import time
from typing import Any, Final

from openai import APIError, OpenAI
from openai import RateLimitError as OpenAIRateLimitError
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from score_engine.config.logging_config import get_logger
from score_engine.domain.exceptions import OracleError, ValidationError
from score_engine.domain.models import OracleResult, PromptConfig

PREVIEW_LENGTH_RESPONSE: Final[int] = 500
"""Maximum characters of the raw response kept in the call log."""

_HTML_TAG_PATTERN: Final[re.Pattern[str]] = re.compile(r"<[^>]+>")

logger = get_logger(__name__)


class _OracleResponse(BaseModel):
    value: float = Field(..., ge=0)
    summary: str | None = None
    description: str | None = None
    explanation: str | None = None


def strip_html(text: str) -> str:
    return html.unescape(_HTML_TAG_PATTERN.sub("", text))


def prepare_activity_content(
    activity_records: list[dict[str, Any]], max_chars: int
) -> str:
    """Serialize activity for the oracle, bounded to ``max_chars`` characters."""

    content = strip_html(json.dumps(activity_records, default=str, ensure_ascii=False))
    if max_chars > 0 and len(content) > max_chars:
        logger.debug(
            "oracle_content_truncated", original_chars=len(content), max_chars=max_chars
        )
        content = content[:max_chars]
    return content


class OpenAIScoringOracle:
    """OpenAI client that turns activity records into a bounded value."""

    def __init__(
        self,
        api_key: str,
        timeout: int = 60,
        client: OpenAI | None = None,
    ) -> None:
        """Initialize oracle.

        Args:
            api_key: OpenAI API key
            timeout: Request timeout in seconds
            client: Preconfigured OpenAI client (tests)
        """
        self.client = client or OpenAI(api_key=api_key, timeout=timeout)

    def score(
        self, activity_records: list[dict[str, Any]], prompt_config: PromptConfig
    ) -> OracleResult:
        """Score activity records with one chat completion.

        Raises:
            OracleError: On API communication errors
            ValidationError: On empty, non-JSON or out-of-range responses
        """
        start_time = time.time()
        content = prepare_activity_content(activity_records, prompt_config.max_chars)

        logger.info(
            "oracle_request",
            model=prompt_config.model,
            temperature=prompt_config.temperature,
            prompt_chars=len(prompt_config.prompt),
            content_chars=len(content),
        )

        try:
            response = self.client.chat.completions.create(
                model=prompt_config.model,
                messages=[
                    {"role": "system", "content": prompt_config.prompt},
                    {"role": "user", "content": content},
                ],
                temperature=prompt_config.temperature,
                response_format={"type": "json_object"},
            )
        except OpenAIRateLimitError as e:
            logger.warning(
                "oracle_rate_limited", latency_ms=_elapsed_ms(start_time), error=str(e)
            )
            raise OracleError(f"Rate limit exceeded: {e}") from e
        except APIError as e:
            logger.warning(
                "oracle_api_error", latency_ms=_elapsed_ms(start_time), error=str(e)
            )
            raise OracleError(f"OpenAI API error: {e}") from e

        latency_ms = _elapsed_ms(start_time)
        raw_content = response.choices[0].message.content
        if not raw_content:
            raise ValidationError("Empty response from scoring oracle")

        try:
            parsed = _OracleResponse.model_validate(json.loads(raw_content))
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON from scoring oracle: {e}") from e
        except PydanticValidationError as e:
            raise ValidationError(f"Oracle response validation failed: {e}") from e

        prompt_tokens = response.usage.prompt_tokens if response.usage else 0
        completion_tokens = response.usage.completion_tokens if response.usage else 0

        logger.info(
            "oracle_response",
            model=response.model,
            latency_ms=latency_ms,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            value=parsed.value,
        )

        return OracleResult(
            value=parsed.value,
            summary=parsed.summary,
            description=parsed.description,
            explanation=parsed.explanation,
            request_id=response.id,
            model=response.model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            logs=json.dumps(
                {
                    "latency_ms": latency_ms,
                    "temperature": prompt_config.temperature,
                    "content_chars": len(content),
                    "response_preview": raw_content[:PREVIEW_LENGTH_RESPONSE],
                }
            ),
        )


def _elapsed_ms(start_time: float) -> int:
    return int((time.time() - start_time) * 1000)


__all__ = ["OpenAIScoringOracle", "prepare_activity_content", "strip_html"]
