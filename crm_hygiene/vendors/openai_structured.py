"""Client for schema-constrained completions from the OpenAI API."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Mapping, Optional

from openai import OpenAI, OpenAIError

from crm_hygiene.core.config import ConfigError, Settings, get_settings
from crm_hygiene.models import TokenUsage

logger = logging.getLogger(__name__)


class InferenceFailure(RuntimeError):
    """Raised when the model returns nothing usable for the requested schema."""


@dataclass(slots=True)
class InferenceResult:
    data: Dict[str, Any]
    usage: TokenUsage
    model: str


class StructuredInferenceClient:
    """Sends one JSON document to the model and parses the schema-bound reply.

    There is no retry here; the SDK transport owns retries.
    """

    def __init__(
        self,
        client: Any,
        *,
        model: str,
        reasoning_effort: Optional[str] = "low",
        max_completion_tokens: int = 16000,
    ) -> None:
        self._client = client
        self.model = model
        self.reasoning_effort = reasoning_effort
        self.max_completion_tokens = max_completion_tokens

    @classmethod
    def from_settings(cls, settings: Settings) -> "StructuredInferenceClient":
        if not settings.openai_api_key:
            raise ConfigError("OPENAI_API_KEY must be set to call the language model.")
        return cls(
            OpenAI(api_key=settings.openai_api_key),
            model=settings.openai_model,
            reasoning_effort=settings.openai_reasoning_effort or None,
            max_completion_tokens=settings.openai_max_completion_tokens,
        )

    def complete(self, document: Mapping[str, Any], schema: Mapping[str, Any], *, name: str) -> InferenceResult:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": json.dumps(document, ensure_ascii=False, default=str)}],
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": name, "schema": schema, "strict": True},
            },
            "max_completion_tokens": self.max_completion_tokens,
        }
        if self.reasoning_effort:
            kwargs["reasoning_effort"] = self.reasoning_effort

        try:
            completion = self._client.chat.completions.create(**kwargs)
        except OpenAIError as exc:
            logger.error("OpenAI call failed for %s: %s", name, exc)
            raise InferenceFailure(f"Language model call failed for {name}") from exc

        content = None
        if completion.choices:
            content = getattr(completion.choices[0].message, "content", None)
        if not content:
            raise InferenceFailure(f"Language model returned no content for {name}")

        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            logger.error("Unparsable model output for %s: %s", name, content[:200])
            raise InferenceFailure(f"Language model returned invalid JSON for {name}") from exc
        if not isinstance(data, dict):
            raise InferenceFailure(f"Language model returned a non-object for {name}")

        usage = parse_usage(getattr(completion, "usage", None))
        logger.info(
            "Inference %s done: input=%d output=%d reasoning=%d",
            name,
            usage.input_tokens,
            usage.output_tokens,
            usage.reasoning_tokens,
        )
        return InferenceResult(data=data, usage=usage, model=getattr(completion, "model", None) or self.model)


def parse_usage(usage: Any) -> TokenUsage:
    """Read token counters from an SDK usage object or a plain mapping."""
    if usage is None:
        return TokenUsage()

    def read(source: Any, key: str) -> Any:
        if source is None:
            return None
        if isinstance(source, Mapping):
            return source.get(key)
        return getattr(source, key, None)

    details = read(usage, "completion_tokens_details")
    return TokenUsage(
        input_tokens=_safe_int(read(usage, "prompt_tokens")),
        output_tokens=_safe_int(read(usage, "completion_tokens")),
        reasoning_tokens=_safe_int(read(details, "reasoning_tokens")),
        total_tokens=_safe_int(read(usage, "total_tokens")),
    )


@lru_cache(maxsize=1)
def get_inference_client() -> StructuredInferenceClient:
    return StructuredInferenceClient.from_settings(get_settings())


def _safe_int(value: Any) -> int:
    try:
        if value is None:
            return 0
        return int(value)
    except (TypeError, ValueError):
        return 0
