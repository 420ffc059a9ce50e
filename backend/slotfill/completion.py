"""Text-completion collaborators used by slot extraction."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from openai import OpenAI, OpenAIError
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from .telemetry import get_correlation_id

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class CompletionResult:
    """Either the completion text or the reason it is unavailable."""

    text: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.text is not None

    @classmethod
    def failure(cls, error: str) -> "CompletionResult":
        return cls(text=None, error=error)


Completer = Callable[[str], CompletionResult]


def unavailable_completer(prompt: str) -> CompletionResult:
    """Completer used when no model is configured."""

    return CompletionResult.failure("completion backend not configured")


class OpenAICompleter:
    """Single-prompt chat completion against the OpenAI API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        temperature: float = 0.0,
        timeout: Optional[float] = 30.0,
    ) -> None:
        self._client = OpenAI(api_key=api_key, timeout=timeout)
        self._model = model
        self._temperature = temperature

    def __call__(self, prompt: str) -> CompletionResult:
        with tracer.start_as_current_span("OpenAI.chatCompletion") as span:
            span.set_attribute("llm.system", "openai")
            span.set_attribute("llm.operation", "slot.extraction")
            span.set_attribute("llm.model", self._model)
            correlation_id = get_correlation_id()
            if correlation_id:
                span.set_attribute("correlation.id", correlation_id)

            try:
                response = self._client.chat.completions.create(
                    model=self._model,
                    messages=[{"role": "user", "content": prompt}],
                    temperature=self._temperature,
                )
            except OpenAIError as exc:
                logger.warning("OpenAI chat completion failed: %s", exc)
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                return CompletionResult.failure(str(exc))

            if not response.choices:
                span.set_status(Status(StatusCode.ERROR, "no choices"))
                return CompletionResult.failure("No choices returned by OpenAI chat completion")

            choice = response.choices[0]
            content = getattr(choice.message, "content", None)
            if content is None:
                span.set_status(Status(StatusCode.ERROR, "empty content"))
                return CompletionResult.failure("Chat completion did not include content")

            finish_reason = getattr(choice, "finish_reason", None)
            if finish_reason:
                span.set_attribute("llm.finish_reason", finish_reason)
            span.set_status(Status(StatusCode.OK))
            return CompletionResult(text=content)


__all__ = ["CompletionResult", "Completer", "OpenAICompleter", "unavailable_completer"]
