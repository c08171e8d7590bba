"""Optional advisory category suggestions from an external model."""

from __future__ import annotations

import json
import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from fin_tracker.shared.config import AppConfig
from fin_tracker.shared.exceptions import AdvisoryUnavailableError
from fin_tracker.shared.logging import Logger
from fin_tracker.shared.merchants import is_sentinel_category

try:  # Optional dependency
    from openai import OpenAI  # type: ignore
except ModuleNotFoundError:  # pragma: no cover - dependency optional at runtime
    OpenAI = None  # type: ignore


@dataclass(slots=True)
class CategorySuggestion:
    """Advisory suggestion; never applied without user confirmation."""

    category_name: str
    confidence: float
    rationale: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "category_name": self.category_name,
            "confidence": self.confidence,
            "rationale": self.rationale,
        }


# (merchant, description, amount, known category names) -> suggestion
SuggestionFunction = Callable[[str, str, float, Sequence[str]], "CategorySuggestion | None"]


class OpenAIAdvisor:
    """Suggestion function backed by the OpenAI Responses API."""

    def __init__(self, client: Any, model: str, logger: Logger) -> None:
        self._client = client
        self._model = model
        self._logger = logger

    def __call__(
        self,
        merchant: str,
        description: str,
        amount: float,
        categories: Sequence[str],
    ) -> CategorySuggestion | None:
        payload = json.dumps(
            {
                "merchant": merchant,
                "description": description,
                "amount": round(float(amount), 2),
                "categories": list(categories),
            },
            separators=(",", ":"),
            ensure_ascii=False,
        )
        self._logger.debug(f"Advisory request payload bytes={len(payload)}")
        response = self._client.responses.create(  # type: ignore[attr-defined]
            model=self._model,
            input=self._build_prompt(payload),
            temperature=0.1,
            max_output_tokens=200,
        )
        return parse_suggestion(_extract_text(response))

    def _build_prompt(self, payload_json: str) -> list[dict[str, Any]]:
        system_prompt = (
            "You categorize a single personal finance expense. Return JSON with "
            "'category_name', 'confidence' (0-1 float) and a short 'rationale'. Prefer one of "
            "the provided categories; never answer 'Uncategorized' or 'N/A'."
        )
        return [
            {"role": "system", "content": [{"type": "input_text", "text": system_prompt}]},
            {"role": "user", "content": [{"type": "input_text", "text": payload_json}]},
        ]


def _extract_text(response: Any) -> str:
    output_text = getattr(response, "output_text", None)
    if isinstance(output_text, str) and output_text:
        return output_text
    try:
        return response.output[0].content[0].text  # type: ignore[index]
    except (AttributeError, IndexError, TypeError) as exc:
        raise AdvisoryUnavailableError(f"Unexpected advisory response structure: {exc}") from exc


def parse_suggestion(raw: str) -> CategorySuggestion | None:
    """Parse the model's JSON reply, tolerating Markdown fences."""

    text = raw.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        if first_newline != -1:
            remainder = text[first_newline + 1 :]
            closing = remainder.rfind("```")
            if closing != -1:
                remainder = remainder[:closing]
            text = remainder.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AdvisoryUnavailableError(f"Advisory response was not valid JSON: {exc}") from exc
    if not isinstance(data, Mapping):
        raise AdvisoryUnavailableError("Advisory response must be a JSON object.")
    name = str(data.get("category_name") or "").strip()
    if not name:
        return None
    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    rationale = data.get("rationale")
    return CategorySuggestion(
        category_name=name,
        confidence=max(0.0, min(1.0, confidence)),
        rationale=str(rationale) if rationale else None,
    )


def build_advisor(config: AppConfig, logger: Logger) -> SuggestionFunction | None:
    """Return a suggestion function when advisory support is configured, else None."""

    settings = config.categorization.advisory
    if not settings.enabled:
        return None
    if settings.provider.lower() != "openai":
        logger.warning(
            f"Advisory provider '{settings.provider}' is not supported; suggestions disabled."
        )
        return None
    if OpenAI is None:
        logger.warning(
            "openai package is not installed. Install extras with 'pip install fin-tracker[llm]' to enable suggestions."
        )
        return None
    api_key = os.environ.get(settings.api_key_env)
    if not api_key:
        logger.warning(f"Environment variable {settings.api_key_env} not set. Suggestions disabled.")
        return None
    return OpenAIAdvisor(OpenAI(api_key=api_key), settings.model, logger)


def request_suggestion(
    advisor: SuggestionFunction | None,
    merchant: str,
    description: str,
    amount: float,
    categories: Sequence[str],
) -> CategorySuggestion:
    """Ask the advisor for a suggestion, raising when none can be produced."""

    if advisor is None:
        raise AdvisoryUnavailableError("Advisory suggestions are not configured.")
    try:
        suggestion = advisor(merchant, description, amount, categories)
    except AdvisoryUnavailableError:
        raise
    except Exception as exc:  # provider SDK errors vary by version
        raise AdvisoryUnavailableError(f"Advisory request failed: {exc}") from exc
    if suggestion is None:
        raise AdvisoryUnavailableError(f"No suggestion available for '{merchant}'.")
    if is_sentinel_category(suggestion.category_name):
        raise AdvisoryUnavailableError(
            f"Advisor suggested placeholder category '{suggestion.category_name}'."
        )
    return suggestion
