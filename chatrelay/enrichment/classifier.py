"""Best-effort topic, sentiment and troll classification of a user message.

The classifier is called after the reply has been streamed. Any failure (transport,
status, unparsable output, schema mismatch) is logged and replaced with neutral
defaults, so callers never need to handle an error from :meth:`MessageClassifier.classify`.
"""

import json
import logging
import re
from dataclasses import dataclass, replace
from typing import Any

from jsonschema import ValidationError, validate

from chatrelay.core.errors import EnrichmentError
from chatrelay.metrics import record_enrichment
from chatrelay.providers.base import GenerationProvider, ProviderError

logger = logging.getLogger("relay.enrichment")

FALLBACK_TOPIC = "general"

CLASSIFICATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["topic", "sentiment", "is_troll"],
    "properties": {
        "topic": {"type": ["string", "null"]},
        "sentiment": {"enum": ["positive", "neutral", "negative", None]},
        "is_troll": {"type": "boolean"},
    },
}

CLASSIFIER_INSTRUCTIONS = (
    "Classify the chat message below. Respond with a single JSON object and nothing else, "
    'using exactly these keys: "topic" (a short lowercase label of one to three words, '
    'or null), "sentiment" ("positive", "neutral", "negative" or null) and "is_troll" '
    "(true when the message is abusive, spam or deliberately disruptive, otherwise false)."
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass(frozen=True)
class ClassificationResult:
    topic: str | None = None
    sentiment: str | None = None
    is_troll: bool = False

    def with_topic_fallback(self) -> "ClassificationResult":
        topic = self.topic.strip() if self.topic else ""
        return replace(self, topic=topic or FALLBACK_TOPIC)


DEFAULT_CLASSIFICATION = ClassificationResult()


def build_classifier_prompt(message: str) -> str:
    return f"{CLASSIFIER_INSTRUCTIONS}\n\nMessage: {json.dumps(message, ensure_ascii=False)}"


def parse_classification(raw: str) -> ClassificationResult:
    text = _FENCE_RE.sub("", raw.strip())
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise EnrichmentError(f"classifier output is not JSON: {exc.msg}") from exc
    try:
        validate(instance=payload, schema=CLASSIFICATION_SCHEMA)
    except ValidationError as exc:
        raise EnrichmentError(f"classifier output failed validation: {exc.message}") from exc
    return ClassificationResult(
        topic=payload["topic"],
        sentiment=payload["sentiment"],
        is_troll=payload["is_troll"],
    )


class MessageClassifier:
    def __init__(self, provider: GenerationProvider):
        self._provider = provider

    async def classify(self, message: str) -> ClassificationResult:
        try:
            result = await self._classify(message)
        except EnrichmentError as exc:
            logger.warning(
                "enrichment_fallback",
                extra={"provider": self._provider.name, "error": str(exc)},
            )
            record_enrichment("fallback")
            return DEFAULT_CLASSIFICATION
        except Exception as exc:
            logger.warning(
                "enrichment_fallback",
                extra={
                    "provider": self._provider.name,
                    "error": f"{type(exc).__name__}: {exc}",
                },
            )
            record_enrichment("fallback")
            return DEFAULT_CLASSIFICATION
        record_enrichment("classified")
        return result

    async def _classify(self, message: str) -> ClassificationResult:
        try:
            raw = await self._provider.generate(
                build_classifier_prompt(message), json_output=True
            )
        except ProviderError as exc:
            raise EnrichmentError(f"{exc.code}: {exc.message}") from exc
        return parse_classification(raw)
