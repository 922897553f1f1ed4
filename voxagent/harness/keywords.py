"""
Keyword replies: answers that carry speech-recognition context terms.

When a turn runs without tools and the provider can constrain its output to a
JSON schema, the model answers with

    {"response": "...", "keywords": ["proper noun", "technical term", ...]}

and the keywords are handed to the shell so the recognizer can bias toward
them on the next utterance.
"""

from __future__ import annotations

import json
from typing import Any

from voxagent.errors import ProviderError

MAX_KEYWORDS = 10
SCHEMA_NAME = "conversation_response"

KEYWORD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "response": {
            "type": "string",
            "description": "Your natural language response to the user",
        },
        "keywords": {
            "type": "array",
            "description": (
                "Important keywords from this conversation for speech recognition "
                "context (proper nouns, technical terms, domain-specific words)"
            ),
            "items": {"type": "string"},
            "maxItems": MAX_KEYWORDS,
        },
    },
    "required": ["response", "keywords"],
    "additionalProperties": False,
}


def parse_keyword_response(text: str) -> tuple[str, list[str]]:
    """Split a keyword reply into ``(response, keywords)``.  Raises ``ProviderError``."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProviderError(f"Structured reply is not JSON: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("response"), str):
        raise ProviderError("Structured reply has no 'response' string")

    raw = data.get("keywords")
    keywords = [k.strip() for k in raw if isinstance(k, str) and k.strip()] if isinstance(raw, list) else []
    return data["response"], list(dict.fromkeys(keywords))[:MAX_KEYWORDS]
