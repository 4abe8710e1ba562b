import json
from typing import Any, Dict, List, Optional

import structlog

from .errors import GenerationError

logger = structlog.get_logger(__name__)


def parse_json_object(raw: str) -> Dict[str, Any]:
    """Parse an LLM reply that should be a JSON object, tolerating surrounding prose."""
    if not raw:
        raise ValueError("empty LLM response")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        # try to find json block
        start = raw.find("{")
        end = raw.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("no JSON object in LLM response")
        data = json.loads(raw[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("LLM response is not a JSON object")
    return data


class LLMClient:
    """OpenAI chat completions. ``available`` is False when no key is configured."""

    def __init__(self, api_key: Optional[str], model: str, temperature: float = 0.3, client=None):
        self.model = model
        self.temperature = temperature
        self._client = client
        if self._client is None and api_key:
            from openai import OpenAI

            self._client = OpenAI(api_key=api_key)

    @property
    def available(self) -> bool:
        return self._client is not None

    def chat(self, messages: List[Dict[str, str]], temperature: Optional[float] = None) -> str:
        if self._client is None:
            raise GenerationError("OpenAI client not configured")
        try:
            resp = self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature if temperature is None else temperature,
            )
            content = resp.choices[0].message.content
        except Exception as e:
            raise GenerationError(f"LLM call failed: {e}") from e
        return (content or "").strip()
