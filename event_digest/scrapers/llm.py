"""Gemini text generation and tolerant JSON extraction from free-form model output."""
import json
import logging
import re
from typing import Any, Optional, Protocol

import google.generativeai as genai

from event_digest.errors import UpstreamError

logger = logging.getLogger(__name__)

FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


class LLMClient(Protocol):
    async def generate(self, prompt: str) -> str: ...


class GeminiClient:
    """Low-temperature Gemini wrapper returning plain response text."""

    def __init__(self, api_key: Optional[str], model_name: str = "gemini-2.0-flash",
                 temperature: float = 0.1, max_output_tokens: int = 8192):
        self.api_key = api_key
        self.model_name = model_name
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self._model = None

    def _get_model(self):
        if self._model is None:
            if not self.api_key:
                raise UpstreamError("GOOGLE_API_KEY is not configured")
            genai.configure(api_key=self.api_key)
            self._model = genai.GenerativeModel(
                model_name=self.model_name,
                generation_config={
                    "temperature": self.temperature,
                    "top_p": 0.95,
                    "max_output_tokens": self.max_output_tokens,
                },
            )
        return self._model

    async def generate(self, prompt: str) -> str:
        model = self._get_model()
        try:
            response = await model.generate_content_async(prompt)
            text = response.text
        except Exception as e:
            error_msg = str(e)
            if "429" in error_msg or "quota" in error_msg.lower():
                raise UpstreamError(f"Gemini rate limit: {error_msg}", status_code=429) from e
            raise UpstreamError(f"Gemini request failed: {type(e).__name__}: {error_msg}") from e
        if not text:
            raise UpstreamError("Gemini returned an empty response")
        return text


def _balanced_span(text: str, start: int) -> Optional[str]:
    """Return text[start:end] for the bracket opened at start, skipping brackets inside strings."""
    closers = {"[": "]", "{": "}"}
    stack = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in closers:
            stack.append(closers[char])
        elif char in ("]", "}"):
            if not stack or stack.pop() != char:
                return None
            if not stack:
                return text[start:index + 1]
    return None


def parse_json_from_response(text: str) -> Any:
    """
    Pull the first balanced JSON array or object out of an LLM response.

    Tolerates markdown fences and prose around the JSON. Returns None if nothing parses.
    """
    if not text:
        return None

    # Clean markdown
    fenced = FENCE_PATTERN.search(text)
    candidates = [fenced.group(1), text] if fenced else [text]

    for candidate in candidates:
        for index, char in enumerate(candidate):
            if char not in "[{":
                continue
            span = _balanced_span(candidate, index)
            if span is None:
                continue
            try:
                return json.loads(span)
            except json.JSONDecodeError as e:
                logger.debug(f"Skipping unparseable JSON candidate: {e}")
    return None
