"""Suggestion engines that turn a request in plain words into shell commands."""
import json
from typing import Any, Optional

from openai import OpenAI, OpenAIError

from .datastructures import Suggestion
from .logging_manager import get_logger


class SuggestionEngine:
    """Interface for intent resolution.

    suggest() must not raise for ordinary failures; returning None is the
    failure signal.
    """

    def is_available(self) -> bool:
        return True

    def suggest(self, text: str) -> Optional[Suggestion]:
        raise NotImplementedError


SYSTEM_PROMPT = """You are a Linux command expert. Analyze user requests and suggest appropriate bash commands.

Your task:
1. Understand what the user wants to accomplish
2. Suggest 2-4 relevant Linux/bash commands
3. Provide a brief explanation
4. Rate your confidence (0.1-1.0)
5. Categorize the request

Categories: files, system, network, processes, text, logs, services, docker, git, packages

Response format (JSON only):
{
  "commands": ["command1", "command2", "command3"],
  "explanation": "Brief explanation of what these commands do",
  "confidence": 0.8,
  "category": "files"
}

Rules:
- Always suggest practical, commonly used commands
- Include command options/flags when helpful
- Prioritize safer commands (avoid rm -rf unless clearly requested)
- If user mentions specific filenames, incorporate them
- Keep commands concise and practical"""


class OpenAISuggestionEngine(SuggestionEngine):
    """Suggestion engine backed by an OpenAI chat completion model."""

    MIN_CONFIDENCE = 0.1
    MAX_CONFIDENCE = 1.0

    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-3.5-turbo",
                 client: Optional[Any] = None, max_tokens: int = 300, temperature: float = 0.3):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.logger = get_logger('suggestions')
        if client is not None:
            self._client = client
        elif api_key:
            self._client = OpenAI(api_key=api_key)
        else:
            self._client = None
            self.logger.warning("OpenAI API key not configured, falling back to keyword table")

    def is_available(self) -> bool:
        return self._client is not None

    def suggest(self, text: str) -> Optional[Suggestion]:
        if self._client is None:
            return None

        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": text},
                ],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
            content = response.choices[0].message.content if response.choices else None
        except OpenAIError as e:
            self.logger.error(f"[SUGGEST_FAIL] OpenAI API error: {e}")
            return None

        if not content:
            return None
        return self.parse_response(content)

    def parse_response(self, content: str) -> Optional[Suggestion]:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            self.logger.warning(f"[SUGGEST_PARSE] Model returned non-JSON content: {e}")
            return None

        if not isinstance(data, dict):
            return None
        commands = data.get("commands")
        if not isinstance(commands, list):
            return None
        commands = tuple(str(c).strip() for c in commands if str(c).strip())
        if not commands:
            return None

        try:
            confidence = float(data.get("confidence") or 0.5)
        except (TypeError, ValueError):
            confidence = 0.5
        confidence = max(self.MIN_CONFIDENCE, min(self.MAX_CONFIDENCE, confidence))

        return Suggestion(
            commands=commands,
            confidence=confidence,
            explanation=str(data.get("explanation", "")),
            category=str(data.get("category", "")),
        )
