import json
from types import SimpleNamespace
from unittest.mock import MagicMock

from openai import OpenAIError

from mcp_ssh_orchestrator.suggestions import SYSTEM_PROMPT, OpenAISuggestionEngine


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class TestOpenAISuggestionEngine:
    def setup_method(self):
        self.client = MagicMock()
        self.engine = OpenAISuggestionEngine(client=self.client, model="gpt-4o-mini")

    def test_suggest_parses_json(self):
        self.client.chat.completions.create.return_value = completion(json.dumps({
            "commands": ["du -sh *", "df -h"],
            "explanation": "Show disk usage",
            "confidence": 0.8,
            "category": "system",
        }))

        suggestion = self.engine.suggest("what is using my disk")

        assert suggestion.commands == ("du -sh *", "df -h")
        assert suggestion.confidence == 0.8
        assert suggestion.category == "system"
        kwargs = self.client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert kwargs["messages"][1]["content"] == "what is using my disk"

    def test_api_error_returns_none(self):
        self.client.chat.completions.create.side_effect = OpenAIError("rate limited")
        assert self.engine.suggest("list files") is None

    def test_bad_json_returns_none(self):
        self.client.chat.completions.create.return_value = completion("Sure! Try `ls`.")
        assert self.engine.suggest("list files") is None

    def test_empty_content_returns_none(self):
        self.client.chat.completions.create.return_value = completion(None)
        assert self.engine.suggest("list files") is None

    def test_confidence_is_clamped(self):
        high = self.engine.parse_response(json.dumps({"commands": ["ls"], "confidence": 7}))
        low = self.engine.parse_response(json.dumps({"commands": ["ls"], "confidence": 0}))
        missing = self.engine.parse_response(json.dumps({"commands": ["ls"]}))

        assert high.confidence == 1.0
        assert low.confidence == 0.5
        assert missing.confidence == 0.5

    def test_negative_confidence_is_clamped_to_minimum(self):
        suggestion = self.engine.parse_response(json.dumps({"commands": ["ls"], "confidence": -3}))
        assert suggestion.confidence == 0.1

    def test_empty_commands_rejected(self):
        assert self.engine.parse_response(json.dumps({"commands": [" ", ""]})) is None
        assert self.engine.parse_response(json.dumps(["ls"])) is None

    def test_no_api_key_means_unavailable(self):
        engine = OpenAISuggestionEngine(api_key=None)

        assert not engine.is_available()
        assert engine.suggest("list files") is None
