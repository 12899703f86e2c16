"""Unit tests for OpenAIWorkflowFixer (mock AsyncOpenAI client, no network)."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from autoflow.config import Settings
from autoflow.recovery.llm import OpenAIWorkflowFixer, parse_json_response

FIXED = {"nodes": [{"id": "start", "type": "start"}], "edges": []}


def make_response(content, total_tokens=42) -> MagicMock:
    message = MagicMock(content=content)
    return MagicMock(choices=[MagicMock(message=message)], usage=MagicMock(total_tokens=total_tokens))


def make_client(content=json.dumps(FIXED)) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=make_response(content))
    return client


def make_context() -> dict:
    return {
        "workflow": {"nodes": [], "edges": []},
        "error": "waiting for locator('#submit-btn')",
        "analyses": [{"category": "selector", "nodeId": "click"}],
        "logs": ["[ERROR] node_id: click timeout"],
    }


class TestParseJsonResponse:
    def test_plain(self):
        assert parse_json_response('{"a": 1}') == {"a": 1}

    def test_json_fence(self):
        assert parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}

    def test_bare_fence(self):
        assert parse_json_response('```\n{"a": 2}\n```') == {"a": 2}

    def test_invalid(self):
        with pytest.raises(ValueError, match="valid JSON"):
            parse_json_response("not json")

    def test_not_an_object(self):
        with pytest.raises(ValueError, match="not a JSON object"):
            parse_json_response("[1, 2]")


class TestOpenAIWorkflowFixer:
    def setup_method(self):
        self.settings = Settings(openai_api_key=None, llm_model="gpt-test", llm_temperature=0.1)

    def test_requires_key_or_client(self):
        with pytest.raises(ValueError, match="API key"):
            OpenAIWorkflowFixer(settings=self.settings)

    def test_from_settings_without_key(self):
        assert OpenAIWorkflowFixer.from_settings(self.settings) is None

    def test_from_settings_with_key(self):
        settings = Settings(openai_api_key="sk-test")
        assert isinstance(OpenAIWorkflowFixer.from_settings(settings), OpenAIWorkflowFixer)

    def test_prompt_includes_context(self):
        fixer = OpenAIWorkflowFixer(client=make_client(), settings=self.settings)
        prompt = fixer.build_prompt(make_context())
        assert "waiting for locator('#submit-btn')" in prompt
        assert '"nodeId": "click"' in prompt
        assert "Execution Logs:" in prompt

    def test_prompt_without_logs(self):
        fixer = OpenAIWorkflowFixer(client=make_client(), settings=self.settings)
        context = make_context()
        context["logs"] = []
        assert "Execution Logs:" not in fixer.build_prompt(context)

    async def test_call_returns_workflow(self):
        client = make_client()
        fixer = OpenAIWorkflowFixer(client=client, settings=self.settings)
        assert await fixer(make_context()) == FIXED

        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["temperature"] == 0.1
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0]["role"] == "system"

    async def test_empty_reply(self):
        fixer = OpenAIWorkflowFixer(client=make_client(content=None), settings=self.settings)
        with pytest.raises(ValueError, match="No response"):
            await fixer(make_context())

    async def test_reply_without_edges(self):
        fixer = OpenAIWorkflowFixer(client=make_client(content='{"nodes": []}'), settings=self.settings)
        with pytest.raises(ValueError, match="Invalid workflow structure"):
            await fixer(make_context())
