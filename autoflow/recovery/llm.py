"""OpenAI-backed workflow fixer, usable as the orchestrator's ``llm_caller``."""

from __future__ import annotations

import json
import logging
from typing import Any

from openai import AsyncOpenAI

from autoflow.config import Settings, get_settings

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are an expert at fixing browser automation workflows. "
    "Analyze errors and return a corrected workflow."
)

_USER_PROMPT = """The following workflow has errors:

Workflow:
{workflow}

Error Message:
{error}

Error Analysis:
{analyses}
{logs}
Return a fixed workflow JSON object with "nodes" and "edges". Fix issues like:
- Invalid selectors
- Missing required node configurations
- Missing wait conditions
- Incorrect property values

Keep every node id and every edge unchanged. Return ONLY the JSON object, no explanations."""


def parse_json_response(text: str) -> dict:
    """Parse a JSON object out of a model reply, tolerating ```json fences."""
    text = text.strip()
    if text.startswith("```json"):
        text = text.split("```json", 1)[1].split("```", 1)[0].strip()
    elif text.startswith("```"):
        text = text.split("```", 1)[1].split("```", 1)[0].strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"LLM did not return valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError("LLM response is not a JSON object")
    return parsed


class OpenAIWorkflowFixer:
    """
    Callable ``llm_caller`` that asks an OpenAI chat model for a fixed workflow.

    ``context`` carries ``workflow`` (dict), ``error`` (str), ``analyses``
    (list of dicts) and optionally ``logs`` (list of str). Returns the
    workflow dict the model produced.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        client: AsyncOpenAI | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        key = api_key or settings.openai_api_key
        if client is None and not key:
            raise ValueError("OpenAI API key not provided and AUTOFLOW_OPENAI_API_KEY not set")
        self._client = client or AsyncOpenAI(api_key=key)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature if temperature is None else temperature

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "OpenAIWorkflowFixer | None":
        """A fixer when an API key is configured, else None."""
        settings = settings or get_settings()
        if not settings.llm_configured:
            return None
        return cls(settings=settings)

    def build_prompt(self, context: dict[str, Any]) -> str:
        logs = context.get("logs") or []
        return _USER_PROMPT.format(
            workflow=json.dumps(context.get("workflow", {}), indent=2),
            error=context.get("error", ""),
            analyses=json.dumps(context.get("analyses", []), indent=2),
            logs=("\nExecution Logs:\n" + "\n".join(logs) + "\n") if logs else "",
        )

    async def __call__(self, context: dict[str, Any]) -> dict:
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": self.build_prompt(context)},
            ],
            temperature=self._temperature,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ValueError("No response from OpenAI")
        fixed = parse_json_response(content)
        if "nodes" not in fixed or "edges" not in fixed:
            raise ValueError("Invalid workflow structure returned from LLM")
        if response.usage is not None:
            logger.info(f"LLM fix used {response.usage.total_tokens} tokens")
        return fixed
