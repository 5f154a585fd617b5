#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
import re
from abc import ABC, abstractmethod
from json import JSONDecodeError, dumps, loads
from typing import Any, Dict, List, Optional

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from metabaseai import log
from metabaseai.config import settings
from metabaseai.errors import LLMResponseError

logger = log.logger(__name__)

_FENCE = re.compile(r"^\s*```[a-zA-Z]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def strip_fences(text: str) -> str:
    if m := _FENCE.match(text or ""):
        return m.group(1).strip()
    return (text or "").strip()


def parse_json(text: str) -> Any:
    body = strip_fences(text)
    try:
        return loads(body)
    except JSONDecodeError as e:
        raise LLMResponseError(f"Expected a JSON answer, got: {body[:200]}") from e


class Completion(ABC):
    @abstractmethod
    async def complete(self, prompt: str) -> str:
        pass


class AnthropicCompletion(Completion):
    def __init__(self, config: settings.Anthropic):
        self.config = config
        self.client = AsyncAnthropic(api_key=config.api_key)

    async def complete(self, prompt: str) -> str:
        response = await self.client.messages.create(
            model=self.config.chat_model,
            max_tokens=self.config.max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        return "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )


class OpenAiCompletion(Completion):
    def __init__(self, config: settings.OpenAi):
        self.config = config
        self.client = AsyncOpenAI(api_key=config.api_key, organization=config.org)

    async def complete(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.config.model,
            messages=[{"role": "user", "content": prompt}],
        )
        if not response.choices:
            raise LLMResponseError("OpenAI returned no choices")
        return response.choices[0].message.content or ""


def completion_for(llm: Optional[settings.Llm] = None) -> Completion:
    llm = llm or settings.instance().llm
    if llm is None:
        raise RuntimeError("llm is not configured")
    match llm.provider:
        case settings.LlmProvider.openai:
            if llm.openai is None:
                raise RuntimeError("llm.openai is not configured")
            return OpenAiCompletion(llm.openai)
        case _:
            return AnthropicCompletion(llm.anthropic or settings.Anthropic())


class LLMAssistant:
    """Prompt in, text out. Provider errors are not retried."""

    def __init__(self, completion: Optional[Completion] = None):
        self._completion = completion

    @property
    def completion(self) -> Completion:
        if self._completion is None:
            self._completion = completion_for()
        return self._completion

    async def ask(self, prompt: str) -> str:
        logger.debug("llm_request", prompt_chars=len(prompt))
        text = await self.completion.complete(prompt)
        logger.debug("llm_response", response_chars=len(text or ""))
        return text

    async def analyze_request(self, request: str) -> Dict[str, Any]:
        return parse_json(
            await self.ask(
                "Analyze the following request for Metabase operations and "
                "determine what is needed.\n\n"
                f'Request: "{request}"\n\n'
                "Respond with only a JSON object with keys:\n"
                "- type: one of model, question, sql, metric, dashboard\n"
                "- details: the extracted parameters and a short suggested approach"
            )
        )

    async def generate_sql(
        self, description: str, schema_tables: List[Dict[str, Any]]
    ) -> str:
        return strip_fences(
            await self.ask(
                f'Generate a SQL query for: "{description}"\n\n'
                f"Available tables:\n{dumps(schema_tables, indent=2, default=str)}\n\n"
                "Use explicit JOINs where needed and meaningful aliases. "
                "Return only the SQL query without explanation."
            )
        )

    async def explain_sql(self, sql: str) -> str:
        return await self.ask(
            "Explain the following SQL query in simple terms:\n\n"
            f"{sql}\n\n"
            "Describe what it returns, which tables and relationships it uses "
            "and any potential issues."
        )

    async def optimize_sql(self, sql: str) -> Dict[str, Any]:
        result = parse_json(
            await self.ask(
                "Optimize the following SQL query for performance:\n\n"
                f"{sql}\n\n"
                "Respond with only a JSON object with keys optimized_sql, "
                "optimizations (a list of strings) and improvements."
            )
        )
        if not isinstance(result, dict) or "optimized_sql" not in result:
            raise LLMResponseError("optimize_sql answer lacks optimized_sql")
        result["optimized_sql"] = strip_fences(result["optimized_sql"])
        result.setdefault("optimizations", [])
        return result

    async def suggest_visualization(self, description: str, sql: str) -> Dict[str, Any]:
        result = parse_json(
            await self.ask(
                "Suggest the best Metabase visualization for this question.\n\n"
                f"Question: {description}\n"
                f"SQL:\n{sql}\n\n"
                "Respond with only a JSON object with keys visualization (one of "
                "table, bar, line, pie, scalar, scatter, map), settings (an object "
                "of visualization settings) and reasoning."
            )
        )
        if not isinstance(result, dict) or "visualization" not in result:
            raise LLMResponseError("suggest_visualization answer lacks visualization")
        result.setdefault("settings", {})
        return result

    @staticmethod
    def generate_name(description: str, kind: str) -> str:
        words = " ".join(description.split()[:5])
        return f"{words} - {kind} (AI Generated)"
