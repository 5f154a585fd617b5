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
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from metabaseai.ai import assistant
from metabaseai.ai.assistant import Completion, LLMAssistant
from metabaseai.config import settings
from metabaseai.errors import LLMResponseError


class CannedCompletion(Completion):
    def __init__(self, *answers):
        self.answers = list(answers)
        self.prompts = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.answers.pop(0)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("```sql\nSELECT 1\n```", "SELECT 1"),
        ("```\nSELECT 1\n```  ", "SELECT 1"),
        ("  SELECT 1 ", "SELECT 1"),
        (None, ""),
    ],
)
def test_strip_fences(text, expected):
    assert assistant.strip_fences(text) == expected


def test_parse_json():
    assert assistant.parse_json('```json\n{"a": 1}\n```') == {"a": 1}
    with pytest.raises(LLMResponseError):
        assistant.parse_json("Sure! Here is the query")


class TestAssistant:
    @pytest.mark.asyncio
    async def test_generate_sql(self):
        completion = CannedCompletion("```sql\nSELECT count(*) FROM orders\n```")
        sql = await LLMAssistant(completion).generate_sql(
            "how many orders", [{"name": "orders", "columns": ["id"]}]
        )
        assert sql == "SELECT count(*) FROM orders"
        assert '"orders"' in completion.prompts[0]

    @pytest.mark.asyncio
    async def test_optimize_sql(self):
        completion = CannedCompletion('{"optimized_sql": "```sql\\nSELECT 1\\n```"}')
        result = await LLMAssistant(completion).optimize_sql("SELECT 1 FROM t")
        assert result == {"optimized_sql": "SELECT 1", "optimizations": []}

    @pytest.mark.asyncio
    async def test_optimize_sql_requires_key(self):
        with pytest.raises(LLMResponseError):
            await LLMAssistant(CannedCompletion('{"sql": "SELECT 1"}')).optimize_sql("x")

    @pytest.mark.asyncio
    async def test_suggest_visualization(self):
        completion = CannedCompletion('{"visualization": "line", "reasoning": "trend"}')
        result = await LLMAssistant(completion).suggest_visualization(
            "revenue per day", "SELECT day, sum(x) FROM t GROUP BY day"
        )
        assert result["visualization"] == "line"
        assert result["settings"] == {}

    @pytest.mark.asyncio
    async def test_analyze_request(self):
        completion = CannedCompletion('{"type": "dashboard", "details": {}}')
        result = await LLMAssistant(completion).analyze_request("sales overview")
        assert result["type"] == "dashboard"

    def test_generate_name(self):
        assert (
            LLMAssistant.generate_name("monthly revenue by region and product line", "Question")
            == "monthly revenue by region and - Question (AI Generated)"
        )


class TestProviders:
    @pytest.mark.asyncio
    async def test_anthropic_text_blocks(self):
        completion = assistant.AnthropicCompletion(settings.Anthropic(api_key="k"))
        response = MagicMock()
        response.content = [
            MagicMock(type="text", text="SELECT "),
            MagicMock(type="tool_use"),
            MagicMock(type="text", text="1"),
        ]
        with patch.object(
            completion.client.messages, "create", AsyncMock(return_value=response)
        ):
            assert await completion.complete("q") == "SELECT 1"

    @pytest.mark.asyncio
    async def test_openai_without_choices(self):
        completion = assistant.OpenAiCompletion(settings.OpenAi(api_key="k"))
        with patch.object(
            completion.client.chat.completions,
            "create",
            AsyncMock(return_value=MagicMock(choices=[])),
        ):
            with pytest.raises(LLMResponseError):
                await completion.complete("q")

    def test_completion_for(self):
        llm = settings.Llm(provider="openai", openai=settings.OpenAi(api_key="k"))
        assert isinstance(assistant.completion_for(llm), assistant.OpenAiCompletion)
        llm = settings.Llm(provider="anthropic", anthropic=settings.Anthropic(api_key="k"))
        assert isinstance(assistant.completion_for(llm), assistant.AnthropicCompletion)
        with pytest.raises(RuntimeError):
            assistant.completion_for(settings.Llm(provider="openai"))
