"""
Text-generation collaborator.

Turns exploration findings into suggested tests and explains individual
test results. :class:`OpenAITextClient` talks to any OpenAI-compatible
chat-completions endpoint (OpenRouter by default).
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI
from pydantic import ValidationError as PydanticValidationError

from ..browser.verdict import extract_json_objects
from ..core.config import Config
from ..core.exceptions import ConfigurationError, ModelError
from ..core.logging_config import get_logger, log_performance
from ..execution.models import TestCase, TestResult
from ..execution.summaries import Summarizer
from .models import GeneratedTest

MAX_GENERATED_TESTS = 10

SUGGEST_SYSTEM_PROMPT = """You are a senior QA engineer. Convert browser exploration findings into high-value test cases.
Return strict JSON only: { "testCases": [{ "title": "...", "description": "...", "expectedOutcome": "..." }] }.
Rules:
- Keep tests atomic and actionable.
- Include happy path, validation, and edge scenarios.
- Avoid duplicates and avoid generic filler tests.
- Target real product risks and data integrity checks."""

SUMMARY_SYSTEM_PROMPT = """You are a QA analyst providing clear, professional test result summaries in a structured bullet point format.

Your response MUST be formatted as bullet points, one per line, starting with "• " (bullet character).

Guidelines:
- Use 3-5 bullet points
- Each bullet should be a complete, concise statement
- Write in past tense
- For passed tests: highlight the key verifications that confirmed success
- For failed tests: identify where and why the failure occurred"""


@dataclass
class GenerationContext:
    """What the suggester knows about one exploration."""

    project_name: str
    website_url: str
    prompt: str
    exploration_summary: str
    exploration_data: Dict[str, Any] = field(default_factory=dict)
    group_name: Optional[str] = None
    ai_model: Optional[str] = None

    def to_prompt(self) -> str:
        lines = [
            f"Project: {self.project_name}",
            f"Website URL: {self.website_url}",
            f"User request: {self.prompt}",
        ]
        if self.group_name:
            lines.append(f"Group: {self.group_name}")
        lines.extend(
            [
                "",
                "Exploration summary:",
                self.exploration_summary,
                "",
                "Exploration details:",
                json.dumps(self.exploration_data or {}, indent=2),
                "",
                f"Generate up to {MAX_GENERATED_TESTS} comprehensive but non-duplicative QA test cases for this scope.",
                'Return JSON: { "testCases": [{ "title": "...", "description": "...", "expectedOutcome": "..." }] }',
            ]
        )
        return "\n".join(lines)


class TestSuggester(ABC):
    """Suggests test cases from exploration findings."""

    @abstractmethod
    async def suggest_tests(self, context: GenerationContext) -> List[GeneratedTest]:
        """Return suggested tests; may return more than the caller keeps."""


def parse_generated_tests(text: str) -> List[GeneratedTest]:
    """
    Pull ``{"testCases": [...]}`` out of a model response.

    The last JSON object carrying a ``testCases`` list wins. Entries that
    fail validation are dropped.
    """
    for candidate in reversed(extract_json_objects(text or "")):
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict) or not isinstance(payload.get("testCases"), list):
            continue

        tests = []
        for entry in payload["testCases"]:
            try:
                tests.append(GeneratedTest.model_validate(entry))
            except PydanticValidationError:
                continue
        if tests:
            return tests

    raise ModelError("No test cases found in model response.", task_type="suggest_tests")


class OpenAITextClient(Summarizer, TestSuggester):
    """Chat-completions backed summarizer and test suggester."""

    def __init__(
        self,
        config: Config,
        client: Optional[AsyncOpenAI] = None,
        max_retries: int = 3,
    ):
        self.config = config
        self.max_retries = max(1, max_retries)
        self.logger = get_logger(__name__, component="text_client")
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.config.ai_api_key:
                raise ConfigurationError(
                    "OPENROUTER_API_KEY not configured.", setting="OPENROUTER_API_KEY"
                )
            self._client = AsyncOpenAI(
                base_url=self.config.ai_base_url, api_key=self.config.ai_api_key
            )
        return self._client

    async def _complete(
        self, system: str, prompt: str, model: Optional[str], task_type: str
    ) -> str:
        model_name = model or self.config.ai_model
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]
        client = self.client
        last_error: Optional[Exception] = None
        loop = asyncio.get_running_loop()

        for attempt in range(self.max_retries):
            started = loop.time()
            try:
                response = await client.chat.completions.create(
                    model=model_name, messages=messages
                )
                content = response.choices[0].message.content or ""
                log_performance(
                    self.logger,
                    task_type,
                    loop.time() - started,
                    model=model_name,
                    attempt=attempt + 1,
                )
                return content
            except Exception as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    wait_time = 2**attempt
                    self.logger.warning(
                        f"Model call attempt {attempt + 1} failed, retrying in {wait_time}s: {e}"
                    )
                    await asyncio.sleep(wait_time)

        raise ModelError(
            f"Model call failed after {self.max_retries} attempts: {last_error}",
            model_name=model_name,
            task_type=task_type,
        )

    async def suggest_tests(self, context: GenerationContext) -> List[GeneratedTest]:
        text = await self._complete(
            SUGGEST_SYSTEM_PROMPT, context.to_prompt(), context.ai_model, "suggest_tests"
        )
        tests = parse_generated_tests(text)
        return tests[:MAX_GENERATED_TESTS]

    async def summarize(self, test_case: TestCase, result: TestResult) -> str:
        status = str(getattr(result.status, "value", result.status))
        lines = [
            "Summarize this test result as bullet points:",
            "",
            f"Test: {test_case.title}",
            f"Result: {status.upper()}",
        ]
        if result.duration:
            lines.append(f"Duration: {round(result.duration)}s")
        lines.extend(
            [
                "",
                "Test Description:",
                test_case.description,
                "",
                "Expected Outcome:",
                test_case.expected_outcome or "Test should complete successfully",
            ]
        )
        if result.reason:
            lines.extend(["", f"Agent verdict: {result.reason}"])
        if result.error:
            lines.extend(["", f"Error: {result.error}"])
        lines.extend(
            [
                "",
                f"Provide 3-5 bullet points explaining why this test {status}. "
                'Each bullet must start with "• ".',
            ]
        )

        text = await self._complete(SUMMARY_SYSTEM_PROMPT, "\n".join(lines), None, "summarize")
        return text.strip()
