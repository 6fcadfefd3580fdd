"""
Tests for the text-generation client.
"""

from unittest.mock import AsyncMock, Mock, patch

import pytest

from browserqa.core.exceptions import ConfigurationError, ModelError
from browserqa.execution.models import TestCase as Case, TestResult as Result
from browserqa.generation.text_client import (
    MAX_GENERATED_TESTS,
    GenerationContext,
    OpenAITextClient,
    parse_generated_tests,
)


def _response(content):
    response = Mock()
    response.choices = [Mock()]
    response.choices[0].message.content = content
    return response


@pytest.fixture
def mock_openai_client():
    """Create a mock AsyncOpenAI client."""
    client = Mock()
    client.chat.completions.create = AsyncMock(return_value=_response("• Test passed."))
    return client


@pytest.fixture
def context():
    return GenerationContext(
        project_name="Shop",
        website_url="https://shop.example",
        prompt="Cover checkout",
        exploration_summary="Explored cart and checkout",
        exploration_data={"criticalFlows": ["checkout"]},
        group_name="Checkout",
    )


class TestParseGeneratedTests:
    """Test cases for parse_generated_tests."""

    def test_parses_fenced_json(self):
        """Test a fenced JSON answer with camelCase fields."""
        text = (
            "Here you go:\n```json\n"
            '{"testCases": [{"title": "Pay", "description": "Pay by card", "expectedOutcome": "Receipt"}]}\n'
            "```"
        )

        [test] = parse_generated_tests(text)

        assert test.title == "Pay"
        assert test.expected_outcome == "Receipt"

    def test_last_valid_object_wins(self):
        """Test that the latest object carrying testCases is used."""
        text = (
            '{"testCases": [{"title": "Old", "description": "x"}]} '
            '{"note": "ignore"} '
            '{"testCases": [{"title": "New", "description": "y"}]}'
        )

        assert [t.title for t in parse_generated_tests(text)] == ["New"]

    def test_invalid_entries_are_dropped(self):
        """Test that entries failing validation are skipped."""
        text = '{"testCases": [{"title": "", "description": "x"}, {"title": "Ok", "description": "y"}]}'

        assert [t.title for t in parse_generated_tests(text)] == ["Ok"]

    def test_no_tests(self):
        """Test that a response without tests raises ModelError."""
        with pytest.raises(ModelError, match="No test cases found"):
            parse_generated_tests("Sorry, I cannot help.")


class TestGenerationContext:
    """Test cases for the suggestion prompt."""

    def test_prompt_contents(self, context):
        """Test that the prompt carries project, request, and findings."""
        prompt = context.to_prompt()

        assert "Project: Shop" in prompt
        assert "User request: Cover checkout" in prompt
        assert "Group: Checkout" in prompt
        assert '"criticalFlows"' in prompt
        assert f"up to {MAX_GENERATED_TESTS}" in prompt


class TestOpenAITextClient:
    """Test cases for OpenAITextClient."""

    def test_missing_key(self, config):
        """Test that building the client without a key is a configuration error."""
        config.ai_api_key = None
        text_client = OpenAITextClient(config)

        with pytest.raises(ConfigurationError, match="OPENROUTER_API_KEY"):
            text_client.client

    @patch("browserqa.generation.text_client.AsyncOpenAI")
    def test_lazy_client(self, mock_openai_class, config):
        """Test that the SDK client is built from configuration on first use."""
        config.ai_api_key = "or-key"
        text_client = OpenAITextClient(config)

        assert text_client.client is mock_openai_class.return_value
        assert text_client.client is mock_openai_class.return_value
        mock_openai_class.assert_called_once_with(base_url=config.ai_base_url, api_key="or-key")

    @pytest.mark.asyncio
    async def test_suggest_tests(self, config, context, mock_openai_client):
        """Test that suggestions are parsed and capped."""
        entries = ",".join(f'{{"title": "T{i}", "description": "D{i}"}}' for i in range(12))
        mock_openai_client.chat.completions.create.return_value = _response(f'{{"testCases": [{entries}]}}')
        text_client = OpenAITextClient(config, client=mock_openai_client)

        tests = await text_client.suggest_tests(context)

        assert len(tests) == MAX_GENERATED_TESTS
        kwargs = mock_openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == config.ai_model
        assert kwargs["messages"][0]["role"] == "system"
        assert "Project: Shop" in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_context_model_overrides_default(self, config, context, mock_openai_client):
        """Test that the job's model choice is used when set."""
        context.ai_model = "anthropic/claude-sonnet"
        mock_openai_client.chat.completions.create.return_value = _response(
            '{"testCases": [{"title": "T", "description": "D"}]}'
        )
        text_client = OpenAITextClient(config, client=mock_openai_client)

        await text_client.suggest_tests(context)

        assert mock_openai_client.chat.completions.create.call_args.kwargs["model"] == "anthropic/claude-sonnet"

    @pytest.mark.asyncio
    async def test_summarize(self, config, mock_openai_client):
        """Test the summary prompt and trimmed output."""
        mock_openai_client.chat.completions.create.return_value = _response("  • Checkout worked.\n")
        text_client = OpenAITextClient(config, client=mock_openai_client)
        test_case = Case(title="Checkout", description="Buy a shoe", expected_outcome="Receipt shown")
        result = Result(test_case_id=test_case.id, status="failed", reason="No receipt", duration=12.4)

        summary = await text_client.summarize(test_case, result)

        assert summary == "• Checkout worked."
        prompt = mock_openai_client.chat.completions.create.call_args.kwargs["messages"][1]["content"]
        assert "Result: FAILED" in prompt
        assert "Duration: 12s" in prompt
        assert "Agent verdict: No receipt" in prompt

    @pytest.mark.asyncio
    @patch("browserqa.generation.text_client.asyncio.sleep", new_callable=AsyncMock)
    async def test_retries_with_backoff(self, mock_sleep, config, mock_openai_client):
        """Test that failed calls are retried with exponential backoff."""
        mock_openai_client.chat.completions.create.side_effect = [
            RuntimeError("rate limited"),
            RuntimeError("rate limited"),
            _response("• ok"),
        ]
        text_client = OpenAITextClient(config, client=mock_openai_client)
        test_case = Case(title="T", description="D")

        summary = await text_client.summarize(test_case, Result(test_case_id=test_case.id, status="passed"))

        assert summary == "• ok"
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    @patch("browserqa.generation.text_client.asyncio.sleep", new_callable=AsyncMock)
    async def test_gives_up_after_max_retries(self, mock_sleep, config, mock_openai_client):
        """Test that exhausting retries raises ModelError."""
        mock_openai_client.chat.completions.create.side_effect = RuntimeError("down")
        text_client = OpenAITextClient(config, client=mock_openai_client, max_retries=2)

        with pytest.raises(ModelError) as exc_info:
            await text_client.summarize(Case(title="T", description="D"), Result(test_case_id="x", status="passed"))

        assert "after 2 attempts" in str(exc_info.value)
        assert mock_openai_client.chat.completions.create.await_count == 2
        assert mock_sleep.await_count == 1
