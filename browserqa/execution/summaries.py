"""
Human-readable result explanations.

The orchestrator asks a summarizer for one explanation per executed test.
Any text-generation backend can implement :class:`Summarizer`; the fallback
builds a short bullet list from the result itself.
"""

from abc import ABC, abstractmethod

from .models import TestCase, TestResult


class Summarizer(ABC):
    """Produces a short explanation of one test result."""

    @abstractmethod
    async def summarize(self, test_case: TestCase, result: TestResult) -> str:
        """Return bullet-point text explaining ``result``."""


class FallbackSummarizer(Summarizer):
    """Deterministic summary built from the verdict, with no remote calls."""

    async def summarize(self, test_case: TestCase, result: TestResult) -> str:
        status = str(getattr(result.status, "value", result.status)).upper()
        lines = [f"• Ran '{test_case.title}' and the result was {status}."]

        if test_case.expected_outcome:
            lines.append(f"• Expected outcome: {test_case.expected_outcome}")

        if result.reason:
            lines.append(f"• {result.reason}")
        elif result.error:
            lines.append(f"• Automation error: {result.error}")

        if result.duration is not None:
            lines.append(f"• Finished in {round(result.duration)}s.")

        return "\n".join(lines)
