"""
Verdict extraction from automation agent output.

Agents answer with prose, reasoning traces, fenced code blocks, or a
structured object. This module pulls the final ``{success, reason,
extractedData}`` judgment out of any of those shapes.
"""

import re
import json
import logging
from typing import Any, List, Mapping, Optional

from .models import BrowserExecutionVerdict

logger = logging.getLogger(__name__)


VERDICT_JSON_SCHEMA = {
    "type": "object",
    "properties": {
        "success": {"type": "boolean"},
        "reason": {"type": "string"},
        "extractedData": {"type": "object", "additionalProperties": True},
    },
    "required": ["success", "reason"],
    "additionalProperties": True,
}

_FENCED_BLOCK = re.compile(r"```(?:json)?[ \t]*\n?(.*?)```", re.IGNORECASE | re.DOTALL)

_TRUE_TOKENS = {"true", "yes", "passed", "pass", "1"}
_FALSE_TOKENS = {"false", "no", "failed", "fail", "0"}


def extract_json_objects(text: str) -> List[str]:
    """
    Return every top-level balanced ``{...}`` substring of ``text``, in order.

    Braces inside double-quoted strings are ignored and backslash escapes
    inside strings are honoured. An opening brace that never balances is
    skipped and the scan resumes right after it.
    """
    objects: List[str] = []
    length = len(text)
    index = 0

    while index < length:
        start = text.find("{", index)
        if start == -1:
            break

        depth = 0
        in_string = False
        escaped = False
        end = -1

        for position in range(start, length):
            char = text[position]
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
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    end = position
                    break

        if end == -1:
            index = start + 1
            continue

        objects.append(text[start:end + 1])
        index = end + 1

    return objects


def coerce_success(value: Any) -> Optional[bool]:
    """Map a loosely typed success flag to a bool, or None when ambiguous."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        token = value.strip().lower()
        if token in _TRUE_TOKENS:
            return True
        if token in _FALSE_TOKENS:
            return False
    return None


def parse_verdict_object(candidate: Any) -> Optional[BrowserExecutionVerdict]:
    """Validate one decoded candidate. Returns None when it is not a verdict."""
    if not isinstance(candidate, Mapping):
        return None

    success = coerce_success(candidate.get("success"))
    if success is None:
        return None

    reason = candidate.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        return None

    extracted = candidate.get("extractedData", candidate.get("extracted_data"))
    if not isinstance(extracted, Mapping):
        extracted = None

    return BrowserExecutionVerdict(
        success=success,
        reason=reason.strip(),
        extracted_data=dict(extracted) if extracted is not None else None,
    )


def _verdict_from_text(text: str) -> Optional[BrowserExecutionVerdict]:
    # Latest JSON in a reasoning trace is the final answer
    for raw in reversed(extract_json_objects(text)):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            continue
        verdict = parse_verdict_object(decoded)
        if verdict is not None:
            return verdict
    return None


def parse_verdict(output: Any) -> Optional[BrowserExecutionVerdict]:
    """
    Extract a verdict from agent output.

    Args:
        output: A mapping, a JSON string, or free text with embedded JSON

    Returns:
        The verdict, or None when no candidate validates. Callers treat None
        as an automation error rather than a test failure.
    """
    if output is None:
        return None

    if isinstance(output, BrowserExecutionVerdict):
        return output

    if isinstance(output, Mapping):
        return parse_verdict_object(output)

    if not isinstance(output, str):
        return None

    # A fenced block replaces the whole text as the search text
    fenced = _FENCED_BLOCK.search(output)
    search_text = fenced.group(1) if fenced else output

    verdict = _verdict_from_text(search_text)
    if verdict is None:
        logger.debug(
            "No verdict found in agent output",
            extra={"metadata": {"output_length": len(output), "fenced": fenced is not None}},
        )
    return verdict
