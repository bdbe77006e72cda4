"""JSON extraction, repair and schema validation for structured model output.

Grammar accepted by ``parse_json_object``: optional prose, an optional
```json fence, then one JSON object. When strict parsing fails a repair
pass runs before giving up:

1. strip code fences
2. cut the outermost ``{...}`` out of surrounding prose
3. drop trailing commas before ``}`` / ``]``
4. close an unterminated string, then any unbalanced brackets and braces,
   backing off to the last complete member if the tail is a dangling key
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..errors import JsonParseError, StructuredOutputError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCE_OPEN = re.compile(r"^```(?:json|JSON)?\s*")
_FENCE_CLOSE = re.compile(r"\s*```\s*$")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


def strip_code_fences(text: str) -> str:
    candidate = text.strip()
    if candidate.startswith("```"):
        candidate = _FENCE_OPEN.sub("", candidate)
        candidate = _FENCE_CLOSE.sub("", candidate)
    return candidate.strip()


def _scan(text: str) -> tuple[str | None, list[str], bool, int]:
    """Walk ``text`` from its first ``{``.

    Returns the balanced object if one closes, otherwise ``None`` plus the
    stack of open brackets, whether a string is still open, and the index
    of the last top-level-safe comma seen.
    """
    start = text.find("{")
    if start == -1:
        return None, [], False, -1

    stack: list[str] = []
    in_string = False
    escape = False
    last_comma = -1
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if stack:
                stack.pop()
            if not stack:
                return text[start : i + 1], [], False, last_comma
        elif ch == ",":
            last_comma = i
    return None, stack, in_string, last_comma


def _complete(fragment: str) -> str:
    _, stack, in_string, _ = _scan(fragment)
    fixed = fragment + ('"' if in_string else "")
    fixed = fixed.rstrip()
    if fixed.endswith((",", ":")):
        fixed = fixed[:-1]
    return fixed + "".join(reversed(stack))


def _loads_object(candidate: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def repair_json(text: str) -> str | None:
    """Best-effort repair of a truncated or decorated JSON object."""
    candidate = strip_code_fences(text)
    start = candidate.find("{")
    if start == -1:
        return None

    balanced, _, _, last_comma = _scan(candidate)
    if balanced is not None:
        fixed = _TRAILING_COMMA.sub(r"\1", balanced)
        return fixed if _loads_object(fixed) is not None else None

    fragment = _TRAILING_COMMA.sub(r"\1", candidate[start:])
    fixed = _complete(fragment)
    if _loads_object(fixed) is not None:
        logger.debug("Repaired truncated JSON object")
        return fixed

    # Tail is a dangling key or half-written value: drop back to the last member.
    if last_comma > start:
        fixed = _complete(candidate[start:last_comma])
        if _loads_object(fixed) is not None:
            logger.debug("Repaired truncated JSON object by dropping its last member")
            return fixed
    return None


def parse_json_object(text: str | None) -> dict[str, Any]:
    """Parse a JSON object from model output, repairing it if needed.

    Raises:
        JsonParseError: when neither strict parsing nor repair yields an object.
    """
    if not text or not text.strip():
        raise JsonParseError("Empty model output")

    strict = _loads_object(strip_code_fences(text))
    if strict is not None:
        return strict

    repaired = repair_json(text)
    if repaired is None:
        preview = text.strip()[:200]
        raise JsonParseError(f"Could not parse a JSON object from model output: {preview!r}")
    return json.loads(repaired)


def parse_structured(text: str | None, schema: Type[T]) -> T:
    """Parse and validate model output against a pydantic schema."""
    try:
        data = parse_json_object(text)
    except JsonParseError as e:
        raise StructuredOutputError(str(e)) from e
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise StructuredOutputError(f"Output does not match {schema.__name__}: {e.error_count()} error(s)") from e


def schema_instruction(schema: Type[BaseModel]) -> str:
    """Instruction appended to plain-text prompts that must return JSON."""
    return (
        "Respond with JSON only: a single JSON object, no prose and no code fences. "
        "It must match this JSON schema:\n"
        f"{json.dumps(schema.model_json_schema(), indent=2)}"
    )
